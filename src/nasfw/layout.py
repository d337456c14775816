"""Which files each firmware family ships, and how each one is unpacked.

Model coverage:

- x10, x12, x19, x20, x21: `initrd.boot` (gzip'd ext2), `rootfs2.tgz`
- x51, x53: `initrd` (LZMA cpio), `rootfs2.bz`
- x31, x31+: `uImage` (kernel + ramdisk), `rootfs2.ubi` carrying
  `rootfs2.tgz`, `rootfs_ext.tgz` and `qpkg.tar` below `/boot`
- older images: `rootfs2.img` (ext2 holding `rootfs2.bz`)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class RootfsKind(enum.Enum):
    TAR_GZIP = "gzip, tar"
    TAR_BZIP2 = "bzip2, tar"
    TAR_LZMA = "lzma, tar"
    EXT2_BZIP2 = "ext2, bzip2 tar"


@dataclass(frozen=True)
class LayoutSpec:
    kernel_image: str
    ubi_volume: str
    ubi_boot_dir: str
    initramfs: str
    initrd_candidates: tuple[str, ...]
    rootfs_candidates: tuple[tuple[str, RootfsKind], ...]
    rootfs_ext: str
    rootfs_ext_image: str
    rootfs_img_inner: str
    extra_packages_dir: str
    package_archive: str
    merge_local: tuple[str, ...]
    boost_package: str
    boost_fallback: str
    boost_member_marker: str


QNAP_LAYOUT = LayoutSpec(
    kernel_image="uImage",
    ubi_volume="rootfs2.ubi",
    ubi_boot_dir="boot",
    initramfs="initramfs",
    initrd_candidates=("initrd.boot", "initrd"),
    rootfs_candidates=(
        ("rootfs2.tgz", RootfsKind.TAR_GZIP),
        ("rootfs2.bz", RootfsKind.TAR_BZIP2),
        ("rootfs2.lzma", RootfsKind.TAR_LZMA),
        ("rootfs2.img", RootfsKind.EXT2_BZIP2),
    ),
    rootfs_ext="rootfs_ext.tgz",
    rootfs_ext_image="rootfs_ext.img",
    rootfs_img_inner="rootfs2.bz",
    extra_packages_dir="opt/source",
    package_archive="qpkg.tar",
    merge_local=("apache_php5", "mysql5", "mariadb5"),
    boost_package="libboost",
    boost_fallback="DSv3",
    boost_member_marker="libboost",
)
