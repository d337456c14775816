from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from .decrypt import decrypt_image
from .gzscan import split_kernel_image
from .layout import LayoutSpec, RootfsKind
from .manifest import write_manifest
from .mount import MountError
from .schema import JsonValue
from .sniff import FirmwareBlob, Kind, classify
from .stage import StageContext, StageOutcome, StageStatus
from .unpack import (
    UnpackResult,
    UnpackStatus,
    copy_tree,
    gunzip_file,
    unpack_cpio,
    unpack_image,
    unpack_tar,
    write_tar_listing,
)

log = logging.getLogger(__name__)

_TAR_KINDS = frozenset({Kind.GZIP, Kind.TAR, Kind.BZIP2, Kind.LZMA})
_COMPRESSED_KINDS = frozenset({Kind.GZIP, Kind.BZIP2, Kind.LZMA})
_VERSIONED_SO_RE = re.compile(r"^(?P<stem>.+\.so)\.(?P<version>\d+(?:\.\d+)*)$")


def _banner() -> None:
    print("-" * 46)


def _rel(ctx: StageContext, path: Path) -> str:
    try:
        return str(path.resolve().relative_to(ctx.dest.resolve()))
    except (OSError, ValueError):
        return str(path)


def _fold(
    results: list[UnpackResult],
    details: dict[str, JsonValue],
    *,
    limitations: list[str] | None = None,
) -> StageOutcome:
    limits = list(limitations or [])
    for r in results:
        limits.extend(r.warnings)
    for w in limits:
        log.warning("%s", w)

    status: StageStatus = "ok"
    if any(r.status in (UnpackStatus.FAILED, UnpackStatus.PARTIAL) for r in results):
        status = "partial"
    if limitations:
        status = "partial"
    details["files"] = int(sum(r.files_copied for r in results))
    return StageOutcome(status=status, details=details, limitations=limits)


def _skipped(reason: str) -> StageOutcome:
    log.debug("skipped: %s", reason)
    return StageOutcome(status="skipped", details={"reason": reason})


@dataclass(frozen=True)
class PackageArchiveEntry:
    name: str
    path: Path
    gzip: bool
    merge_target: str | None


def package_entries(qpkg_dir: Path, layout: LayoutSpec) -> list[PackageArchiveEntry]:
    out: list[PackageArchiveEntry] = []
    if not qpkg_dir.is_dir():
        return out
    for p in sorted(qpkg_dir.glob("*.tgz")):
        name = p.name[: -len(".tgz")]
        target: str | None = None
        if name in layout.merge_local:
            target = "usr/local"
        elif name == layout.boost_package:
            target = "usr/lib"
        elif name == layout.boost_fallback:
            target = "."
        out.append(
            PackageArchiveEntry(
                name=name, path=p, gzip=classify(p) is Kind.GZIP, merge_target=target
            )
        )
    return out


def link_versioned_libs(lib_dir: Path, prefix: str) -> list[str]:
    """Create `libfoo.so -> libfoo.so.<version>` for every versioned library."""

    created: list[str] = []
    if not lib_dir.is_dir():
        return created
    for p in sorted(lib_dir.glob(f"{prefix}*.so.*")):
        m = _VERSIONED_SO_RE.match(p.name)
        if m is None:
            continue
        link = lib_dir / m.group("stem")
        if link.exists() or link.is_symlink():
            continue
        os.symlink(p.name, link)
        created.append(link.name)
    return created


@dataclass(frozen=True)
class InputStage:
    """Classify the source; decrypt and unpack it into `fw/` when needed."""

    @property
    def name(self) -> str:
        return "input"

    def run(self, ctx: StageContext) -> StageOutcome:
        blob = FirmwareBlob.from_path(ctx.source)
        details: dict[str, JsonValue] = {"source": str(ctx.source), "kind": blob.kind.value}

        if blob.kind is Kind.DIRECTORY:
            ctx.state.source_root = ctx.source
            return StageOutcome(status="ok", details=details)

        results: list[UnpackResult] = []
        if blob.kind is Kind.ENCRYPTED:
            _banner()
            out = ctx.dest / f"{ctx.source.name}.tgz"
            print(
                f"decrypting '{ctx.source}' to '{out}' using {ctx.settings.pc1_tool} tool ..."
            )
            res = decrypt_image(ctx.source, out, ctx.settings, log_path=ctx.log_path)
            results.append(res)
            if not res.ok:
                return _fold(results, details)
            blob = blob.reclassify(out)
            details["decrypted"] = _rel(ctx, out)
            details["decrypted_kind"] = blob.kind.value

        if blob.kind not in _TAR_KINDS:
            return _fold(
                results,
                details,
                limitations=[f"unrecognized input '{blob.path}' ({blob.kind.value})"],
            )

        _banner()
        print(f"extracting '{blob.path}' into '{ctx.fw.path}'...")
        res = unpack_tar(blob.path, ctx.fw.ensure())
        results.append(res)
        if res.ok:
            ctx.state.source_root = ctx.fw.path
        details["fw_dir"] = _rel(ctx, ctx.fw.path)
        return _fold(results, details)


@dataclass(frozen=True)
class KernelImageStage:
    """x31/x31+ `uImage`: kernel plus gzip'd ramdisk, split by magic scan."""

    @property
    def name(self) -> str:
        return "kernel_image"

    def run(self, ctx: StageContext) -> StageOutcome:
        image = ctx.source_file(ctx.layout.kernel_image)
        if image is None:
            return _skipped(f"no {ctx.layout.kernel_image}")

        _banner()
        print(f"scanning '{image}' for (gzipped) parts...")
        split = split_kernel_image(image, ctx.dest, name=ctx.layout.initramfs)
        payload = split.ramdisk
        ctx.state.ramdisk = payload
        details: dict[str, JsonValue] = {
            "kernel_image": str(image),
            "ramdisk": _rel(ctx, payload) if payload is not None else None,
        }
        if payload is None:
            print(f"- no embedded ramdisk in '{image}'")
        return StageOutcome(
            status="partial" if split.warnings else "ok",
            details=details,
            limitations=list(split.warnings),
        )


@dataclass(frozen=True)
class UbiVolumeStage:
    """Copy `/boot` of the UBI root volume into the destination.

    It carries the rootfs tarballs and `qpkg.tar`, so later stages look in the
    destination first once a volume was found.
    """

    @property
    def name(self) -> str:
        return "ubi_volume"

    def run(self, ctx: StageContext) -> StageOutcome:
        ubi = ctx.source_file(ctx.layout.ubi_volume)
        if ubi is None:
            return _skipped(f"no {ctx.layout.ubi_volume}")

        _banner()
        print(f"unpacking '{ubi}'...")
        ctx.state.staged_root = ctx.dest
        details: dict[str, JsonValue] = {"ubi_volume": str(ubi)}
        try:
            with ctx.mounter.flash_volume(ubi) as mnt:
                print("- copying contents")
                res = copy_tree(mnt / ctx.layout.ubi_boot_dir, ctx.dest)
        except MountError as exc:
            res = UnpackResult(UnpackStatus.FAILED, warnings=[f"{ubi.name}: {exc}"])
        return _fold([res], details)


def _cpio_compression(kind: Kind) -> Kind | None:
    return kind if kind in _COMPRESSED_KINDS else None


@dataclass(frozen=True)
class RamdiskStage:
    """Initial ramdisk into the sysroot: initramfs (cpio) or initrd."""

    @property
    def name(self) -> str:
        return "ramdisk"

    def _initrd(self, ctx: StageContext, initrd: Path, sysroot: Path) -> list[UnpackResult]:
        kind = classify(initrd)
        if kind is Kind.LZMA:
            print(f"extracting '{initrd}' (LZMA)...")
            return [
                unpack_cpio(
                    initrd,
                    sysroot,
                    compression=Kind.LZMA,
                    log_path=ctx.log_path,
                    scratch=ctx.scratch.ensure(),
                    timeout_s=ctx.settings.timeout_s,
                )
            ]
        if kind is not Kind.GZIP:
            return [
                UnpackResult(
                    UnpackStatus.FAILED,
                    warnings=[f"{initrd.name}: unsupported initrd format ({kind.value})"],
                )
            ]

        print(f"extracting '{initrd}' (gzip)...")
        with tempfile.TemporaryDirectory(prefix="initrd-", dir=ctx.scratch.ensure()) as tmp:
            img = Path(tmp) / "initrd.img"
            decoded = gunzip_file(initrd, img)
            if not decoded.ok:
                return [decoded]
            if classify(img) is Kind.CPIO:
                res = unpack_cpio(
                    img, sysroot, log_path=ctx.log_path, timeout_s=ctx.settings.timeout_s
                )
            else:
                res = unpack_image(img, "ext2", sysroot, ctx.mounter)
            return [decoded, res]

    def run(self, ctx: StageContext) -> StageOutcome:
        _banner()
        sysroot = ctx.sysroot.ensure()
        results: list[UnpackResult] = []
        details: dict[str, JsonValue] = {}

        ramdisk = ctx.state.ramdisk
        if ramdisk is not None and ramdisk.is_file():
            print(f"extracting '{ramdisk}'...")
            results.append(
                unpack_cpio(
                    ramdisk,
                    sysroot,
                    compression=_cpio_compression(classify(ramdisk)),
                    log_path=ctx.log_path,
                    scratch=ctx.scratch.ensure(),
                    timeout_s=ctx.settings.timeout_s,
                )
            )
            details["initramfs"] = _rel(ctx, ramdisk)

        for name in ctx.layout.initrd_candidates:
            initrd = ctx.source_file(name)
            if initrd is None:
                continue
            results.extend(self._initrd(ctx, initrd, sysroot))
            details["initrd"] = str(initrd)
            break

        if not results:
            return _skipped("no initramfs or initrd")
        return _fold(results, details)


@dataclass(frozen=True)
class RootFilesystemStage:
    """First present rootfs representation wins."""

    @property
    def name(self) -> str:
        return "rootfs"

    def run(self, ctx: StageContext) -> StageOutcome:
        for name, kind in ctx.layout.rootfs_candidates:
            path = ctx.staged_file(name)
            if path is None or not path.is_file():
                continue
            _banner()
            print(f"extracting {path} ({kind.value})...")
            sysroot = ctx.sysroot.ensure()
            details: dict[str, JsonValue] = {"rootfs": str(path), "format": kind.value}
            if kind is not RootfsKind.EXT2_BZIP2:
                return _fold([unpack_tar(path, sysroot)], details)

            inner_name = ctx.layout.rootfs_img_inner
            try:
                with ctx.mounter.mounted(path, "ext2") as mnt:
                    inner = mnt / inner_name
                    if inner.is_file():
                        res = unpack_tar(inner, sysroot)
                    else:
                        res = UnpackResult(
                            UnpackStatus.FAILED,
                            warnings=[f"{path.name}: no {inner_name} inside image"],
                        )
            except MountError as exc:
                res = UnpackResult(UnpackStatus.FAILED, warnings=[f"{path.name}: {exc}"])
            return _fold([res], details)

        return _skipped("no root filesystem archive")


@dataclass(frozen=True)
class RootfsExtStage:
    """`rootfs_ext.tgz` wraps an ext2 image that is copied into the sysroot."""

    @property
    def name(self) -> str:
        return "rootfs_ext"

    def run(self, ctx: StageContext) -> StageOutcome:
        archive = ctx.staged_file(ctx.layout.rootfs_ext)
        if archive is None:
            return _skipped(f"no {ctx.layout.rootfs_ext}")

        _banner()
        print(f"extracting {archive}...")
        details: dict[str, JsonValue] = {"rootfs_ext": str(archive)}
        with tempfile.TemporaryDirectory(prefix="rootfs_ext-", dir=ctx.scratch.ensure()) as tmp:
            staged = Path(tmp)
            res = unpack_tar(archive, staged)
            if not res.ok:
                return _fold([res], details)
            img = staged / ctx.layout.rootfs_ext_image
            if not img.is_file():
                return _fold(
                    [res],
                    details,
                    limitations=[f"{archive.name}: no {ctx.layout.rootfs_ext_image} inside"],
                )
            copied = unpack_image(img, "auto", ctx.sysroot.ensure(), ctx.mounter)
            return _fold([res, copied], details)


@dataclass(frozen=True)
class ExtraPackagesStage:
    """Vendor toolchain bundles under `opt/source` go to `usr/local`."""

    @property
    def name(self) -> str:
        return "extra_packages"

    def run(self, ctx: StageContext) -> StageOutcome:
        src_dir = ctx.sysroot.path / ctx.layout.extra_packages_dir
        bundles = sorted(src_dir.rglob("*.tgz")) if src_dir.is_dir() else []
        if not bundles:
            return _skipped(f"no *.tgz under {ctx.layout.extra_packages_dir}")

        local = ctx.sysroot.path / "usr" / "local"
        results: list[UnpackResult] = []
        for f in bundles:
            print(f"extracting '{f}' -> sysroot/usr/local...")
            results.append(unpack_tar(f, local))
        return _fold(results, {"bundles": [_rel(ctx, f) for f in bundles]})


@dataclass(frozen=True)
class PackageArchiveStage:
    """Unpack `qpkg.tar` and write a `<name>.tgz.txt` listing per package."""

    @property
    def name(self) -> str:
        return "package_archive"

    def run(self, ctx: StageContext) -> StageOutcome:
        archive = ctx.staged_file(ctx.layout.package_archive)
        if archive is None:
            return _skipped(f"no {ctx.layout.package_archive}")

        _banner()
        print(f"extracting '{archive}'...")
        qpkg = ctx.qpkg.ensure()
        results = [unpack_tar(archive, qpkg)]

        listed: list[JsonValue] = []
        for entry in package_entries(qpkg, ctx.layout):
            if not entry.gzip:
                continue
            out = entry.path.with_name(entry.path.name + ".txt")
            results.append(write_tar_listing(entry.path, out))
            listed.append(entry.name)
        return _fold(results, {"package_archive": str(archive), "listed": listed})


@dataclass(frozen=True)
class MergeStage:
    """Merge selected packages into the sysroot and add boost symlinks."""

    @property
    def name(self) -> str:
        return "merge"

    def run(self, ctx: StageContext) -> StageOutcome:
        layout = ctx.layout
        sysroot = ctx.sysroot.path
        entries = {e.name: e for e in package_entries(ctx.qpkg.path, layout)}
        results: list[UnpackResult] = []
        merged: list[JsonValue] = []

        for name in layout.merge_local:
            entry = entries.get(name)
            if entry is None:
                continue
            print(f"extracting 'qpkg/{entry.path.name}' -> sysroot/usr/local...")
            results.append(unpack_tar(entry.path, sysroot / "usr" / "local"))
            merged.append(name)

        boost = entries.get(layout.boost_package)
        fallback = entries.get(layout.boost_fallback)
        if boost is not None:
            print(f"extracting 'qpkg/{boost.path.name}' -> sysroot/usr/lib...")
            results.append(unpack_tar(boost.path, sysroot / "usr" / "lib"))
            merged.append(boost.name)
        elif fallback is not None:
            marker = layout.boost_member_marker
            print(f"extracting {marker} from 'qpkg/{fallback.path.name}' -> sysroot/usr/lib...")
            results.append(unpack_tar(fallback.path, sysroot, select=lambda n: marker in n))
            merged.append(fallback.name)

        links = link_versioned_libs(sysroot / "usr" / "lib", layout.boost_member_marker)
        if not results and not links:
            return _skipped("nothing to merge")
        details: dict[str, JsonValue] = {
            "merged": merged,
            "symlinks": cast(list[JsonValue], list(links)),
        }
        return _fold(results, details)


@dataclass(frozen=True)
class ManifestStage:
    @property
    def name(self) -> str:
        return "manifest"

    def run(self, ctx: StageContext) -> StageOutcome:
        out = ctx.dest / "sysroot.txt"
        n = write_manifest(ctx.sysroot.ensure(), out)
        return StageOutcome(
            status="ok", details={"manifest": _rel(ctx, out), "entries": int(n)}
        )
