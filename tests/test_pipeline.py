from __future__ import annotations

import bz2
import gzip
import io
import json
import os
import subprocess
import tarfile
from pathlib import Path

import pytest

from fwfixtures import FakeMounter, gz, make_tar, make_tree
from nasfw.config import Settings
from nasfw.policy import DecryptToolMissing, DestinationExists
from nasfw.run import default_stages, run_extraction
from nasfw.sniff import Kind
from nasfw.stage import StageContext, StageOutcome
from nasfw.unpack import UnpackResult, UnpackStatus

_SETTINGS = Settings(use_sudo=False, timeout_s=30.0)

_ROOTFS = {
    "etc/hostname": b"NASXXXXXX\n",
    "etc/config/uLinux.conf": b"[System]\nModel = TS-X51\n",
    "bin/busybox": b"\x7fELF" + b"\x00" * 28,
}


def _tar_bytes(
    files: dict[str, bytes], *, mode: str = "w:gz", format: int = tarfile.DEFAULT_FORMAT
) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode, format=format) as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 1_420_070_400
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _run(src: Path, dest: Path, mounter: FakeMounter | None = None):
    return run_extraction(src, dest, settings=_SETTINGS, mounter=mounter or FakeMounter())


def _stage(report, name: str):
    return next(r for r in report.stage_results if r.stage == name)


def test_existing_destination_is_refused(tmp_path: Path) -> None:
    src = make_tree(tmp_path / "src", {"rootfs2.tgz": b""})
    dest = tmp_path / "dest"
    dest.mkdir()

    with pytest.raises(DestinationExists, match="must not already exist"):
        _run(src, dest)

    assert list(dest.iterdir()) == []


def test_directory_source_rootfs_and_package_archive(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    qpkg_tar = _tar_bytes(
        {
            "mysql5.tgz": _tar_bytes({"bin/mysqld": b"\x7fELF", "share/mysql/charsets": b""}),
            "libboost.tgz": _tar_bytes(
                {"libboost_system.so.1.49.0": b"so", "libboost_thread.so.1.49.0": b"so"}
            ),
            "Qsync.tgz": _tar_bytes({"qsync/bin/qsyncd": b"d"}),
            "notes.tgz": b"plain text, not gzip",
        },
        mode="w",
    )
    src = make_tree(tmp_path / "src", {"qpkg.tar": qpkg_tar})
    make_tar(src / "rootfs2.tgz", _ROOTFS)
    dest = tmp_path / "dest"

    report = _run(src, dest)

    assert capsys.readouterr().out.startswith(f"SRC={src}, DEST={dest}\n")
    assert report.status == "ok"
    sysroot = dest / "sysroot"
    assert (sysroot / "etc/hostname").read_bytes() == b"NASXXXXXX\n"
    assert (sysroot / "usr/local/bin/mysqld").is_file()
    assert os.readlink(sysroot / "usr/lib/libboost_system.so") == "libboost_system.so.1.49.0"
    assert os.readlink(sysroot / "usr/lib/libboost_thread.so") == "libboost_thread.so.1.49.0"
    assert not (sysroot / "usr/local/qsync").exists()

    listing = (dest / "qpkg/mysql5.tgz.txt").read_text(encoding="utf-8")
    assert "bin/mysqld" in listing
    assert (dest / "qpkg/Qsync.tgz.txt").is_file()
    assert not (dest / "qpkg/notes.tgz.txt").exists()

    manifest = (dest / "sysroot.txt").read_text(encoding="utf-8").splitlines()
    assert manifest[0].endswith(" .")
    assert any(line.endswith(" ./etc/hostname") for line in manifest)
    assert any(" ./usr/lib/libboost_system.so -> " in line for line in manifest)

    doc = json.loads((dest / "extract.json").read_text(encoding="utf-8"))
    assert [s["stage"] for s in doc["stages"]] == [s.name for s in default_stages()]
    assert doc["stages"][0]["details"]["kind"] == "directory"
    assert _stage(report, "kernel_image").status == "skipped"
    assert _stage(report, "rootfs").status == "ok"
    assert _stage(report, "merge").details["merged"] == ["mysql5", "libboost"]
    assert not (dest / ".scratch").exists()


def test_clean_directory_run_reports_ok(tmp_path: Path) -> None:
    src = tmp_path / "src"
    make_tar(src / "rootfs2.tgz", _ROOTFS)

    report = _run(src, tmp_path / "dest")

    assert report.status == "ok"
    assert report.limitations == []


def test_boost_fallback_takes_only_boost_members(tmp_path: Path) -> None:
    qpkg_tar = _tar_bytes(
        {
            "DSv3.tgz": _tar_bytes(
                {
                    "usr/lib/libboost_thread.so.1.42.0": b"so",
                    "usr/bin/dsv3d": b"d",
                }
            )
        },
        mode="w",
    )
    src = make_tree(tmp_path / "src", {"qpkg.tar": qpkg_tar})
    make_tar(src / "rootfs2.tgz", _ROOTFS)
    dest = tmp_path / "dest"

    report = _run(src, dest)

    lib = dest / "sysroot/usr/lib"
    assert (lib / "libboost_thread.so.1.42.0").is_file()
    assert os.readlink(lib / "libboost_thread.so") == "libboost_thread.so.1.42.0"
    assert not (dest / "sysroot/usr/bin/dsv3d").exists()
    assert _stage(report, "merge").details["merged"] == ["DSv3"]


def test_opt_source_bundles_go_to_usr_local(tmp_path: Path) -> None:
    rootfs = dict(_ROOTFS)
    rootfs["opt/source/toolchain.tgz"] = _tar_bytes({"bin/arm-gcc": b"gcc"})
    src = tmp_path / "src"
    make_tar(src / "rootfs2.tgz", rootfs)
    dest = tmp_path / "dest"

    report = _run(src, dest)

    assert (dest / "sysroot/usr/local/bin/arm-gcc").read_bytes() == b"gcc"
    assert _stage(report, "extra_packages").details["bundles"] == [
        "sysroot/opt/source/toolchain.tgz"
    ]


def test_gzip_firmware_archive_is_unpacked_into_fw(tmp_path: Path) -> None:
    archive = make_tar(
        tmp_path / "TS-X51_20150101-4.1.2.img.tgz",
        {"rootfs2.tgz": _tar_bytes(_ROOTFS), "update_img.sh": b"#!/bin/sh\n"},
    )
    dest = tmp_path / "dest"

    report = _run(archive, dest)

    assert (dest / "fw/update_img.sh").is_file()
    assert (dest / "sysroot/etc/hostname").is_file()
    first = _stage(report, "input")
    assert first.details["kind"] == "gzip"
    assert first.details["fw_dir"] == "fw"


def _encrypted(path: Path) -> Path:
    _ = path.write_bytes(bytes(range(256)) * 16)
    return path


def test_encrypted_image_without_decrypt_tool_is_fatal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("nasfw.decrypt.shutil.which", lambda name: None)
    src = _encrypted(tmp_path / "TS-X31_20150101-4.1.2.img")

    with pytest.raises(DecryptToolMissing) as info:
        _run(src, tmp_path / "dest")

    assert f"/sbin/PC1 d QNAPNASVERSION4 {src} {src}.tgz" in str(info.value)
    assert info.value.remedy.startswith("/sbin/PC1 d ")


def test_encrypted_image_is_decrypted_then_unpacked(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    src = _encrypted(tmp_path / "TS-X51.img")
    calls: list[list[str]] = []

    def fake_run(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(list(argv))
        _ = Path(argv[4]).write_bytes(
            _tar_bytes({"rootfs2.tgz": _tar_bytes(_ROOTFS)})
        )
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

    monkeypatch.setattr("nasfw.decrypt.shutil.which", lambda name: "/usr/local/bin/PC1")
    monkeypatch.setattr("nasfw.decrypt.subprocess.run", fake_run)
    dest = tmp_path / "dest"

    report = _run(src, dest)

    assert calls == [
        ["/usr/local/bin/PC1", "d", "QNAPNASVERSION4", str(src), str(dest / "TS-X51.img.tgz")]
    ]
    first = _stage(report, "input")
    assert first.details["decrypted"] == "TS-X51.img.tgz"
    assert first.details["decrypted_kind"] == Kind.GZIP.value
    assert (dest / "fw/rootfs2.tgz").is_file()
    assert (dest / "sysroot/etc/hostname").is_file()


def test_failed_decrypt_is_recorded_and_run_continues(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    src = _encrypted(tmp_path / "TS-X51.img")

    def fake_run(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(argv, 1, stdout="", stderr="bad key\n")

    monkeypatch.setattr("nasfw.decrypt.shutil.which", lambda name: "/usr/local/bin/PC1")
    monkeypatch.setattr("nasfw.decrypt.subprocess.run", fake_run)
    dest = tmp_path / "dest"

    report = _run(src, dest)

    assert report.status == "partial"
    assert _stage(report, "input").status == "partial"
    assert any("decrypt failed (rc=1) bad key" in lim for lim in report.limitations)
    assert _stage(report, "manifest").status == "ok"


def test_ubi_volume_boot_contents_feed_later_stages(tmp_path: Path) -> None:
    boot = tmp_path / "ubifs/boot"
    make_tar(boot / "rootfs2.tgz", _ROOTFS)
    make_tar(boot / "qpkg.tar", {"mysql5.tgz": _tar_bytes({"bin/mysqld": b"m"})}, mode="w")
    src = make_tree(tmp_path / "src", {"rootfs2.ubi": b"UBI#" + b"\x00" * 60})
    mounter = FakeMounter(volumes={"rootfs2.ubi": tmp_path / "ubifs"})
    dest = tmp_path / "dest"

    report = _run(src, dest, mounter)

    assert mounter.calls == [("attach", "rootfs2.ubi"), ("detach", "rootfs2.ubi")]
    assert (dest / "rootfs2.tgz").is_file()
    assert (dest / "sysroot/etc/hostname").is_file()
    assert (dest / "sysroot/usr/local/bin/mysqld").read_bytes() == b"m"
    assert _stage(report, "rootfs").details["rootfs"] == str(dest / "rootfs2.tgz")


def test_ubi_attach_failure_degrades_to_partial(tmp_path: Path) -> None:
    src = make_tree(tmp_path / "src", {"rootfs2.ubi": b"UBI#" + b"\x00" * 60})

    report = _run(src, tmp_path / "dest")

    ubi = _stage(report, "ubi_volume")
    assert ubi.status == "partial"
    assert "ubiattach of rootfs2.ubi failed" in ubi.limitations[0]


def test_rootfs_image_with_bzip2_archive_inside(tmp_path: Path) -> None:
    inner = tmp_path / "ext2"
    make_tree(inner, {"rootfs2.bz": _tar_bytes(_ROOTFS, mode="w:bz2")})
    src = make_tree(tmp_path / "src", {"rootfs2.img": b"\x00" * 2048})
    mounter = FakeMounter(images={"rootfs2.img": inner})
    dest = tmp_path / "dest"

    report = _run(src, dest, mounter)

    assert (dest / "sysroot/etc/config/uLinux.conf").is_file()
    assert _stage(report, "rootfs").details["format"] == "ext2, bzip2 tar"
    assert mounter.calls == [("mount", "rootfs2.img:ext2"), ("umount", "rootfs2.img")]


def test_first_rootfs_candidate_wins(tmp_path: Path) -> None:
    src = tmp_path / "src"
    make_tar(src / "rootfs2.tgz", {"from/tgz": b"1"})
    make_tar(src / "rootfs2.bz", {"from/bz": b"2"}, mode="w:bz2")
    dest = tmp_path / "dest"

    _run(src, dest)

    assert (dest / "sysroot/from/tgz").is_file()
    assert not (dest / "sysroot/from/bz").exists()


def test_gzip_initrd_holding_ext2_image(tmp_path: Path) -> None:
    tree = make_tree(tmp_path / "initrd-tree", {"sbin/init": b"init", "etc/fstab": b"none\n"})
    src = make_tree(tmp_path / "src", {"initrd.boot": gz(b"\x00" * 4096)})
    make_tar(src / "rootfs2.tgz", _ROOTFS)
    mounter = FakeMounter(images={"initrd.img": tree})
    dest = tmp_path / "dest"

    report = _run(src, dest, mounter)

    assert (dest / "sysroot/sbin/init").read_bytes() == b"init"
    assert (dest / "sysroot/etc/hostname").is_file()
    assert mounter.calls == [("mount", "initrd.img:ext2"), ("umount", "initrd.img")]
    assert _stage(report, "ramdisk").status == "ok"


def test_rootfs_ext_image_is_copied_into_sysroot(tmp_path: Path) -> None:
    tree = make_tree(tmp_path / "ext-tree", {"usr/lib/libext.so": b"ext"})
    src = tmp_path / "src"
    make_tar(src / "rootfs2.tgz", _ROOTFS)
    make_tar(src / "rootfs_ext.tgz", {"rootfs_ext.img": b"\x00" * 2048})
    mounter = FakeMounter(images={"rootfs_ext.img": tree})
    dest = tmp_path / "dest"

    report = _run(src, dest, mounter)

    assert (dest / "sysroot/usr/lib/libext.so").read_bytes() == b"ext"
    assert mounter.calls == [("mount", "rootfs_ext.img:auto"), ("umount", "rootfs_ext.img")]
    assert _stage(report, "rootfs_ext").status == "ok"


def _uimage(ramdisk: bytes) -> bytes:
    kernel = b"K" * 4096 + gzip.compress(ramdisk, mtime=0)
    return b"\x27\x05\x19\x56" + b"\xaa" * 60 + gzip.compress(kernel, mtime=0)


def test_kernel_image_ramdisk_goes_through_cpio(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[tuple[str, Kind | None]] = []

    def fake_cpio(payload: Path, dest: Path, **kwargs: object) -> UnpackResult:
        seen.append((payload.name, kwargs.get("compression")))
        make_tree(dest, {"init": payload.read_bytes()[:6]})
        return UnpackResult(UnpackStatus.OK, files_copied=1)

    monkeypatch.setattr("nasfw.extraction.unpack_cpio", fake_cpio)
    src = make_tree(tmp_path / "src", {"uImage": _uimage(b"070701" + b"0" * 250)})
    dest = tmp_path / "dest"

    report = _run(src, dest)

    assert seen == [("initramfs", None)]
    assert (dest / "sysroot/init").read_bytes() == b"070701"
    assert _stage(report, "kernel_image").details["ramdisk"] == "initramfs"
    assert sorted(p.name for p in dest.iterdir() if p.name.startswith(("uimage", "image"))) == []


def test_truncated_kernel_image_member_is_a_limitation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fake_cpio(payload: Path, dest: Path, **kwargs: object) -> UnpackResult:
        return UnpackResult(UnpackStatus.OK)

    monkeypatch.setattr("nasfw.extraction.unpack_cpio", fake_cpio)
    good = _uimage(b"070701" + b"0" * 250)
    good += b"\xff" * (-len(good) % 4)
    broken = gzip.compress(bytes(range(256)) * 64, mtime=0)
    src = make_tree(tmp_path / "src", {"uImage": good + broken[: len(broken) // 2]})
    dest = tmp_path / "dest"

    report = _run(src, dest)

    kernel = _stage(report, "kernel_image")
    assert kernel.status == "partial"
    assert kernel.limitations == [
        f"uImage: gzip member at offset {len(good)} is corrupt or truncated"
    ]
    assert kernel.details["ramdisk"] == "initramfs"
    assert report.status == "partial"
    doc = json.loads((dest / "extract.json").read_text(encoding="utf-8"))
    assert doc["stages"][1]["status"] == "partial"


def test_kernel_image_without_gzip_parts_skips_ramdisk(tmp_path: Path) -> None:
    src = make_tree(tmp_path / "src", {"uImage": b"\x27\x05\x19\x56" + b"\x00" * 4096})

    report = _run(src, tmp_path / "dest")

    kernel = _stage(report, "kernel_image")
    assert kernel.status == "ok"
    assert kernel.details["ramdisk"] is None
    assert _stage(report, "ramdisk").status == "skipped"


def test_unrecognized_input_is_a_limitation(tmp_path: Path) -> None:
    src = tmp_path / "README"
    _ = src.write_text("this is not firmware\n", encoding="utf-8")

    report = _run(src, tmp_path / "dest")

    assert _stage(report, "input").status == "partial"
    assert any("unrecognized input" in lim for lim in report.limitations)


def test_raw_kernel_image_as_source_is_not_sent_to_decrypt(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("nasfw.decrypt.shutil.which", lambda name: None)
    src = tmp_path / "uImage"
    _ = src.write_bytes(b"\x27\x05\x19\x56" + bytes(range(256)) * 16)

    report = _run(src, tmp_path / "dest")

    first = _stage(report, "input")
    assert first.details["kind"] == "unknown"
    assert any("unrecognized input" in lim for lim in first.limitations)


def test_latin1_names_reach_listings_and_report(tmp_path: Path) -> None:
    odd = "usr/share/caf\udce9.txt"
    gnu = tarfile.GNU_FORMAT
    qpkg_tar = _tar_bytes(
        {
            "apps.tgz": _tar_bytes({odd: b"menu", "apps/bin/run": b"r"}, format=gnu),
            "mysql5.tgz": _tar_bytes({odd: b"menu", "bin/mysqld": b"m"}, format=gnu),
        },
        mode="w",
    )
    rootfs = _tar_bytes({odd: b"menu", "zz/after": b"z", "../caf\udce9": b"x"}, format=gnu)
    src = make_tree(tmp_path / "src", {"qpkg.tar": qpkg_tar, "rootfs2.tgz": rootfs})
    dest = tmp_path / "dest"

    report = _run(src, dest)

    manifest = (dest / "sysroot.txt").read_bytes()
    assert b" ./usr/share/caf\xe9.txt\n" in manifest
    assert b" ./zz/after" in manifest
    assert b" usr/share/caf\xe9.txt\n" in (dest / "qpkg/apps.tgz.txt").read_bytes()
    assert b" bin/mysqld\n" in (dest / "qpkg/mysql5.tgz.txt").read_bytes()
    assert _stage(report, "package_archive").details["listed"] == ["apps", "mysql5"]
    assert _stage(report, "rootfs").limitations == ["rootfs2.tgz: unsafe path skipped: ../caf\\xe9"]
    doc = json.loads((dest / "extract.json").read_text(encoding="utf-8"))
    assert "rootfs2.tgz: unsafe path skipped: ../caf\\xe9" in doc["limitations"]


class _Exploding:
    @property
    def name(self) -> str:
        return "exploding"

    def run(self, ctx: StageContext) -> StageOutcome:
        raise RuntimeError("boom")


def test_stage_exception_is_recorded_and_later_stages_run(tmp_path: Path) -> None:
    src = tmp_path / "src"
    make_tar(src / "rootfs2.tgz", _ROOTFS)
    stages = default_stages()
    stages.insert(1, _Exploding())
    dest = tmp_path / "dest"

    report = run_extraction(src, dest, settings=_SETTINGS, mounter=FakeMounter(), stages=stages)

    boom = _stage(report, "exploding")
    assert boom.status == "failed"
    assert boom.error == "RuntimeError: boom"
    assert report.status == "partial"
    assert (dest / "sysroot/etc/hostname").is_file()
    doc = json.loads((dest / "extract.json").read_text(encoding="utf-8"))
    assert doc["stages"][1]["error"] == "RuntimeError: boom"


def test_bzip2_rootfs_archive(tmp_path: Path) -> None:
    src = make_tree(tmp_path / "src", {"rootfs2.bz": bz2.compress(_tar_bytes(_ROOTFS, mode="w"))})
    dest = tmp_path / "dest"

    report = _run(src, dest)

    assert (dest / "sysroot/bin/busybox").is_file()
    assert _stage(report, "rootfs").details["format"] == "bzip2, tar"
