from __future__ import annotations

import bz2
import enum
import logging
import lzma
import os
import shutil
import stat
import subprocess
import tarfile
import tempfile
import zlib
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .mount import BlockDeviceMounter, MountError
from .sniff import Kind

log = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"
_GZIP_WBITS = 16 + zlib.MAX_WBITS
_CHUNK = 1024 * 1024
_LOG_TRUNC = 4096


class UnpackStatus(enum.Enum):
    OK = "ok"
    TRAILING_DATA_OK = "trailing_data_ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class UnpackResult:
    status: UnpackStatus
    files_copied: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is not UnpackStatus.FAILED


def _append_log(log_path: Path | None, line: str) -> None:
    if log_path is None:
        return
    try:
        with log_path.open("a", encoding="utf-8", errors="surrogateescape") as f:
            _ = f.write(line)
            if not line.endswith("\n"):
                _ = f.write("\n")
    except OSError:
        return


def _is_within(base_resolved: Path, target: Path) -> bool:
    try:
        return target.resolve().is_relative_to(base_resolved)
    except (OSError, RuntimeError):
        return False


def _clear_for_file(target: Path) -> None:
    """Remove a non-directory at `target` so the next write replaces it instead of following it."""

    try:
        st = os.lstat(target)
    except FileNotFoundError:
        return
    if not stat.S_ISDIR(st.st_mode):
        os.unlink(target)


def _prepare_dir(target: Path, dest_resolved: Path) -> None:
    # a link to a directory inside the tree is merged into; any other non-directory is replaced
    try:
        st = os.lstat(target)
    except FileNotFoundError:
        return
    if stat.S_ISDIR(st.st_mode):
        return
    if stat.S_ISLNK(st.st_mode) and target.is_dir() and _is_within(dest_resolved, target):
        return
    os.unlink(target)


def _restore_dir_attrs(path: Path, member: tarfile.TarInfo) -> None:
    # owner rwx is kept so later stages can merge into the same tree
    try:
        os.utime(path, (member.mtime, member.mtime))
        os.chmod(path, (member.mode | stat.S_IRWXU) & 0o7777)
    except OSError:
        return


def unpack_tar(
    archive: Path,
    dest: Path,
    *,
    select: Callable[[str], bool] | None = None,
) -> UnpackResult:
    """Extract a (compressed) tar archive member by member into `dest`.

    Members that cannot be created become warnings. A corrupt tail ends the
    extraction with `PARTIAL` and keeps whatever was already written.
    """

    dest.mkdir(parents=True, exist_ok=True)
    try:
        tf = tarfile.open(archive, mode="r:*")
    except (tarfile.TarError, OSError, EOFError) as exc:
        return UnpackResult(
            UnpackStatus.FAILED, warnings=[f"{archive.name}: cannot open archive: {exc}"]
        )

    result = UnpackResult(UnpackStatus.OK)
    dest_resolved = dest.resolve()
    dirs: list[tarfile.TarInfo] = []
    with tf:
        members = iter(tf)
        while True:
            try:
                member = next(members)
            except StopIteration:
                break
            except (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError) as exc:
                result.status = UnpackStatus.PARTIAL
                result.warnings.append(
                    f"{archive.name}: archive corrupt after {result.files_copied} file(s): {exc}"
                )
                break

            if select is not None and not select(member.name):
                continue
            rel = Path(member.name)
            if not rel.parts:
                continue
            target = dest / rel
            if (
                rel.is_absolute()
                or ".." in rel.parts
                or not _is_within(dest_resolved, target.parent)
            ):
                result.warnings.append(f"{archive.name}: unsafe path skipped: {member.name}")
                continue
            try:
                if member.isdir():
                    _prepare_dir(target, dest_resolved)
                else:
                    _clear_for_file(target)
                tf.extract(
                    member,
                    path=dest,
                    set_attrs=not member.isdir(),
                    filter="fully_trusted",
                )
            except (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError) as exc:
                result.warnings.append(f"{archive.name}: {member.name}: {exc}")
                continue
            if member.isdir():
                dirs.append(member)
            elif member.isreg():
                result.files_copied += 1

    for member in sorted(dirs, key=lambda m: m.name, reverse=True):
        _restore_dir_attrs(dest / member.name, member)

    if result.warnings and result.status is UnpackStatus.OK:
        result.status = UnpackStatus.PARTIAL
    return result


_TYPE_BITS = {
    tarfile.DIRTYPE: stat.S_IFDIR,
    tarfile.SYMTYPE: stat.S_IFLNK,
    tarfile.CHRTYPE: stat.S_IFCHR,
    tarfile.BLKTYPE: stat.S_IFBLK,
    tarfile.FIFOTYPE: stat.S_IFIFO,
}


def _listing_line(m: tarfile.TarInfo) -> str:
    mode = stat.filemode(_TYPE_BITS.get(m.type, stat.S_IFREG) | (m.mode & 0o7777))
    owner = f"{m.uname or m.uid}/{m.gname or m.gid}"
    when = datetime.fromtimestamp(int(m.mtime), tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
    line = f"{mode} {owner} {m.size:>9} {when} {m.name}"
    if m.issym():
        line += f" -> {m.linkname}"
    elif m.islnk():
        line += f" link to {m.linkname}"
    return line


def list_tar(archive: Path) -> list[str]:
    """`tar tv` style listing. Raises tarfile.TarError on unreadable input."""

    with tarfile.open(archive, mode="r:*") as tf:
        return [_listing_line(m) for m in tf]


def write_tar_listing(archive: Path, out_path: Path) -> UnpackResult:
    try:
        lines = list_tar(archive)
    except (tarfile.TarError, OSError, EOFError, zlib.error) as exc:
        return UnpackResult(
            UnpackStatus.FAILED, warnings=[f"{archive.name}: cannot list archive: {exc}"]
        )
    _ = out_path.write_text(
        "".join(line + "\n" for line in lines), encoding="utf-8", errors="surrogateescape"
    )
    return UnpackResult(UnpackStatus.OK, files_copied=len(lines))


def gunzip_file(src: Path, dst: Path) -> UnpackResult:
    """Decode every gzip member of `src` into `dst`, tolerating trailing bytes."""

    d = zlib.decompressobj(_GZIP_WBITS)
    status = UnpackStatus.OK
    ended = False
    try:
        with src.open("rb") as fin, dst.open("wb") as fout:
            buf = fin.read(_CHUNK)
            while buf:
                _ = fout.write(d.decompress(buf))
                if not d.eof:
                    buf = fin.read(_CHUNK)
                    continue
                _ = fout.write(d.flush())
                buf = d.unused_data
                if len(buf) < len(_GZIP_MAGIC):
                    buf += fin.read(_CHUNK)
                if not buf:
                    ended = True
                    break
                if not buf.startswith(_GZIP_MAGIC):
                    status = UnpackStatus.TRAILING_DATA_OK
                    ended = True
                    break
                d = zlib.decompressobj(_GZIP_WBITS)
    except (OSError, zlib.error) as exc:
        dst.unlink(missing_ok=True)
        return UnpackResult(UnpackStatus.FAILED, warnings=[f"{src.name}: {exc}"])

    if not ended:
        dst.unlink(missing_ok=True)
        return UnpackResult(
            UnpackStatus.FAILED, warnings=[f"{src.name}: unexpected end of gzip stream"]
        )
    warnings = []
    if status is UnpackStatus.TRAILING_DATA_OK:
        warnings.append(f"{src.name}: decompression OK, trailing garbage ignored")
    return UnpackResult(status, warnings=warnings)


def _decompress_to(src: Path, dst: Path, kind: Kind) -> UnpackResult:
    if kind is Kind.GZIP:
        return gunzip_file(src, dst)
    opener = {Kind.LZMA: lzma.open, Kind.BZIP2: bz2.open}.get(kind)
    if opener is None:
        return UnpackResult(
            UnpackStatus.FAILED, warnings=[f"unsupported compression kind={kind.value}"]
        )
    try:
        with opener(src, "rb") as fin, dst.open("wb") as fout:
            shutil.copyfileobj(fin, fout)
    except (OSError, EOFError, lzma.LZMAError) as exc:
        dst.unlink(missing_ok=True)
        return UnpackResult(
            UnpackStatus.FAILED,
            warnings=[f"{src.name}: {kind.value} decompression failed: {exc}"],
        )
    return UnpackResult(UnpackStatus.OK)


def unpack_cpio(
    payload: Path,
    dest: Path,
    *,
    compression: Kind | None = None,
    log_path: Path | None = None,
    scratch: Path | None = None,
    timeout_s: float | None = None,
) -> UnpackResult:
    """Feed a (possibly compressed) cpio archive to `cpio -i` inside `dest`.

    A non-zero exit is tolerated: vendor ramdisks often carry trailing padding.
    """

    cpio = shutil.which("cpio")
    if not cpio:
        return UnpackResult(UnpackStatus.FAILED, warnings=["cpio command unavailable"])

    dest.mkdir(parents=True, exist_ok=True)
    with ExitStack() as stack:
        staged = payload
        if compression is not None and compression is not Kind.CPIO:
            tmp_dir = Path(
                stack.enter_context(tempfile.TemporaryDirectory(prefix="nasfw-cpio-", dir=scratch))
            )
            staged = tmp_dir / (payload.name + ".cpio")
            decoded = _decompress_to(payload, staged, compression)
            if not decoded.ok:
                return decoded

        argv = [cpio, "-idm", "--no-absolute-filenames", "--quiet"]
        _append_log(log_path, f"cpio argv: {argv} < {staged}")
        try:
            with staged.open("rb") as in_f:
                cp = subprocess.run(
                    argv,
                    cwd=str(dest),
                    text=False,
                    stdin=in_f,
                    capture_output=True,
                    check=False,
                    timeout=timeout_s,
                )
        except subprocess.TimeoutExpired:
            return UnpackResult(UnpackStatus.FAILED, warnings=["cpio extraction timed out"])
        except OSError as exc:
            return UnpackResult(
                UnpackStatus.FAILED,
                warnings=[f"cpio extraction failed: {type(exc).__name__}: {exc}"],
            )

    _append_log(log_path, f"cpio returncode: {cp.returncode}")
    if cp.stderr:
        _append_log(log_path, "--- cpio stderr (trunc) ---")
        _append_log(log_path, cp.stderr.decode("utf-8", errors="ignore")[:_LOG_TRUNC])

    files = sum(1 for p in dest.rglob("*") if p.is_file())
    if cp.returncode != 0:
        return UnpackResult(
            UnpackStatus.TRAILING_DATA_OK,
            files_copied=files,
            warnings=[f"{payload.name}: cpio exited with rc={cp.returncode}, output kept"],
        )
    return UnpackResult(UnpackStatus.OK, files_copied=files)


def _copy_dir_attrs(st: os.stat_result, target: Path) -> None:
    try:
        os.utime(target, ns=(st.st_atime_ns, st.st_mtime_ns))
        os.chmod(target, stat.S_IMODE(st.st_mode) | stat.S_IRWXU)
    except OSError:
        return


def _overlay(src: Path, dst: Path, dest_resolved: Path, result: UnpackResult) -> None:
    try:
        entries = sorted(src.iterdir())
    except OSError as exc:
        result.warnings.append(f"copy failed: {src}: {exc}")
        return

    for entry in entries:
        target = dst / entry.name
        try:
            st = os.lstat(entry)
            if stat.S_ISDIR(st.st_mode):
                _prepare_dir(target, dest_resolved)
                target.mkdir(exist_ok=True)
                _overlay(entry, target, dest_resolved, result)
                _copy_dir_attrs(st, target)
            elif stat.S_ISLNK(st.st_mode):
                _clear_for_file(target)
                os.symlink(os.readlink(entry), target)
                os.utime(target, ns=(st.st_atime_ns, st.st_mtime_ns), follow_symlinks=False)
            elif stat.S_ISREG(st.st_mode):
                _clear_for_file(target)
                _ = shutil.copy2(entry, target, follow_symlinks=False)
                result.files_copied += 1
            else:
                result.warnings.append(f"special file skipped: {entry}")
        except OSError as exc:
            result.warnings.append(f"copy failed: {entry}: {exc}")


def copy_tree(src: Path, dest: Path) -> UnpackResult:
    """`cp -a src/* dest` that records failures instead of stopping.

    Links already present in `dest` are replaced, never written through.
    """

    if not src.is_dir():
        return UnpackResult(UnpackStatus.FAILED, warnings=[f"{src}: not a directory"])
    dest.mkdir(parents=True, exist_ok=True)
    result = UnpackResult(UnpackStatus.OK)
    _overlay(src, dest, dest.resolve(), result)
    if result.warnings:
        result.status = UnpackStatus.PARTIAL
    return result


def unpack_image(
    image: Path,
    fs_type: str,
    dest: Path,
    mounter: BlockDeviceMounter,
    *,
    subdir: str | None = None,
) -> UnpackResult:
    """Mount a filesystem image read-only and copy its tree into `dest`."""

    try:
        with mounter.mounted(image, fs_type) as mnt:
            src = mnt / subdir if subdir else mnt
            if not src.is_dir():
                return UnpackResult(
                    UnpackStatus.FAILED,
                    warnings=[f"{image.name}: '{subdir}' missing inside {fs_type} image"],
                )
            return copy_tree(src, dest)
    except MountError as exc:
        return UnpackResult(UnpackStatus.FAILED, warnings=[f"{image.name}: {exc}"])
