"""Locate and decode gzip members packed back to back inside kernel images.

Vendor `uImage` files carry the kernel and one or more ramdisk streams
without any length table, so members are found by scanning 4-byte-aligned
windows for the gzip header `1f 8b 08 00`.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field
from pathlib import Path

from .unpack import UnpackStatus

log = logging.getLogger(__name__)

GZIP_HEADER = b"\x1f\x8b\x08\x00"
_ALIGN = 4
_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class StreamSegment:
    offset: int
    length: int | None = None


def find_gzip_offsets(path: Path, *, chunk_size: int = _CHUNK) -> list[int]:
    """Return every 4-byte-aligned offset holding a gzip header, ascending."""

    overlap = len(GZIP_HEADER) - 1
    offsets: list[int] = []
    base = 0
    tail = b""
    with path.open("rb") as f:
        while True:
            buf = f.read(max(_ALIGN, chunk_size))
            if not buf:
                break
            window = tail + buf
            window_base = base - len(tail)
            i = window.find(GZIP_HEADER)
            while i != -1:
                if (window_base + i) % _ALIGN == 0:
                    offsets.append(window_base + i)
                i = window.find(GZIP_HEADER, i + 1)
            # a header split across reads lands in the next window
            tail = window[-overlap:]
            base += len(buf)
    return offsets


def decompress_segment(
    path: Path, offset: int, out_path: Path, *, chunk_size: int = _CHUNK
) -> tuple[UnpackStatus, StreamSegment]:
    """Decode the single gzip member starting at `offset` into `out_path`.

    Bytes following the member are the normal case inside a kernel image and
    yield `TRAILING_DATA_OK`. A corrupt or truncated member is `FAILED` and
    leaves no output file behind.
    """

    d = zlib.decompressobj(16 + zlib.MAX_WBITS)
    consumed = 0
    trailing = False
    try:
        with path.open("rb") as src, out_path.open("wb") as dst:
            _ = src.seek(offset)
            while not d.eof:
                buf = src.read(chunk_size)
                if not buf:
                    break
                _ = dst.write(d.decompress(buf))
                consumed += len(buf) - len(d.unused_data)
            if d.eof:
                _ = dst.write(d.flush())
                trailing = bool(d.unused_data) or bool(src.read(1))
    except (OSError, zlib.error) as exc:
        log.warning("gzip member at offset %d of %s: %s", offset, path, exc)
        out_path.unlink(missing_ok=True)
        return UnpackStatus.FAILED, StreamSegment(offset=offset)

    if not d.eof:
        log.warning("gzip member at offset %d of %s is truncated", offset, path)
        out_path.unlink(missing_ok=True)
        return UnpackStatus.FAILED, StreamSegment(offset=offset)

    segment = StreamSegment(offset=offset, length=consumed)
    if trailing:
        return UnpackStatus.TRAILING_DATA_OK, segment
    return UnpackStatus.OK, segment


@dataclass(frozen=True)
class KernelSplit:
    ramdisk: Path | None
    warnings: list[str] = field(default_factory=list)


def _decode_all(blob: Path, prefix: Path, warnings: list[str]) -> list[Path]:
    parts: list[Path] = []
    for idx, offset in enumerate(find_gzip_offsets(blob), start=1):
        out = prefix.with_name(f"{prefix.name}.part{idx}")
        status, segment = decompress_segment(blob, offset, out)
        if status is UnpackStatus.FAILED:
            warnings.append(f"{blob.name}: gzip member at offset {offset} is corrupt or truncated")
            continue
        log.info(
            "extracted and uncompressed '%s' at offset %d (%s compressed bytes)",
            out,
            offset,
            segment.length,
        )
        parts.append(out)
    return parts


def split_kernel_image(
    image: Path, work_dir: Path, *, name: str = "initramfs"
) -> KernelSplit:
    """Recover the ramdisk payload embedded in a kernel image.

    Level one decodes each gzip member of `image`; level two scans the last
    decoded member (the kernel) for its embedded members. The last level-two
    member is the ramdisk and is renamed to `work_dir/<name>`. Everything else
    is deleted. `ramdisk` is None for kernel-only images. Members that fail to
    decode are skipped and reported in `warnings`.
    """

    warnings: list[str] = []
    work_dir.mkdir(parents=True, exist_ok=True)
    outer = _decode_all(image, work_dir / "uimage", warnings)
    if not outer:
        return KernelSplit(None, warnings)

    inner = _decode_all(outer[-1], work_dir / "image", warnings)
    for p in outer:
        p.unlink(missing_ok=True)
    if not inner:
        log.info("'%s' holds no embedded ramdisk", image)
        return KernelSplit(None, warnings)

    payload = work_dir / name
    _ = inner[-1].replace(payload)
    log.info("renamed '%s' to '%s'", inner[-1], payload)
    for p in inner[:-1]:
        p.unlink(missing_ok=True)
    return KernelSplit(payload, warnings)
