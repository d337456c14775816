"""Magic-byte classification of firmware inputs.

Only a bounded prefix (plus the ext2 superblock magic) is read. Unknown or
unreadable inputs classify as `Kind.UNKNOWN`; nothing here raises.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, replace
from pathlib import Path

_GZIP_MAGIC = b"\x1f\x8b"
_BZIP_MAGIC = b"BZh"
_XZ_MAGIC = b"\xfd7zXZ\x00"
_UBI_MAGIC = b"UBI#"
_CPIO_MAGICS = (b"070701", b"070702", b"070707")
_TAR_MARKER_OFFSET = 257
_EXT2_MAGIC_OFFSET = 1080
_EXT2_MAGIC = b"\x53\xef"
_HEAD_SIZE = 512
# plain binaries and boot images that are never PC1 ciphertext
_CLEARTEXT_MAGICS = (
    b"\x7fELF",
    b"\x27\x05\x19\x56",  # u-boot legacy image
    b"\xd0\x0d\xfe\xed",  # flattened device tree / FIT
    b"hsqs",
    b"sqsh",
    b"PK\x03\x04",
)
_TEXT_SAMPLE = 4096


class Kind(enum.Enum):
    UNKNOWN = "unknown"
    ENCRYPTED = "encrypted"
    GZIP = "gzip"
    EXT2 = "ext2"
    UBI = "ubi"
    DIRECTORY = "directory"
    TAR = "tar"
    CPIO = "cpio"
    LZMA = "lzma"
    BZIP2 = "bzip2"


@dataclass(frozen=True)
class FirmwareBlob:
    path: Path
    kind: Kind = Kind.UNKNOWN
    offset: int = 0
    length: int | None = None

    @classmethod
    def from_path(cls, path: Path) -> FirmwareBlob:
        return cls(path=path, kind=classify(path))

    def reclassify(self, path: Path | None = None) -> FirmwareBlob:
        target = self.path if path is None else path
        return replace(self, path=target, kind=classify(target), offset=0, length=None)


def _read_at(path: Path, offset: int, size: int) -> bytes:
    if offset < 0 or size <= 0:
        return b""
    try:
        with path.open("rb") as f:
            _ = f.seek(int(offset), os.SEEK_SET)
            return f.read(int(size))
    except OSError:
        return b""


def _looks_like_lzma_alone(head: bytes) -> bool:
    # props byte, little-endian dictionary size, 8-byte uncompressed size
    if len(head) < 13:
        return False
    if head[0] >= 9 * 5 * 5:
        return False
    dict_size = int.from_bytes(head[1:5], "little")
    for shift in range(12, 31):
        if dict_size in (1 << shift, (1 << shift) + (1 << (shift - 1))):
            return True
    return False


def _looks_like_text(sample: bytes) -> bool:
    if not sample or b"\x00" in sample:
        return False
    printable = sum(1 for b in sample if 32 <= b < 127 or b in (9, 10, 13))
    return printable / len(sample) >= 0.95


def classify(path: Path) -> Kind:
    try:
        if path.is_dir():
            return Kind.DIRECTORY
        if not path.is_file():
            return Kind.UNKNOWN
    except OSError:
        return Kind.UNKNOWN

    head = _read_at(path, 0, _HEAD_SIZE)
    if not head:
        return Kind.UNKNOWN

    if head.startswith(_GZIP_MAGIC):
        return Kind.GZIP
    if head.startswith(_BZIP_MAGIC):
        return Kind.BZIP2
    if head.startswith(_XZ_MAGIC):
        return Kind.LZMA
    if head.startswith(_UBI_MAGIC):
        return Kind.UBI
    if head.startswith(_CPIO_MAGICS):
        return Kind.CPIO
    if head[_TAR_MARKER_OFFSET : _TAR_MARKER_OFFSET + 5] == b"ustar":
        return Kind.TAR
    if _read_at(path, _EXT2_MAGIC_OFFSET, 2) == _EXT2_MAGIC:
        return Kind.EXT2
    if head.startswith(_CLEARTEXT_MAGICS):
        return Kind.UNKNOWN
    if _looks_like_lzma_alone(head):
        return Kind.LZMA

    if _looks_like_text(_read_at(path, 0, _TEXT_SAMPLE)):
        return Kind.UNKNOWN
    return Kind.ENCRYPTED
