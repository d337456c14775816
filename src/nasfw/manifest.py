"""`find . -ls` style listing of an extracted tree."""

from __future__ import annotations

import grp
import os
import pwd
import stat
import time
from collections.abc import Iterator
from datetime import datetime
from functools import lru_cache
from pathlib import Path

_SIX_MONTHS_S = 182 * 24 * 3600


@lru_cache(maxsize=256)
def _user(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


@lru_cache(maxsize=256)
def _group(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _when(mtime: float, now: float) -> str:
    dt = datetime.fromtimestamp(mtime)
    if abs(now - mtime) > _SIX_MONTHS_S:
        return dt.strftime("%b %d  %Y")
    return dt.strftime("%b %d %H:%M")


def ls_line(root: Path, path: Path, *, now: float | None = None) -> str:
    st = os.lstat(path)
    rel = "." if path == root else "./" + path.relative_to(root).as_posix()
    blocks = (st.st_blocks + 1) // 2
    line = (
        f"{st.st_ino:>9} {blocks:>6} {stat.filemode(st.st_mode)} {st.st_nlink:>3} "
        f"{_user(st.st_uid):<8} {_group(st.st_gid):<8} {st.st_size:>8} "
        f"{_when(st.st_mtime, time.time() if now is None else now)} {rel}"
    )
    if stat.S_ISLNK(st.st_mode):
        line += f" -> {os.readlink(path)}"
    return line


def iter_tree(root: Path) -> Iterator[Path]:
    """Pre-order walk, children sorted by name; symlinked dirs are not entered."""

    yield root
    if root.is_symlink() or not root.is_dir():
        return
    try:
        children = sorted(root.iterdir())
    except OSError:
        return
    for child in children:
        yield from iter_tree(child)


def write_manifest(root: Path, out_path: Path) -> int:
    now = time.time()
    n = 0
    # names are raw bytes on disk; keep them byte-identical in the listing
    with out_path.open("w", encoding="utf-8", errors="surrogateescape") as f:
        for p in iter_tree(root):
            try:
                _ = f.write(ls_line(root, p, now=now) + "\n")
            except OSError:
                continue
            n += 1
    return n
