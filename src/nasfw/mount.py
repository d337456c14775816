"""Privileged block-device access behind a narrow interface.

`SudoMounter` shells out to mount(8), modprobe(8), dd(1) and the mtd-utils
`ubiattach`/`ubidetach` tools. Every acquired resource is released in
reverse order on all exit paths; release failures are logged, not raised.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from collections.abc import Iterator
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .config import Settings
from .policy import DeviceCollision

log = logging.getLogger(__name__)

_ID_BYTE_NAMES = ("first_id_byte", "second_id_byte", "third_id_byte", "fourth_id_byte")
_LOG_TRUNC = 4096


class MountError(Exception):
    """A privileged command failed; the caller degrades to a warning."""


class BlockDeviceMounter(Protocol):
    def mounted(self, image: Path, fs_type: str) -> AbstractContextManager[Path]: ...

    def flash_volume(self, ubi_image: Path) -> AbstractContextManager[Path]: ...


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


@dataclass(frozen=True)
class SudoMounter:
    settings: Settings = field(default_factory=Settings)
    log_path: Path | None = None

    def _argv(self, *args: str) -> list[str]:
        if self.settings.use_sudo:
            return ["sudo", *args]
        return list(args)

    def _run(self, argv: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        _append_log(self.log_path, f"argv: {argv}")
        try:
            cp = subprocess.run(
                argv,
                text=True,
                capture_output=True,
                check=False,
                timeout=self.settings.timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise MountError(f"{' '.join(argv)} timed out") from exc
        except OSError as exc:
            raise MountError(f"{' '.join(argv)}: {type(exc).__name__}: {exc}") from exc

        _append_log(self.log_path, f"returncode: {cp.returncode}")
        if cp.stderr:
            _append_log(self.log_path, cp.stderr[:_LOG_TRUNC])
        if check and cp.returncode != 0:
            detail = (cp.stderr or "").strip().splitlines()
            raise MountError(
                f"{' '.join(argv)} failed (rc={cp.returncode})"
                + (f": {detail[-1]}" if detail else "")
            )
        return cp

    def _release(self, argv: list[str]) -> None:
        try:
            _ = self._run(argv)
        except MountError as exc:
            log.warning("cleanup failed: %s", exc)

    def _remove_mount_point(self, mnt: Path) -> None:
        try:
            mnt.rmdir()
        except OSError as exc:
            log.warning("cleanup failed: cannot remove mount point %s: %s", mnt, exc)

    @contextmanager
    def mounted(self, image: Path, fs_type: str) -> Iterator[Path]:
        with ExitStack() as stack:
            mnt = Path(tempfile.mkdtemp(prefix="nasfw-mnt-"))
            stack.callback(self._remove_mount_point, mnt)
            _ = self._run(
                self._argv("mount", "-t", fs_type, "-o", "ro,loop", str(image), str(mnt))
            )
            stack.callback(self._release, self._argv("umount", str(mnt)))
            yield mnt

    @contextmanager
    def flash_volume(self, ubi_image: Path) -> Iterator[Path]:
        """Load a UBI image into a simulated NAND flash and mount its ubifs."""

        s = self.settings
        _ = self._run(self._argv("modprobe", "-r", "nandsim"), check=False)
        if os.path.exists(s.mtd_device):
            raise DeviceCollision(
                f"{s.mtd_device} does already exist! Refusing to overwrite it."
            )

        id_args = [f"{k}=0x{v:02x}" for k, v in zip(_ID_BYTE_NAMES, s.nandsim_ids)]
        with ExitStack() as stack:
            _ = self._run(self._argv("modprobe", "nandsim", *id_args))
            stack.callback(self._release, self._argv("modprobe", "-r", "nandsim"))

            _ = self._run(self._argv("modprobe", "mtdblock"))
            log.info("copy UBI image into simulated flash device")
            _ = self._run(
                self._argv(
                    "dd",
                    f"if={ubi_image}",
                    f"of={s.mtd_device}",
                    f"bs={s.ubi_vid_offset}",
                    "status=none",
                )
            )

            log.info("attach simulated flash device")
            _ = self._run(self._argv("modprobe", "ubi"))
            _ = self._run(
                self._argv(
                    "ubiattach", "/dev/ubi_ctrl", "-m0", f"-O{s.ubi_vid_offset}"
                )
            )
            stack.callback(self._release, self._argv("ubidetach", "/dev/ubi_ctrl", "-m0"))

            log.info("mounting ubifs file system")
            _ = self._run(self._argv("modprobe", "ubifs"))
            mnt = Path(tempfile.mkdtemp(prefix="nasfw-ubi-"))
            stack.callback(self._remove_mount_point, mnt)
            _ = self._run(self._argv("mount", "-t", "ubifs", "-o", "ro", "ubi0", str(mnt)))
            stack.callback(self._release, self._argv("umount", str(mnt)))
            yield mnt
