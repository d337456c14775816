from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from .config import Settings
from .policy import DecryptToolMissing
from .unpack import UnpackResult, UnpackStatus, _append_log

log = logging.getLogger(__name__)

# where the tool lives on the NAS itself
_NAS_PC1_PATH = "/sbin/PC1"


def remedy_command(src: Path, settings: Settings) -> str:
    return f"{_NAS_PC1_PATH} d {settings.pc1_key} {src} {src}.tgz"


def decrypt_image(
    src: Path, out: Path, settings: Settings, *, log_path: Path | None = None
) -> UnpackResult:
    """Run `PC1 d <key> src out`.

    Raises DecryptToolMissing when the tool is not installed; the operator has
    to decrypt on the NAS and re-run with the decrypted archive.
    """

    tool = shutil.which(settings.pc1_tool)
    if not tool:
        raise DecryptToolMissing(
            f"{settings.pc1_tool} tool not found; decrypt the image first by invoking on your NAS",
            remedy=remedy_command(src, settings),
        )

    argv = [tool, "d", settings.pc1_key, str(src), str(out)]
    _append_log(log_path, f"decrypt argv: {argv}")
    try:
        cp = subprocess.run(
            argv,
            text=True,
            capture_output=True,
            check=False,
            timeout=settings.timeout_s,
        )
    except subprocess.TimeoutExpired:
        return UnpackResult(UnpackStatus.FAILED, warnings=[f"{src.name}: decrypt timed out"])
    except OSError as exc:
        return UnpackResult(
            UnpackStatus.FAILED, warnings=[f"{src.name}: decrypt failed: {exc}"]
        )

    _append_log(log_path, f"decrypt returncode: {cp.returncode}")
    if cp.returncode != 0 or not out.is_file():
        detail = (cp.stderr or cp.stdout or "").strip()
        return UnpackResult(
            UnpackStatus.FAILED,
            warnings=[f"{src.name}: decrypt failed (rc={cp.returncode}) {detail}".rstrip()],
        )
    log.debug("decrypted %s -> %s", src, out)
    return UnpackResult(UnpackStatus.OK, files_copied=1)
