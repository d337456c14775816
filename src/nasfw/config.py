"""Runtime settings, read from the environment (and a `.env` file if present)."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_PC1_KEY = "QNAPNASVERSION4"
DEFAULT_NANDSIM_IDS = (0x2C, 0xDA, 0x90, 0x95)


def _parse_ids(raw: str | None) -> tuple[int, ...]:
    if not raw or not raw.strip():
        return DEFAULT_NANDSIM_IDS
    out: list[int] = []
    for tok in raw.split(","):
        tok = tok.strip()
        if not tok:
            continue
        out.append(int(tok, 0))
    if len(out) != 4:
        raise ValueError(f"NASFW_NANDSIM_IDS needs 4 id bytes, got {raw!r}")
    return tuple(out)


def _parse_sudo(raw: str | None) -> bool:
    val = (raw or "auto").strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    return os.geteuid() != 0


@dataclass(frozen=True)
class Settings:
    pc1_tool: str = "PC1"
    pc1_key: str = DEFAULT_PC1_KEY
    use_sudo: bool = True
    mtd_device: str = "/dev/mtdblock0"
    nandsim_ids: tuple[int, ...] = DEFAULT_NANDSIM_IDS
    ubi_vid_offset: int = 2048
    timeout_s: float = 600.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> Settings:
        if dotenv:
            _ = load_dotenv()
        env = os.environ
        return cls(
            pc1_tool=env.get("NASFW_PC1", "PC1"),
            pc1_key=env.get("NASFW_PC1_KEY", DEFAULT_PC1_KEY),
            use_sudo=_parse_sudo(env.get("NASFW_SUDO")),
            mtd_device=env.get("NASFW_MTD_DEVICE", "/dev/mtdblock0"),
            nandsim_ids=_parse_ids(env.get("NASFW_NANDSIM_IDS")),
            ubi_vid_offset=int(env.get("NASFW_UBI_VID_OFFSET", "2048")),
            timeout_s=float(env.get("NASFW_TIMEOUT_S", "600")),
            log_level=env.get("NASFW_LOG_LEVEL", "INFO").upper(),
        )
