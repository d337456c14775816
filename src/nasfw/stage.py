from __future__ import annotations

"""Stage runner primitives.

Stages never raise for extraction problems; they report `partial` with
limitations. A `FatalPrecondition` escapes `run_stages` and ends the run.
"""

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Protocol

from .config import Settings
from .layout import QNAP_LAYOUT, LayoutSpec
from .mount import BlockDeviceMounter
from .policy import FatalPrecondition
from .schema import JsonValue, printable, printable_str

StageStatus = Literal["ok", "partial", "failed", "skipped"]
TargetRole = Literal["fw", "sysroot", "qpkg", "scratch"]


def _iso_utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ExtractionTarget:
    path: Path
    role: TargetRole

    def ensure(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        return self.path


@dataclass
class LayoutState:
    """What earlier stages found; later stages read it to decide where to look."""

    source_root: Path | None = None
    staged_root: Path | None = None
    ramdisk: Path | None = None


@dataclass(frozen=True)
class StageContext:
    source: Path
    dest: Path
    settings: Settings
    mounter: BlockDeviceMounter
    layout: LayoutSpec = QNAP_LAYOUT
    state: LayoutState = field(default_factory=LayoutState)

    @property
    def log_path(self) -> Path:
        return self.dest / "extract.log"

    @property
    def fw(self) -> ExtractionTarget:
        return ExtractionTarget(self.dest / "fw", "fw")

    @property
    def sysroot(self) -> ExtractionTarget:
        return ExtractionTarget(self.dest / "sysroot", "sysroot")

    @property
    def qpkg(self) -> ExtractionTarget:
        return ExtractionTarget(self.dest / "qpkg", "qpkg")

    @property
    def scratch(self) -> ExtractionTarget:
        return ExtractionTarget(self.dest / ".scratch", "scratch")

    def source_file(self, name: str) -> Path | None:
        root = self.state.source_root
        if root is None:
            return None
        p = root / name
        return p if p.exists() else None

    def staged_file(self, name: str) -> Path | None:
        """Look in the staged root (UBI `/boot` copy) first, then the source."""

        staged = self.state.staged_root
        if staged is not None and (staged / name).exists():
            return staged / name
        return self.source_file(name)


@dataclass(frozen=True)
class StageOutcome:
    status: StageStatus
    details: dict[str, JsonValue] = field(default_factory=dict)
    limitations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StageResult:
    stage: str
    status: StageStatus
    started_at: str
    finished_at: str
    duration_s: float
    details: dict[str, JsonValue]
    limitations: list[str]
    error: str | None


@dataclass(frozen=True)
class RunReport:
    status: StageStatus
    stage_results: list[StageResult]
    limitations: list[str]


class Stage(Protocol):
    @property
    def name(self) -> str: ...

    def run(self, ctx: StageContext) -> StageOutcome: ...


def _combine_status(statuses: Sequence[StageStatus]) -> StageStatus:
    if not statuses:
        return "skipped"
    if all(s == "skipped" for s in statuses):
        return "skipped"
    if any(s in ("failed", "partial") for s in statuses):
        return "partial"
    return "ok"


def run_stages(stages: Sequence[Stage], ctx: StageContext) -> RunReport:
    results: list[StageResult] = []
    limitations: list[str] = []

    for stage in stages:
        started_at = _iso_utc_now()
        t0 = time.monotonic()
        error: str | None = None

        try:
            outcome = stage.run(ctx)
            status = outcome.status
            details = {printable_str(k): printable(v) for k, v in outcome.details.items()}
            stage_limits = [printable_str(s) for s in outcome.limitations]
        except FatalPrecondition:
            raise
        except Exception as e:
            status = "failed"
            details = {}
            error = printable_str(f"{type(e).__name__}: {e}")
            stage_limits = [f"Stage '{getattr(stage, 'name', '<unknown>')}' raised: {error}"]

        finished_at = _iso_utc_now()
        duration_s = max(0.0, time.monotonic() - t0)

        stage_name = getattr(stage, "name", stage.__class__.__name__)
        results.append(
            StageResult(
                stage=stage_name,
                status=status,
                started_at=started_at,
                finished_at=finished_at,
                duration_s=duration_s,
                details=details,
                limitations=stage_limits,
                error=error,
            )
        )
        limitations.extend(stage_limits)

    overall = _combine_status([r.status for r in results])
    return RunReport(status=overall, stage_results=results, limitations=limitations)
