from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from pathlib import Path

from .config import Settings
from .extraction import (
    ExtraPackagesStage,
    InputStage,
    KernelImageStage,
    ManifestStage,
    MergeStage,
    PackageArchiveStage,
    RamdiskStage,
    RootFilesystemStage,
    RootfsExtStage,
    UbiVolumeStage,
)
from .layout import QNAP_LAYOUT, LayoutSpec
from .mount import BlockDeviceMounter, SudoMounter
from .policy import DestinationExists, FatalPrecondition
from .schema import ExtractionReport, StageRecord, printable_str
from .stage import LayoutState, RunReport, Stage, StageContext, run_stages

log = logging.getLogger(__name__)


def default_stages() -> list[Stage]:
    return [
        InputStage(),
        KernelImageStage(),
        UbiVolumeStage(),
        RamdiskStage(),
        RootFilesystemStage(),
        RootfsExtStage(),
        ExtraPackagesStage(),
        PackageArchiveStage(),
        MergeStage(),
        ManifestStage(),
    ]


def _write_report(ctx: StageContext, report: RunReport) -> Path:
    doc = ExtractionReport(
        source=printable_str(str(ctx.source)),
        destination=printable_str(str(ctx.dest)),
        status=report.status,
        stages=[
            StageRecord(
                stage=r.stage,
                status=r.status,
                started_at=r.started_at,
                finished_at=r.finished_at,
                duration_s=r.duration_s,
                details=r.details,
                limitations=r.limitations,
                error=r.error,
            )
            for r in report.stage_results
        ],
        limitations=report.limitations,
    )
    out = ctx.dest / "extract.json"
    _ = out.write_text(doc.model_dump_json(indent=2) + "\n", encoding="utf-8")
    return out


def run_extraction(
    source: Path,
    dest: Path,
    *,
    settings: Settings | None = None,
    mounter: BlockDeviceMounter | None = None,
    layout: LayoutSpec = QNAP_LAYOUT,
    stages: Sequence[Stage] | None = None,
) -> RunReport:
    """Unpack `source` (image, decrypted archive or directory) into `dest`.

    `dest` must not exist. Fatal preconditions raise and leave whatever was
    created in place for inspection.
    """

    if dest.exists() or dest.is_symlink():
        raise DestinationExists(f"destdir '{dest}' must not already exist")
    if not source.exists():
        raise FatalPrecondition(f"source '{source}' does not exist")

    settings = settings if settings is not None else Settings.from_env()
    print(f"SRC={source}, DEST={dest}")
    dest.mkdir(parents=True)
    if mounter is None:
        mounter = SudoMounter(settings=settings, log_path=dest / "extract.log")

    ctx = StageContext(
        source=source,
        dest=dest,
        settings=settings,
        mounter=mounter,
        layout=layout,
        state=LayoutState(),
    )
    report = run_stages(list(stages) if stages is not None else default_stages(), ctx)
    shutil.rmtree(ctx.scratch.path, ignore_errors=True)
    report_path = _write_report(ctx, report)
    log.info("run report written to %s", report_path)
    return report
