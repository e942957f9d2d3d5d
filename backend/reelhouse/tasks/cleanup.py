"""Background sweep for stuck assets and abandoned scratch files"""
import asyncio
import logging
import shutil
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

from reelhouse.core.config import settings
from reelhouse.core.metrics import cleanup_runs_counter, stale_assets_failed_counter
from reelhouse.db.helpers import find_stale_assets, save_media_asset
from reelhouse.services.media.status import AssetStatus, transition

cleanup_logger = logging.getLogger("cleanup")

STALE_REASON = "Processing timed out"
UPLOAD_SCRATCH_DIR = "uploads"


def sweep_stale_assets(orchestrator, timeout_seconds: int, now: Optional[datetime] = None) -> int:
    """Fail assets stuck in uploading/processing with no job in this process

    A restart mid-job leaves the record in an in-flight status forever; this
    moves such records to failed once they are older than ``timeout_seconds``.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=timeout_seconds)
    failed = 0
    with orchestrator.session_factory() as db:
        for asset in find_stale_assets(db, cutoff):
            if orchestrator.is_active(asset.id):
                continue
            cleanup_logger.warning(
                f"Failing stale asset {asset.id} (status={asset.status}, last update {asset.updated_at})"
            )
            transition(asset, AssetStatus.FAILED, STALE_REASON)
            save_media_asset(db, asset)
            stale_assets_failed_counter.inc()
            failed += 1
    return failed


def sweep_scratch_dirs(work_dir: Path, active_ids: Iterable[str], max_age_seconds: int, now: Optional[float] = None) -> int:
    """Remove job scratch directories and partial uploads nobody owns any more"""
    work_dir = Path(work_dir)
    if not work_dir.exists():
        return 0
    now = now or time.time()
    active = set(active_ids)
    removed = 0

    for entry in work_dir.iterdir():
        if not entry.is_dir() or entry.name == UPLOAD_SCRATCH_DIR or "." not in entry.name:
            continue
        asset_id = entry.name.rsplit(".", 1)[0]
        if asset_id in active or now - entry.stat().st_mtime < max_age_seconds:
            continue
        shutil.rmtree(entry, ignore_errors=True)
        cleanup_logger.info(f"Removed abandoned scratch directory {entry.name}")
        removed += 1

    uploads = work_dir / UPLOAD_SCRATCH_DIR
    if uploads.is_dir():
        for partial in uploads.glob("*.part"):
            if now - partial.stat().st_mtime < max_age_seconds:
                continue
            partial.unlink(missing_ok=True)
            cleanup_logger.info(f"Removed abandoned upload {partial.name}")
            removed += 1
    return removed


def run_cleanup(orchestrator) -> None:
    stale = sweep_stale_assets(orchestrator, settings.STALE_PROCESSING_TIMEOUT)
    scratch = sweep_scratch_dirs(
        orchestrator.work_dir,
        orchestrator.active_asset_ids(),
        settings.STALE_PROCESSING_TIMEOUT,
    )
    if stale or scratch:
        cleanup_logger.info(f"Cleanup failed {stale} stale assets and removed {scratch} scratch entries")


async def cleanup_task(orchestrator):
    """Runs the stale sweep every STALE_SWEEP_INTERVAL seconds"""
    while True:
        try:
            await asyncio.sleep(settings.STALE_SWEEP_INTERVAL)
            run_cleanup(orchestrator)
            cleanup_runs_counter.labels(status="success").inc()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            cleanup_logger.error(f"Error in cleanup task: {e}", exc_info=True)
            cleanup_runs_counter.labels(status="failure").inc()
