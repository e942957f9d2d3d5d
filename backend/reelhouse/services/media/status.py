"""Asset status state machine and the status view built from it

uploading -> processing -> completed, with failed reachable from uploading
and processing. completed and failed are terminal; only
``reset_for_reprocess`` moves an asset out of them, back to processing.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional

from reelhouse.schemas.media import CompletedStatus, FailedStatus, ProcessingStatus, UploadingStatus
from reelhouse.services.media.errors import InvalidStateTransitionError


class AssetStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    AssetStatus.UPLOADING: {AssetStatus.PROCESSING, AssetStatus.FAILED},
    AssetStatus.PROCESSING: {AssetStatus.COMPLETED, AssetStatus.FAILED},
    AssetStatus.COMPLETED: set(),
    AssetStatus.FAILED: set(),
}

RESETTABLE = {AssetStatus.COMPLETED, AssetStatus.FAILED}
ACTIVE = {AssetStatus.UPLOADING, AssetStatus.PROCESSING}


def can_transition(current: AssetStatus, target: AssetStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[AssetStatus(current)]


def _apply(asset, target: AssetStatus, reason: Optional[str]) -> None:
    asset.status = target.value
    if target == AssetStatus.FAILED:
        asset.processing_error = reason
    else:
        asset.processing_error = None
    if target == AssetStatus.PROCESSING:
        asset.processing_started_at = datetime.now(timezone.utc)


def transition(asset, target: AssetStatus, reason: Optional[str] = None) -> None:
    """Move ``asset`` to ``target`` or raise InvalidStateTransitionError"""
    current = AssetStatus(asset.status)
    target = AssetStatus(target)
    if not can_transition(current, target):
        raise InvalidStateTransitionError(
            f"Cannot move video from {current.value} to {target.value}",
            detail=f"asset {asset.id}: {current.value} -> {target.value}",
        )
    if target == AssetStatus.FAILED and not reason:
        raise ValueError("a failure reason is required")
    if target == AssetStatus.COMPLETED and asset.duration is None:
        raise InvalidStateTransitionError(detail=f"asset {asset.id} has no duration")
    _apply(asset, target, reason)


def reset_for_reprocess(asset) -> None:
    current = AssetStatus(asset.status)
    if current not in RESETTABLE:
        raise InvalidStateTransitionError(
            f"Cannot reprocess a video that is {current.value}",
            detail=f"asset {asset.id}: reset from {current.value}",
        )
    asset.thumbnail_path = None
    _apply(asset, AssetStatus.PROCESSING, None)


def build_status_view(
    asset,
    rendition_qualities: Iterable[str],
    target_count: int,
    quality_progress: Optional[Dict[str, float]] = None,
    thumbnail_url: Optional[str] = None,
):
    """Tagged status view; every variant carries only its own fields"""
    status = AssetStatus(asset.status)
    qualities = list(rendition_qualities)

    if status == AssetStatus.UPLOADING:
        return UploadingStatus(id=asset.id)

    if status == AssetStatus.FAILED:
        return FailedStatus(id=asset.id, reason=asset.processing_error or "Processing failed")

    if status == AssetStatus.COMPLETED:
        return CompletedStatus(
            id=asset.id,
            duration=asset.duration or 0.0,
            qualities=qualities,
            thumbnail_url=thumbnail_url,
        )

    live = {q: p for q, p in (quality_progress or {}).items() if q not in qualities}
    progress = 0.0
    if target_count > 0:
        done = len(qualities) + sum(min(p, 99.0) / 100 for p in live.values())
        progress = round(min(100.0, done / target_count * 100), 1)
    return ProcessingStatus(
        id=asset.id,
        progress=progress,
        completed_qualities=qualities,
        quality_progress=live,
    )
