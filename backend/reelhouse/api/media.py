"""Media API routes"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, Request, Response, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from reelhouse.core.config import settings
from reelhouse.core.metrics import stream_requests_counter, uploads_counter
from reelhouse.db.helpers import get_media_asset, list_renditions
from reelhouse.db.session import get_db
from reelhouse.schemas.media import (
    MediaAssetResponse, RenditionResponse, StatusView, UploadAcceptedResponse
)
from reelhouse.services.media.errors import (
    AssetNotFoundError, FileTooLargeError, InvalidStateTransitionError, RangeNotSatisfiableError, UnsupportedMediaTypeError
)
from reelhouse.services.media.orchestrator import ProcessingOptions, ProcessingOrchestrator
from reelhouse.tasks.cleanup import UPLOAD_SCRATCH_DIR

upload_logger = logging.getLogger("upload")
stream_logger = logging.getLogger("stream")

router = APIRouter(prefix="/api/media", tags=["media"])


class ReprocessRequest(BaseModel):
    qualities: Optional[List[str]] = None
    generate_thumbnails: bool = True
    delete_original: Optional[bool] = None


def get_orchestrator(request: Request) -> ProcessingOrchestrator:
    """Dependency returning the orchestrator created at startup"""
    return request.app.state.orchestrator


def _stream_path(asset_id: str, quality: Optional[str] = None) -> str:
    if quality:
        return f"{router.prefix}/{asset_id}/stream/{quality}"
    return f"{router.prefix}/{asset_id}/stream"


def _parse_qualities(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    names = [name.strip() for name in value.split(",") if name.strip()]
    return names or None


async def receive_upload(file: UploadFile, dest: Path) -> int:
    """Stream an upload to ``dest`` in chunks, enforcing MAX_FILE_SIZE

    The partial file is removed on any failure.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    file_size = 0
    chunk_size = settings.UPLOAD_CHUNK_SIZE
    start_time = asyncio.get_running_loop().time()
    try:
        with open(dest, "wb") as f:
            while True:
                try:
                    chunk = await asyncio.wait_for(file.read(chunk_size), timeout=settings.UPLOAD_CHUNK_TIMEOUT)
                except asyncio.TimeoutError:
                    upload_logger.error(
                        f"Chunk read timeout for {file.filename} (received {file_size / (1024*1024):.2f} MB)"
                    )
                    raise
                if not chunk:
                    break
                file_size += len(chunk)
                if file_size > settings.MAX_FILE_SIZE:
                    max_mb = settings.MAX_FILE_SIZE / (1024 * 1024)
                    raise FileTooLargeError(
                        f"File too large. Maximum file size is {max_mb:.0f} MB",
                        detail=f"{file.filename}: more than {file_size} bytes"
                    )
                f.write(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    elapsed = asyncio.get_running_loop().time() - start_time
    upload_logger.info(f"Received {file.filename}: {file_size / (1024*1024):.2f} MB in {elapsed:.1f}s")
    return file_size


def _load_asset(db: Session, asset_id: str):
    asset = get_media_asset(db, asset_id)
    if asset is None:
        raise AssetNotFoundError(detail=asset_id)
    return asset


def build_asset_response(db: Session, orchestrator: ProcessingOrchestrator, asset_id: str) -> MediaAssetResponse:
    asset = _load_asset(db, asset_id)
    renditions = sorted(list_renditions(db, asset_id), key=lambda r: orchestrator.catalog.rank(r.quality))
    return MediaAssetResponse(
        id=asset.id,
        original_name=asset.original_name,
        mime_type=asset.mime_type,
        size=asset.size,
        duration=asset.duration,
        width=asset.width,
        height=asset.height,
        codec=asset.codec,
        fps=asset.fps,
        original_available=not asset.original_deleted,
        created_at=asset.created_at,
        updated_at=asset.updated_at,
        state=orchestrator.get_status(asset_id),
        renditions=[_rendition_response(asset_id, r) for r in renditions],
    )


def _rendition_response(asset_id: str, rendition) -> RenditionResponse:
    return RenditionResponse(
        quality=rendition.quality,
        resolution=rendition.resolution,
        bitrate=rendition.bitrate,
        size=rendition.size,
        url=_stream_path(asset_id, rendition.quality),
    )


@router.post("", status_code=202, response_model=UploadAcceptedResponse)
async def upload_media(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    qualities: Optional[str] = Form(None),
    generate_thumbnails: bool = Form(True),
    delete_original: Optional[bool] = Form(None),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Accept a video upload and schedule processing"""
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in settings.ALLOWED_VIDEO_TYPES:
        uploads_counter.labels(status="rejected").inc()
        raise UnsupportedMediaTypeError(
            f"Unsupported file type: {content_type or 'unknown'}",
            detail=f"{file.filename} ({file.content_type})"
        )

    options = ProcessingOptions(
        qualities=_parse_qualities(qualities),
        generate_thumbnails=generate_thumbnails,
        delete_original=delete_original,
    )
    # reject unknown qualities before reading the body
    orchestrator.catalog.select(options.qualities)

    asset_id = uuid.uuid4().hex
    scratch = orchestrator.work_dir / UPLOAD_SCRATCH_DIR / f"{asset_id}.part"
    upload_logger.info(f"Starting upload {asset_id}: {file.filename} ({content_type})")
    try:
        await receive_upload(file, scratch)
        asset = await orchestrator.accept_upload(
            asset_id, scratch, file.filename or f"{asset_id}.mp4", content_type
        )
    except FileTooLargeError:
        uploads_counter.labels(status="rejected").inc()
        raise
    except Exception:
        uploads_counter.labels(status="failed").inc()
        raise
    finally:
        scratch.unlink(missing_ok=True)

    uploads_counter.labels(status="accepted").inc()
    background_tasks.add_task(orchestrator.process_upload, asset_id, options)
    return UploadAcceptedResponse(id=asset.id, status=asset.status)


@router.get("/{asset_id}", response_model=MediaAssetResponse)
def get_media(
    asset_id: str,
    db: Session = Depends(get_db),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    return build_asset_response(db, orchestrator, asset_id)


@router.get("/{asset_id}/status", response_model=StatusView)
def get_media_status(asset_id: str, orchestrator: ProcessingOrchestrator = Depends(get_orchestrator)):
    """Current processing status for polling"""
    return orchestrator.get_status(asset_id)


@router.get("/{asset_id}/qualities", response_model=List[RenditionResponse])
def get_media_qualities(
    asset_id: str,
    db: Session = Depends(get_db),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Available renditions, lowest quality first"""
    _load_asset(db, asset_id)
    renditions = sorted(list_renditions(db, asset_id), key=lambda r: orchestrator.catalog.rank(r.quality))
    return [_rendition_response(asset_id, r) for r in renditions]


async def _stream(
    asset_id: str,
    quality: Optional[str],
    request: Request,
    orchestrator: ProcessingOrchestrator,
    speed: Optional[float] = None,
):
    range_header = request.headers.get("range")
    try:
        info, served = await orchestrator.open_asset_stream(asset_id, quality, range_header, speed)
    except RangeNotSatisfiableError:
        stream_requests_counter.labels(status="416").inc()
        stream_logger.info(f"Unsatisfiable range {range_header!r} for {asset_id}")
        raise

    stream_requests_counter.labels(status=str(info.status_code)).inc()
    headers = dict(info.headers)
    media_type = headers.pop("Content-Type")
    headers["X-Served-Quality"] = served
    return StreamingResponse(info.body, status_code=info.status_code, headers=headers, media_type=media_type)


@router.get("/{asset_id}/stream")
async def stream_media(
    asset_id: str,
    request: Request,
    speed: Optional[float] = Query(None, gt=0, description="Connection speed in Mbps"),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Stream the original (or best rendition), honouring Range

    With ``speed`` the rendition that fits the connection is served instead.
    """
    return await _stream(asset_id, None, request, orchestrator, speed)


@router.get("/{asset_id}/stream/{quality}")
async def stream_media_quality(
    asset_id: str,
    quality: str,
    request: Request,
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Stream one quality, falling back to the best available file"""
    return await _stream(asset_id, quality, request, orchestrator)


@router.post("/{asset_id}/reprocess", status_code=202, response_model=StatusView)
async def reprocess_media(
    asset_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[ReprocessRequest] = None,
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
):
    """Clear renditions and thumbnails and run processing again"""
    body = body or ReprocessRequest()
    job = orchestrator.prepare_reprocess(asset_id, ProcessingOptions(
        qualities=body.qualities,
        generate_thumbnails=body.generate_thumbnails,
        delete_original=body.delete_original,
    ))
    status = orchestrator.get_status(asset_id)
    background_tasks.add_task(orchestrator.run_job, job)
    return status


@router.post("/{asset_id}/cancel", status_code=202)
async def cancel_media_processing(asset_id: str, orchestrator: ProcessingOrchestrator = Depends(get_orchestrator)):
    orchestrator.get_asset(asset_id)
    if not orchestrator.cancel(asset_id):
        raise InvalidStateTransitionError("Video is not being processed", detail=asset_id)
    return {"id": asset_id, "cancelled": True}


@router.delete("/{asset_id}", status_code=204)
async def delete_media(asset_id: str, orchestrator: ProcessingOrchestrator = Depends(get_orchestrator)):
    """Delete the asset with its renditions, thumbnails and original"""
    await orchestrator.delete_asset(asset_id)
    return Response(status_code=204)
