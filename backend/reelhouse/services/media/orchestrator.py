"""Processing orchestrator: probe, transcode each quality, cut thumbnails

One job runs per asset as its own asyncio task. Every external process the
job starts goes through the shared TranscodeLimiter, so the number of
concurrent ffmpeg/ffprobe processes stays bounded across all jobs.
"""
import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from reelhouse.core.config import settings
from reelhouse.core.metrics import processing_jobs_counter, thumbnails_counter, transcodes_counter
from reelhouse.db.helpers import (
    create_media_asset, create_rendition, delete_media_asset, delete_renditions,
    get_media_asset, list_renditions, save_media_asset
)
from reelhouse.db.redis import clear_processing_progress, get_processing_progress, set_processing_progress
from reelhouse.db.session import SessionLocal
from reelhouse.services.media.config import (
    QualityCatalog, QualityProfile, ThumbnailOptions,
    load_encoder_policy, load_quality_catalog, load_thumbnail_options
)
from reelhouse.services.media.errors import (
    AssetBusyError, AssetNotFoundError, InvalidStateTransitionError, MediaPipelineError,
    StorageError, ToolUnavailableError, TranscodeError
)
from reelhouse.services.media.probe import MetadataExtractor
from reelhouse.services.media.process import MediaToolchain, ProcessRunner, TranscodeLimiter, temp_workdir
from reelhouse.services.media.status import (
    ACTIVE, AssetStatus, build_status_view, reset_for_reprocess, transition
)
from reelhouse.services.media.streaming import StreamInfo, open_stream, optimal_quality, select_stream
from reelhouse.services.media.thumbnails import ThumbnailGenerator
from reelhouse.services.media.transcoder import TranscodeProgress, Transcoder
from reelhouse.services.storage import ArtifactStore, get_artifact_store

transcode_logger = logging.getLogger("transcode")
upload_logger = logging.getLogger("upload")

CANCELLED_REASON = "Processing was cancelled"
ALL_QUALITIES_FAILED_REASON = "Video could not be converted to any quality"


def original_key(asset_id: str, ext: str) -> str:
    return f"videos/originals/{asset_id}{ext}"


def rendition_key(asset_id: str, quality: str, container: str = "mp4") -> str:
    return f"videos/renditions/{asset_id}/{quality}.{container}"


def rendition_prefix(asset_id: str) -> str:
    return f"videos/renditions/{asset_id}"


def thumbnail_prefix(asset_id: str) -> str:
    return f"videos/thumbnails/{asset_id}"


def scratch_prefix(asset_id: str) -> str:
    """mkdtemp prefix of a job's scratch directory; the asset id precedes the last dot"""
    return f"{asset_id}."


@dataclass
class ProcessingOptions:
    qualities: Optional[List[str]] = None  # None means every enabled quality
    generate_thumbnails: bool = True
    delete_original: Optional[bool] = None  # None means the configured default


@dataclass
class QualityOutcome:
    quality: str
    succeeded: bool
    path: Optional[str] = None
    size: int = 0
    error: Optional[str] = None


@dataclass
class ProcessingJob:
    """In-flight work for one asset; folded into the asset and rendition rows"""
    asset_id: str
    input_key: str
    targets: List[QualityProfile]
    generate_thumbnails: bool = True
    delete_original: bool = False
    outcomes: Dict[str, QualityOutcome] = field(default_factory=dict)
    thumbnails: List[str] = field(default_factory=list)
    duration: Optional[float] = None
    final_status: Optional[str] = None
    error: Optional[str] = None

    @property
    def target_names(self) -> List[str]:
        return [p.name for p in self.targets]

    @property
    def succeeded_qualities(self) -> List[str]:
        return [q for q in self.target_names if q in self.outcomes and self.outcomes[q].succeeded]

    @property
    def failed_qualities(self) -> List[str]:
        return [q for q in self.target_names if q in self.outcomes and not self.outcomes[q].succeeded]


class ProgressPublisher:
    """Writes live per-quality percentages to Redis off the event loop

    ``report`` runs inside the ffmpeg stdout callback and only records the
    latest value. One task writes whatever is pending, so updates coalesce
    while Redis is slow.
    """

    def __init__(self, asset_id: str):
        self.asset_id = asset_id
        self._pending: Dict[str, float] = {}
        self._changed = asyncio.Event()
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.ensure_future(self._run())

    def report(self, quality: str, percent: float) -> None:
        self._pending[quality] = percent
        self._changed.set()

    async def stop(self) -> None:
        self._closed = True
        self._changed.set()
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while not self._closed:
            await self._changed.wait()
            self._changed.clear()
            pending, self._pending = self._pending, {}
            if pending:
                await asyncio.to_thread(self._publish, pending)

    def _publish(self, pending: Dict[str, float]) -> None:
        for quality, percent in pending.items():
            set_processing_progress(self.asset_id, quality, percent)


class ProcessingOrchestrator:

    def __init__(
        self,
        store: ArtifactStore,
        session_factory,
        limiter: TranscodeLimiter,
        extractor: MetadataExtractor,
        transcoder: Transcoder,
        thumbnailer: ThumbnailGenerator,
        catalog: QualityCatalog,
        thumbnail_options: Optional[ThumbnailOptions] = None,
        toolchain: Optional[MediaToolchain] = None,
        work_dir: Optional[Path] = None,
        delete_original_default: bool = False,
    ):
        self.store = store
        self.session_factory = session_factory
        self.limiter = limiter
        self.extractor = extractor
        self.transcoder = transcoder
        self.thumbnailer = thumbnailer
        self.catalog = catalog
        self.thumbnail_options = thumbnail_options or ThumbnailOptions()
        self.toolchain = toolchain
        self.work_dir = Path(work_dir or settings.WORK_DIR)
        self.delete_original_default = delete_original_default
        self._tasks: Dict[str, asyncio.Task] = {}
        self._jobs: Dict[str, ProcessingJob] = {}

    # Job registry

    def is_active(self, asset_id: str) -> bool:
        task = self._tasks.get(asset_id)
        return task is not None and not task.done()

    def active_asset_ids(self) -> List[str]:
        return [asset_id for asset_id in self._tasks if self.is_active(asset_id)]

    def cancel(self, asset_id: str) -> bool:
        """Cancel a running job; its child processes are killed"""
        task = self._tasks.get(asset_id)
        if task is None or task.done():
            return False
        transcode_logger.info(f"Cancelling processing for {asset_id}")
        task.cancel()
        return True

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Ingest

    async def accept_upload(self, asset_id: str, local_path: Path, original_name: str, mime_type: str):
        """Record an upload and move its bytes into the artifact store"""
        local_path = Path(local_path)
        ext = Path(original_name).suffix.lower() or mimetypes.guess_extension(mime_type) or ".mp4"
        key = original_key(asset_id, ext)
        size = local_path.stat().st_size

        with self.session_factory() as db:
            if get_media_asset(db, asset_id) is not None:
                raise AssetBusyError("A video with this id already exists", detail=asset_id)
            create_media_asset(
                db,
                asset_id=asset_id,
                original_name=original_name,
                filename=Path(key).name,
                path=key,
                size=size,
                mime_type=mime_type,
                status=AssetStatus.UPLOADING.value,
            )

        try:
            await asyncio.to_thread(self.store.put_file, local_path, key)
        except (StorageError, OSError) as e:
            upload_logger.error(f"Failed to store original for {asset_id}: {e}", exc_info=True)
            self._mark_failed(asset_id, "Upload could not be stored")
            if isinstance(e, StorageError):
                raise
            raise StorageError("Upload could not be stored", detail=str(e))

        upload_logger.info(f"Stored original for {asset_id} as {key} ({size} bytes)")
        return self.get_asset(asset_id)

    # Processing

    def _build_job(self, asset, options: ProcessingOptions) -> ProcessingJob:
        delete_original = options.delete_original
        if delete_original is None:
            delete_original = self.delete_original_default
        return ProcessingJob(
            asset_id=asset.id,
            input_key=asset.path,
            targets=self.catalog.select(options.qualities),
            generate_thumbnails=options.generate_thumbnails,
            delete_original=delete_original,
        )

    def prepare_processing(self, asset_id: str, options: Optional[ProcessingOptions] = None) -> ProcessingJob:
        """Move a freshly uploaded asset to processing and describe its job"""
        options = options or ProcessingOptions()
        if self.is_active(asset_id):
            raise AssetBusyError(detail=asset_id)
        with self.session_factory() as db:
            asset = get_media_asset(db, asset_id)
            if asset is None:
                raise AssetNotFoundError(detail=asset_id)
            job = self._build_job(asset, options)
            transition(asset, AssetStatus.PROCESSING)
            save_media_asset(db, asset)
        return job

    def prepare_reprocess(self, asset_id: str, options: Optional[ProcessingOptions] = None) -> ProcessingJob:
        """Reset a completed or failed asset so it can be processed again

        Prior renditions and thumbnails are removed from the store and the
        database before the asset returns to processing.
        """
        options = options or ProcessingOptions()
        if self.is_active(asset_id):
            raise AssetBusyError(detail=asset_id)
        with self.session_factory() as db:
            asset = get_media_asset(db, asset_id)
            if asset is None:
                raise AssetNotFoundError(detail=asset_id)
            if AssetStatus(asset.status) in ACTIVE:
                raise InvalidStateTransitionError(
                    f"Cannot reprocess a video that is {asset.status}", detail=asset_id
                )
            if asset.original_deleted or not self.store.exists(asset.path):
                raise InvalidStateTransitionError(
                    "The original file is no longer available", detail=asset.path
                )
            job = self._build_job(asset, options)
            old_keys = [r.path for r in list_renditions(db, asset_id)]

        self._delete_objects(old_keys, asset_id)

        with self.session_factory() as db:
            asset = get_media_asset(db, asset_id)
            delete_renditions(db, asset_id)
            reset_for_reprocess(asset)
            save_media_asset(db, asset)
        transcode_logger.info(f"Reset {asset_id} for reprocessing ({len(old_keys)} renditions removed)")
        return job

    async def process_upload(self, asset_id: str, options: Optional[ProcessingOptions] = None) -> Optional[ProcessingJob]:
        """Run the full pipeline for an uploaded asset"""
        try:
            job = self.prepare_processing(asset_id, options)
        except AssetNotFoundError:
            transcode_logger.warning(f"Asset {asset_id} was removed before processing started")
            return None
        return await self.run_job(job)

    async def reprocess(self, asset_id: str, options: Optional[ProcessingOptions] = None) -> ProcessingJob:
        return await self.run_job(self.prepare_reprocess(asset_id, options))

    async def run_job(self, job: ProcessingJob) -> ProcessingJob:
        """Run ``job`` in its own task and wait for it to settle"""
        task = asyncio.ensure_future(self._run_job(job))
        self._tasks[job.asset_id] = task
        self._jobs[job.asset_id] = job
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        return job

    async def _run_job(self, job: ProcessingJob) -> ProcessingJob:
        asset_id = job.asset_id
        transcode_logger.info(f"Processing {asset_id}: qualities={job.target_names}")
        try:
            with temp_workdir(self.work_dir, scratch_prefix(asset_id)) as scratch:
                await self._execute(job, scratch)
        except asyncio.CancelledError:
            transcode_logger.warning(f"Processing cancelled for {asset_id}")
            self._finish_failed(job, CANCELLED_REASON, "cancelled")
            raise
        except MediaPipelineError as e:
            transcode_logger.error(f"Processing failed for {asset_id}: {e}")
            self._finish_failed(job, e.public_message)
        except Exception as e:
            transcode_logger.error(f"Unexpected error processing {asset_id}: {e}", exc_info=True)
            self._finish_failed(job, "Processing failed")
        finally:
            if self._tasks.get(asset_id) is asyncio.current_task():
                self._tasks.pop(asset_id, None)
                self._jobs.pop(asset_id, None)
            await asyncio.to_thread(clear_processing_progress, asset_id)
        return job

    async def _execute(self, job: ProcessingJob, scratch: Path) -> None:
        asset_id = job.asset_id
        if self.toolchain is not None:
            await self.toolchain.require()

        input_path = scratch / f"source{Path(job.input_key).suffix}"
        try:
            await asyncio.to_thread(self.store.materialize, job.input_key, input_path)
        except FileNotFoundError:
            raise StorageError("Original file is missing", detail=job.input_key)

        async with self.limiter.slot():
            metadata = await self.extractor.extract_metadata(input_path)

        job.duration = metadata.duration
        if metadata.duration is None:
            transcode_logger.warning(f"No duration reported for {asset_id}")
        with self.session_factory() as db:
            asset = self._require_asset(db, asset_id)
            asset.duration = metadata.duration if metadata.duration is not None else 0.0
            asset.width = metadata.width
            asset.height = metadata.height
            asset.codec = metadata.codec
            asset.fps = metadata.fps
            save_media_asset(db, asset)

        publisher = ProgressPublisher(asset_id)
        publisher.start()
        try:
            results = await asyncio.gather(
                *(self._transcode_one(job, input_path, scratch, profile, publisher) for profile in job.targets),
                return_exceptions=True,
            )
        finally:
            await publisher.stop()
        for result in results:
            if isinstance(result, ToolUnavailableError):
                raise result
            if isinstance(result, BaseException):
                transcode_logger.error(f"Unexpected transcode error for {asset_id}: {result!r}")

        if not job.succeeded_qualities:
            raise TranscodeError(ALL_QUALITIES_FAILED_REASON, detail=f"failed: {job.failed_qualities}")

        if job.generate_thumbnails:
            await self._generate_thumbnails(job, input_path, scratch)

        with self.session_factory() as db:
            asset = self._require_asset(db, asset_id)
            asset.thumbnail_path = job.thumbnails[0] if job.thumbnails else None
            transition(asset, AssetStatus.COMPLETED)
            save_media_asset(db, asset)
        job.final_status = AssetStatus.COMPLETED.value
        processing_jobs_counter.labels(status="completed").inc()
        transcode_logger.info(
            f"Completed {asset_id}: {len(job.succeeded_qualities)}/{len(job.targets)} qualities "
            f"{job.succeeded_qualities}, {len(job.thumbnails)} thumbnails"
        )

        if job.delete_original:
            await self._delete_original(job)

    async def _transcode_one(
        self,
        job: ProcessingJob,
        input_path: Path,
        scratch: Path,
        profile: QualityProfile,
        publisher: ProgressPublisher,
    ) -> QualityOutcome:
        asset_id, quality = job.asset_id, profile.name
        output_path = scratch / "renditions" / f"{quality}.{self.transcoder.policy.container}"
        last_reported = [-1.0]

        def on_progress(progress: TranscodeProgress):
            if progress.percent is None:
                return
            if progress.done or progress.percent - last_reported[0] >= 1.0:
                last_reported[0] = progress.percent
                publisher.report(quality, progress.percent)

        key = rendition_key(asset_id, quality, self.transcoder.policy.container)
        stored = False
        try:
            async with self.limiter.slot():
                await self.transcoder.transcode(input_path, output_path, quality, on_progress, job.duration)
            size = output_path.stat().st_size
            await asyncio.to_thread(self.store.put_file, output_path, key)
            stored = True
            with self.session_factory() as db:
                create_rendition(
                    db, asset_id, quality, key, size,
                    bitrate=profile.bitrate, resolution=profile.resolution
                )
            output_path.unlink(missing_ok=True)
        except ToolUnavailableError:
            raise
        except Exception as e:
            transcode_logger.error(f"Quality {quality} failed for {asset_id}: {e!r}")
            if stored:
                await asyncio.to_thread(self._discard, key)
            message = e.public_message if isinstance(e, MediaPipelineError) else f"Transcoding to {quality} failed"
            outcome = QualityOutcome(quality, False, error=message)
            job.outcomes[quality] = outcome
            transcodes_counter.labels(quality=quality, status="failure").inc()
            return outcome

        outcome = QualityOutcome(quality, True, path=key, size=size)
        job.outcomes[quality] = outcome
        transcodes_counter.labels(quality=quality, status="success").inc()
        return outcome

    async def _generate_thumbnails(self, job: ProcessingJob, input_path: Path, scratch: Path) -> None:
        asset_id = job.asset_id
        prefix = thumbnail_prefix(asset_id)
        try:
            async with self.limiter.slot():
                paths = await self.thumbnailer.generate_thumbnails(
                    input_path, scratch / "thumbnails", self.thumbnail_options, job.duration
                )
            for path in paths:
                key = f"{prefix}/{path.name}"
                await asyncio.to_thread(self.store.put_file, path, key)
                job.thumbnails.append(key)
            thumbnails_counter.inc(len(paths))
        except (MediaPipelineError, OSError) as e:
            # thumbnails are optional; the asset still completes
            transcode_logger.warning(f"Thumbnail generation failed for {asset_id}: {e}")

    async def _delete_original(self, job: ProcessingJob) -> None:
        try:
            await asyncio.to_thread(self.store.delete, job.input_key)
        except (StorageError, OSError) as e:
            transcode_logger.warning(f"Could not delete original {job.input_key}: {e}")
            return
        with self.session_factory() as db:
            asset = self._require_asset(db, job.asset_id)
            asset.original_deleted = True
            save_media_asset(db, asset)
        transcode_logger.info(f"Deleted original for {job.asset_id}")

    def _discard(self, key: str) -> None:
        try:
            self.store.delete(key)
        except (StorageError, OSError) as e:
            transcode_logger.warning(f"Could not remove {key}: {e}")

    def _require_asset(self, db, asset_id: str):
        asset = get_media_asset(db, asset_id)
        if asset is None:
            raise AssetNotFoundError(detail=asset_id)
        return asset

    def _mark_failed(self, asset_id: str, reason: str) -> bool:
        with self.session_factory() as db:
            asset = get_media_asset(db, asset_id)
            if asset is None or AssetStatus(asset.status) not in ACTIVE:
                return False
            transition(asset, AssetStatus.FAILED, reason)
            save_media_asset(db, asset)
        return True

    def _finish_failed(self, job: ProcessingJob, reason: str, metric_status: str = "failed") -> None:
        job.final_status = AssetStatus.FAILED.value
        job.error = reason
        try:
            self._mark_failed(job.asset_id, reason)
        except Exception as e:
            transcode_logger.error(f"Could not record failure for {job.asset_id}: {e}", exc_info=True)
        processing_jobs_counter.labels(status=metric_status).inc()

    # Queries

    def get_asset(self, asset_id: str):
        with self.session_factory() as db:
            asset = get_media_asset(db, asset_id)
            if asset is None:
                raise AssetNotFoundError(detail=asset_id)
            return asset

    def get_renditions(self, asset_id: str):
        with self.session_factory() as db:
            return sorted(list_renditions(db, asset_id), key=lambda r: self.catalog.rank(r.quality))

    def get_status(self, asset_id: str):
        asset = self.get_asset(asset_id)
        renditions = self.get_renditions(asset_id)
        job = self._jobs.get(asset_id)
        target_count = len(job.targets) if job is not None else len(self.catalog.enabled())
        progress = {}
        if asset.status == AssetStatus.PROCESSING.value:
            progress = get_processing_progress(asset_id)
        thumbnail_url = self.store.get_url(asset.thumbnail_path) if asset.thumbnail_path else None
        return build_status_view(
            asset,
            [r.quality for r in renditions],
            target_count,
            quality_progress=progress,
            thumbnail_url=thumbnail_url,
        )

    async def open_asset_stream(
        self,
        asset_id: str,
        quality: Optional[str],
        range_header: Optional[str],
        speed_mbps: Optional[float] = None,
    ):
        """Pick the stored file for ``quality`` and open it for a range request

        With no quality but a connection speed, the rendition that fits the
        connection is requested. Returns the StreamInfo and the quality
        actually served.
        """
        asset = self.get_asset(asset_id)
        renditions = self.get_renditions(asset_id)
        if quality is None and speed_mbps and renditions:
            quality = optimal_quality(renditions, self.catalog, speed_mbps)
        served, key = await asyncio.to_thread(
            select_stream, self.store, asset, renditions, self.catalog, quality
        )
        info: StreamInfo = await asyncio.to_thread(open_stream, self.store, key, range_header)
        return info, served

    # Deletion

    async def delete_asset(self, asset_id: str) -> None:
        """Remove every stored artifact of an asset, then its records

        A storage failure leaves the records in place so the deletion can be
        retried without orphaning bytes.
        """
        if self.is_active(asset_id):
            raise AssetBusyError("Cannot delete a video while it is being processed", detail=asset_id)
        asset = self.get_asset(asset_id)
        keys = [r.path for r in self.get_renditions(asset_id)]
        if asset.thumbnail_path:
            keys.append(asset.thumbnail_path)
        if not asset.original_deleted:
            keys.append(asset.path)

        await asyncio.to_thread(self._delete_objects, keys, asset_id)

        with self.session_factory() as db:
            delete_media_asset(db, asset_id)
        await asyncio.to_thread(clear_processing_progress, asset_id)
        transcode_logger.info(f"Deleted {asset_id} and {len(keys)} stored files")

    def _delete_objects(self, keys: List[str], asset_id: str) -> None:
        for key in keys:
            self.store.delete(key)
        # Sweep the directories too so files without a row go as well
        self.store.delete_prefix(rendition_prefix(asset_id))
        self.store.delete_prefix(thumbnail_prefix(asset_id))


def build_orchestrator(
    runner: Optional[ProcessRunner] = None,
    store: Optional[ArtifactStore] = None,
    session_factory=None,
    catalog: Optional[QualityCatalog] = None,
    thumbnail_options: Optional[ThumbnailOptions] = None,
    max_concurrent: Optional[int] = None,
    work_dir: Optional[Path] = None,
    delete_original_default: Optional[bool] = None,
) -> ProcessingOrchestrator:
    """Wire an orchestrator from settings; any collaborator can be overridden"""
    runner = runner or ProcessRunner()
    catalog = catalog or load_quality_catalog()
    if delete_original_default is None:
        delete_original_default = settings.DELETE_ORIGINAL_AFTER_PROCESSING
    return ProcessingOrchestrator(
        store=store or get_artifact_store(),
        session_factory=session_factory or SessionLocal,
        limiter=TranscodeLimiter(max_concurrent or settings.MAX_CONCURRENT_TRANSCODES),
        extractor=MetadataExtractor(runner, settings.FFPROBE_BIN, settings.PROBE_TIMEOUT),
        transcoder=Transcoder(runner, catalog, load_encoder_policy(), settings.FFMPEG_BIN, settings.TRANSCODE_TIMEOUT),
        thumbnailer=ThumbnailGenerator(
            runner, settings.FFMPEG_BIN, settings.THUMBNAIL_TIMEOUT, settings.THUMBNAIL_FALLBACK_DURATION
        ),
        catalog=catalog,
        thumbnail_options=thumbnail_options or load_thumbnail_options(),
        toolchain=MediaToolchain(runner, settings.FFMPEG_BIN, settings.FFPROBE_BIN),
        work_dir=work_dir or settings.WORK_DIR,
        delete_original_default=delete_original_default,
    )
