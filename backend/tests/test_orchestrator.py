"""Processing orchestrator tests"""
import asyncio
import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from conftest import RENDITION_PAYLOAD, FakeRunner, TestSessionLocal, process, upload_video
from reelhouse.db.redis import set_processing_progress
from reelhouse.models import MediaAsset, Rendition
from reelhouse.services.media.config import ThumbnailOptions
import reelhouse.services.media.orchestrator as orchestrator_module
from reelhouse.services.media.errors import (
    AssetBusyError, AssetNotFoundError, InvalidStateTransitionError, UnsupportedQualityError
)
from reelhouse.services.media.orchestrator import (
    ALL_QUALITIES_FAILED_REASON, CANCELLED_REASON, ProcessingOptions, build_orchestrator,
    original_key, rendition_key, thumbnail_prefix
)
from reelhouse.services.media.status import AssetStatus


def _orchestrator(store, tmp_path, runner, **kwargs):
    kwargs.setdefault("thumbnail_options", ThumbnailOptions(count=3))
    kwargs.setdefault("max_concurrent", 2)
    return build_orchestrator(
        runner=runner,
        store=store,
        session_factory=TestSessionLocal,
        work_dir=tmp_path / "work",
        delete_original_default=kwargs.pop("delete_original_default", False),
        **kwargs,
    )


@pytest.mark.critical
class TestProcessingPipeline:
    """Upload through completion"""

    def test_accept_upload_stores_original_and_records_uploading(self, orchestrator, store, tmp_path):
        """Accepted uploads are in the store and start in uploading"""
        asset = upload_video(orchestrator, tmp_path)

        assert asset.status == AssetStatus.UPLOADING.value
        assert asset.path == original_key("asset1", ".mp4")
        assert store.exists(asset.path)
        assert asset.size == store.size(asset.path)

    def test_duplicate_upload_id_rejected(self, orchestrator, tmp_path):
        """A second upload with the same id is refused"""
        upload_video(orchestrator, tmp_path)
        with pytest.raises(AssetBusyError):
            upload_video(orchestrator, tmp_path)

    def test_lecture_upload_end_to_end(self, orchestrator, store, fake_runner, tmp_path):
        """60s 1280x720 upload, two qualities, three thumbnails, ranged 720p read"""
        upload_video(orchestrator, tmp_path)
        job = process(orchestrator, qualities=["360p", "720p"])

        assert job.final_status == "completed"
        asset = orchestrator.get_asset("asset1")
        assert asset.status == "completed"
        assert asset.duration == 60.0
        assert (asset.width, asset.height) == (1280, 720)
        assert asset.codec == "h264"
        assert asset.fps == 30.0

        renditions = orchestrator.get_renditions("asset1")
        assert [r.quality for r in renditions] == ["360p", "720p"]
        assert [r.resolution for r in renditions] == ["640x360", "1280x720"]
        for rendition in renditions:
            assert rendition.path == rendition_key("asset1", rendition.quality)
            assert store.exists(rendition.path)

        thumbs = store.list_keys(thumbnail_prefix("asset1"))
        assert len(thumbs) == 3
        assert asset.thumbnail_path == f"{thumbnail_prefix('asset1')}/thumb_1.jpg"

        timestamps = [float(cmd[cmd.index("-ss") + 1]) for cmd in fake_runner.thumbnail_calls()]
        assert timestamps == [15.0, 30.0, 45.0]

        info, served = asyncio.run(orchestrator.open_asset_stream("asset1", "720p", "bytes=0-499"))
        assert served == "720p"
        assert info.status_code == 206
        assert info.headers["Content-Range"] == f"bytes 0-499/{len(RENDITION_PAYLOAD)}"
        assert b"".join(info.body) == RENDITION_PAYLOAD[:500]

    def test_status_reports_completed_with_qualities(self, orchestrator, tmp_path):
        """Completed status carries duration, qualities and a thumbnail url"""
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p", "720p"])

        status = orchestrator.get_status("asset1")
        assert status.status == "completed"
        assert status.duration == 60.0
        assert status.qualities == ["360p", "720p"]
        assert status.thumbnail_url.startswith("/files/videos/thumbnails/asset1/")

    def test_status_while_processing_uses_live_progress(self, orchestrator, tmp_path):
        """Per-quality progress from Redis feeds the overall percentage"""
        upload_video(orchestrator, tmp_path)
        orchestrator.prepare_processing("asset1")
        set_processing_progress("asset1", "360p", 50.0)

        status = orchestrator.get_status("asset1")

        assert status.status == "processing"
        assert status.quality_progress == {"360p": 50.0}
        # no job registered, so every enabled quality counts
        assert status.progress == 12.5

    def test_work_dir_is_cleaned_after_job(self, orchestrator, tmp_path):
        """Scratch directories are removed once a job settles"""
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p"])

        assert list((tmp_path / "work").iterdir()) == []

    def test_progress_cleared_after_job(self, orchestrator, mock_redis, tmp_path):
        """Live progress in Redis is dropped when the job settles"""
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p"])

        assert mock_redis.exists("processing:asset1") == 0

    def test_progress_written_off_the_event_loop(self, orchestrator, tmp_path, monkeypatch):
        """A slow Redis must not block the loop that reads ffmpeg output"""
        writes = []

        def slow_write(asset_id, quality, percent):
            time.sleep(0.05)
            writes.append((threading.get_ident(), quality, percent))

        monkeypatch.setattr(orchestrator_module, "set_processing_progress", slow_write)
        upload_video(orchestrator, tmp_path)
        job = process(orchestrator, qualities=["360p", "720p"])

        assert job.final_status == "completed"
        assert writes
        assert threading.get_ident() not in {thread for thread, _, _ in writes}
        latest = {quality: percent for _, quality, percent in writes}
        assert latest == {"360p": 100.0, "720p": 100.0}

    def test_missing_asset_is_skipped(self, orchestrator):
        """Processing an asset deleted before it started is a no-op"""
        assert process(orchestrator, asset_id="gone") is None

    def test_unknown_quality_rejected_before_processing(self, orchestrator, fake_runner, tmp_path):
        """Requesting an unknown quality fails fast and spawns nothing"""
        upload_video(orchestrator, tmp_path)
        with pytest.raises(UnsupportedQualityError):
            process(orchestrator, qualities=["4k"])

        assert fake_runner.calls == []
        assert orchestrator.get_asset("asset1").status == "uploading"


@pytest.mark.critical
class TestPartialSuccess:
    """Quality failures are isolated from each other"""

    def test_one_quality_failing_still_completes(self, store, tmp_path, db_session, mock_redis):
        """Three of four qualities succeed and the asset completes"""
        runner = FakeRunner(fail_qualities={"480p"})
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator)

        assert job.final_status == "completed"
        assert job.succeeded_qualities == ["360p", "720p", "1080p"]
        assert job.failed_qualities == ["480p"]
        assert [r.quality for r in orchestrator.get_renditions("asset1")] == ["360p", "720p", "1080p"]
        assert not store.exists(rendition_key("asset1", "480p"))
        assert orchestrator.get_status("asset1").qualities == ["360p", "720p", "1080p"]

    def test_timed_out_quality_fails_alone(self, store, tmp_path, db_session, mock_redis):
        """A quality that hits the process timeout is failed; the others finish"""
        runner = FakeRunner(timeout_qualities={"720p"})
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator, qualities=["360p", "480p", "720p"])

        assert job.final_status == "completed"
        assert job.failed_qualities == ["720p"]
        assert job.outcomes["720p"].error == "Transcoding to 720p timed out"
        assert [r.quality for r in orchestrator.get_renditions("asset1")] == ["360p", "480p"]
        assert orchestrator.get_asset("asset1").status == "completed"
        assert not store.exists(rendition_key("asset1", "720p"))

    def test_rendition_record_failure_discards_stored_file(self, store, tmp_path, db_session, mock_redis, monkeypatch):
        """A database error after upload counts as a failed quality and removes the stored bytes"""
        real_create = orchestrator_module.create_rendition

        def flaky_create(db, asset_id, quality, *args, **kwargs):
            if quality == "360p":
                raise OperationalError("INSERT INTO renditions", {}, Exception("database is locked"))
            return real_create(db, asset_id, quality, *args, **kwargs)

        monkeypatch.setattr(orchestrator_module, "create_rendition", flaky_create)
        orchestrator = _orchestrator(store, tmp_path, FakeRunner())
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator, qualities=["360p", "720p"])

        assert job.final_status == "completed"
        assert job.failed_qualities == ["360p"]
        assert job.outcomes["360p"].error == "Transcoding to 360p failed"
        assert not store.exists(rendition_key("asset1", "360p"))
        assert store.list_keys("videos/renditions/asset1") == [rendition_key("asset1", "720p")]

    def test_all_qualities_failing_fails_asset(self, store, tmp_path, db_session, mock_redis):
        """No rendition at all fails the asset and leaves nothing behind"""
        runner = FakeRunner(fail_qualities={"360p", "720p"})
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator, qualities=["360p", "720p"])

        assert job.final_status == "failed"
        asset = orchestrator.get_asset("asset1")
        assert asset.status == "failed"
        assert asset.processing_error == ALL_QUALITIES_FAILED_REASON
        assert orchestrator.get_renditions("asset1") == []
        assert store.list_keys("videos/renditions/asset1") == []
        assert runner.thumbnail_calls() == []

    def test_failed_thumbnails_do_not_fail_asset(self, store, tmp_path, db_session, mock_redis):
        """Thumbnails are optional; the asset completes without them"""
        runner = FakeRunner(fail_thumbnails={1, 2, 3})
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator, qualities=["360p"])

        assert job.final_status == "completed"
        asset = orchestrator.get_asset("asset1")
        assert asset.thumbnail_path is None
        assert orchestrator.get_status("asset1").thumbnail_url is None

    def test_some_thumbnails_failing_keeps_the_rest(self, store, tmp_path, db_session, mock_redis):
        """Successful thumbnails are kept when others fail"""
        runner = FakeRunner(fail_thumbnails={1})
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        process(orchestrator, qualities=["360p"])

        keys = sorted(store.list_keys(thumbnail_prefix("asset1")))
        assert keys == [
            "videos/thumbnails/asset1/thumb_2.jpg",
            "videos/thumbnails/asset1/thumb_3.jpg",
        ]
        assert orchestrator.get_asset("asset1").thumbnail_path == keys[0]


@pytest.mark.critical
class TestProcessingFailures:
    """Failures before any transcode starts"""

    def test_probe_failure_fails_asset_without_transcoding(self, store, tmp_path, db_session, mock_redis):
        runner = FakeRunner(probe_error="moov atom not found")
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator)

        assert job.final_status == "failed"
        asset = orchestrator.get_asset("asset1")
        assert asset.processing_error == "Could not read video file"
        assert "moov atom" not in asset.processing_error
        assert runner.transcode_calls() == []

    def test_audio_only_file_fails(self, store, tmp_path, db_session, mock_redis):
        runner = FakeRunner(probe_payload={
            "streams": [{"codec_type": "audio", "codec_name": "mp3"}],
            "format": {"duration": "30.0"},
        })
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        process(orchestrator)

        assert orchestrator.get_asset("asset1").processing_error == "File does not contain a video stream"

    def test_missing_tools_fail_asset(self, store, tmp_path, db_session, mock_redis):
        runner = FakeRunner(missing_tools=True)
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator)

        assert job.final_status == "failed"
        assert orchestrator.get_asset("asset1").processing_error == "Media processing is temporarily unavailable"

    def test_unknown_duration_completes_with_fallback_thumbnails(self, store, tmp_path, db_session, mock_redis):
        """Without a probed duration the asset still completes"""
        runner = FakeRunner(duration=None)
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        job = process(orchestrator, qualities=["360p"])

        assert job.final_status == "completed"
        assert orchestrator.get_asset("asset1").duration == 0.0
        timestamps = [float(cmd[cmd.index("-ss") + 1]) for cmd in runner.thumbnail_calls()]
        assert timestamps == [2.5, 5.0, 7.5]


@pytest.mark.high
class TestConcurrency:
    """Bounded concurrency across jobs"""

    def test_transcodes_never_exceed_limit(self, store, tmp_path, db_session, mock_redis):
        runner = FakeRunner(transcode_delay=0.05)
        orchestrator = _orchestrator(store, tmp_path, runner, max_concurrent=2)
        upload_video(orchestrator, tmp_path, asset_id="a")
        upload_video(orchestrator, tmp_path, asset_id="b")

        async def run_both():
            return await asyncio.gather(
                orchestrator.process_upload("a"),
                orchestrator.process_upload("b"),
            )

        jobs = asyncio.run(run_both())

        assert [job.final_status for job in jobs] == ["completed", "completed"]
        assert runner.max_in_flight == 2
        assert orchestrator.limiter.peak <= 2

    def test_cancel_marks_asset_failed(self, store, tmp_path, db_session, mock_redis):
        """Cancelling a running job fails the asset and frees the registry"""
        runner = FakeRunner(transcode_delay=5)
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)

        async def scenario():
            task = asyncio.ensure_future(orchestrator.process_upload("asset1", ProcessingOptions(qualities=["360p"])))
            for _ in range(100):
                await asyncio.sleep(0.01)
                if runner.transcode_calls():
                    break
            assert orchestrator.is_active("asset1")
            with pytest.raises(AssetBusyError):
                await orchestrator.delete_asset("asset1")
            assert orchestrator.cancel("asset1") is True
            return await task

        job = asyncio.run(scenario())

        assert job.final_status == "failed"
        assert job.error == CANCELLED_REASON
        assert orchestrator.get_asset("asset1").processing_error == CANCELLED_REASON
        assert orchestrator.is_active("asset1") is False
        assert orchestrator.cancel("asset1") is False


@pytest.mark.critical
class TestDeletion:
    """Deleting an asset removes every stored artifact"""

    def test_delete_removes_all_artifacts(self, store, tmp_path, db_session, mock_redis):
        runner = FakeRunner()
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p", "480p", "720p"])

        asset = orchestrator.get_asset("asset1")
        paths = [asset.path] + [r.path for r in orchestrator.get_renditions("asset1")]
        paths += store.list_keys(thumbnail_prefix("asset1"))
        assert len(paths) == 7
        assert all(store.exists(p) for p in paths)

        asyncio.run(orchestrator.delete_asset("asset1"))

        assert not any(store.exists(p) for p in paths)
        assert store.list_keys("videos") == []
        with pytest.raises(AssetNotFoundError):
            orchestrator.get_asset("asset1")
        assert db_session.query(Rendition).count() == 0
        assert db_session.query(MediaAsset).count() == 0

    def test_delete_removes_files_without_records(self, orchestrator, store, tmp_path):
        """Rendition files the database never recorded are removed with the asset"""
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p"])
        store.save(rendition_key("asset1", "480p"), b"stray")
        store.save(rendition_key("asset10", "480p"), b"other asset")

        asyncio.run(orchestrator.delete_asset("asset1"))

        assert store.list_keys("videos/renditions/asset1") == []
        assert store.exists(rendition_key("asset10", "480p"))

    def test_delete_unknown_asset(self, orchestrator):
        with pytest.raises(AssetNotFoundError):
            asyncio.run(orchestrator.delete_asset("missing"))

    def test_delete_original_after_processing(self, store, tmp_path, db_session, mock_redis):
        """Originals can be dropped once renditions exist"""
        orchestrator = _orchestrator(store, tmp_path, FakeRunner(), delete_original_default=True)
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p", "720p"])

        asset = orchestrator.get_asset("asset1")
        assert asset.original_deleted is True
        assert not store.exists(asset.path)

        info, served = asyncio.run(orchestrator.open_asset_stream("asset1", None, None))
        assert served == "720p"
        assert info.status_code == 200


@pytest.mark.high
class TestReprocess:
    """Reprocessing replaces prior outputs"""

    def test_reprocess_replaces_renditions(self, orchestrator, store, tmp_path):
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p"])
        old_key = rendition_key("asset1", "360p")
        assert store.exists(old_key)

        job = asyncio.run(orchestrator.reprocess("asset1", ProcessingOptions(qualities=["720p"])))

        assert job.final_status == "completed"
        assert [r.quality for r in orchestrator.get_renditions("asset1")] == ["720p"]
        assert not store.exists(old_key)
        assert len(store.list_keys(thumbnail_prefix("asset1"))) == 3

    def test_reprocess_after_failure(self, store, tmp_path, db_session, mock_redis):
        runner = FakeRunner(fail_qualities={"360p"})
        orchestrator = _orchestrator(store, tmp_path, runner)
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p"])
        assert orchestrator.get_asset("asset1").status == "failed"

        runner.fail_qualities.clear()
        job = asyncio.run(orchestrator.reprocess("asset1", ProcessingOptions(qualities=["360p"])))

        assert job.final_status == "completed"
        asset = orchestrator.get_asset("asset1")
        assert asset.status == "completed"
        assert asset.processing_error is None

    def test_reprocess_while_uploading_rejected(self, orchestrator, tmp_path):
        upload_video(orchestrator, tmp_path)
        with pytest.raises(InvalidStateTransitionError):
            orchestrator.prepare_reprocess("asset1")

    def test_reprocess_without_original_rejected(self, store, tmp_path, db_session, mock_redis):
        orchestrator = _orchestrator(store, tmp_path, FakeRunner(), delete_original_default=True)
        upload_video(orchestrator, tmp_path)
        process(orchestrator, qualities=["360p"])

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.prepare_reprocess("asset1")
