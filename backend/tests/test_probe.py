"""Metadata extraction tests"""
import asyncio

import pytest

from conftest import FakeRunner
from reelhouse.services.media.errors import NoVideoStreamError, ProbeFailedError, ToolUnavailableError
from reelhouse.services.media.process import ProcessOk
from reelhouse.services.media.probe import DEFAULT_FPS, MetadataExtractor, parse_frame_rate, parse_probe_output


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "lecture.mp4"
    path.write_bytes(b"\x00" * 4096)
    return path


def _video_stream(**overrides):
    stream = {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080}
    stream.update(overrides)
    return stream


@pytest.mark.critical
class TestMetadataExtractor:

    def test_extracts_metadata(self, video_file):
        metadata = asyncio.run(MetadataExtractor(FakeRunner()).extract_metadata(video_file))

        assert metadata.duration == 60.0
        assert (metadata.width, metadata.height) == (1280, 720)
        assert metadata.codec == "h264"
        assert metadata.fps == 30.0
        assert metadata.bitrate == 2_500_000
        assert metadata.bitrate_label == "2500k"
        assert metadata.has_audio

    def test_extraction_is_repeatable(self, video_file):
        extractor = MetadataExtractor(FakeRunner())

        first = asyncio.run(extractor.extract_metadata(video_file))
        second = asyncio.run(extractor.extract_metadata(video_file))

        assert first == second

    def test_missing_file_spawns_nothing(self, tmp_path):
        runner = FakeRunner()

        with pytest.raises(ProbeFailedError):
            asyncio.run(MetadataExtractor(runner).extract_metadata(tmp_path / "nope.mp4"))
        assert runner.calls == []

    def test_probe_failure_hides_tool_output(self, video_file):
        runner = FakeRunner(probe_error="Invalid data found when processing input")

        with pytest.raises(ProbeFailedError) as exc_info:
            asyncio.run(MetadataExtractor(runner).extract_metadata(video_file))

        assert exc_info.value.public_message == "Could not read video file"
        assert "Invalid data found" in str(exc_info.value)

    def test_missing_ffprobe(self, video_file):
        with pytest.raises(ToolUnavailableError):
            asyncio.run(MetadataExtractor(FakeRunner(missing_tools=True)).extract_metadata(video_file))

    def test_invalid_json(self, video_file):
        class GarbageRunner(FakeRunner):
            async def run(self, cmd, timeout=None, on_line=None):
                return ProcessOk(stdout="not json", stderr="")

        with pytest.raises(ProbeFailedError):
            asyncio.run(MetadataExtractor(GarbageRunner()).extract_metadata(video_file))

    def test_no_video_stream(self, video_file):
        runner = FakeRunner(probe_payload={"streams": [{"codec_type": "audio"}], "format": {}})

        with pytest.raises(NoVideoStreamError):
            asyncio.run(MetadataExtractor(runner).extract_metadata(video_file))


@pytest.mark.high
class TestProbeParsing:

    def test_frame_rates(self):
        assert parse_frame_rate("30/1") == 30.0
        assert parse_frame_rate("30000/1001") == pytest.approx(29.97, rel=1e-3)
        assert parse_frame_rate("25") == 25.0
        assert parse_frame_rate("0/0") is None
        assert parse_frame_rate("0/1") is None
        assert parse_frame_rate("") is None
        assert parse_frame_rate(None) is None
        assert parse_frame_rate("abc") is None

    def test_fps_falls_back_to_average(self):
        data = {"streams": [_video_stream(r_frame_rate="0/0", avg_frame_rate="25/1")], "format": {}}

        assert parse_probe_output(data).fps == 25.0

    def test_fps_default_when_unknown(self):
        data = {"streams": [_video_stream(r_frame_rate="0/0", avg_frame_rate="0/0")], "format": {}}

        assert parse_probe_output(data).fps == DEFAULT_FPS

    def test_duration_and_bitrate_from_stream(self):
        data = {
            "streams": [_video_stream(duration="12.5", bit_rate="800000")],
            "format": {"format_name": "matroska,webm"},
        }

        metadata = parse_probe_output(data)
        assert metadata.duration == 12.5
        assert metadata.bitrate == 800_000
        assert metadata.format == "matroska,webm"
        assert not metadata.has_audio

    def test_unknown_duration(self):
        data = {"streams": [_video_stream()], "format": {"duration": "N/A"}}

        assert parse_probe_output(data).duration is None

    def test_size_falls_back_to_file(self, video_file):
        data = {"streams": [_video_stream()], "format": {}}

        assert parse_probe_output(data, video_file).size == 4096

    def test_first_video_stream_wins(self):
        data = {
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                _video_stream(codec_name="vp9", width=640, height=360),
                _video_stream(codec_name="mjpeg", width=320, height=180),
            ],
            "format": {},
        }

        metadata = parse_probe_output(data)
        assert metadata.codec == "vp9"
        assert metadata.width == 640
