"""Metadata extraction with ffprobe"""
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from reelhouse.services.media.errors import NoVideoStreamError, ProbeFailedError, ToolUnavailableError
from reelhouse.services.media.process import ProcessErrorKind, ProcessRunner

transcode_logger = logging.getLogger("transcode")

DEFAULT_FPS = 30.0


@dataclass(frozen=True)
class MediaMetadata:
    duration: Optional[float]  # seconds, None when neither container nor stream reports one
    width: int
    height: int
    bitrate: int  # bits per second
    codec: str
    format: str
    size: int
    fps: float
    has_audio: bool = False

    @property
    def bitrate_label(self) -> str:
        return f"{round(self.bitrate / 1000)}k"


def parse_frame_rate(value) -> Optional[float]:
    """Parse an ffprobe rational frame rate such as ``30000/1001``

    Returns None for missing, zero-denominator or non-positive rates.
    """
    if value is None or value == "":
        return None
    text = str(value)
    try:
        if "/" in text:
            numerator, denominator = text.split("/", 1)
            denominator = float(denominator)
            if denominator == 0:
                return None
            rate = float(numerator) / denominator
        else:
            rate = float(text)
    except ValueError:
        return None
    return rate if rate > 0 else None


def _to_float(value) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result >= 0 else None


def _to_int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_probe_output(data: Dict[str, Any], path: Optional[Path] = None) -> MediaMetadata:
    """Build MediaMetadata from ffprobe's ``-show_format -show_streams`` JSON"""
    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise NoVideoStreamError(detail=f"no video stream in {path}")

    fps = (
        parse_frame_rate(video.get("r_frame_rate"))
        or parse_frame_rate(video.get("avg_frame_rate"))
        or DEFAULT_FPS
    )

    duration = _to_float(fmt.get("duration"))
    if duration is None:
        duration = _to_float(video.get("duration"))

    bitrate = _to_int(fmt.get("bit_rate")) or _to_int(video.get("bit_rate"))

    size = _to_int(fmt.get("size"))
    if not size and path is not None and path.exists():
        size = path.stat().st_size

    return MediaMetadata(
        duration=duration,
        width=_to_int(video.get("width")),
        height=_to_int(video.get("height")),
        bitrate=bitrate,
        codec=video.get("codec_name") or "",
        format=fmt.get("format_name") or "",
        size=size,
        fps=round(fps, 3),
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


class MetadataExtractor:
    """Reads container and stream headers without decoding the payload"""

    def __init__(self, runner: ProcessRunner, ffprobe_bin: str = "ffprobe", timeout: float = 30.0):
        self.runner = runner
        self.ffprobe_bin = ffprobe_bin
        self.timeout = timeout

    def build_command(self, path: Path):
        return [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

    async def extract_metadata(self, path) -> MediaMetadata:
        path = Path(path)
        if not path.is_file():
            raise ProbeFailedError(detail=f"{path} is not a readable file")

        result = await self.runner.run(self.build_command(path), timeout=self.timeout)
        if not result.ok:
            if result.kind == ProcessErrorKind.NOT_FOUND:
                raise ToolUnavailableError(detail=result.detail)
            transcode_logger.error(f"ffprobe failed for {path.name}: {result.detail}")
            if result.kind == ProcessErrorKind.TIMEOUT:
                raise ProbeFailedError("Timed out reading video file", detail=result.detail)
            raise ProbeFailedError(detail=result.detail)

        try:
            data = json.loads(result.stdout)
        except ValueError as e:
            raise ProbeFailedError(detail=f"invalid ffprobe output: {e}")
        if not isinstance(data, dict):
            raise ProbeFailedError(detail="ffprobe output is not an object")

        metadata = parse_probe_output(data, path)
        transcode_logger.info(
            f"Probed {path.name}: {metadata.width}x{metadata.height} {metadata.codec} "
            f"{metadata.duration}s {metadata.fps}fps {metadata.bitrate_label}"
        )
        return metadata
