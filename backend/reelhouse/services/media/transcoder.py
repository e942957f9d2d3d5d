"""Single-rendition transcoding with ffmpeg"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from reelhouse.services.media.config import EncoderPolicy, QualityCatalog, QualityProfile
from reelhouse.services.media.errors import ToolUnavailableError, TranscodeError
from reelhouse.services.media.process import ProcessErrorKind, ProcessRunner, ensure_dir

transcode_logger = logging.getLogger("transcode")
logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


@dataclass
class TranscodeProgress:
    frames: int = 0
    current_fps: float = 0.0
    current_kbps: float = 0.0
    total_size: int = 0  # bytes written so far
    timemark: str = "00:00:00.00"
    out_seconds: float = 0.0
    percent: Optional[float] = None
    done: bool = False


ProgressCallback = Callable[[TranscodeProgress], None]


def _parse_number(value: str, cast=float, default=0):
    value = (value or "").strip()
    for unit in ("kbits/s", "bits/s"):
        if value.endswith(unit):
            value = value[:-len(unit)]
    try:
        return cast(float(value))
    except ValueError:
        return default


class ProgressParser:
    """Folds ffmpeg ``-progress`` key=value lines into progress snapshots

    ffmpeg writes one block of keys per update, terminated by a
    ``progress=continue`` or ``progress=end`` line; ``feed`` returns a
    snapshot only for that terminating line.
    """

    def __init__(self, duration: Optional[float] = None):
        self.duration = duration if duration and duration > 0 else None
        self._current = TranscodeProgress()

    def feed(self, line: str) -> Optional[TranscodeProgress]:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        value = value.strip()
        current = self._current

        if key == "frame":
            current.frames = _parse_number(value, int)
        elif key == "fps":
            current.current_fps = _parse_number(value)
        elif key == "bitrate":
            current.current_kbps = _parse_number(value)
        elif key == "total_size":
            current.total_size = _parse_number(value, int)
        elif key in ("out_time_us", "out_time_ms"):
            # both keys carry microseconds
            micros = _parse_number(value, int, default=None)
            if micros is not None and micros >= 0:
                current.out_seconds = micros / 1_000_000.0
        elif key == "out_time":
            current.timemark = value
        elif key == "progress":
            current.done = value == "end"
            if current.done:
                current.percent = 100.0
            elif self.duration:
                current.percent = round(min(100.0, max(0.0, current.out_seconds / self.duration * 100)), 2)
            snapshot = TranscodeProgress(**vars(current))
            return snapshot
        return None


class Transcoder:
    """Encodes one input into one quality rendition

    Output is written to ``<output>.part`` and renamed into place only after
    ffmpeg exits cleanly, so the destination never holds a partial file.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        catalog: QualityCatalog,
        policy: Optional[EncoderPolicy] = None,
        ffmpeg_bin: str = "ffmpeg",
        timeout: float = 600.0,
    ):
        self.runner = runner
        self.catalog = catalog
        self.policy = policy or EncoderPolicy()
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout

    def build_command(self, input_path: Path, output_path: Path, profile: QualityProfile) -> List[str]:
        policy = self.policy
        return [
            self.ffmpeg_bin,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i", str(input_path),
            "-c:v", policy.video_codec,
            "-preset", policy.preset,
            "-crf", str(policy.crf),
            "-maxrate", profile.maxrate,
            "-bufsize", profile.bufsize,
            "-vf", f"scale={profile.width}:{profile.height}",
            "-pix_fmt", policy.pixel_format,
            "-c:a", policy.audio_codec,
            "-b:a", policy.audio_bitrate,
            "-ar", str(policy.audio_sample_rate),
            "-ac", str(policy.audio_channels),
            "-movflags", policy.movflags,
            "-progress", "pipe:1",
            "-nostats",
            "-f", policy.container,
            str(output_path),
        ]

    async def transcode(
        self,
        input_path,
        output_path,
        quality: str,
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
    ) -> Path:
        profile = self.catalog.resolve(quality)
        input_path = Path(input_path)
        output_path = Path(output_path)
        if not input_path.is_file():
            raise TranscodeError(detail=f"input {input_path} does not exist")

        ensure_dir(output_path.parent)
        partial_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
        parser = ProgressParser(duration)

        def on_line(line: str):
            snapshot = parser.feed(line)
            if snapshot is None or on_progress is None:
                return
            try:
                on_progress(snapshot)
            except Exception as e:
                logger.warning(f"Progress callback failed for {quality}: {e}")

        transcode_logger.info(f"Transcoding {input_path.name} to {quality} ({profile.resolution} @ {profile.bitrate})")
        succeeded = False
        try:
            result = await self.runner.run(
                self.build_command(input_path, partial_path, profile),
                timeout=self.timeout,
                on_line=on_line,
            )
            if not result.ok:
                if result.kind == ProcessErrorKind.NOT_FOUND:
                    raise ToolUnavailableError(detail=result.detail)
                transcode_logger.error(f"ffmpeg failed for {quality} of {input_path.name}: {result.detail}")
                if result.kind == ProcessErrorKind.TIMEOUT:
                    raise TranscodeError(f"Transcoding to {quality} timed out", detail=result.detail)
                raise TranscodeError(f"Transcoding to {quality} failed", detail=result.detail)

            if not partial_path.exists() or partial_path.stat().st_size == 0:
                raise TranscodeError(f"Transcoding to {quality} failed", detail="ffmpeg produced no output")

            os.replace(partial_path, output_path)
            succeeded = True
        finally:
            if not succeeded:
                partial_path.unlink(missing_ok=True)

        transcode_logger.info(f"Finished {quality} for {input_path.name}: {output_path.stat().st_size} bytes")
        return output_path
