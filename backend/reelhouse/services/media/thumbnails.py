"""Still-frame extraction"""
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from reelhouse.services.media.config import ThumbnailOptions
from reelhouse.services.media.errors import ThumbnailGenerationError, ToolUnavailableError
from reelhouse.services.media.process import ProcessErrorKind, ProcessRunner, ensure_dir

transcode_logger = logging.getLogger("transcode")


def compute_thumbnail_timestamps(duration: float, count: int) -> List[float]:
    """``count`` evenly spaced points strictly inside (0, duration)

    >>> compute_thumbnail_timestamps(120, 3)
    [30.0, 60.0, 90.0]
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    if duration <= 0:
        raise ValueError("duration must be positive")
    step = duration / (count + 1)
    return [round(step * i, 3) for i in range(1, count + 1)]


def jpeg_qscale(quality: int) -> int:
    """Map a 0-100 quality to ffmpeg's mjpeg qscale (2 best, 31 worst)"""
    quality = max(0, min(100, int(quality)))
    return max(2, min(31, round(31 - quality / 100 * 29)))


def thumbnail_name(index: int, fmt: str) -> str:
    return f"thumb_{index}.{fmt}"


class ThumbnailGenerator:
    """Extracts one still per timestamp

    A failed timestamp does not stop the others; the call only fails when no
    thumbnail at all could be written.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        ffmpeg_bin: str = "ffmpeg",
        timeout: float = 60.0,
        fallback_duration: float = 10.0,
    ):
        self.runner = runner
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout
        self.fallback_duration = fallback_duration

    def resolve_timestamps(self, options: ThumbnailOptions, duration: Optional[float]) -> Sequence[float]:
        if options.timestamps:
            return list(options.timestamps)
        if not duration or duration <= 0:
            # Degraded mode: without a probed duration the frames may land past the end
            transcode_logger.warning(
                f"No duration available, assuming {self.fallback_duration}s for thumbnail timestamps"
            )
            duration = self.fallback_duration
        return compute_thumbnail_timestamps(duration, options.count)

    def build_command(self, input_path: Path, output_path: Path, timestamp: float, options: ThumbnailOptions):
        cmd = [
            self.ffmpeg_bin,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-ss", f"{timestamp:.3f}",
            "-i", str(input_path),
            "-frames:v", "1",
            "-vf", f"scale={options.width}:{options.height}",
        ]
        fmt = options.format.lower()
        if fmt in ("jpg", "jpeg"):
            cmd += ["-q:v", str(jpeg_qscale(options.quality))]
        elif fmt == "webp":
            cmd += ["-quality", str(options.quality)]
        cmd.append(str(output_path))
        return cmd

    async def generate_thumbnails(
        self,
        input_path,
        output_dir,
        options: Optional[ThumbnailOptions] = None,
        duration: Optional[float] = None,
    ) -> List[Path]:
        options = options or ThumbnailOptions()
        input_path = Path(input_path)
        output_dir = Path(output_dir)
        ensure_dir(output_dir)

        timestamps = self.resolve_timestamps(options, duration)
        outputs: List[Path] = []
        failures = []

        for index, timestamp in enumerate(timestamps, start=1):
            output_path = output_dir / thumbnail_name(index, options.format)
            result = await self.runner.run(
                self.build_command(input_path, output_path, timestamp, options),
                timeout=self.timeout,
            )
            if not result.ok:
                if result.kind == ProcessErrorKind.NOT_FOUND:
                    raise ToolUnavailableError(detail=result.detail)
                failures.append(f"{timestamp}s: {result.detail}")
                output_path.unlink(missing_ok=True)
                continue
            if not output_path.exists() or output_path.stat().st_size == 0:
                failures.append(f"{timestamp}s: no frame written")
                output_path.unlink(missing_ok=True)
                continue
            outputs.append(output_path)

        if failures:
            transcode_logger.warning(
                f"{len(failures)} of {len(timestamps)} thumbnails failed for {input_path.name}: "
                + "; ".join(failures)
            )
        if not outputs:
            raise ThumbnailGenerationError(detail="; ".join(failures))
        return outputs
