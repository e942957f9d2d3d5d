"""Error taxonomy for the media pipeline

Every error carries a user-safe ``public_message`` and an optional ``detail``
with raw diagnostics (tool stderr, paths). Only ``public_message`` is ever
returned to clients; ``detail`` is for server logs.
"""
from typing import Optional


class MediaPipelineError(Exception):
    """Base class for media pipeline failures"""
    status_code = 500
    default_message = "Media processing failed"

    def __init__(self, public_message: Optional[str] = None, detail: Optional[str] = None):
        self.public_message = public_message or self.default_message
        self.detail = detail
        super().__init__(self.public_message)

    def __str__(self):
        if self.detail:
            return f"{self.public_message} ({self.detail})"
        return self.public_message


# Input errors

class UnsupportedQualityError(MediaPipelineError):
    status_code = 400
    default_message = "Unsupported quality"

    def __init__(self, quality: str, detail: Optional[str] = None):
        self.quality = quality
        super().__init__(f"Unsupported quality: {quality}", detail)


class UnsupportedMediaTypeError(MediaPipelineError):
    status_code = 415
    default_message = "Unsupported file type"


class FileTooLargeError(MediaPipelineError):
    status_code = 413
    default_message = "File too large"


class RangeNotSatisfiableError(MediaPipelineError):
    status_code = 416
    default_message = "Requested range not satisfiable"

    def __init__(self, file_size: int, detail: Optional[str] = None):
        self.file_size = file_size
        super().__init__(None, detail)


# Lookup and state errors

class AssetNotFoundError(MediaPipelineError):
    status_code = 404
    default_message = "Video not found"


class StreamNotReadyError(MediaPipelineError):
    status_code = 409
    default_message = "Video is not ready for streaming"


class AssetBusyError(MediaPipelineError):
    status_code = 409
    default_message = "Video is currently being processed"


class InvalidStateTransitionError(MediaPipelineError):
    status_code = 409
    default_message = "Invalid status transition"


# Tool and processing errors

class NoVideoStreamError(MediaPipelineError):
    status_code = 422
    default_message = "File does not contain a video stream"


class ProbeFailedError(MediaPipelineError):
    status_code = 422
    default_message = "Could not read video file"


class TranscodeError(MediaPipelineError):
    default_message = "Transcoding failed"


class ThumbnailGenerationError(MediaPipelineError):
    default_message = "Thumbnail generation failed"


class ToolUnavailableError(MediaPipelineError):
    status_code = 503
    default_message = "Media processing is temporarily unavailable"


class StorageError(MediaPipelineError):
    default_message = "Storage operation failed"
