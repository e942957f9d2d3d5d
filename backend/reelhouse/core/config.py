"""Application configuration using Pydantic BaseSettings"""
import logging
from pathlib import Path
from typing import List

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("config")


class QualitySetting(BaseModel):
    """One configurable output rendition"""
    name: str
    width: int
    height: int
    bitrate: str
    enabled: bool = True


DEFAULT_QUALITIES = [
    QualitySetting(name="360p", width=640, height=360, bitrate="500k"),
    QualitySetting(name="480p", width=854, height=480, bitrate="1000k"),
    QualitySetting(name="720p", width=1280, height=720, bitrate="2500k"),
    QualitySetting(name="1080p", width=1920, height=1080, bitrate="5000k"),
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./reelhouse.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    ENVIRONMENT: str = "development"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"

    # OpenTelemetry
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_SERVICE_NAME: str = "reelhouse-backend"
    OTEL_ENVIRONMENT: str = "development"

    # Storage
    STORAGE_BACKEND: str = "local"  # local | r2
    STORAGE_DIR: Path = Path("storage").resolve()
    STORAGE_PUBLIC_URL: str = "/files"
    WORK_DIR: Path = Path("work").resolve()

    # Cloudflare R2 (S3-compatible)
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET_NAME: str = ""
    R2_ENDPOINT_URL: str = ""
    R2_PUBLIC_DOMAIN: str = ""
    R2_PRESIGNED_URL_EXPIRY: int = 3600  # seconds

    # File uploads
    MAX_FILE_SIZE: int = 50 * 1024 * 1024  # 50MB in bytes
    ALLOWED_VIDEO_TYPES: List[str] = [
        "video/mp4",
        "video/webm",
        "video/ogg",
        "video/quicktime",
    ]
    UPLOAD_CHUNK_SIZE: int = 1024 * 1024
    UPLOAD_CHUNK_TIMEOUT: float = 300.0  # seconds per chunk

    # External tools
    FFMPEG_BIN: str = "ffmpeg"
    FFPROBE_BIN: str = "ffprobe"

    # Renditions
    VIDEO_QUALITIES: List[QualitySetting] = DEFAULT_QUALITIES

    # Encoder policy
    VIDEO_CODEC: str = "libx264"
    VIDEO_PRESET: str = "medium"
    VIDEO_CRF: int = 23
    VIDEO_PIXEL_FORMAT: str = "yuv420p"
    VIDEO_MOVFLAGS: str = "+faststart"
    AUDIO_CODEC: str = "aac"
    AUDIO_BITRATE: str = "128k"
    AUDIO_SAMPLE_RATE: int = 44100
    AUDIO_CHANNELS: int = 2

    # Thumbnails
    THUMBNAIL_COUNT: int = 3
    THUMBNAIL_WIDTH: int = 320
    THUMBNAIL_HEIGHT: int = 180
    THUMBNAIL_FORMAT: str = "jpg"
    THUMBNAIL_QUALITY: int = 80  # 0-100
    THUMBNAIL_FALLBACK_DURATION: float = 10.0  # seconds, used when probing gave no duration

    # Concurrency and timeouts
    MAX_CONCURRENT_TRANSCODES: int = 2
    TRANSCODE_TIMEOUT: float = 600.0  # seconds
    PROBE_TIMEOUT: float = 30.0
    THUMBNAIL_TIMEOUT: float = 60.0

    # Processing behaviour
    DELETE_ORIGINAL_AFTER_PROCESSING: bool = False

    # Stale job sweep
    STALE_SWEEP_ENABLED: bool = True
    STALE_SWEEP_INTERVAL: int = 300  # seconds
    STALE_PROCESSING_TIMEOUT: int = 3600  # seconds

    # Pydantic V2 Config
    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("MAX_CONCURRENT_TRANSCODES")
    @classmethod
    def check_concurrency(cls, v):
        if v < 1:
            raise ValueError("MAX_CONCURRENT_TRANSCODES must be at least 1")
        return v

    @field_validator("THUMBNAIL_QUALITY")
    @classmethod
    def check_thumbnail_quality(cls, v):
        if not 0 <= v <= 100:
            raise ValueError("THUMBNAIL_QUALITY must be between 0 and 100")
        return v

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def check_storage_backend(cls, v):
        v = v.lower()
        if v not in ("local", "r2"):
            raise ValueError("STORAGE_BACKEND must be 'local' or 'r2'")
        return v


# Create global settings instance
settings = Settings()
