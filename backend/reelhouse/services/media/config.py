"""Quality profiles, encoder policy and bitrate arithmetic"""
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from reelhouse.core.config import settings
from reelhouse.services.media.errors import UnsupportedQualityError

ORIGINAL_QUALITY = "original"

_BITRATE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmMgG]?)\s*$")
_BITRATE_UNITS = {"": 1, "k": 1000, "m": 1000 ** 2, "g": 1000 ** 3}


def parse_bitrate(value) -> int:
    """Parse a ``<number><unit>`` bitrate into bits per second

    >>> parse_bitrate("2500k")
    2500000
    """
    if isinstance(value, (int, float)):
        return int(value)
    match = _BITRATE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid bitrate: {value!r}")
    number, unit = match.groups()
    return int(round(float(number) * _BITRATE_UNITS[unit.lower()]))


def format_bitrate(bps: int) -> str:
    """Compose a bitrate string, using the largest unit that divides evenly"""
    bps = int(bps)
    for unit, factor in (("M", 1000 ** 2), ("k", 1000)):
        if bps and bps % factor == 0:
            return f"{bps // factor}{unit}"
    return str(bps)


@dataclass(frozen=True)
class QualityProfile:
    name: str
    width: int
    height: int
    bitrate: str
    enabled: bool = True

    @property
    def bitrate_bps(self) -> int:
        return parse_bitrate(self.bitrate)

    @property
    def maxrate(self) -> str:
        return format_bitrate(self.bitrate_bps)

    @property
    def bufsize(self) -> str:
        return format_bitrate(self.bitrate_bps * 2)

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class EncoderPolicy:
    """Fixed encoding parameters shared by every rendition"""
    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = 23
    pixel_format: str = "yuv420p"
    movflags: str = "+faststart"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    audio_sample_rate: int = 44100
    audio_channels: int = 2
    container: str = "mp4"


@dataclass(frozen=True)
class ThumbnailOptions:
    count: int = 3
    width: int = 320
    height: int = 180
    format: str = "jpg"
    quality: int = 80
    timestamps: Optional[tuple] = None

    @property
    def size(self) -> str:
        return f"{self.width}x{self.height}"


class QualityCatalog:
    """Ordered set of quality profiles, lowest resolution first"""

    def __init__(self, profiles: Iterable[QualityProfile]):
        ordered = sorted(profiles, key=lambda p: (p.height, p.width, p.bitrate_bps))
        self._profiles: Dict[str, QualityProfile] = {p.name: p for p in ordered}

    def resolve(self, name: str) -> QualityProfile:
        """Return the profile for ``name`` or raise UnsupportedQualityError"""
        profile = self._profiles.get(name)
        if profile is None:
            raise UnsupportedQualityError(name)
        return profile

    def knows(self, name: str) -> bool:
        return name in self._profiles

    def enabled(self) -> List[QualityProfile]:
        return [p for p in self._profiles.values() if p.enabled]

    def rank(self, name: str) -> int:
        """Position of a quality from lowest to highest, -1 when unknown"""
        for index, profile_name in enumerate(self._profiles):
            if profile_name == name:
                return index
        return -1

    def select(self, names: Optional[Iterable[str]] = None) -> List[QualityProfile]:
        """Resolve requested quality names, defaulting to every enabled profile

        Names must be known and enabled; duplicates are dropped.
        """
        if names is None:
            return self.enabled()
        selected = []
        for name in names:
            profile = self.resolve(name)
            if not profile.enabled:
                raise UnsupportedQualityError(name, detail="quality is disabled")
            if profile not in selected:
                selected.append(profile)
        return sorted(selected, key=lambda p: self.rank(p.name))

    def __iter__(self):
        return iter(self._profiles.values())

    def __len__(self):
        return len(self._profiles)


def load_quality_catalog() -> QualityCatalog:
    return QualityCatalog(
        QualityProfile(
            name=q.name, width=q.width, height=q.height,
            bitrate=q.bitrate, enabled=q.enabled
        )
        for q in settings.VIDEO_QUALITIES
    )


def load_encoder_policy() -> EncoderPolicy:
    return EncoderPolicy(
        video_codec=settings.VIDEO_CODEC,
        preset=settings.VIDEO_PRESET,
        crf=settings.VIDEO_CRF,
        pixel_format=settings.VIDEO_PIXEL_FORMAT,
        movflags=settings.VIDEO_MOVFLAGS,
        audio_codec=settings.AUDIO_CODEC,
        audio_bitrate=settings.AUDIO_BITRATE,
        audio_sample_rate=settings.AUDIO_SAMPLE_RATE,
        audio_channels=settings.AUDIO_CHANNELS,
    )


def load_thumbnail_options() -> ThumbnailOptions:
    return ThumbnailOptions(
        count=settings.THUMBNAIL_COUNT,
        width=settings.THUMBNAIL_WIDTH,
        height=settings.THUMBNAIL_HEIGHT,
        format=settings.THUMBNAIL_FORMAT,
        quality=settings.THUMBNAIL_QUALITY,
    )
