"""Byte-range streaming of stored originals and renditions"""
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from reelhouse.services.media.config import ORIGINAL_QUALITY, QualityCatalog
from reelhouse.services.media.errors import (
    AssetNotFoundError, RangeNotSatisfiableError, StreamNotReadyError, UnsupportedQualityError
)
from reelhouse.services.media.status import AssetStatus
from reelhouse.services.storage.base import DEFAULT_CHUNK_SIZE, ArtifactStore

stream_logger = logging.getLogger("stream")

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: int) -> str:
        return f"bytes {self.start}-{self.end}/{total}"


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Parse a single ``bytes=`` range against a file of ``size`` bytes

    Returns None when no header was sent. Accepts ``start-end``, ``start-``
    and the suffix form ``-N``; an end past the file is clamped. Anything
    unsatisfiable raises RangeNotSatisfiableError: malformed or multi-range
    headers, start past the end of the file, start > end, a zero-length
    suffix, or any range on an empty file.
    """
    if header is None or not header.strip():
        return None

    match = _RANGE_RE.match(header)
    if not match:
        raise RangeNotSatisfiableError(size, detail=f"malformed range {header!r}")
    start_text, end_text = match.groups()

    if size <= 0:
        raise RangeNotSatisfiableError(size, detail="range requested on empty file")

    if not start_text:
        if not end_text:
            raise RangeNotSatisfiableError(size, detail=f"malformed range {header!r}")
        suffix = int(end_text)
        if suffix == 0:
            raise RangeNotSatisfiableError(size, detail="zero-length suffix range")
        return ByteRange(max(0, size - suffix), size - 1)

    start = int(start_text)
    if start >= size:
        raise RangeNotSatisfiableError(size, detail=f"start {start} beyond size {size}")
    end = int(end_text) if end_text else size - 1
    if end < start:
        raise RangeNotSatisfiableError(size, detail=f"start {start} after end {end}")
    return ByteRange(start, min(end, size - 1))


@dataclass
class StreamInfo:
    body: Iterator[bytes]
    content_length: int
    total_size: int
    status_code: int
    byte_range: Optional[ByteRange] = None
    headers: Dict[str, str] = field(default_factory=dict)


def guess_media_type(key: str) -> str:
    media_type, _ = mimetypes.guess_type(key)
    return media_type or "application/octet-stream"


def open_stream(
    store: ArtifactStore,
    key: str,
    range_header: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> StreamInfo:
    try:
        total = store.size(key)
        byte_range = parse_range_header(range_header, total)
        if byte_range is None:
            body = store.iter_range(key, 0, total - 1, chunk_size) if total > 0 else iter(())
        else:
            body = store.iter_range(key, byte_range.start, byte_range.end, chunk_size)
    except FileNotFoundError:
        stream_logger.warning(f"Stored file vanished before streaming: {key}")
        raise AssetNotFoundError("Video file not found", detail=key)

    headers = {"Accept-Ranges": "bytes", "Content-Type": guess_media_type(key)}
    if byte_range is None:
        headers["Content-Length"] = str(total)
        return StreamInfo(body, total, total, 200, None, headers)

    headers["Content-Length"] = str(byte_range.length)
    headers["Content-Range"] = byte_range.content_range(total)
    return StreamInfo(body, byte_range.length, total, 206, byte_range, headers)


def stream_candidates(
    asset,
    renditions: Iterable,
    catalog: QualityCatalog,
    requested: Optional[str] = None,
) -> List[Tuple[str, str]]:
    """Ordered ``(quality, key)`` choices for a stream request

    A requested rendition comes first, then the remaining renditions from
    highest to lowest, then the original. Without a quality (or with
    ``original``) the original comes first, then renditions from highest.
    """
    if AssetStatus(asset.status) == AssetStatus.UPLOADING:
        raise StreamNotReadyError()
    if requested and requested != ORIGINAL_QUALITY and not catalog.knows(requested):
        raise UnsupportedQualityError(requested)

    by_quality = {r.quality: r for r in renditions}
    ranked = sorted(by_quality.values(), key=lambda r: catalog.rank(r.quality), reverse=True)
    original = [] if asset.original_deleted else [(ORIGINAL_QUALITY, asset.path)]

    if requested and requested != ORIGINAL_QUALITY:
        exact = [(requested, by_quality[requested].path)] if requested in by_quality else []
        others = [(r.quality, r.path) for r in ranked if r.quality != requested]
        return exact + others + original
    return original + [(r.quality, r.path) for r in ranked]


def optimal_quality(renditions: Iterable, catalog: QualityCatalog, speed_mbps: Optional[float] = None) -> str:
    """Rendition best suited to a connection of ``speed_mbps`` megabits per second

    Without a speed the highest available rendition wins. Otherwise it is the
    highest rendition whose bitrate fits the connection, or the lowest one
    when none does.
    """
    available = sorted({r.quality for r in renditions if catalog.knows(r.quality)}, key=catalog.rank)
    if not available:
        raise AssetNotFoundError("No qualities available")
    if not speed_mbps:
        return available[-1]
    budget = speed_mbps * 1_000_000
    fitting = [q for q in available if catalog.resolve(q).bitrate_bps <= budget]
    return fitting[-1] if fitting else available[0]


def select_stream(
    store: ArtifactStore,
    asset,
    renditions: Iterable,
    catalog: QualityCatalog,
    requested: Optional[str] = None,
) -> Tuple[str, str]:
    """First candidate whose bytes are actually in the store"""
    for quality, key in stream_candidates(asset, renditions, catalog, requested):
        if store.exists(key):
            if requested and quality != requested:
                stream_logger.info(f"Quality {requested} unavailable for {asset.id}, serving {quality}")
            return quality, key
    raise AssetNotFoundError("Video file not found", detail=f"nothing to stream for {asset.id}")
