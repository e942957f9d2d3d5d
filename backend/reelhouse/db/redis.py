"""Redis client for live processing progress

Progress is advisory: every helper logs and swallows Redis errors so a
missing Redis never breaks processing or status polling.
"""
import logging
from typing import Dict

import redis

from reelhouse.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

# Progress TTL (1 hour)
PROGRESS_TTL = 60 * 60


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _client


def _progress_key(asset_id: str) -> str:
    return f"processing:{asset_id}"


def set_processing_progress(asset_id: str, quality: str, percent: float) -> None:
    """Store the live percent for one quality of an asset"""
    key = _progress_key(asset_id)
    try:
        client = get_redis_client()
        client.hset(key, quality, f"{percent:.1f}")
        client.expire(key, PROGRESS_TTL)
    except redis.RedisError as e:
        logger.warning(f"Failed to store progress for {asset_id}: {e}")


def get_processing_progress(asset_id: str) -> Dict[str, float]:
    try:
        raw = get_redis_client().hgetall(_progress_key(asset_id))
    except redis.RedisError as e:
        logger.warning(f"Failed to read progress for {asset_id}: {e}")
        return {}
    progress = {}
    for quality, value in (raw or {}).items():
        try:
            progress[quality] = float(value)
        except (TypeError, ValueError):
            continue
    return progress


def clear_processing_progress(asset_id: str) -> None:
    try:
        get_redis_client().delete(_progress_key(asset_id))
    except redis.RedisError as e:
        logger.warning(f"Failed to clear progress for {asset_id}: {e}")


def ping_redis() -> bool:
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False
