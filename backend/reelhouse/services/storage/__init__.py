"""Artifact store backends"""
from reelhouse.core.config import settings
from reelhouse.services.storage.base import ArtifactStore
from reelhouse.services.storage.local_store import LocalArtifactStore

_store = None


def get_artifact_store() -> ArtifactStore:
    """Get or create the configured artifact store (lazy initialization)"""
    global _store
    if _store is None:
        if settings.STORAGE_BACKEND == "r2":
            from reelhouse.services.storage.r2_service import R2ArtifactStore
            _store = R2ArtifactStore()
        else:
            _store = LocalArtifactStore(settings.STORAGE_DIR, settings.STORAGE_PUBLIC_URL)
    return _store


__all__ = ["ArtifactStore", "LocalArtifactStore", "get_artifact_store"]
