"""Artifact store interface

Keys are relative, ``/``-separated names (``videos/renditions/abc/720p.mp4``).
The pipeline only talks to this interface so the backing medium can be local
disk or S3-compatible object storage.
"""
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Iterator, List

from reelhouse.services.media.errors import StorageError

DEFAULT_CHUNK_SIZE = 64 * 1024


def normalize_key(key: str) -> str:
    """Validate a store key and strip leading slashes"""
    if not key or not str(key).strip("/"):
        raise StorageError(detail="object key cannot be empty")
    path = PurePosixPath(str(key).lstrip("/"))
    if any(part in ("..", ".") for part in path.parts):
        raise StorageError(detail=f"invalid object key: {key}")
    return str(path)


class ArtifactStore(ABC):
    """Byte store addressed by key

    Missing keys raise FileNotFoundError from ``get``, ``size``, ``iter_range``,
    ``move``, ``copy`` and ``materialize``; ``delete`` of a missing key is a no-op.
    Backend failures raise StorageError.
    """

    @abstractmethod
    def save(self, key: str, data: bytes) -> str:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def move(self, src: str, dst: str) -> str:
        ...

    @abstractmethod
    def copy(self, src: str, dst: str) -> str:
        ...

    @abstractmethod
    def get_url(self, key: str) -> str:
        ...

    @abstractmethod
    def size(self, key: str) -> int:
        ...

    @abstractmethod
    def iter_range(self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield bytes ``start`` through ``end`` inclusive"""

    @abstractmethod
    def put_file(self, local_path: Path, key: str) -> str:
        ...

    @abstractmethod
    def materialize(self, key: str, dest_path: Path) -> Path:
        """Write the object to a local file for tools that need a path"""

    @abstractmethod
    def list_keys(self, prefix: str) -> List[str]:
        ...

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key in the ``prefix`` directory; returns the number removed"""
        keys = self.list_keys(prefix)
        for key in keys:
            self.delete(key)
        return len(keys)
