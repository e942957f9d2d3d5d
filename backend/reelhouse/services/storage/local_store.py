"""Artifact store on the local filesystem"""
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Iterator, List
from urllib.parse import quote

from reelhouse.services.media.errors import StorageError
from reelhouse.services.storage.base import DEFAULT_CHUNK_SIZE, ArtifactStore, normalize_key

logger = logging.getLogger(__name__)


class LocalArtifactStore(ArtifactStore):
    """Keys map to files under ``root``; writes land via temp file + os.replace"""

    def __init__(self, root: Path, public_url: str = "/files"):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / normalize_key(key)).resolve()
        if self.root not in path.parents:
            raise StorageError(detail=f"key escapes storage root: {key}")
        return path

    def _temp_path(self, path: Path) -> Path:
        return path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")

    def _prune_empty_dirs(self, path: Path) -> None:
        parent = path.parent
        while parent != self.root and self.root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def _write_via_temp(self, path: Path, writer) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp = self._temp_path(path)
        try:
            writer(temp)
            os.replace(temp, path)
        except OSError as e:
            temp.unlink(missing_ok=True)
            raise StorageError(detail=f"failed to write {path}: {e}")

    def save(self, key: str, data: bytes) -> str:
        path = self._path(key)
        self._write_via_temp(path, lambda temp: temp.write_bytes(data))
        return normalize_key(key)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(key)
        return path.read_bytes()

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(detail=f"failed to delete {key}: {e}")
        self._prune_empty_dirs(path)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def move(self, src: str, dst: str) -> str:
        src_path, dst_path = self._path(src), self._path(dst)
        if not src_path.is_file():
            raise FileNotFoundError(src)
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(src_path, dst_path)
        except OSError:
            # different filesystem
            shutil.move(str(src_path), str(dst_path))
        self._prune_empty_dirs(src_path)
        return normalize_key(dst)

    def copy(self, src: str, dst: str) -> str:
        src_path = self._path(src)
        if not src_path.is_file():
            raise FileNotFoundError(src)
        self._write_via_temp(self._path(dst), lambda temp: shutil.copyfile(src_path, temp))
        return normalize_key(dst)

    def get_url(self, key: str) -> str:
        return f"{self.public_url}/{quote(normalize_key(key))}"

    def size(self, key: str) -> int:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(key)
        return path.stat().st_size

    def iter_range(self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(key)
        return self._read_range(path, start, end, chunk_size)

    @staticmethod
    def _read_range(path: Path, start: int, end: int, chunk_size: int) -> Iterator[bytes]:
        remaining = end - start + 1
        with open(path, "rb") as f:
            f.seek(start)
            while remaining > 0:
                chunk = f.read(min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    def put_file(self, local_path: Path, key: str) -> str:
        local_path = Path(local_path)
        if not local_path.is_file():
            raise FileNotFoundError(str(local_path))
        self._write_via_temp(self._path(key), lambda temp: shutil.copyfile(local_path, temp))
        return normalize_key(key)

    def materialize(self, key: str, dest_path: Path) -> Path:
        src_path = self._path(key)
        if not src_path.is_file():
            raise FileNotFoundError(key)
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src_path, dest_path)
        return dest_path

    def list_keys(self, prefix: str) -> List[str]:
        base = self._path(prefix)
        if base.is_file():
            return [normalize_key(prefix)]
        if not base.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in base.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )

    def delete_prefix(self, prefix: str) -> int:
        removed = super().delete_prefix(prefix)
        base = self._path(prefix)
        if base.is_dir():
            shutil.rmtree(base, ignore_errors=True)
            self._prune_empty_dirs(base)
        return removed
