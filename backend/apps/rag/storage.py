"""
Blob persistence for the vector store.

The store serializes its whole record set into one blob kept under a
fixed key. Two backends are provided:
- FileBlobStorage: one JSON file per key in a local directory (default)
- RedisBlobStorage: one Redis string per key
"""
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a blob cannot be written."""
    pass


class BlobStorage(ABC):
    """Key-value storage for serialized blobs."""

    @abstractmethod
    def load(self, key: str) -> Optional[str]:
        """Return the blob stored under ``key``, or None if absent."""
        pass

    @abstractmethod
    def save(self, key: str, blob: str) -> None:
        """Store ``blob`` under ``key``, replacing any previous value."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the blob stored under ``key`` if present."""
        pass


class FileBlobStorage(BlobStorage):
    """Stores each blob as ``<directory>/<key>.json``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def load(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding='utf-8')

    def save(self, key: str, blob: str) -> None:
        path = self._path(key)

        # Write to a temp file then rename, so a crash never leaves half a blob
        tmp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix='.tmp')
            with os.fdopen(fd, 'w', encoding='utf-8') as tmp:
                tmp.write(blob)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write {path}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


class RedisBlobStorage(BlobStorage):
    """Stores each blob as a Redis string."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or get_redis_client()

    def load(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def save(self, key: str, blob: str) -> None:
        try:
            self.client.set(key, blob)
        except redis.RedisError as e:
            raise StorageError(f"Failed to write key {key}: {e}") from e

    def delete(self, key: str) -> None:
        self.client.delete(key)


def get_redis_client() -> redis.Redis:
    """Get a Redis client from the configured URL."""
    redis_url = getattr(settings, 'REDIS_URL', 'redis://localhost:6379/0')
    return redis.from_url(redis_url, decode_responses=True)


def get_blob_storage() -> BlobStorage:
    """
    Build the storage backend selected by VECTOR_STORE_BACKEND.

    - "file" (default): JSON files under VECTOR_STORE_DIR
    - "redis": Redis at REDIS_URL
    """
    backend = getattr(settings, 'VECTOR_STORE_BACKEND', 'file').lower()

    if backend == 'redis':
        logger.info("Using Redis for vector store persistence")
        return RedisBlobStorage()

    directory = getattr(settings, 'VECTOR_STORE_DIR', Path('data/vector_store'))
    logger.info(f"Using file storage for vector store persistence: {directory}")
    return FileBlobStorage(Path(directory))
