"""
Artifact Storage

Background-removed previews ("previews/") and saved downloads ("exports/")
are kept behind IStorage so the pipeline never touches paths directly.
Keys are "<folder>/<name>" strings; LocalStorage serves them under
/static/storage.
"""

import uuid
import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from datetime import datetime

from src.core.config import settings

STATIC_PREFIX = "/static/storage"


class IStorage(ABC):
    """Key/value store for pipeline artifacts."""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "previews",
        content_type: str = "image/png",
        keep_name: bool = False
    ) -> str:
        """
        Store bytes and return their storage key.

        Args:
            file_data: Encoded image bytes
            filename: Name the artifact was produced under; only its suffix
                is kept unless ``keep_name`` is set
            folder: Key prefix ("previews" or "exports")
            content_type: MIME type of the bytes
            keep_name: Store under ``filename`` (download names)
        """

    @abstractmethod
    async def download(self, storage_key: str) -> bytes:
        """Read stored bytes. Raises FileNotFoundError for unknown keys."""

    @abstractmethod
    async def get_url(self, storage_key: str) -> str:
        """URL a client can fetch the artifact from."""

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        """Remove an artifact. False if it was already gone."""

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        pass


class LocalStorage(IStorage):
    """Artifacts on the local filesystem. File IO runs in worker threads."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise FileNotFoundError(f"Invalid storage key: {storage_key}")
        return path

    @staticmethod
    def _generated_name(filename: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{timestamp}_{uuid.uuid4().hex[:12]}{Path(filename).suffix}"

    async def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "previews",
        content_type: str = "image/png",
        keep_name: bool = False
    ) -> str:
        stored_name = Path(filename).name if keep_name else self._generated_name(filename)
        storage_key = f"{folder}/{stored_name}"
        path = self._path(storage_key)

        def write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(file_data)

        await asyncio.to_thread(write)
        return storage_key

    async def download(self, storage_key: str) -> bytes:
        path = self._path(storage_key)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {storage_key}")
        return await asyncio.to_thread(path.read_bytes)

    async def get_url(self, storage_key: str) -> str:
        if not self._path(storage_key).is_file():
            raise FileNotFoundError(f"File not found: {storage_key}")
        return f"{STATIC_PREFIX}/{storage_key}"

    async def delete(self, storage_key: str) -> bool:
        try:
            self._path(storage_key).unlink()
        except OSError:
            return False
        return True

    async def exists(self, storage_key: str) -> bool:
        try:
            return self._path(storage_key).is_file()
        except FileNotFoundError:
            return False


class StorageFactory:
    """
    Process-wide storage instance.

    Local disk is the only backend; callers depend on IStorage so a bucket
    can replace it without touching the pipeline.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        if cls._instance is None:
            cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
        return cls._instance


def get_storage() -> IStorage:
    """Storage instance for FastAPI Depends()."""
    return StorageFactory.get_storage()
