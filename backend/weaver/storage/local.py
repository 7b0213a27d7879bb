"""Durable object store on the local filesystem.

Objects live at ``<root>/<key>``; custom metadata is not persisted.  Used for
development and tests.
"""
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

from weaver.errors import StorageDeleteFailed, StorageWriteFailed

from .base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str = "uploads", public_base_url: Optional[str] = None) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._public_base_url = (public_base_url or self._root.resolve().as_uri()).rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the store root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()

    async def write(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredObject:
        try:
            path = self._path_for(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, path.write_bytes, data)
        except (OSError, ValueError) as exc:
            logger.error("[storage/local] Failed to write %s: %s", key, exc)
            raise StorageWriteFailed(
                f"Failed to write {key}",
                technical_detail=str(exc),
            ) from exc

        logger.info("[storage/local] Stored %s (%d bytes)", key, len(data))
        return StoredObject(key=key, url=self.url_for(key), size=len(data))

    async def delete(self, key: str) -> None:
        try:
            path = self._path_for(key)
            path.unlink(missing_ok=True)
        except (OSError, ValueError) as exc:
            raise StorageDeleteFailed(f"Failed to delete {key}", technical_detail=str(exc)) from exc
        logger.info("[storage/local] Deleted %s", key)
