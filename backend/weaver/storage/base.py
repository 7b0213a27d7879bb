"""Abstract interface for the durable object store.

A write either stores the complete object and returns its public URL, or
raises ``StorageWriteFailed``.  Implementations never retry; the caller
decides what a failure means for the surrounding operation.
"""
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class StoredObject:
    key:  str
    url:  str
    size: int


def build_storage_key(
    memory_id: str,
    sanitized_filename: str,
    timestamp: Optional[float] = None,
) -> str:
    """Build a collision-resistant key: ``memories/<memory_id>/<ms>_<random>_<name>``."""
    millis = int((timestamp if timestamp is not None else time.time()) * 1000)
    return f"memories/{memory_id}/{millis}_{secrets.token_hex(4)}_{sanitized_filename}"


class ObjectStore(ABC):
    """Durable, URL-addressable blob storage."""

    @abstractmethod
    async def write(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredObject:
        """Store *data* under *key*.

        Raises:
            StorageWriteFailed: If the object could not be stored.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key*.  Deleting a missing key is not an error."""

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Public URL for *key*."""
