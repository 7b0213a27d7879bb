"""Durable object store: the system of record for uploaded bytes."""
from .base import ObjectStore, StoredObject, build_storage_key
from .local import LocalObjectStore
from .s3 import S3ObjectStore

__all__ = [
    "ObjectStore",
    "StoredObject",
    "build_storage_key",
    "LocalObjectStore",
    "S3ObjectStore",
]
