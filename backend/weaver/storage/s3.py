"""S3-compatible durable object store (AWS S3, Cloudflare R2, MinIO, ...).

boto3 is synchronous, so every call runs in the default executor to keep
the event loop free.  The client is created lazily and cached.
"""
import asyncio
import logging
from typing import Dict, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from weaver.errors import StorageDeleteFailed, StorageWriteFailed

from .base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)


def encode_metadata(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Percent-encode metadata values; S3 only accepts ASCII in user metadata."""
    return {k: quote(str(v), safe="") for k, v in (metadata or {}).items()}


class S3ObjectStore(ObjectStore):
    """Object store backed by an S3-compatible bucket.

    Args:
        bucket:                Bucket name.
        public_base_url:       Base URL objects are served from.
        endpoint_url:          Custom endpoint (R2/MinIO).  ``None`` → AWS.
        region_name:           Region; R2 uses ``auto``.
        aws_access_key_id:     Access key.  ``None`` → default credential chain.
        aws_secret_access_key: Secret key.
        cache_control:         Cache-Control header stored with each object.
    """

    def __init__(
        self,
        bucket: str,
        public_base_url: str,
        endpoint_url: Optional[str] = None,
        region_name: str = "auto",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        cache_control: Optional[str] = "public, max-age=31536000",
    ) -> None:
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._endpoint_url = endpoint_url
        self._region = region_name
        self._access_key = aws_access_key_id
        self._secret_key = aws_secret_access_key
        self._cache_control = cache_control
        self._client: Optional[object] = None

    def _get_client(self) -> object:
        """Return a cached boto3 s3 client."""
        if self._client is None:
            kwargs: dict = {"region_name": self._region}
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            if self._access_key and self._secret_key:
                kwargs["aws_access_key_id"]     = self._access_key
                kwargs["aws_secret_access_key"] = self._secret_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def url_for(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"

    async def write(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StoredObject:
        params = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
            "Metadata": encode_metadata(metadata),
        }
        if self._cache_control:
            params["CacheControl"] = self._cache_control

        loop = asyncio.get_event_loop()
        try:
            client = self._get_client()
            await loop.run_in_executor(None, lambda: client.put_object(**params))
        except (ClientError, BotoCoreError, ValueError) as exc:
            logger.error("[storage/s3] put_object failed for %s: %s", key, exc)
            raise StorageWriteFailed(
                f"Failed to write {key} to bucket {self._bucket}",
                technical_detail=str(exc),
            ) from exc

        logger.info("[storage/s3] Stored %s (%d bytes)", key, len(data))
        return StoredObject(key=key, url=self.url_for(key), size=len(data))

    async def delete(self, key: str) -> None:
        loop = asyncio.get_event_loop()
        try:
            client = self._get_client()
            await loop.run_in_executor(
                None, lambda: client.delete_object(Bucket=self._bucket, Key=key)
            )
        except (ClientError, BotoCoreError, ValueError) as exc:
            raise StorageDeleteFailed(
                f"Failed to delete {key} from bucket {self._bucket}",
                technical_detail=str(exc),
            ) from exc
        logger.info("[storage/s3] Deleted %s", key)
