"""
Blob storage backends for externalized dataset payloads and file attachments.

SupabaseBlobStore talks to a Supabase storage bucket (the SDK is synchronous,
so calls run in a worker thread). InMemoryBlobStore backs tests and local runs.
"""

import asyncio
import structlog
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from core_infrastructure.config_manager import StorageConfig, get_storage_config
from core_infrastructure.errors import BlobIOError, BlobNotFound

logger = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class BlobStore(ABC):
    """put/get/delete by opaque id. delete of a missing id is not an error."""

    @abstractmethod
    async def put(self, blob_id: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        ...

    @abstractmethod
    async def get(self, blob_id: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, blob_id: str) -> bool:
        """Returns True when something was removed, False when the id was already gone."""


class InMemoryBlobStore(BlobStore):
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    async def put(self, blob_id: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        self.blobs[blob_id] = bytes(data)
        self.content_types[blob_id] = content_type
        return blob_id

    async def get(self, blob_id: str) -> bytes:
        try:
            return self.blobs[blob_id]
        except KeyError:
            raise BlobNotFound("Blob not found", blob_id=blob_id) from None

    async def delete(self, blob_id: str) -> bool:
        self.content_types.pop(blob_id, None)
        return self.blobs.pop(blob_id, None) is not None


def _status_of(error: Exception) -> Optional[int]:
    """Supabase storage errors carry a dict with statusCode as their first arg."""
    payload: Any = error.args[0] if error.args else None
    if isinstance(payload, dict):
        status = payload.get('statusCode') or payload.get('status')
        try:
            return int(status) if status is not None else None
        except (TypeError, ValueError):
            return None
    return getattr(error, 'status', None) or getattr(error, 'status_code', None)


class SupabaseBlobStore(BlobStore):
    def __init__(self, supabase, bucket: str):
        self.supabase = supabase
        self.bucket = bucket

    def _storage(self):
        return self.supabase.storage.from_(self.bucket)

    async def put(self, blob_id: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        try:
            await asyncio.to_thread(
                self._storage().upload,
                blob_id,
                data,
                {"content-type": content_type, "upsert": "true"},
            )
        except Exception as e:
            logger.error("blob_upload_failed", bucket=self.bucket, blob_id=blob_id, error=str(e))
            raise BlobIOError("Blob upload failed", blob_id=blob_id, error=str(e)) from e
        return blob_id

    async def get(self, blob_id: str) -> bytes:
        try:
            return await asyncio.to_thread(self._storage().download, blob_id)
        except Exception as e:
            if _status_of(e) in (400, 404) or 'not found' in str(e).lower():
                raise BlobNotFound("Blob not found", blob_id=blob_id) from e
            logger.error("blob_download_failed", bucket=self.bucket, blob_id=blob_id, error=str(e))
            raise BlobIOError("Blob download failed", blob_id=blob_id, error=str(e)) from e

    async def delete(self, blob_id: str) -> bool:
        try:
            removed = await asyncio.to_thread(self._storage().remove, [blob_id])
        except Exception as e:
            if _status_of(e) == 404:
                return False
            raise BlobIOError("Blob delete failed", blob_id=blob_id, error=str(e)) from e
        return bool(removed)


def create_blob_store(config: Optional[StorageConfig] = None) -> BlobStore:
    """Build the configured blob backend."""
    config = config or get_storage_config()
    if config.backend == "memory":
        return InMemoryBlobStore()
    from core_infrastructure.supabase_client import get_supabase_client
    return SupabaseBlobStore(get_supabase_client(), config.bucket)
