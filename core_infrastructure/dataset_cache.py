"""
Dataset Cache Layer
===================

Read-through cache for full dataset views, keyed by (owner, dataset).
Entries are gzip+base64 envelopes:

    {"compressed": true, "origSize": <bytes>, "data": "<base64 gzip JSON>"}

Payloads above the ceiling are not cached at all (the caller gets False and a
warning); payloads above the warning threshold are cached but logged.
An entry that fails to decode is deleted and reported as a miss.
"""

import base64
import binascii
import gzip
import structlog
import orjson
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from core_infrastructure.centralized_cache import CentralizedCache
from core_infrastructure.config_manager import CacheConfig, get_cache_config
from core_infrastructure.observability import CACHE_SKIPPED

logger = structlog.get_logger(__name__)

TOO_LARGE_WARNING = "Dataset is too large to cache; reads will go to storage"


@dataclass
class CacheWriteResult:
    stored: bool
    size_bytes: int
    warning: Optional[str] = None


def dataset_key(owner_id: str, dataset_id: str) -> str:
    return f"dataset:{owner_id}:{dataset_id}"


def metadata_key(owner_id: str, dataset_id: str) -> str:
    return f"{dataset_key(owner_id, dataset_id)}:metadata"


def encode_entry(payload: Any) -> Dict[str, Any]:
    raw = orjson.dumps(payload)
    return {
        "compressed": True,
        "origSize": len(raw),
        "data": base64.b64encode(gzip.compress(raw)).decode("ascii"),
    }


def decode_entry(entry: Any) -> Any:
    """Inverse of encode_entry. Raises ValueError on anything malformed."""
    if not isinstance(entry, dict) or "data" not in entry:
        raise ValueError("Cache entry is not an envelope")
    if not entry.get("compressed"):
        return entry["data"]
    try:
        raw = gzip.decompress(base64.b64decode(entry["data"], validate=True))
    except (binascii.Error, OSError, EOFError, TypeError) as e:
        raise ValueError(f"Cache entry does not decompress: {e}") from e
    return orjson.loads(raw)


class DatasetCache:
    def __init__(self, cache: CentralizedCache, config: Optional[CacheConfig] = None):
        self.cache = cache
        self.config = config or get_cache_config()

    async def _get_envelope(self, key: str) -> Optional[Any]:
        entry = await self.cache.get(key)
        if entry is None:
            return None
        try:
            return decode_entry(entry)
        except ValueError as e:
            logger.warning("dataset_cache_entry_corrupt", key=key, error=str(e))
            await self.cache.delete(key)
            return None

    async def get(self, owner_id: str, dataset_id: str) -> Optional[Any]:
        return await self._get_envelope(dataset_key(owner_id, dataset_id))

    async def store(self, owner_id: str, dataset_id: str, payload: Any) -> CacheWriteResult:
        key = dataset_key(owner_id, dataset_id)
        envelope = encode_entry(payload)
        size = envelope["origSize"]

        if size > self.config.max_entry_bytes:
            CACHE_SKIPPED.inc()
            logger.warning("dataset_cache_skipped", key=key, size_bytes=size,
                           max_bytes=self.config.max_entry_bytes)
            # A stale smaller entry must not outlive the write that replaced it
            await self.cache.delete(key)
            return CacheWriteResult(stored=False, size_bytes=size, warning=TOO_LARGE_WARNING)

        if size > self.config.warn_entry_bytes:
            logger.warning("dataset_cache_entry_large", key=key, size_bytes=size,
                           warn_bytes=self.config.warn_entry_bytes)

        stored = await self.cache.set(key, envelope, ttl=self.config.ttl_seconds)
        return CacheWriteResult(stored=stored, size_bytes=size)

    async def set(self, owner_id: str, dataset_id: str, payload: Any) -> bool:
        """Cache a dataset view. False when skipped for size or the backend failed."""
        return (await self.store(owner_id, dataset_id, payload)).stored

    async def get_metadata(self, owner_id: str, dataset_id: str) -> Optional[Any]:
        return await self._get_envelope(metadata_key(owner_id, dataset_id))

    async def set_metadata(self, owner_id: str, dataset_id: str, metadata: Any) -> bool:
        return await self.cache.set(metadata_key(owner_id, dataset_id), encode_entry(metadata),
                                    ttl=self.config.ttl_seconds)

    async def delete(self, owner_id: str, dataset_id: str) -> bool:
        """Invalidate the view and metadata entries, retrying a bounded number of times."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.invalidate_retry_attempts),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            retry=retry_if_result(lambda deleted: not deleted),
            retry_error_callback=lambda retry_state: False,
        )
        for key in (dataset_key(owner_id, dataset_id), metadata_key(owner_id, dataset_id)):
            if not await retrying(self.cache.delete, key):
                logger.error("dataset_cache_invalidation_failed", key=key,
                             attempts=self.config.invalidate_retry_attempts)
                return False
        return True
