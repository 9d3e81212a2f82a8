"""
Tiered Store
============

Persists a dataset's category list in one of two tiers:

- inline: small payloads are embedded in the dataset record itself
- external: larger payloads are gzip-compressed and written to blob storage
  under a fresh opaque id; the record only keeps the reference

A write never deletes anything synchronously. The outcome lists the blob ids
it superseded; once the caller has saved the record it calls commit() and
those ids go to the deletion queue. If the record save fails or is cancelled,
abort() queues the freshly written blob instead so nothing is orphaned.

Reads sniff the gzip magic bytes, so uncompressed legacy blobs still load.
Anything that fails to decompress, parse or validate raises StorageCorruption.
"""

import asyncio
import gzip
import uuid
import structlog
import orjson
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core_infrastructure.blob_store import BlobStore
from core_infrastructure.config_manager import StorageConfig, get_storage_config
from core_infrastructure.errors import BlobIOError, BlobNotFound, StorageCorruption
from core_infrastructure.models import Category, DataRef, Dataset, parse_categories, serialize_categories
from core_infrastructure.observability import STORAGE_WRITES
from core_infrastructure.utils.helpers import get_utc_now, safe_path_segment

logger = structlog.get_logger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
PAYLOAD_CONTENT_TYPE = "application/json"


@dataclass
class WriteOutcome:
    dataset: Dataset
    tier: str  # "none", "inline" or "external"
    size_bytes: int
    new_blob_id: Optional[str] = None
    superseded: List[str] = field(default_factory=list)


class TieredStore:
    def __init__(self, blob_store: BlobStore, deletion_queue, config: Optional[StorageConfig] = None):
        self.blob_store = blob_store
        self.deletion_queue = deletion_queue
        self.config = config or get_storage_config()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.config.write_retry_attempts),
            wait=wait_exponential(multiplier=self.config.write_retry_base_seconds,
                                  max=self.config.write_retry_max_wait_seconds),
            retry=retry_if_exception_type(BlobIOError),
            reraise=True,
        )

    async def _put(self, blob_id: str, data: bytes, content_type: str) -> str:
        try:
            return await self._retrying()(self.blob_store.put, blob_id, data, content_type)
        except asyncio.CancelledError:
            # an interrupted upload may still land
            await self.deletion_queue.enqueue([blob_id])
            raise

    def _new_blob_id(self, owner_id: str, dataset_id: str, suffix: str) -> str:
        return f"{safe_path_segment(owner_id)}/{safe_path_segment(dataset_id)}/{uuid.uuid4().hex}{suffix}"

    async def write(self, dataset: Dataset, categories: List[Category]) -> WriteOutcome:
        """Serialize and store categories; returns the dataset with its new data_ref (not yet saved)."""
        raw = serialize_categories(categories)
        now = get_utc_now()
        previous = dataset.data_ref
        superseded = [previous.blob_id] if previous and previous.storage == "external" and previous.blob_id else []

        if not categories:
            outcome = WriteOutcome(dataset.model_copy(update={"data_ref": None, "updated_at": now}),
                                   tier="none", size_bytes=0, superseded=superseded)
        elif len(raw) < self.config.inline_threshold_bytes:
            ref = DataRef(
                storage="inline",
                inline_payload=raw.decode("utf-8"),
                filename=f"{dataset.dataset_id}.json",
                chunked=False,
                size_bytes=len(raw),
                stored_bytes=len(raw),
                last_update=now,
            )
            outcome = WriteOutcome(dataset.model_copy(update={"data_ref": ref, "updated_at": now}),
                                   tier="inline", size_bytes=len(raw), superseded=superseded)
        else:
            body = gzip.compress(raw) if self.config.compress_external else raw
            blob_id = self._new_blob_id(dataset.owner_id, dataset.dataset_id,
                                        ".json.gz" if self.config.compress_external else ".json")
            await self._put(blob_id, body, PAYLOAD_CONTENT_TYPE)
            ref = DataRef(
                storage="external",
                blob_id=blob_id,
                filename=blob_id.rsplit("/", 1)[-1],
                chunked=True,
                size_bytes=len(raw),
                stored_bytes=len(body),
                last_update=now,
            )
            outcome = WriteOutcome(dataset.model_copy(update={"data_ref": ref, "updated_at": now}),
                                   tier="external", size_bytes=len(raw),
                                   new_blob_id=blob_id, superseded=superseded)

        STORAGE_WRITES.labels(tier=outcome.tier).inc()
        logger.info("dataset_payload_written",
                    dataset_id=dataset.dataset_id,
                    tier=outcome.tier,
                    size_bytes=outcome.size_bytes,
                    categories=len(categories),
                    superseded=len(superseded))
        return outcome

    async def commit(self, outcome: WriteOutcome) -> None:
        """The record now points at the new payload; retire what it replaced."""
        if outcome.superseded:
            await self.deletion_queue.enqueue(outcome.superseded)

    async def abort(self, outcome: WriteOutcome) -> None:
        """The record was not saved; the freshly written blob is unreachable."""
        if outcome.new_blob_id:
            logger.warning("dataset_write_aborted", dataset_id=outcome.dataset.dataset_id,
                           blob_id=outcome.new_blob_id)
            await self.deletion_queue.enqueue([outcome.new_blob_id])

    async def read(self, dataset: Dataset) -> List[Category]:
        ref = dataset.data_ref
        if ref is None:
            return []

        if ref.storage == "inline":
            if ref.inline_payload is None:
                raise StorageCorruption("Inline data reference has no payload", dataset_id=dataset.dataset_id)
            raw = ref.inline_payload.encode("utf-8")
        else:
            raw = await self._read_blob(dataset.dataset_id, ref.blob_id)

        try:
            decoded = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise StorageCorruption("Dataset payload is not valid JSON",
                                    dataset_id=dataset.dataset_id, error=str(e)) from e
        if not isinstance(decoded, list):
            raise StorageCorruption("Dataset payload is not a category list", dataset_id=dataset.dataset_id)

        try:
            return parse_categories(decoded)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise StorageCorruption("Dataset payload failed validation",
                                    dataset_id=dataset.dataset_id,
                                    location=".".join(str(part) for part in first.get("loc", ())),
                                    error=first.get("msg")) from e

    async def _read_blob(self, dataset_id: str, blob_id: Optional[str]) -> bytes:
        if not blob_id:
            raise StorageCorruption("External data reference has no blob id", dataset_id=dataset_id)
        try:
            body = await self.blob_store.get(blob_id)
        except BlobNotFound as e:
            raise StorageCorruption("Dataset payload blob is missing",
                                    dataset_id=dataset_id, blob_id=blob_id) from e
        if body[:2] != GZIP_MAGIC:
            return body
        try:
            return gzip.decompress(body)
        except (OSError, EOFError) as e:
            raise StorageCorruption("Dataset payload blob does not decompress",
                                    dataset_id=dataset_id, blob_id=blob_id, error=str(e)) from e

    async def store_attachment(self, dataset: Dataset, filename: str, content: bytes,
                               content_type: str) -> str:
        """Keep a raw upload in blob storage; returns its blob id."""
        blob_id = self._new_blob_id(dataset.owner_id, dataset.dataset_id,
                                    f"-{safe_path_segment(filename)}")
        await self._put(blob_id, content, content_type)
        logger.info("file_attachment_stored", dataset_id=dataset.dataset_id,
                    filename=filename, blob_id=blob_id, size_bytes=len(content))
        return blob_id

    async def release(self, blob_ids: List[str]) -> None:
        if blob_ids:
            await self.deletion_queue.enqueue(blob_ids)

    async def release_dataset(self, dataset: Dataset) -> List[str]:
        """Queue the dataset's external payload and every stored attachment for deletion."""
        blob_ids = []
        if dataset.data_ref and dataset.data_ref.storage == "external" and dataset.data_ref.blob_id:
            blob_ids.append(dataset.data_ref.blob_id)
        blob_ids.extend(record.file_ref for record in dataset.files if record.chunked)
        await self.release(blob_ids)
        return blob_ids
