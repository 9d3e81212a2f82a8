"""
Dataset Service
===============

Entry points of the ingestion pipeline. Every operation that changes a
dataset runs its load -> merge -> govern -> write sequence inside a
per-dataset transaction:

    upload / cloud file / document text
        -> records -> sanitize -> canonical categories (outside the lock)
        -> [lock] load existing (cache, else tiered store)
        -> merge -> recompute combined charts -> validate
        -> size governor -> tiered write -> record save
        -> [lock, no timeout] commit -> cache refresh
        -> update published

The record save is the commit point. The transaction timeout covers
everything up to it; a save already in flight when the timeout fires runs to
completion and the update then counts as done. Failing or cancelled before
that point, the blobs written for the update are queued for deletion.
Nothing is deleted synchronously; superseded blobs go to the deletion queue.
"""

import asyncio
import datetime as dt
import re
import time
import uuid
import structlog
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from core_infrastructure.centralized_cache import CentralizedCache
from core_infrastructure.config_manager import ChunkConfig, get_chunk_config
from core_infrastructure.dataset_cache import DatasetCache
from core_infrastructure.dataset_repository import DatasetRepository
from core_infrastructure.errors import (
    DatasetNotFound,
    PipelineError,
    SizeExceeded,
    StorageCorruption,
    ValidationError,
)
from core_infrastructure.models import (
    Category,
    DataRef,
    Dataset,
    FileRecord,
    MonitoringState,
    categories_to_jsonable,
    parse_categories,
)
from core_infrastructure.observability import INGEST_LATENCY, INGESTIONS
from core_infrastructure.tiered_store import TieredStore, WriteOutcome
from core_infrastructure.transaction_manager import DatasetTransactionManager, get_transaction_manager
from core_infrastructure.utils.helpers import get_utc_now, sanitize_records
from data_ingestion_normalization.canonical_transformer import CanonicalTransformer, get_transformer
from data_ingestion_normalization.chunk_reassembler import ChunkProgress, ChunkReassembler
from data_ingestion_normalization.document_extractor import DocumentRecordExtractor
from data_ingestion_normalization.merge_engine import (
    RemovalReport,
    merge_categories,
    recompute_combined_charts,
    referenced_files,
    remove_file_points,
    validate_categories,
)
from data_ingestion_normalization.size_governor import SizeGovernor
from data_ingestion_normalization.tabular_decoder import TabularDecoder, validate_upload
from data_ingestion_normalization.websocket_notifications import DatasetUpdateNotifier, NotificationType

logger = structlog.get_logger(__name__)

OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass
class UploadRequest:
    """One uploaded file, or one chunk of it when chunk_key is set."""
    filename: str
    content: bytes
    content_type: Optional[str] = None
    dataset_id: Optional[str] = None
    dataset_name: Optional[str] = None
    chunk_key: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None


@dataclass
class SourceFile:
    """Where ingested records came from; becomes the dataset's FileRecord."""
    filename: str
    origin: str = "local"
    content_type: Optional[str] = None
    content: Optional[bytes] = None
    size_bytes: int = 0
    chunk_count: int = 1
    file_ref: Optional[str] = None
    monitoring: Optional[MonitoringState] = None


@dataclass
class IngestResult:
    status: str  # "ok", "no_data" or "chunk_pending"
    dataset: Optional[Dataset] = None
    categories: List[Category] = field(default_factory=list)
    truncated: List[str] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    cache_warning: Optional[str] = None
    duration_ms: int = 0
    progress: Optional[ChunkProgress] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "status": self.status,
            "datasetId": self.dataset.dataset_id if self.dataset else None,
            "categories": categories_to_jsonable(self.categories),
            "truncated": self.truncated,
            "conflicts": self.conflicts,
            "cacheWarning": self.cache_warning,
            "durationMs": self.duration_ms,
        }
        if self.progress is not None:
            result["chunks"] = {
                "received": self.progress.received,
                "total": self.progress.total,
                "missing": self.progress.missing,
            }
        return result


@dataclass
class DatasetView:
    dataset: Dataset
    categories: List[Category]
    cache_warning: Optional[str] = None
    from_cache: bool = False


@dataclass
class FileRemovalResult:
    dataset: Dataset
    categories: List[Category]
    report: RemovalReport
    cache_warning: Optional[str] = None
    duration_ms: int = 0


@dataclass
class _SavedWrite:
    """A saved dataset record whose commit, releases and cache refresh are still due."""
    outcome: WriteOutcome
    dataset: Dataset
    categories: List[Category]
    released: List[str] = field(default_factory=list)


def _ref_version(ref: Optional[DataRef]) -> Optional[str]:
    """Identifies one persisted payload; a cached view is valid only for the same version."""
    if ref is None:
        return None
    return f"{ref.storage}:{ref.blob_id or ''}:{ref.size_bytes}:{ref.last_update.isoformat()}"


def dataset_metadata(dataset: Dataset) -> Dict[str, Any]:
    """The dataset record as JSON, without any inline payload."""
    data = dataset.model_dump(mode="json")
    if data.get("data_ref"):
        data["data_ref"].pop("inline_payload", None)
    return data


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class DatasetService:
    def __init__(self,
                 repository: DatasetRepository,
                 store: TieredStore,
                 cache: DatasetCache,
                 reassembler: ChunkReassembler,
                 decoder: Optional[TabularDecoder] = None,
                 transformer: Optional[CanonicalTransformer] = None,
                 governor: Optional[SizeGovernor] = None,
                 transactions: Optional[DatasetTransactionManager] = None,
                 notifier: Optional[DatasetUpdateNotifier] = None,
                 extractor: Optional[DocumentRecordExtractor] = None,
                 chunk_config: Optional[ChunkConfig] = None):
        self.repository = repository
        self.store = store
        self.cache = cache
        self.reassembler = reassembler
        self.decoder = decoder or TabularDecoder()
        self.transformer = transformer or get_transformer()
        self.governor = governor or SizeGovernor()
        self.transactions = transactions or get_transaction_manager()
        self.notifier = notifier or DatasetUpdateNotifier()
        self.extractor = extractor
        self.chunk_config = chunk_config or get_chunk_config()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def upload(self, owner_id: str, request: UploadRequest) -> IngestResult:
        """Chunk handling, allow-list check and decoding, then ingest."""
        self._check_owner(owner_id)
        started = time.monotonic()
        content = request.content
        chunk_count = 1

        try:
            validate_upload(request.filename, request.content_type)
            if request.chunk_key:
                if request.chunk_index is None or request.total_chunks is None:
                    raise ValidationError("Chunked uploads need chunk_index and total_chunks",
                                          chunk_key=request.chunk_key)
                progress = await self.reassembler.put(request.chunk_key, request.chunk_index,
                                                      request.total_chunks, content)
                if not progress.complete:
                    return IngestResult(status="chunk_pending", progress=progress,
                                        duration_ms=_elapsed_ms(started))
                content = progress.data
                chunk_count = progress.total_chunks
            elif len(content) > self.chunk_config.max_file_bytes:
                raise ValidationError("File exceeds the upload size limit", status_code=413,
                                      filename=request.filename, size_bytes=len(content),
                                      max_bytes=self.chunk_config.max_file_bytes)
        except PipelineError:
            INGESTIONS.labels(source="upload", status="rejected").inc()
            if request.chunk_key:
                await self.reassembler.discard(request.chunk_key)
            raise

        try:
            records = await self.decoder.decode(content, request.content_type, request.filename)
        except PipelineError:
            INGESTIONS.labels(source="upload", status="error").inc()
            raise

        source = SourceFile(
            filename=request.filename,
            content_type=request.content_type,
            content=content,
            size_bytes=len(content),
            chunk_count=chunk_count,
        )
        return await self.ingest_records(owner_id, records, request.filename,
                                         dataset_id=request.dataset_id,
                                         dataset_name=request.dataset_name,
                                         source=source, channel="upload")

    async def ingest_document(self, owner_id: str, text: str, filename: str,
                              dataset_id: Optional[str] = None,
                              dataset_name: Optional[str] = None) -> IngestResult:
        """Document text -> text generation -> record repair -> ingest."""
        self._check_owner(owner_id)
        if self.extractor is None:
            raise PipelineError("Document extraction is not configured", status_code=503)
        records = await self.extractor.extract(text)
        source = SourceFile(filename=filename, content_type="text/plain",
                            size_bytes=len(text.encode("utf-8")))
        return await self.ingest_records(owner_id, records, filename, dataset_id=dataset_id,
                                         dataset_name=dataset_name, source=source, channel="document")

    async def ingest_cloud_file(self, owner_id: str, file_id: str, filename: str, text: str,
                                dataset_id: Optional[str] = None,
                                dataset_name: Optional[str] = None,
                                expires_at: Optional[dt.datetime] = None,
                                folder_id: Optional[str] = None) -> IngestResult:
        """A cloud-synced sheet exported as CSV text; the file is monitored until expires_at."""
        self._check_owner(owner_id)
        records = await self.decoder.decode_text(text, filename)
        source = SourceFile(
            filename=filename,
            origin="cloud",
            content_type="text/csv",
            size_bytes=len(text.encode("utf-8")),
            file_ref=file_id,
            monitoring=MonitoringState(status="active", expires_at=expires_at, folder_id=folder_id),
        )
        return await self.ingest_records(owner_id, records, filename, dataset_id=dataset_id,
                                         dataset_name=dataset_name, source=source, channel="cloud")

    async def ingest_records(self, owner_id: str, records: List[Any], filename: str,
                             dataset_id: Optional[str] = None,
                             dataset_name: Optional[str] = None,
                             source: Optional[SourceFile] = None,
                             channel: str = "records") -> IngestResult:
        """
        Merge records into a dataset.

        Args:
            dataset_id: existing dataset to merge into (must exist)
            dataset_name: name for a new dataset when dataset_id is not given
            source: file bookkeeping; defaults to a local file named filename
            channel: label for metrics (upload, document, cloud, records)
        """
        self._check_owner(owner_id)
        if not dataset_id and not (dataset_name and dataset_name.strip()):
            raise ValidationError("dataset_id or dataset_name is required")
        started = time.monotonic()
        source = source or SourceFile(filename=filename)

        incoming = self.transformer.transform(sanitize_records(records), filename)
        if not incoming:
            INGESTIONS.labels(source=channel, status="no_data").inc()
            logger.info("ingest_no_data", owner_id=owner_id, filename=filename, records=len(records))
            return IngestResult(status="no_data", duration_ms=_elapsed_ms(started))

        lock_key = dataset_id or f"{owner_id}:name:{dataset_name.strip()}"
        try:
            result = await self.transactions.run(
                lock_key,
                lambda: self._apply_ingest(owner_id, dataset_id, dataset_name, incoming, source),
                operation_type=f"ingest_{channel}",
                finalize=self._finish_ingest,
            )
        except PipelineError as e:
            INGESTIONS.labels(source=channel, status="error").inc()
            logger.warning("ingest_failed", owner_id=owner_id, filename=filename,
                           channel=channel, error=e.to_dict())
            raise

        result.duration_ms = _elapsed_ms(started)
        INGESTIONS.labels(source=channel, status="ok").inc()
        INGEST_LATENCY.labels(source=channel).observe(result.duration_ms / 1000)
        self.notifier.publish(result.dataset.dataset_id, NotificationType.DATASET_UPDATED,
                              {"filename": filename, "categories": len(result.categories)})
        logger.info("ingest_completed",
                    owner_id=owner_id,
                    dataset_id=result.dataset.dataset_id,
                    filename=filename,
                    channel=channel,
                    categories=len(result.categories),
                    truncated=len(result.truncated),
                    conflicts=len(result.conflicts),
                    duration_ms=result.duration_ms)
        return result

    async def get_dataset(self, owner_id: str, dataset_id: str) -> DatasetView:
        self._check_owner(owner_id)
        dataset = await self._require(owner_id, dataset_id)

        cached = await self._cached_categories(dataset)
        if cached is not None:
            return DatasetView(dataset, cached, from_cache=True)

        categories = await self._read_store(dataset)
        write = await self.cache.store(owner_id, dataset_id, self._cache_view(dataset, categories))
        return DatasetView(dataset, categories, cache_warning=write.warning)

    async def get_metadata(self, owner_id: str, dataset_id: str) -> Dict[str, Any]:
        self._check_owner(owner_id)
        cached = await self.cache.get_metadata(owner_id, dataset_id)
        if isinstance(cached, dict):
            return cached
        metadata = dataset_metadata(await self._require(owner_id, dataset_id))
        await self.cache.set_metadata(owner_id, dataset_id, metadata)
        return metadata

    async def list_datasets(self, owner_id: str) -> List[Dict[str, Any]]:
        self._check_owner(owner_id)
        return [dataset_metadata(dataset) for dataset in await self.repository.list_for_owner(owner_id)]

    async def delete_dataset_data(self, owner_id: str, dataset_id: str) -> Dataset:
        """Clear every category and file of the dataset; the record itself stays."""
        self._check_owner(owner_id)

        async def clear() -> Tuple[Dataset, Dataset]:
            dataset = await self._require(owner_id, dataset_id)
            cleared = dataset.model_copy(update={"data_ref": None, "files": (), "updated_at": get_utc_now()})
            return dataset, await self._save(cleared)

        async def retire(saved: Tuple[Dataset, Dataset]) -> Tuple[Dataset, List[str]]:
            dataset, cleared = saved
            released = await self.store.release_dataset(dataset)
            if not await self.cache.delete(owner_id, dataset_id):
                logger.error("dataset_cache_left_stale", owner_id=owner_id, dataset_id=dataset_id)
            return cleared, released

        cleared, released = await self.transactions.run(dataset_id, clear, operation_type="delete_data",
                                                        finalize=retire)
        self.notifier.publish(dataset_id, NotificationType.DATASET_DELETED)
        logger.info("dataset_data_deleted", owner_id=owner_id, dataset_id=dataset_id, blobs_released=len(released))
        return cleared

    async def delete_file(self, owner_id: str, dataset_id: str, filename: str) -> FileRemovalResult:
        """Remove one file's points and its FileRecord from the dataset."""
        self._check_owner(owner_id)
        started = time.monotonic()
        result = await self.transactions.run(
            dataset_id,
            lambda: self._apply_file_removal(owner_id, dataset_id, filename),
            operation_type="delete_file",
            finalize=self._finish_file_removal,
        )
        result.duration_ms = _elapsed_ms(started)
        self.notifier.publish(dataset_id, NotificationType.FILE_REMOVED,
                              {"filename": filename, "categories": len(result.categories)})
        return result

    async def expire_monitoring(self, owner_id: str, dataset_id: str,
                                now: Optional[dt.datetime] = None) -> List[str]:
        """Flag cloud files whose monitoring window has passed. Returns the expired filenames."""
        self._check_owner(owner_id)
        now = now or get_utc_now()

        async def expire() -> Tuple[Optional[Dataset], List[str]]:
            dataset = await self._require(owner_id, dataset_id)
            expired: List[str] = []
            files = []
            for record in dataset.files:
                if self._monitoring_expired(record, now):
                    record = record.model_copy(update={
                        "monitoring": record.monitoring.model_copy(update={"status": "expired"}),
                    })
                    expired.append(record.filename)
                files.append(record)
            if not expired:
                return None, expired
            updated = dataset.model_copy(update={"files": tuple(files), "updated_at": get_utc_now()})
            return await self._save(updated), expired

        async def publish_metadata(saved: Tuple[Optional[Dataset], List[str]]) -> List[str]:
            updated, expired = saved
            if updated is not None:
                await self.cache.set_metadata(owner_id, dataset_id, dataset_metadata(updated))
                logger.info("file_monitoring_expired", dataset_id=dataset_id, files=expired)
            return expired

        return await self.transactions.run(dataset_id, expire, operation_type="expire_monitoring",
                                           finalize=publish_metadata)

    # ------------------------------------------------------------------
    # Transaction bodies
    # ------------------------------------------------------------------

    async def _apply_ingest(self, owner_id: str, dataset_id: Optional[str], dataset_name: Optional[str],
                            incoming: List[Category], source: SourceFile) -> Tuple[_SavedWrite, IngestResult]:
        dataset = await self._resolve(owner_id, dataset_id, dataset_name)
        existing = await self._load_categories(dataset)

        merged, report = merge_categories(existing, incoming)
        merged = recompute_combined_charts(merged)
        validate_categories(merged)

        previous = dataset.file_named(source.filename)
        record = self._file_record(source)
        files = tuple(f for f in dataset.files if f.filename != source.filename) + (record,)
        self._check_file_references(merged, files)

        governed = self.governor.govern(merged)
        if merged and not governed.categories:
            raise SizeExceeded("No category fits within the payload budget",
                               dataset_id=dataset.dataset_id, budget_bytes=governed.budget_bytes)

        attachment_id = None
        outcome = None
        try:
            if source.content is not None and len(source.content) > self.store.config.inline_threshold_bytes:
                attachment_id = await self.store.store_attachment(
                    dataset, source.filename, source.content, source.content_type or "application/octet-stream")
                record = record.model_copy(update={"file_ref": attachment_id, "chunked": True})
                files = files[:-1] + (record,)

            outcome = await self.store.write(dataset.model_copy(update={"files": files}), governed.categories)
            saved = await self._save(outcome.dataset)
        except BaseException:
            await self._discard_unsaved(outcome, [attachment_id] if attachment_id else [])
            raise

        released = []
        if previous is not None and previous.chunked and previous.file_ref != attachment_id:
            released.append(previous.file_ref)
        pending = _SavedWrite(outcome, saved, governed.categories, released)
        return pending, IngestResult(
            status="ok",
            dataset=saved,
            categories=governed.categories,
            truncated=governed.excluded,
            conflicts=[conflict.to_dict() for conflict in report.conflicts],
        )

    async def _finish_ingest(self, prepared: Tuple[_SavedWrite, IngestResult]) -> IngestResult:
        pending, result = prepared
        result.cache_warning = await self._finish_write(pending)
        return result

    async def _apply_file_removal(self, owner_id: str, dataset_id: str,
                                  filename: str) -> Tuple[_SavedWrite, RemovalReport]:
        dataset = await self._require(owner_id, dataset_id)
        record = dataset.file_named(filename)
        if record is None:
            raise ValidationError("File is not part of the dataset", status_code=404,
                                  dataset_id=dataset_id, filename=filename)

        existing = await self._load_categories(dataset)
        categories, report = remove_file_points(existing, filename)
        validate_categories(categories)

        files = tuple(f for f in dataset.files if f.filename != filename)
        outcome = None
        try:
            outcome = await self.store.write(dataset.model_copy(update={"files": files}), categories)
            saved = await self._save(outcome.dataset)
        except BaseException:
            await self._discard_unsaved(outcome)
            raise

        released = [record.file_ref] if record.chunked else []
        return _SavedWrite(outcome, saved, categories, released), report

    async def _finish_file_removal(self, prepared: Tuple[_SavedWrite, RemovalReport]) -> FileRemovalResult:
        pending, report = prepared
        cache_warning = await self._finish_write(pending)
        return FileRemovalResult(pending.dataset, pending.categories, report, cache_warning=cache_warning)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_owner(owner_id: str) -> None:
        if not isinstance(owner_id, str) or not OWNER_ID_PATTERN.match(owner_id):
            raise ValidationError("Invalid owner id")

    @staticmethod
    def _monitoring_expired(record: FileRecord, now: dt.datetime) -> bool:
        monitoring = record.monitoring
        if record.origin != "cloud" or monitoring is None or monitoring.status != "active":
            return False
        if monitoring.expires_at is None:
            return False
        expires_at = monitoring.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=dt.timezone.utc)
        return expires_at <= now

    @staticmethod
    def _file_record(source: SourceFile) -> FileRecord:
        return FileRecord(
            file_ref=source.file_ref or uuid.uuid4().hex,
            filename=source.filename,
            origin=source.origin,
            chunked=False,
            chunk_count=source.chunk_count,
            content_type=source.content_type,
            size_bytes=source.size_bytes,
            last_update=get_utc_now(),
            monitoring=source.monitoring,
        )

    @staticmethod
    def _check_file_references(categories: List[Category], files: Tuple[FileRecord, ...]) -> None:
        unknown = referenced_files(categories) - {f.filename for f in files}
        if unknown:
            raise ValidationError("Data points reference files that are not part of the dataset",
                                  files=sorted(unknown))

    @staticmethod
    def _cache_view(dataset: Dataset, categories: List[Category]) -> Dict[str, Any]:
        return {"dataRef": _ref_version(dataset.data_ref), "categories": categories_to_jsonable(categories)}

    async def _require(self, owner_id: str, dataset_id: str) -> Dataset:
        dataset = await self.repository.get(owner_id, dataset_id)
        if dataset is None:
            raise DatasetNotFound("Dataset not found", dataset_id=dataset_id)
        return dataset

    async def _resolve(self, owner_id: str, dataset_id: Optional[str], dataset_name: Optional[str]) -> Dataset:
        if dataset_id:
            return await self._require(owner_id, dataset_id)

        name = dataset_name.strip()
        if await self.repository.find_by_name(owner_id, name) is not None:
            raise ValidationError("Dataset name already in use", status_code=409, dataset_name=name)
        now = get_utc_now()
        logger.info("dataset_created", owner_id=owner_id, dataset_name=name)
        return Dataset(owner_id=owner_id, dataset_id=uuid.uuid4().hex, name=name,
                       created_at=now, updated_at=now)

    async def _cached_categories(self, dataset: Dataset) -> Optional[List[Category]]:
        cached = await self.cache.get(dataset.owner_id, dataset.dataset_id)
        if cached is None:
            return None
        if not isinstance(cached, dict) or cached.get("dataRef") != _ref_version(dataset.data_ref):
            logger.info("dataset_cache_stale", dataset_id=dataset.dataset_id)
            return None
        try:
            return parse_categories(cached.get("categories"))
        except PydanticValidationError as e:
            logger.warning("dataset_cache_view_invalid", dataset_id=dataset.dataset_id,
                           error=str(e.errors()[0].get("msg")))
            await self.cache.delete(dataset.owner_id, dataset.dataset_id)
            return None

    async def _read_store(self, dataset: Dataset) -> List[Category]:
        try:
            return await self.store.read(dataset)
        except StorageCorruption:
            await self.cache.delete(dataset.owner_id, dataset.dataset_id)
            raise

    async def _load_categories(self, dataset: Dataset) -> List[Category]:
        cached = await self._cached_categories(dataset)
        if cached is not None:
            return cached
        return await self._read_store(dataset)

    async def _save(self, dataset: Dataset) -> Dataset:
        """
        Save the record. A save in flight when the caller is cancelled still
        runs to completion; if it lands, the saved record is returned and the
        cancellation ends there.
        """
        save = asyncio.ensure_future(self.repository.save(dataset))
        try:
            return await asyncio.shield(save)
        except asyncio.CancelledError:
            await asyncio.wait([save])
            if save.cancelled() or save.exception() is not None:
                raise
            logger.warning("dataset_save_outlived_cancellation", dataset_id=dataset.dataset_id)
            return save.result()

    async def _discard_unsaved(self, outcome: Optional[WriteOutcome], orphans: Optional[List[str]] = None) -> None:
        if outcome is not None:
            await self.store.abort(outcome)
        await self.store.release(orphans or [])

    async def _finish_write(self, pending: _SavedWrite) -> Optional[str]:
        """Retire what the saved record no longer references, then refresh the cache."""
        await self.store.commit(pending.outcome)
        await self.store.release(pending.released)
        return await self._refresh_cache(pending.dataset, pending.categories)

    async def _refresh_cache(self, dataset: Dataset, categories: List[Category]) -> Optional[str]:
        write = await self.cache.store(dataset.owner_id, dataset.dataset_id, self._cache_view(dataset, categories))
        await self.cache.set_metadata(dataset.owner_id, dataset.dataset_id, dataset_metadata(dataset))
        return write.warning

    async def close(self) -> None:
        await self.notifier.drain()
        await self.store.deletion_queue.close()


async def create_dataset_service(cache: Optional[CentralizedCache] = None,
                                 notifier: Optional[DatasetUpdateNotifier] = None,
                                 extractor: Optional[DocumentRecordExtractor] = None) -> DatasetService:
    """Wire the service from configuration (STORAGE_*, CACHE_*, QUEUE_* ...)."""
    from background_jobs.deletion_queue import create_deletion_queue
    from core_infrastructure.blob_store import create_blob_store
    from core_infrastructure.centralized_cache import initialize_cache, safe_get_cache
    from core_infrastructure.dataset_repository import create_dataset_repository

    cache = cache or safe_get_cache() or initialize_cache()
    blob_store = create_blob_store()
    deletion_queue = await create_deletion_queue(blob_store)
    return DatasetService(
        repository=create_dataset_repository(),
        store=TieredStore(blob_store, deletion_queue),
        cache=DatasetCache(cache),
        reassembler=ChunkReassembler(cache),
        notifier=notifier,
        extractor=extractor,
    )
