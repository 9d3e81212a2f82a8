import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog
from arq.connections import RedisSettings
from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential

from core_infrastructure.blob_store import BlobStore, create_blob_store
from core_infrastructure.config_manager import get_queue_config
from core_infrastructure.errors import BlobIOError, BlobNotFound
from core_infrastructure.observability import BLOB_DELETIONS, configure_logging

logger = structlog.get_logger(__name__)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, BlobIOError) and not isinstance(error, BlobNotFound)


@dataclass
class DeletionReport:
    deleted: List[str] = field(default_factory=list)
    already_gone: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deleted": self.deleted,
            "already_gone": self.already_gone,
            "failed": self.failed,
        }


class BlobDeletionWorker:
    """
    Physically removes superseded blobs.

    Each id gets a bounded number of attempts with exponential backoff; an id
    that still fails is logged and reported, never re-queued. Deleting an id
    that no longer exists counts as success.
    """

    def __init__(self, blob_store: BlobStore, attempts: Optional[int] = None,
                 backoff_base_seconds: Optional[float] = None,
                 backoff_max_seconds: Optional[float] = None):
        config = get_queue_config()
        self.blob_store = blob_store
        self.attempts = attempts or config.deletion_attempts
        self.backoff_base_seconds = backoff_base_seconds if backoff_base_seconds is not None else config.deletion_backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds or config.deletion_backoff_max_seconds

    async def delete_one(self, blob_id: str) -> bool:
        """True if removed now, False if it was already gone. Raises BlobIOError once attempts run out."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff_base_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        try:
            return await retrying(self.blob_store.delete, blob_id)
        except BlobNotFound:
            return False

    async def process_batch(self, blob_ids: Sequence[str]) -> DeletionReport:
        report = DeletionReport()
        for blob_id in dict.fromkeys(blob_ids):
            if not blob_id:
                continue
            try:
                removed = await self.delete_one(blob_id)
            except (BlobIOError, RetryError) as e:
                report.failed[blob_id] = str(e)
                BLOB_DELETIONS.labels(status="failed").inc()
                logger.error("blob_deletion_failed", blob_id=blob_id,
                             attempts=self.attempts, error=str(e))
                continue
            if removed:
                report.deleted.append(blob_id)
                BLOB_DELETIONS.labels(status="deleted").inc()
            else:
                report.already_gone.append(blob_id)
                BLOB_DELETIONS.labels(status="already_gone").inc()
        return report


# --------------- ARQ Task Functions ---------------

async def startup(ctx) -> None:
    configure_logging()
    ctx["deletion_worker"] = BlobDeletionWorker(create_blob_store())
    logger.info("arq_deletion_worker_started")


async def delete_blobs(ctx, blob_ids: List[str]) -> Dict[str, Any]:
    """Delete a batch of superseded blobs. Failures are reported in the result, not retried by ARQ."""
    worker: BlobDeletionWorker = ctx["deletion_worker"]
    report = await worker.process_batch(blob_ids)
    logger.info("arq_blob_deletion_completed",
                requested=len(blob_ids),
                deleted=len(report.deleted),
                already_gone=len(report.already_gone),
                failed=len(report.failed))
    return report.as_dict()


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(
        get_queue_config().redis_url
        or os.environ.get("ARQ_REDIS_URL")
        or os.environ.get("REDIS_URL")
        or "redis://localhost:6379"
    )


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        delete_blobs,
    ]

    on_startup = startup

    # Retries happen inside the task; ARQ must not re-run a batch
    max_tries = 1
    # Keep results in Redis only briefly; nothing reads them downstream
    keep_result = 0
    function_timeout = get_queue_config().job_timeout_seconds
