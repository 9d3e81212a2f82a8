"""
Deletion queues hand superseded blob ids to the BlobDeletionWorker without the
caller waiting on physical deletion.

ArqDeletionQueue enqueues an ARQ job (production). InProcessDeletionQueue runs
the worker on an asyncio task in the same process (development and tests).
"""

import asyncio
import structlog
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from arq import create_pool
from arq.connections import ArqRedis

from background_jobs.arq_worker import BlobDeletionWorker, DeletionReport, get_redis_settings
from core_infrastructure.blob_store import BlobStore
from core_infrastructure.config_manager import get_queue_config

logger = structlog.get_logger(__name__)


class DeletionQueue(ABC):
    @abstractmethod
    async def enqueue(self, blob_ids: Sequence[str]) -> None:
        """Schedule ids for deletion. Must not wait for the deletion itself."""

    async def close(self) -> None:
        return None


class ArqDeletionQueue(DeletionQueue):
    def __init__(self, pool: ArqRedis):
        self.pool = pool

    @classmethod
    async def connect(cls) -> "ArqDeletionQueue":
        return cls(await create_pool(get_redis_settings()))

    async def enqueue(self, blob_ids: Sequence[str]) -> None:
        ids = [blob_id for blob_id in blob_ids if blob_id]
        if not ids:
            return
        try:
            job = await self.pool.enqueue_job("delete_blobs", ids)
        except Exception as e:
            logger.error("blob_deletion_enqueue_failed", blob_ids=ids, error=str(e))
            return
        logger.info("blob_deletion_enqueued", job_id=getattr(job, "job_id", None), count=len(ids))

    async def close(self) -> None:
        await self.pool.close()


class InProcessDeletionQueue(DeletionQueue):
    def __init__(self, worker: BlobDeletionWorker):
        self.worker = worker
        self.reports: List[DeletionReport] = []
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

    def _ensure_consumer(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
        return self._queue

    async def _consume(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                self.reports.append(await self.worker.process_batch(batch))
            except Exception as e:
                logger.error("inprocess_deletion_batch_failed", blob_ids=batch, error=str(e))
            finally:
                self._queue.task_done()

    async def enqueue(self, blob_ids: Sequence[str]) -> None:
        ids = [blob_id for blob_id in blob_ids if blob_id]
        if not ids:
            return
        self._ensure_consumer().put_nowait(ids)
        logger.debug("blob_deletion_enqueued", count=len(ids))

    async def join(self) -> None:
        """Wait until every enqueued batch has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None


async def create_deletion_queue(blob_store: BlobStore) -> DeletionQueue:
    """Build the configured queue; the in-process one deletes through blob_store directly."""
    if get_queue_config().backend == "inprocess":
        return InProcessDeletionQueue(BlobDeletionWorker(blob_store))
    return await ArqDeletionQueue.connect()
