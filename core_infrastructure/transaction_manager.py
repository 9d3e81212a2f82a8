"""
Dataset Transaction Manager
===========================

Serializes the load -> merge -> govern -> write sequence per dataset.
Writers to different datasets never wait on each other; writers to the same
dataset queue on a per-key asyncio lock. The lock wait and the operation,
which ends with the record save, run under a caller-side timeout; a timeout
surfaces as TransactionTimeout. An optional finalize step then runs under the
same lock with no timeout: retiring superseded blobs and refreshing the cache
after a committed save never turn the update into a failure.

Locks are per process. Deployments running several API workers against one
dataset need a distributed lock in front of this.

Usage:
    manager = get_transaction_manager()
    result = await manager.run(dataset_id, lambda: do_merge_and_write(), operation_type="ingest")
    result = await manager.run(dataset_id, prepare_and_save, finalize=commit_and_refresh)
"""

import asyncio
import time
import uuid
import structlog
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from core_infrastructure.config_manager import get_pipeline_config
from core_infrastructure.errors import TransactionTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class TransactionContext:
    """Bookkeeping for one running transaction."""
    transaction_id: str
    lock_key: str
    operation_type: str
    started_at: float

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class KeyedAsyncLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class DatasetTransactionManager:
    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds or get_pipeline_config().transaction_timeout_seconds
        self.locks = KeyedAsyncLock()
        self.active_transactions: Dict[str, TransactionContext] = {}

    @asynccontextmanager
    async def transaction(self, lock_key: str, operation_type: str = "ingest"):
        """
        Hold the dataset's lock for the body of the block.

        Usage:
            async with manager.transaction(dataset_id) as tx:
                ...
        """
        async with self.locks.hold(lock_key):
            context = TransactionContext(
                transaction_id=str(uuid.uuid4()),
                lock_key=lock_key,
                operation_type=operation_type,
                started_at=time.monotonic(),
            )
            self.active_transactions[context.transaction_id] = context
            logger.debug("transaction_started", transaction_id=context.transaction_id,
                         lock_key=lock_key, operation_type=operation_type)
            try:
                yield context
            except BaseException as e:
                logger.warning("transaction_failed", transaction_id=context.transaction_id,
                               lock_key=lock_key, operation_type=operation_type,
                               error=str(e) or type(e).__name__, elapsed_ms=context.elapsed_ms)
                raise
            else:
                logger.info("transaction_committed", transaction_id=context.transaction_id,
                            lock_key=lock_key, operation_type=operation_type,
                            elapsed_ms=context.elapsed_ms)
            finally:
                self.active_transactions.pop(context.transaction_id, None)

    async def run(self, lock_key: str, operation: Callable[[], Awaitable[T]],
                  operation_type: str = "ingest", timeout: Optional[float] = None,
                  finalize: Optional[Callable[[T], Awaitable[Any]]] = None) -> Any:
        """
        Run operation under the dataset lock, bounded by the timeout (lock wait included).

        With finalize, the lock is kept once operation returns and
        finalize(result) runs outside the timeout; its return value is the result.
        """
        timeout = timeout or self.timeout_seconds

        async with AsyncExitStack() as stack:
            async def locked() -> T:
                await stack.enter_async_context(self.transaction(lock_key, operation_type))
                return await operation()

            try:
                result = await asyncio.wait_for(locked(), timeout)
            except asyncio.TimeoutError as e:
                raise TransactionTimeout("Dataset update timed out",
                                         lock_key=lock_key,
                                         operation_type=operation_type,
                                         timeout_seconds=timeout) from e

            if finalize is None:
                return result
            return await finalize(result)


_transaction_manager: Optional[DatasetTransactionManager] = None


def get_transaction_manager() -> DatasetTransactionManager:
    global _transaction_manager
    if _transaction_manager is None:
        _transaction_manager = DatasetTransactionManager()
    return _transaction_manager
