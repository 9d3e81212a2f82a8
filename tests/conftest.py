"""Pytest configuration and shared fixtures.

Every backend runs in memory: aiocache memory cache, in-memory blob store and
repository, in-process deletion queue. Configuration singletons are built at
import time, so the environment is set before any project module is imported.
"""

import os
import uuid

os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("QUEUE_BACKEND", "inprocess")
os.environ.setdefault("APP_LOG_JSON", "false")

import pytest

from background_jobs.arq_worker import BlobDeletionWorker
from background_jobs.deletion_queue import InProcessDeletionQueue
from core_infrastructure.blob_store import InMemoryBlobStore
from core_infrastructure.centralized_cache import CentralizedCache
from core_infrastructure.config_manager import CacheConfig, ChunkConfig, StorageConfig
from core_infrastructure.dataset_cache import DatasetCache
from core_infrastructure.dataset_repository import InMemoryDatasetRepository
from core_infrastructure.tiered_store import TieredStore
from core_infrastructure.transaction_manager import DatasetTransactionManager
from data_ingestion_normalization.chunk_reassembler import ChunkReassembler
from data_ingestion_normalization.dataset_service import DatasetService
from data_ingestion_normalization.websocket_notifications import DatasetUpdateNotifier, InMemoryUpdateManager


@pytest.fixture
def memory_cache():
    """Memory cache under a namespace of its own; aiocache memory storage is process wide."""
    return CentralizedCache(backend="memory", namespace=f"test-{uuid.uuid4().hex}")


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def storage_config():
    return StorageConfig(backend="memory", inline_threshold_bytes=1024,
                         write_retry_attempts=3, write_retry_base_seconds=0.0,
                         write_retry_max_wait_seconds=0.0)


@pytest.fixture
def deletion_queue(blob_store):
    return InProcessDeletionQueue(
        BlobDeletionWorker(blob_store, attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0)
    )


@pytest.fixture
def tiered_store(blob_store, deletion_queue, storage_config):
    return TieredStore(blob_store, deletion_queue, storage_config)


@pytest.fixture
def update_manager():
    return InMemoryUpdateManager()


@pytest.fixture
def service_factory(memory_cache, tiered_store, update_manager):
    """Build a DatasetService on in-memory backends; keyword arguments override collaborators."""

    def build(**overrides) -> DatasetService:
        components = dict(
            repository=InMemoryDatasetRepository(),
            store=tiered_store,
            cache=DatasetCache(memory_cache, CacheConfig(backend="memory", invalidate_retry_attempts=2)),
            reassembler=ChunkReassembler(memory_cache, ChunkConfig(max_chunk_bytes=64 * 1024,
                                                                    max_file_bytes=256 * 1024)),
            transactions=DatasetTransactionManager(timeout_seconds=5),
            notifier=DatasetUpdateNotifier(update_manager),
            chunk_config=ChunkConfig(max_chunk_bytes=64 * 1024, max_file_bytes=256 * 1024),
        )
        components.update(overrides)
        return DatasetService(**components)

    return build
