"""
Dataset record persistence.

The record holds owner, name, file list and the data_ref; the category list
itself lives behind data_ref (see tiered_store). Supabase rows keep the whole
record as JSON next to the lookup columns.
"""

import asyncio
import structlog
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from core_infrastructure.config_manager import StorageConfig, get_storage_config
from core_infrastructure.models import Dataset

logger = structlog.get_logger(__name__)


class DatasetRepository(ABC):
    @abstractmethod
    async def get(self, owner_id: str, dataset_id: str) -> Optional[Dataset]:
        ...

    @abstractmethod
    async def find_by_name(self, owner_id: str, name: str) -> Optional[Dataset]:
        ...

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> List[Dataset]:
        ...

    @abstractmethod
    async def save(self, dataset: Dataset) -> Dataset:
        ...


class InMemoryDatasetRepository(DatasetRepository):
    def __init__(self):
        self.records: Dict[Tuple[str, str], Dataset] = {}

    async def get(self, owner_id: str, dataset_id: str) -> Optional[Dataset]:
        return self.records.get((owner_id, dataset_id))

    async def find_by_name(self, owner_id: str, name: str) -> Optional[Dataset]:
        for (owner, _), dataset in self.records.items():
            if owner == owner_id and dataset.name == name:
                return dataset
        return None

    async def list_for_owner(self, owner_id: str) -> List[Dataset]:
        return [dataset for (owner, _), dataset in self.records.items() if owner == owner_id]

    async def save(self, dataset: Dataset) -> Dataset:
        self.records[(dataset.owner_id, dataset.dataset_id)] = dataset
        return dataset


class SupabaseDatasetRepository(DatasetRepository):
    def __init__(self, supabase, table: str):
        self.supabase = supabase
        self.table = table

    def _query(self):
        return self.supabase.table(self.table)

    async def _select_one(self, owner_id: str, column: str, value: str) -> Optional[Dataset]:
        result = await asyncio.to_thread(
            lambda: self._query().select("record").eq("owner_id", owner_id).eq(column, value).limit(1).execute()
        )
        if not result.data:
            return None
        return Dataset.model_validate(result.data[0]["record"])

    async def get(self, owner_id: str, dataset_id: str) -> Optional[Dataset]:
        return await self._select_one(owner_id, "dataset_id", dataset_id)

    async def find_by_name(self, owner_id: str, name: str) -> Optional[Dataset]:
        return await self._select_one(owner_id, "name", name)

    async def list_for_owner(self, owner_id: str) -> List[Dataset]:
        result = await asyncio.to_thread(
            lambda: self._query().select("record").eq("owner_id", owner_id).order("updated_at", desc=True).execute()
        )
        return [Dataset.model_validate(row["record"]) for row in result.data or []]

    async def save(self, dataset: Dataset) -> Dataset:
        row = {
            "owner_id": dataset.owner_id,
            "dataset_id": dataset.dataset_id,
            "name": dataset.name,
            "record": dataset.model_dump(mode="json"),
            "updated_at": dataset.updated_at.isoformat(),
        }
        await asyncio.to_thread(
            lambda: self._query().upsert(row, on_conflict="owner_id,dataset_id").execute()
        )
        logger.debug("dataset_record_saved", dataset_id=dataset.dataset_id)
        return dataset


def create_dataset_repository(config: Optional[StorageConfig] = None) -> DatasetRepository:
    config = config or get_storage_config()
    if config.backend == "memory":
        return InMemoryDatasetRepository()
    from core_infrastructure.supabase_client import get_supabase_client
    return SupabaseDatasetRepository(get_supabase_client(), config.datasets_table)
