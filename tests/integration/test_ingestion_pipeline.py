"""
Integration Tests for the Ingestion Pipeline

Runs DatasetService end to end on in-memory backends:
- Upload, merge, per-file removal and full clear
- Chunked uploads
- Tier selection, attachments and blob retirement
- Transaction timeouts around the record save
- Size governance
- Cache staleness and storage corruption
- Cloud monitoring expiry and document extraction
"""

import asyncio
import datetime as dt

import pendulum
import pytest

from core_infrastructure.errors import (
    ChunkRejected,
    DatasetNotFound,
    PipelineError,
    SizeExceeded,
    StorageCorruption,
    TransactionTimeout,
    ValidationError,
)
from core_infrastructure.models import serialized_size
from core_infrastructure.transaction_manager import DatasetTransactionManager
from data_ingestion_normalization.canonical_transformer import CanonicalTransformer
from data_ingestion_normalization.dataset_service import UploadRequest
from data_ingestion_normalization.document_extractor import DocumentRecordExtractor, TextGenerator
from data_ingestion_normalization.size_governor import SizeGovernor
from tests.fixtures.test_data import GENERATED_REPLY, create_sales_csv, create_wide_csv

OWNER = "owner-1"


def csv_upload(content: bytes, filename: str = "q1.csv", **fields) -> UploadRequest:
    return UploadRequest(filename=filename, content=content, content_type="text/csv", **fields)


class CannedGenerator(TextGenerator):
    async def generate(self, prompt):
        return GENERATED_REPLY


class TestUploadAndRead:
    """New datasets, reads and merges"""

    @pytest.mark.asyncio
    async def test_upload_creates_dataset_by_name(self, service_factory, update_manager):
        service = service_factory()

        result = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))
        await service.notifier.drain()

        assert result.status == "ok"
        assert [c.name for c in result.categories] == ["West", "East", "North"]
        assert result.dataset.name == "Sales"
        assert result.dataset.data_ref.storage == "inline"
        assert [f.filename for f in result.dataset.files] == ["q1.csv"]
        assert result.to_dict()["datasetId"] == result.dataset.dataset_id
        assert update_manager.sent[0][0] == result.dataset.dataset_id
        assert update_manager.sent[0][1]["type"] == "dataset_updated"
        await service.close()

    @pytest.mark.asyncio
    async def test_read_is_served_from_cache(self, service_factory):
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        view = await service.get_dataset(OWNER, created.dataset.dataset_id)

        assert view.from_cache
        assert view.categories == created.categories
        await service.close()

    @pytest.mark.asyncio
    async def test_second_file_merges(self, service_factory):
        # Given: a dataset built from q1.csv
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))
        dataset_id = created.dataset.dataset_id

        # When: q2.csv updates West and adds South
        q2 = create_sales_csv([("West", 300, "2024-04-01"), ("South", 50, "2024-04-01")])
        result = await service.upload(OWNER, csv_upload(q2, "q2.csv", dataset_id=dataset_id))

        # Then: categories are merged and both files are recorded
        assert [c.name for c in result.categories] == ["West", "East", "North", "South"]
        west = result.categories[0].series[0]
        assert [p.value for p in west.points] == [300]
        assert [f.filename for f in result.dataset.files] == ["q1.csv", "q2.csv"]
        await service.close()

    @pytest.mark.asyncio
    async def test_reupload_replaces_file_record(self, service_factory):
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        result = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_id=created.dataset.dataset_id))

        assert [f.filename for f in result.dataset.files] == ["q1.csv"]
        assert result.categories == created.categories
        await service.close()

    @pytest.mark.asyncio
    async def test_metadata_and_listing(self, service_factory):
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))
        dataset_id = created.dataset.dataset_id

        metadata = await service.get_metadata(OWNER, dataset_id)
        listing = await service.list_datasets(OWNER)

        assert metadata["name"] == "Sales"
        assert "inline_payload" not in metadata["data_ref"]
        assert [d["dataset_id"] for d in listing] == [dataset_id]
        await service.close()


class TestRejections:
    """Errors surface with their status codes"""

    @pytest.mark.asyncio
    async def test_bad_extension(self, service_factory):
        service = service_factory()

        with pytest.raises(ValidationError):
            await service.upload(OWNER, UploadRequest(filename="run.exe", content=b"MZ",
                                                      content_type="application/octet-stream",
                                                      dataset_name="Sales"))

    @pytest.mark.asyncio
    async def test_name_conflict(self, service_factory):
        service = service_factory()
        await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        with pytest.raises(ValidationError) as exc_info:
            await service.upload(OWNER, csv_upload(create_sales_csv(), "q2.csv", dataset_name="Sales"))

        assert exc_info.value.status_code == 409
        await service.close()

    @pytest.mark.asyncio
    async def test_unknown_dataset(self, service_factory):
        service = service_factory()

        with pytest.raises(DatasetNotFound):
            await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_id="missing"))

    @pytest.mark.asyncio
    async def test_other_owner_cannot_read(self, service_factory):
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        with pytest.raises(DatasetNotFound):
            await service.get_dataset("owner-2", created.dataset.dataset_id)
        await service.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["", "../etc", "a" * 65, "owner id"])
    async def test_invalid_owner(self, service_factory, owner_id):
        service = service_factory()

        with pytest.raises(ValidationError):
            await service.get_dataset(owner_id, "ds")

    @pytest.mark.asyncio
    async def test_dataset_target_required(self, service_factory):
        service = service_factory()

        with pytest.raises(ValidationError):
            await service.upload(OWNER, csv_upload(create_sales_csv()))

    @pytest.mark.asyncio
    async def test_oversized_single_upload(self, service_factory):
        service = service_factory()
        content = create_sales_csv() + b"x" * (256 * 1024)

        with pytest.raises(ValidationError) as exc_info:
            await service.upload(OWNER, csv_upload(content, dataset_name="Sales"))

        assert exc_info.value.status_code == 413

    @pytest.mark.asyncio
    async def test_no_data(self, service_factory):
        service = service_factory()

        result = await service.upload(OWNER, csv_upload(b"Region,Date\nWest,2024-01-01\n", dataset_name="Empty"))

        assert result.status == "no_data"
        assert await service.repository.find_by_name(OWNER, "Empty") is None


class TestChunkedUpload:
    @pytest.mark.asyncio
    async def test_pending_then_ingested(self, service_factory):
        # Given: the CSV split in two chunks
        service = service_factory()
        content = create_sales_csv()
        first, second = content[:20], content[20:]

        # When: the chunks arrive
        pending = await service.upload(OWNER, csv_upload(first, dataset_name="Sales", chunk_key="up-1",
                                                         chunk_index=0, total_chunks=2))
        done = await service.upload(OWNER, csv_upload(second, dataset_name="Sales", chunk_key="up-1",
                                                      chunk_index=1, total_chunks=2))

        # Then: the first reports progress, the second ingests the whole file
        assert pending.status == "chunk_pending"
        assert pending.to_dict()["chunks"] == {"received": 1, "total": 2, "missing": [1]}
        assert done.status == "ok"
        assert len(done.categories) == 3
        assert done.dataset.files[0].chunk_count == 2
        await service.close()

    @pytest.mark.asyncio
    async def test_rejected_chunk_discards_buffer(self, service_factory):
        service = service_factory()
        await service.upload(OWNER, csv_upload(b"Region,Sales\n", dataset_name="Sales", chunk_key="up-2",
                                               chunk_index=0, total_chunks=2))

        with pytest.raises(ChunkRejected):
            await service.upload(OWNER, csv_upload(b"West,1\n", dataset_name="Sales", chunk_key="up-2",
                                                   chunk_index=5, total_chunks=2))

        progress = await service.upload(OWNER, csv_upload(b"West,1\n", dataset_name="Sales", chunk_key="up-2",
                                                          chunk_index=1, total_chunks=2))
        assert progress.status == "chunk_pending"
        assert progress.progress.missing == [0]


class TestFileRemoval:
    @pytest.mark.asyncio
    async def test_delete_file_prunes_its_points(self, service_factory, update_manager):
        # Given: West and South from q2.csv, East and North only from q1.csv
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))
        dataset_id = created.dataset.dataset_id
        q2 = create_sales_csv([("West", 300, "2024-04-01"), ("South", 50, "2024-04-01")])
        await service.upload(OWNER, csv_upload(q2, "q2.csv", dataset_id=dataset_id))

        # When: q1.csv is removed
        result = await service.delete_file(OWNER, dataset_id, "q1.csv")
        await service.notifier.drain()

        # Then: categories left empty are pruned and the file record is gone
        assert [c.name for c in result.categories] == ["West", "South"]
        assert sorted(result.report.categories_pruned) == ["East", "North"]
        assert [f.filename for f in result.dataset.files] == ["q2.csv"]
        view = await service.get_dataset(OWNER, dataset_id)
        assert [c.name for c in view.categories] == ["West", "South"]
        assert update_manager.sent[-1][1]["type"] == "file_removed"
        await service.close()

    @pytest.mark.asyncio
    async def test_unknown_file(self, service_factory):
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        with pytest.raises(ValidationError) as exc_info:
            await service.delete_file(OWNER, created.dataset.dataset_id, "nope.csv")

        assert exc_info.value.status_code == 404
        await service.close()


class TestTiersAndRetirement:
    """External payloads, attachments and the deletion queue"""

    @pytest.mark.asyncio
    async def test_large_upload_goes_external_with_attachment(self, service_factory, blob_store):
        service = service_factory()
        content = create_wide_csv(regions=30, metrics=10)

        result = await service.upload(OWNER, csv_upload(content, "wide.csv", dataset_name="Wide"))

        ref = result.dataset.data_ref
        record = result.dataset.files[0]
        assert ref.storage == "external"
        assert ref.blob_id in blob_store.blobs
        assert record.chunked
        assert blob_store.blobs[record.file_ref] == content
        await service.close()

    @pytest.mark.asyncio
    async def test_rewrite_retires_previous_blobs(self, service_factory, blob_store, deletion_queue):
        service = service_factory()
        first = await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        dataset_id = first.dataset.dataset_id

        second = await service.upload(OWNER, csv_upload(create_wide_csv(31, 10), "wide.csv", dataset_id=dataset_id))
        await deletion_queue.join()

        assert set(blob_store.blobs) == {second.dataset.data_ref.blob_id, second.dataset.files[0].file_ref}
        await service.close()

    @pytest.mark.asyncio
    async def test_delete_dataset_data(self, service_factory, blob_store, deletion_queue, update_manager):
        # Given: an external dataset with a stored attachment
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        dataset_id = created.dataset.dataset_id

        # When: clearing it
        cleared = await service.delete_dataset_data(OWNER, dataset_id)
        await deletion_queue.join()
        await service.notifier.drain()

        # Then: the record stays but holds nothing, and every blob is retired
        assert cleared.data_ref is None
        assert cleared.files == ()
        assert blob_store.blobs == {}
        view = await service.get_dataset(OWNER, dataset_id)
        assert view.categories == []
        assert update_manager.sent[-1][1]["type"] == "dataset_deleted"
        await service.close()

    @pytest.mark.asyncio
    async def test_failed_record_save_retires_new_blobs(self, service_factory, blob_store, deletion_queue):
        service = service_factory()

        async def failing_save(dataset):
            raise ConnectionError("database unavailable")

        service.repository.save = failing_save

        with pytest.raises(ConnectionError):
            await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        await deletion_queue.join()

        assert blob_store.blobs == {}
        await service.close()


class TestTransactionTimeouts:
    """The timeout bounds the update up to the record save, not what follows it"""

    @pytest.mark.asyncio
    async def test_slow_cache_refresh_after_save_still_succeeds(self, service_factory, blob_store,
                                                                deletion_queue, update_manager):
        # Given: an external dataset and a cache that answers slower than the timeout
        service = service_factory(transactions=DatasetTransactionManager(timeout_seconds=0.5))
        first = await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        dataset_id = first.dataset.dataset_id
        real_store = service.cache.store

        async def slow_store(owner_id, dataset_id, view):
            await asyncio.sleep(1)
            return await real_store(owner_id, dataset_id, view)

        service.cache.store = slow_store

        # When: re-uploading the file
        second = await service.upload(OWNER, csv_upload(create_wide_csv(31, 10), "wide.csv", dataset_id=dataset_id))
        await deletion_queue.join()
        await service.notifier.drain()

        # Then: the committed update is reported, old blobs retired and the update published
        assert second.status == "ok"
        saved = await service.repository.get(OWNER, dataset_id)
        assert saved.data_ref == second.dataset.data_ref
        assert set(blob_store.blobs) == {second.dataset.data_ref.blob_id, second.dataset.files[0].file_ref}
        assert update_manager.sent[-1][1]["type"] == "dataset_updated"
        await service.close()

    @pytest.mark.asyncio
    async def test_save_in_flight_at_timeout_completes(self, service_factory, blob_store, deletion_queue):
        service = service_factory(transactions=DatasetTransactionManager(timeout_seconds=0.5))
        real_save = service.repository.save

        async def slow_save(dataset):
            await asyncio.sleep(1)
            return await real_save(dataset)

        service.repository.save = slow_save

        result = await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        await deletion_queue.join()

        assert result.status == "ok"
        assert await service.repository.get(OWNER, result.dataset.dataset_id) == result.dataset
        assert set(blob_store.blobs) == {result.dataset.data_ref.blob_id, result.dataset.files[0].file_ref}
        await service.close()

    @pytest.mark.asyncio
    async def test_timeout_before_save_retires_written_blobs(self, service_factory, blob_store,
                                                             deletion_queue, update_manager):
        # Given: the payload upload lands but is acknowledged after the timeout
        service = service_factory(transactions=DatasetTransactionManager(timeout_seconds=0.5))
        real_put = blob_store.put

        async def slow_ack_put(blob_id, data, content_type="application/octet-stream"):
            await real_put(blob_id, data, content_type)
            if blob_id.endswith(".json.gz"):
                await asyncio.sleep(2)

        blob_store.put = slow_ack_put

        # When: uploading a file large enough for an attachment and an external payload
        with pytest.raises(TransactionTimeout):
            await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        await deletion_queue.join()
        await service.notifier.drain()

        # Then: no record was saved and neither blob survives
        assert await service.list_datasets(OWNER) == []
        assert blob_store.blobs == {}
        assert update_manager.sent == []
        await service.close()


class TestSizeGovernance:
    def sales_categories(self):
        records = [{"Region": r, "Sales": str(s), "Date": d} for r, s, d in
                   [("West", 100, "2024-03-01"), ("East", 250, "2024-03-01"), ("North", 75, "2024-03-02")]]
        return CanonicalTransformer().transform(records, "q1.csv")

    @pytest.mark.asyncio
    async def test_truncation_is_reported(self, service_factory):
        # Given: a budget that fits only the first category
        first = self.sales_categories()[0]
        service = service_factory(governor=SizeGovernor(budget_bytes=2 + serialized_size(first) + 20))

        # When: uploading three categories
        result = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        # Then: the rest are excluded, not silently lost
        assert [c.name for c in result.categories] == ["West"]
        assert result.truncated == ["East", "North"]
        await service.close()

    @pytest.mark.asyncio
    async def test_nothing_fits(self, service_factory):
        service = service_factory(governor=SizeGovernor(budget_bytes=10))

        with pytest.raises(SizeExceeded) as exc_info:
            await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))

        assert exc_info.value.status_code == 413
        assert await service.repository.find_by_name(OWNER, "Sales") is None


class TestCacheConsistency:
    @pytest.mark.asyncio
    async def test_stale_cache_view_is_ignored(self, service_factory):
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_name="Sales"))
        dataset_id = created.dataset.dataset_id
        await service.cache.store(OWNER, dataset_id, {"dataRef": "inline::0:old", "categories": []})

        view = await service.get_dataset(OWNER, dataset_id)

        assert not view.from_cache
        assert [c.name for c in view.categories] == ["West", "East", "North"]
        await service.close()

    @pytest.mark.asyncio
    async def test_missing_blob_is_storage_corruption(self, service_factory, blob_store):
        # Given: an external dataset whose payload blob vanished and no cached view
        service = service_factory()
        created = await service.upload(OWNER, csv_upload(create_wide_csv(30, 10), "wide.csv", dataset_name="Wide"))
        dataset_id = created.dataset.dataset_id
        del blob_store.blobs[created.dataset.data_ref.blob_id]
        await service.cache.delete(OWNER, dataset_id)

        # When / Then: the read fails loudly
        with pytest.raises(StorageCorruption):
            await service.get_dataset(OWNER, dataset_id)

        # And: a write on top of it is refused rather than overwriting with partial data
        with pytest.raises(StorageCorruption):
            await service.upload(OWNER, csv_upload(create_sales_csv(), dataset_id=dataset_id))
        await service.close()


class TestOtherChannels:
    @pytest.mark.asyncio
    async def test_cloud_file_monitoring_expires(self, service_factory):
        service = service_factory()
        result = await service.ingest_cloud_file(
            OWNER, "drive-file-1", "budget.csv", "--- Sheet: Budget ---\nRegion,Sales\nWest,10\n",
            dataset_name="Cloud", expires_at=dt.datetime(2024, 1, 1), folder_id="folder-9",
        )
        dataset_id = result.dataset.dataset_id
        record = result.dataset.files[0]
        assert record.origin == "cloud"
        assert record.file_ref == "drive-file-1"
        assert record.monitoring.status == "active"

        expired = await service.expire_monitoring(OWNER, dataset_id, now=pendulum.datetime(2024, 6, 1))

        assert expired == ["budget.csv"]
        dataset = await service.repository.get(OWNER, dataset_id)
        assert dataset.files[0].monitoring.status == "expired"
        assert await service.expire_monitoring(OWNER, dataset_id, now=pendulum.datetime(2024, 6, 1)) == []
        await service.close()

    @pytest.mark.asyncio
    async def test_document_ingest(self, service_factory):
        service = service_factory(extractor=DocumentRecordExtractor(CannedGenerator()))

        result = await service.ingest_document(OWNER, "Jan profit 8994 ...", "report.txt", dataset_name="Report")

        assert result.status == "ok"
        assert [c.name for c in result.categories] == ["strong start", "slower"]
        assert result.dataset.files[0].filename == "report.txt"
        await service.close()

    @pytest.mark.asyncio
    async def test_document_ingest_unconfigured(self, service_factory):
        service = service_factory()

        with pytest.raises(PipelineError) as exc_info:
            await service.ingest_document(OWNER, "text", "report.txt", dataset_name="Report")

        assert exc_info.value.status_code == 503
