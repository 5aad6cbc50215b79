"""
Catalog sync: diff-only writes, deactivation, and batch failure reporting.
"""
import pytest

from counting_api.crud.memory import InMemoryCatalogStore
from counting_api.exceptions import DatabaseError, PartialBatchFailure
from counting_api.models.catalog import CatalogSnapshot, SyncPhase
from counting_api.services.synchronizer import sync, sync_batch_size


def snapshot(items, barcodes=()) -> CatalogSnapshot:
    return CatalogSnapshot(
        items=[{"item_id": i, "description": d, "group": "G"} for i, d in items],
        barcodes=[{"barcode": b, "item_id": i, "unit_of_measure": u} for b, i, u in barcodes],
    )


BASE = snapshot(
    [("100", "Arroz"), ("200", "Aceite")],
    [("7701", "100", "UND"), ("7702", "100", "P6"), ("7703", "200", "UND")],
)


class FlakyCatalogStore(InMemoryCatalogStore):
    """Fails item upserts for batches containing one of ``poisoned`` ids."""

    def __init__(self, poisoned=(), failures_before_success=None):
        super().__init__()
        self.poisoned = set(poisoned)
        self.failures_before_success = failures_before_success
        self.attempts = 0

    async def upsert_items(self, items):
        if self.poisoned & {i.item_id for i in items}:
            self.attempts += 1
            if self.failures_before_success is None or self.attempts <= self.failures_before_success:
                raise DatabaseError("Cosmos DB error during item upsert: Status Code 503")
        await super().upsert_items(items)


class TestSync:
    @pytest.mark.asyncio
    async def test_first_sync_writes_everything(self):
        catalog = InMemoryCatalogStore()

        result = await sync(catalog, BASE)

        assert result.items_upserted == 2
        assert result.barcodes_upserted == 3
        assert result.items_deactivated == 0
        assert result.barcodes_deactivated == 0
        assert set(catalog.items) == {"100", "200"}

    @pytest.mark.asyncio
    async def test_second_identical_sync_is_a_no_op(self):
        catalog = InMemoryCatalogStore()
        await sync(catalog, BASE)

        result = await sync(catalog, BASE)

        assert result.model_dump() == {
            "items_upserted": 0,
            "barcodes_upserted": 0,
            "items_deactivated": 0,
            "barcodes_deactivated": 0,
        }

    @pytest.mark.asyncio
    async def test_only_changed_rows_are_written(self):
        catalog = InMemoryCatalogStore()
        await sync(catalog, BASE)
        changed = snapshot(
            [("100", "Arroz premium"), ("200", "Aceite")],
            [("7701", "100", "UND"), ("7702", "100", "P12"), ("7703", "200", "UND")],
        )

        result = await sync(catalog, changed)

        assert result.items_upserted == 1
        assert result.barcodes_upserted == 1
        assert catalog.items["100"].description == "Arroz premium"
        assert catalog.barcodes["7702"].unit_of_measure == "P12"

    @pytest.mark.asyncio
    async def test_missing_rows_are_deactivated_not_deleted(self):
        catalog = InMemoryCatalogStore()
        await sync(catalog, BASE)

        result = await sync(catalog, snapshot([("100", "Arroz")], [("7701", "100", "UND")]))

        assert result.items_deactivated == 1
        assert result.barcodes_deactivated == 2
        assert catalog.items["200"].active is False
        assert catalog.barcodes["7702"].active is False
        assert catalog.barcodes["7703"].active is False

    @pytest.mark.asyncio
    async def test_inactive_rows_come_back(self):
        catalog = InMemoryCatalogStore()
        await sync(catalog, BASE)
        await sync(catalog, snapshot([("100", "Arroz")], [("7701", "100", "UND")]))

        result = await sync(catalog, BASE)

        assert result.items_upserted == 1
        assert result.barcodes_upserted == 2
        assert catalog.items["200"].active is True

    @pytest.mark.asyncio
    async def test_already_inactive_rows_are_not_deactivated_again(self):
        catalog = InMemoryCatalogStore()
        await sync(catalog, BASE)
        smaller = snapshot([("100", "Arroz")], [("7701", "100", "UND")])
        await sync(catalog, smaller)

        result = await sync(catalog, smaller)

        assert result.items_deactivated == 0
        assert result.barcodes_deactivated == 0

    @pytest.mark.asyncio
    async def test_first_occurrence_wins_and_orphans_are_skipped(self):
        catalog = InMemoryCatalogStore()
        messy = snapshot(
            [("100", "Arroz"), ("100", "Arroz duplicado")],
            [("7701", "100", "UND"), ("7701", "100", "P6"), ("7799", "999", "UND")],
        )

        result = await sync(catalog, messy)

        assert result.items_upserted == 1
        assert result.barcodes_upserted == 1
        assert catalog.items["100"].description == "Arroz"
        assert catalog.barcodes["7701"].unit_of_measure == "UND"
        assert "7799" not in catalog.barcodes


class TestBatches:
    @pytest.mark.asyncio
    async def test_failed_batch_is_reported_and_others_commit(self):
        # Given: batches [1,2] [3,4] [5]; the middle one keeps failing
        catalog = FlakyCatalogStore(poisoned={"3"})
        items = snapshot([(str(n), f"Item {n}") for n in range(1, 6)])

        # When
        with pytest.raises(PartialBatchFailure) as exc_info:
            await sync(catalog, items, batch_size=2)

        # Then
        failure = exc_info.value
        assert failure.result.items_upserted == 3
        assert len(failure.failures) == 1
        assert failure.failures[0].phase == SyncPhase.UPSERT_ITEMS
        assert failure.failures[0].batch_index == 1
        assert failure.failures[0].keys == ["3", "4"]
        assert "503" in failure.failures[0].message
        assert catalog.attempts == 3
        assert set(catalog.items) == {"1", "2", "5"}

    @pytest.mark.asyncio
    async def test_rerun_completes_the_sync(self):
        catalog = FlakyCatalogStore(poisoned={"3"})
        items = snapshot([(str(n), f"Item {n}") for n in range(1, 6)])
        with pytest.raises(PartialBatchFailure):
            await sync(catalog, items, batch_size=2)

        catalog.poisoned = set()
        result = await sync(catalog, items, batch_size=2)

        assert result.items_upserted == 2
        assert set(catalog.items) == {"1", "2", "3", "4", "5"}

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        catalog = FlakyCatalogStore(poisoned={"3"}, failures_before_success=2)
        items = snapshot([(str(n), f"Item {n}") for n in range(1, 6)])

        result = await sync(catalog, items, batch_size=2)

        assert result.items_upserted == 5
        assert catalog.attempts == 3


class TestBatchSize:
    def test_default(self, monkeypatch):
        monkeypatch.delenv("CATALOG_SYNC_BATCH_SIZE", raising=False)
        assert sync_batch_size() == 200

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("CATALOG_SYNC_BATCH_SIZE", "50")
        assert sync_batch_size() == 50

    def test_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("CATALOG_SYNC_BATCH_SIZE", "0")
        with pytest.raises(ValueError):
            sync_batch_size()
