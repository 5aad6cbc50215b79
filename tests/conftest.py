"""
Shared fixtures: in-memory stores seeded with a small catalog and one run.

Catalog:
    A100 Arroz 500g   barcodes 7701234567890 (UND), 7701234567906 (P6)
    B200 Aceite 1L    barcode  7709876543210 (UND)
    C300 Sal 1kg      barcode  7705555555555 (UND), not in the run
    D400 Azucar       inactive item, barcode 7704444444444

Run S1 #1: A100 expects 50, B200 expects 10.
"""
from datetime import date
from typing import Any, Dict, List

import pytest

from counting_api.crud.memory import InMemoryCatalogStore, InMemoryCountingStore
from counting_api.models.catalog import BarcodeUnit, Item
from counting_api.models.run import InventoryRunCreate
from counting_api.models.zone import CountSubmission, SessionStart, VerificationState, ZoneVerification
from counting_api.services import runs, sessions, synchronizer

A100_UND = "7701234567890"
A100_P6 = "7701234567906"
B200_UND = "7709876543210"
C300_UND = "7705555555555"
D400_UND = "7704444444444"


def make_run_request(**overrides: Any) -> InventoryRunCreate:
    data: Dict[str, Any] = {
        "consecutive_number": 1,
        "site": "S1",
        "category": "Abarrotes",
        "start_date": date(2024, 3, 1),
        "created_by": "admin@example.com",
        "expected": [
            {"item_id": "A100", "quantity": 50, "description": "Arroz 500g", "barcode": A100_UND, "warehouse": "001"},
            {"item_id": "B200", "quantity": 10, "description": "Aceite 1L", "barcode": B200_UND, "warehouse": "001"},
        ],
    }
    data.update(overrides)
    return InventoryRunCreate(**data)


def seed_catalog(catalog: InMemoryCatalogStore) -> None:
    items: List[Item] = [
        Item(item_id="A100", description="Arroz 500g", group="Granos"),
        Item(item_id="B200", description="Aceite 1L", group="Aceites"),
        Item(item_id="C300", description="Sal 1kg", group="Condimentos"),
        Item(item_id="D400", description="Azucar", group="Granos", active=False),
    ]
    units: List[BarcodeUnit] = [
        BarcodeUnit(barcode=A100_UND, item_id="A100", unit_of_measure="UND"),
        BarcodeUnit(barcode=A100_P6, item_id="A100", unit_of_measure="P6"),
        BarcodeUnit(barcode=B200_UND, item_id="B200", unit_of_measure="UND"),
        BarcodeUnit(barcode=C300_UND, item_id="C300", unit_of_measure="UND"),
        BarcodeUnit(barcode=D400_UND, item_id="D400", unit_of_measure="UND"),
    ]
    catalog.items = {i.item_id: i for i in items}
    catalog.barcodes = {u.barcode: u for u in units}


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    """Retries still happen, without sleeping between attempts."""
    from tenacity import wait_none

    monkeypatch.setattr(synchronizer, "RETRY_WAIT", wait_none())
    monkeypatch.setattr(runs, "AVAILABILITY_WAIT", wait_none())


@pytest.fixture
def catalog():
    store = InMemoryCatalogStore()
    seed_catalog(store)
    return store


@pytest.fixture
def store():
    return InMemoryCountingStore()


@pytest.fixture
async def run(store):
    return await runs.create_run(store, make_run_request())


async def open_zone(store, run, operator: str = "ana@example.com"):
    started = await sessions.start_session(
        store, SessionStart(operator_email=operator, inventory_run_id=run.id)
    )
    return started.zone_id


async def count(store, catalog, zone_id: str, code: str, multiplier: float = 1, tag=None, unit=None):
    return await sessions.submit_count(
        store,
        catalog,
        zone_id,
        CountSubmission(
            scanned_code=code,
            quantity_multiplier=multiplier,
            location_tag=tag,
            unit_selection=unit,
        ),
    )


async def close_and_review(store, zone_id: str, decision=VerificationState.APPROVED):
    await sessions.finalize_zone(store, zone_id)
    return await sessions.verify_zone(
        store, zone_id, ZoneVerification(decision=decision, reviewer_id="admin@example.com")
    )
