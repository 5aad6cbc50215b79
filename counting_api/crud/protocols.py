"""
Store interfaces.

The services only talk to these protocols; ``cosmos_*`` modules implement them
over Azure Cosmos DB and ``memory`` implements them in-process for tests and
local runs. Nothing here performs I/O at import time.
"""
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from counting_api.models.catalog import BarcodeUnit, Item
from counting_api.models.reconciliation import FinalCount, RecountAdjustment
from counting_api.models.run import ExpectedQuantity, InventoryRun, RunState
from counting_api.models.zone import CountEvent, Zone


@runtime_checkable
class CatalogStore(Protocol):
    """
    Items and barcode units. Lookups return inactive rows too; callers filter.
    """

    async def get_barcode(self, barcode: str) -> Optional[BarcodeUnit]:
        ...

    async def get_item(self, item_id: str) -> Optional[Item]:
        ...

    async def list_item_barcodes(self, item_id: str) -> List[BarcodeUnit]:
        """Active barcode units of one item, ordered by barcode."""
        ...

    async def find_similar_barcodes(
        self, code: str, threshold: float, limit: int
    ) -> List[Tuple[BarcodeUnit, float]]:
        """Active barcodes of active items scoring >= threshold, best first."""
        ...

    async def list_groups(self) -> List[str]:
        ...

    async def list_items_by_group(self, groups: List[str]) -> List[Item]:
        """Active items of any of ``groups``, ordered by description."""
        ...

    async def load_items(self) -> Dict[str, Item]:
        ...

    async def load_barcodes(self) -> Dict[str, BarcodeUnit]:
        ...

    async def upsert_items(self, items: List[Item]) -> None:
        ...

    async def upsert_barcodes(self, units: List[BarcodeUnit]) -> None:
        ...

    async def deactivate_items(self, item_ids: List[str]) -> None:
        ...

    async def deactivate_barcodes(self, barcodes: List[str]) -> None:
        ...


@runtime_checkable
class CountingStore(Protocol):
    """
    Runs, theoretical snapshots, zones, count events and recount results.

    Conditioned writes (``replace_*``) raise PreconditionFailedError when the
    ETag on the model no longer matches; ``create_run`` and ``create_zone``
    raise ConflictError when a uniqueness rule is violated.
    """

    # Runs

    async def create_run(
        self, run: InventoryRun, expected: List[ExpectedQuantity]
    ) -> InventoryRun:
        ...

    async def get_run(self, run_id: str) -> Optional[InventoryRun]:
        ...

    async def find_run(self, site: str, consecutive_number: int) -> Optional[InventoryRun]:
        ...

    async def list_runs(self, state: Optional[RunState] = None) -> List[InventoryRun]:
        ...

    async def replace_run(self, run: InventoryRun) -> InventoryRun:
        ...

    async def list_expected(self, site: str, consecutive_number: int) -> List[ExpectedQuantity]:
        ...

    # Zones

    async def create_zone(self, zone: Zone) -> Zone:
        ...

    async def get_zone(self, zone_id: str) -> Optional[Zone]:
        ...

    async def find_open_zone(self, operator_email: str) -> Optional[Zone]:
        ...

    async def list_zones(self, run_id: str) -> List[Zone]:
        ...

    async def replace_zone(self, zone: Zone) -> Zone:
        ...

    # Count events

    async def add_event(self, event: CountEvent) -> CountEvent:
        ...

    async def get_event(self, run_id: str, event_id: str) -> Optional[CountEvent]:
        ...

    async def delete_event(self, run_id: str, event_id: str) -> None:
        ...

    async def list_zone_events(self, run_id: str, zone_id: str) -> List[CountEvent]:
        ...

    async def list_run_events(self, run_id: str) -> List[CountEvent]:
        ...

    # Recounts

    async def add_adjustment(self, adjustment: RecountAdjustment) -> RecountAdjustment:
        ...

    async def list_adjustments(self, site: str, consecutive_number: int) -> List[RecountAdjustment]:
        ...

    async def put_final_count(self, final_count: FinalCount) -> FinalCount:
        ...

    async def list_final_counts(self, site: str, consecutive_number: int) -> List[FinalCount]:
        ...
