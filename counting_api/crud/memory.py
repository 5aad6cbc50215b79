"""
In-process stores with the same contracts as the Cosmos ones.

Every method body runs without awaiting anything, so a check and the write
that depends on it cannot interleave with another request on the same event
loop. That gives the same uniqueness and ETag guarantees the Cosmos unique
keys and conditioned writes give.
"""
import itertools
import uuid
from typing import Dict, List, Optional, Tuple

from counting_api.exceptions import ConflictError, NotFoundError, PreconditionFailedError
from counting_api.models.catalog import BarcodeUnit, Item
from counting_api.models.reconciliation import FinalCount, RecountAdjustment
from counting_api.models.run import ExpectedQuantity, InventoryRun, RunState
from counting_api.models.zone import CountEvent, Zone, ZoneState
from counting_api.services.similarity import trigram_similarity


def _new_etag() -> str:
    return uuid.uuid4().hex


class InMemoryCatalogStore:
    def __init__(self):
        self.items: Dict[str, Item] = {}
        self.barcodes: Dict[str, BarcodeUnit] = {}

    async def get_barcode(self, barcode: str) -> Optional[BarcodeUnit]:
        unit = self.barcodes.get(barcode)
        return unit.model_copy() if unit else None

    async def get_item(self, item_id: str) -> Optional[Item]:
        item = self.items.get(item_id)
        return item.model_copy() if item else None

    async def list_item_barcodes(self, item_id: str) -> List[BarcodeUnit]:
        units = [
            u.model_copy()
            for u in self.barcodes.values()
            if u.item_id == item_id and u.active
        ]
        return sorted(units, key=lambda u: u.barcode)

    async def find_similar_barcodes(
        self, code: str, threshold: float, limit: int
    ) -> List[Tuple[BarcodeUnit, float]]:
        scored = []
        for unit in self.barcodes.values():
            item = self.items.get(unit.item_id)
            if not unit.active or item is None or not item.active:
                continue
            score = trigram_similarity(code, unit.barcode)
            if score >= threshold:
                scored.append((unit.model_copy(), score))
        scored.sort(key=lambda pair: (-pair[1], pair[0].barcode))
        return scored[:limit]

    async def list_groups(self) -> List[str]:
        return sorted({i.group for i in self.items.values() if i.active})

    async def list_items_by_group(self, groups: List[str]) -> List[Item]:
        wanted = set(groups)
        items = [i.model_copy() for i in self.items.values() if i.active and i.group in wanted]
        return sorted(items, key=lambda i: (i.description, i.item_id))

    async def load_items(self) -> Dict[str, Item]:
        return {k: v.model_copy() for k, v in self.items.items()}

    async def load_barcodes(self) -> Dict[str, BarcodeUnit]:
        return {k: v.model_copy() for k, v in self.barcodes.items()}

    async def upsert_items(self, items: List[Item]) -> None:
        for item in items:
            self.items[item.item_id] = item.model_copy()

    async def upsert_barcodes(self, units: List[BarcodeUnit]) -> None:
        for unit in units:
            self.barcodes[unit.barcode] = unit.model_copy()

    async def deactivate_items(self, item_ids: List[str]) -> None:
        for item_id in item_ids:
            if item_id in self.items:
                self.items[item_id] = self.items[item_id].model_copy(update={"active": False})

    async def deactivate_barcodes(self, barcodes: List[str]) -> None:
        for code in barcodes:
            if code in self.barcodes:
                self.barcodes[code] = self.barcodes[code].model_copy(update={"active": False})


class InMemoryCountingStore:
    def __init__(self):
        self.runs: Dict[str, InventoryRun] = {}
        self.run_keys: Dict[Tuple[str, int], str] = {}
        self.expected: Dict[Tuple[str, int], Dict[str, ExpectedQuantity]] = {}
        self.zones: Dict[str, Zone] = {}
        self.open_zones: Dict[str, str] = {}
        self.events: Dict[str, CountEvent] = {}
        self.adjustments: List[RecountAdjustment] = []
        self.final_counts: Dict[Tuple[str, int, str], FinalCount] = {}
        self._sequence = itertools.count(1)

    # Runs

    async def create_run(
        self, run: InventoryRun, expected: List[ExpectedQuantity]
    ) -> InventoryRun:
        key = (run.site, run.consecutive_number)
        if key in self.run_keys:
            raise ConflictError(
                f"Consecutive number {run.consecutive_number} already exists for site '{run.site}'"
            )
        stored = run.model_copy(update={"etag": _new_etag()})
        self.runs[run.id] = stored
        self.run_keys[key] = run.id
        self.expected[key] = {row.item_id: row.model_copy() for row in expected}
        return stored.model_copy()

    async def get_run(self, run_id: str) -> Optional[InventoryRun]:
        run = self.runs.get(run_id)
        return run.model_copy() if run else None

    async def find_run(self, site: str, consecutive_number: int) -> Optional[InventoryRun]:
        run_id = self.run_keys.get((site, consecutive_number))
        return await self.get_run(run_id) if run_id else None

    async def list_runs(self, state: Optional[RunState] = None) -> List[InventoryRun]:
        runs = [r.model_copy() for r in self.runs.values() if state is None or r.state == state]
        return sorted(runs, key=lambda r: r.start_date, reverse=True)

    async def replace_run(self, run: InventoryRun) -> InventoryRun:
        current = self.runs.get(run.id)
        if current is None:
            raise NotFoundError(f"Inventory run '{run.id}' not found")
        if run.etag is not None and run.etag != current.etag:
            raise PreconditionFailedError(f"Inventory run '{run.id}' was modified concurrently")
        stored = run.model_copy(update={"etag": _new_etag()})
        self.runs[run.id] = stored
        return stored.model_copy()

    async def list_expected(self, site: str, consecutive_number: int) -> List[ExpectedQuantity]:
        rows = self.expected.get((site, consecutive_number), {})
        return [row.model_copy() for row in rows.values()]

    # Zones

    async def create_zone(self, zone: Zone) -> Zone:
        if zone.operator_email in self.open_zones:
            raise ConflictError(f"Operator '{zone.operator_email}' already has a zone in progress")
        stored = zone.model_copy(update={"etag": _new_etag()})
        self.zones[zone.id] = stored
        self.open_zones[zone.operator_email] = zone.id
        return stored.model_copy()

    async def get_zone(self, zone_id: str) -> Optional[Zone]:
        zone = self.zones.get(zone_id)
        return zone.model_copy() if zone else None

    async def find_open_zone(self, operator_email: str) -> Optional[Zone]:
        zone_id = self.open_zones.get(operator_email)
        return await self.get_zone(zone_id) if zone_id else None

    async def list_zones(self, run_id: str) -> List[Zone]:
        zones = [z.model_copy() for z in self.zones.values() if z.inventory_run_id == run_id]
        return sorted(zones, key=lambda z: z.created_at)

    async def replace_zone(self, zone: Zone) -> Zone:
        current = self.zones.get(zone.id)
        if current is None:
            raise NotFoundError(f"Zone '{zone.id}' not found")
        if zone.etag is not None and zone.etag != current.etag:
            raise PreconditionFailedError(f"Zone '{zone.id}' was modified concurrently")
        stored = zone.model_copy(update={"etag": _new_etag()})
        self.zones[zone.id] = stored
        if zone.state != ZoneState.IN_PROGRESS and self.open_zones.get(zone.operator_email) == zone.id:
            del self.open_zones[zone.operator_email]
        return stored.model_copy()

    # Count events

    async def add_event(self, event: CountEvent) -> CountEvent:
        self.events[event.id] = event.model_copy()
        return event.model_copy()

    async def get_event(self, run_id: str, event_id: str) -> Optional[CountEvent]:
        event = self.events.get(event_id)
        if event is None or event.inventory_run_id != run_id:
            return None
        return event.model_copy()

    async def delete_event(self, run_id: str, event_id: str) -> None:
        if await self.get_event(run_id, event_id) is None:
            raise NotFoundError(f"Count event '{event_id}' not found")
        del self.events[event_id]

    async def list_zone_events(self, run_id: str, zone_id: str) -> List[CountEvent]:
        events = [
            e.model_copy()
            for e in self.events.values()
            if e.inventory_run_id == run_id and e.zone_id == zone_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def list_run_events(self, run_id: str) -> List[CountEvent]:
        events = [e.model_copy() for e in self.events.values() if e.inventory_run_id == run_id]
        return sorted(events, key=lambda e: e.timestamp)

    # Recounts

    async def add_adjustment(self, adjustment: RecountAdjustment) -> RecountAdjustment:
        stored = adjustment.model_copy(update={"sequence": next(self._sequence)})
        self.adjustments.append(stored)
        return stored.model_copy()

    async def list_adjustments(self, site: str, consecutive_number: int) -> List[RecountAdjustment]:
        return [
            a.model_copy()
            for a in self.adjustments
            if a.site == site and a.consecutive_number == consecutive_number
        ]

    async def put_final_count(self, final_count: FinalCount) -> FinalCount:
        key = (final_count.site, final_count.consecutive_number, final_count.item_id)
        self.final_counts[key] = final_count.model_copy()
        return final_count.model_copy()

    async def list_final_counts(self, site: str, consecutive_number: int) -> List[FinalCount]:
        return [
            fc.model_copy()
            for (s, n, _), fc in self.final_counts.items()
            if s == site and n == consecutive_number
        ]
