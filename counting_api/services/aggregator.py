from collections import defaultdict
from typing import Dict, Iterable, List

from counting_api.crud.protocols import CountingStore
from counting_api.models.run import InventoryRun
from counting_api.models.zone import (
    CountEvent,
    ItemTotal,
    LocationTag,
    VerificationState,
    Zone,
)


def aggregate(events: Iterable[CountEvent]) -> Dict[str, float]:
    """Plain additive fold of event quantities per item."""
    totals: Dict[str, float] = defaultdict(float)
    for event in events:
        totals[event.item_id] += event.quantity
    return dict(totals)


def aggregate_by_location(events: Iterable[CountEvent]) -> Dict[str, Dict[str, float]]:
    """
    Same fold split into point-of-sale and warehouse buckets. Untagged events
    land in neither bucket (they still count in ``aggregate``).
    """
    split: Dict[str, Dict[str, float]] = {}
    for event in events:
        buckets = split.setdefault(
            event.item_id,
            {LocationTag.POINT_OF_SALE.value: 0.0, LocationTag.WAREHOUSE.value: 0.0},
        )
        if event.location_tag is not None:
            buckets[event.location_tag.value] += event.quantity
    return split


def item_totals(events: List[CountEvent]) -> List[ItemTotal]:
    totals = aggregate(events)
    split = aggregate_by_location(events)
    return [
        ItemTotal(
            item_id=item_id,
            quantity=quantity,
            point_of_sale=split[item_id][LocationTag.POINT_OF_SALE.value],
            warehouse=split[item_id][LocationTag.WAREHOUSE.value],
        )
        for item_id, quantity in sorted(totals.items())
    ]


async def zone_events(store: CountingStore, zone: Zone) -> List[CountEvent]:
    return await store.list_zone_events(zone.inventory_run_id, zone.id)


async def approved_run_events(store: CountingStore, run: InventoryRun) -> List[CountEvent]:
    """
    Events of the run's approved zones: the first physical count. Approval
    order does not matter, only which zones are approved when this is read.
    """
    approved = {
        z.id
        for z in await store.list_zones(run.id)
        if z.verification_state == VerificationState.APPROVED
    }
    if not approved:
        return []
    return [e for e in await store.list_run_events(run.id) if e.zone_id in approved]
