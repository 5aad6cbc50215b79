"""
Aggregation is a plain additive fold; approval order never changes a run total.
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from counting_api.crud.memory import InMemoryCountingStore
from counting_api.models.zone import CountEvent, LocationTag, VerificationState
from counting_api.services import runs
from counting_api.services.aggregator import aggregate, aggregate_by_location, approved_run_events
from counting_api.services.reconciliation import reconcile

from conftest import A100_P6, A100_UND, B200_UND, close_and_review, count, make_run_request, open_zone


def make_event(item_id: str, quantity: float, tag=None, offset: int = 0) -> CountEvent:
    return CountEvent(
        id=f"e-{item_id}-{quantity}-{offset}",
        zone_id="z1",
        inventory_run_id="r1",
        item_id=item_id,
        scanned_code=item_id,
        unit_of_measure="UND",
        quantity=quantity,
        location_tag=tag,
        timestamp=datetime(2024, 3, 1, tzinfo=timezone.utc) + timedelta(seconds=offset),
        operator_email="ana@example.com",
    )


class TestAggregate:
    def test_sums_every_event(self):
        events = [make_event("A100", 2, offset=0), make_event("A100", 2, offset=1), make_event("B200", 5)]
        assert aggregate(events) == {"A100": 4, "B200": 5}

    def test_order_independent(self):
        events = [
            make_event("A100", 3, offset=0),
            make_event("B200", 1, offset=1),
            make_event("A100", 6, offset=2),
            make_event("B200", 2.5, offset=3),
        ]
        totals = {
            tuple(sorted(aggregate(list(permutation)).items()))
            for permutation in itertools.permutations(events)
        }
        assert totals == {(("A100", 9), ("B200", 3.5))}

    def test_empty(self):
        assert aggregate([]) == {}

    def test_location_split_leaves_untagged_out(self):
        events = [
            make_event("A100", 20, LocationTag.POINT_OF_SALE, 0),
            make_event("A100", 25, LocationTag.WAREHOUSE, 1),
            make_event("A100", 7, None, 2),
        ]

        split = aggregate_by_location(events)

        assert split == {"A100": {"point_of_sale": 20, "warehouse": 25}}
        assert aggregate(events) == {"A100": 52}


class TestRunAggregate:
    """Only approved zones count towards the run"""

    @pytest.mark.asyncio
    async def test_rejected_and_pending_zones_are_excluded(self, store, catalog, run):
        approved = await open_zone(store, run, "ana@example.com")
        await count(store, catalog, approved, A100_UND, multiplier=5)
        await close_and_review(store, approved)

        rejected = await open_zone(store, run, "luis@example.com")
        await count(store, catalog, rejected, A100_UND, multiplier=100)
        await close_and_review(store, rejected, VerificationState.REJECTED)

        pending = await open_zone(store, run, "eva@example.com")
        await count(store, catalog, pending, A100_UND, multiplier=7)

        assert aggregate(await approved_run_events(store, run)) == {"A100": 5}
        # rejected events are kept for audit
        assert len(await store.list_run_events(run.id)) == 3

    @pytest.mark.asyncio
    async def test_approval_order_does_not_change_totals(self, catalog):
        async def scenario(order):
            store = InMemoryCountingStore()
            run = await runs.create_run(store, make_run_request())
            zones = {}
            for operator, code, multiplier in (
                ("ana@example.com", A100_UND, 3),
                ("luis@example.com", A100_P6, 2),
                ("eva@example.com", B200_UND, 4),
            ):
                zones[operator] = await open_zone(store, run, operator)
                await count(store, catalog, zones[operator], code, multiplier=multiplier)
            for operator in order:
                await close_and_review(store, zones[operator])
            return {row.item_id: row.first_physical for row in await reconcile(store, "S1", 1)}

        operators = ["ana@example.com", "luis@example.com", "eva@example.com"]
        results = [await scenario(order) for order in itertools.permutations(operators)]

        assert all(result == {"A100": 15, "B200": 4} for result in results)
