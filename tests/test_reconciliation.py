"""
Three-way reconciliation, notable differences, recounts and the ERP export.
"""
from datetime import datetime, timezone

import pytest

from counting_api.exceptions import ConflictError, NotFoundError, ValidationError
from counting_api.models.reconciliation import (
    PromotionRequest,
    RecountAdjustment,
    RecountAdjustmentCreate,
    ReconciliationRow,
)
from counting_api.models.run import ReviewDecision, RunReview
from counting_api.models.zone import LocationTag
from counting_api.services import reconciliation, runs
from counting_api.services.reconciliation import latest_adjustments, notable_difference

from conftest import A100_UND, close_and_review, count, open_zone


def row(expected: float, physical: float, item_id: str = "X1") -> ReconciliationRow:
    return ReconciliationRow(
        item_id=item_id,
        expected=expected,
        first_physical=physical,
        point_of_sale=0,
        warehouse_count=0,
        effective_count=physical,
        final_count=physical,
        variance=physical - expected,
    )


def recount(item_id: str, quantity: float, recorded_at: datetime, sequence: int) -> RecountAdjustment:
    return RecountAdjustment(
        id=f"{item_id}-{sequence}",
        consecutive_number=1,
        site="S1",
        item_id=item_id,
        adjusted_quantity=quantity,
        previous_quantity=0,
        recorded_at=recorded_at,
        sequence=sequence,
    )


@pytest.fixture
async def counted_run(store, catalog, run):
    """A100: 20 at the point of sale and 25 in the warehouse, approved. B200 never counted."""
    zone_id = await open_zone(store, run)
    await count(store, catalog, zone_id, A100_UND, multiplier=20, tag=LocationTag.POINT_OF_SALE)
    await count(store, catalog, zone_id, A100_UND, multiplier=25, tag=LocationTag.WAREHOUSE)
    await close_and_review(store, zone_id)
    return run


class TestNotableRule:
    """|variance| >= 5 or >= 10% of expected"""

    def test_small_difference_on_large_expectation(self):
        assert notable_difference(row(100, 104)) is None

    def test_absolute_threshold(self):
        notable = notable_difference(row(100, 111))
        assert notable is not None
        assert notable.variance == 11
        assert notable.variance_pct == 11.0

    def test_exactly_five_units(self):
        assert notable_difference(row(100, 95)) is not None

    def test_relative_threshold(self):
        notable = notable_difference(row(20, 22))
        assert notable is not None
        assert notable.variance_pct == 10.0

    def test_below_both_thresholds(self):
        assert notable_difference(row(30, 32)) is None

    def test_nothing_expected(self):
        notable = notable_difference(row(0, 1))
        assert notable is not None
        assert notable.variance_pct == 100.0

    def test_negative_expected(self):
        notable = notable_difference(row(-3, -2))
        assert notable is not None
        assert notable.variance_pct == 100.0

    def test_no_variance(self):
        assert notable_difference(row(0, 0)) is None
        assert notable_difference(row(12, 12)) is None

    def test_percentage_is_rounded(self):
        assert notable_difference(row(3, 4)).variance_pct == 33.33


class TestLatestAdjustment:
    def test_latest_recorded_at_wins(self):
        early = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        late = datetime(2024, 3, 1, 11, tzinfo=timezone.utc)

        latest = latest_adjustments([recount("A100", 40, late, 1), recount("A100", 30, early, 2)])

        assert latest["A100"].adjusted_quantity == 40

    def test_sequence_breaks_ties(self):
        same = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)

        latest = latest_adjustments([recount("A100", 40, same, 2), recount("A100", 30, same, 1)])

        assert latest["A100"].adjusted_quantity == 40


class TestReconcile:
    @pytest.mark.asyncio
    async def test_counted_item_scenario(self, store, counted_run):
        rows = {r.item_id: r for r in await reconciliation.reconcile(store, "S1", 1)}

        a100 = rows["A100"]
        assert a100.expected == 50
        assert a100.first_physical == 45
        assert a100.point_of_sale == 20
        assert a100.warehouse_count == 25
        assert a100.variance == -5
        assert a100.adjusted is None
        assert a100.effective_count == 45
        assert a100.final_count == 45
        assert a100.description == "Arroz 500g"
        assert a100.warehouse == "001"

    @pytest.mark.asyncio
    async def test_uncounted_items_are_listed(self, store, counted_run):
        rows = {r.item_id: r for r in await reconciliation.reconcile(store, "S1", 1)}
        assert rows["B200"].first_physical == 0
        assert rows["B200"].variance == -10

    @pytest.mark.asyncio
    async def test_sorted_by_variance_magnitude(self, store, counted_run):
        rows = await reconciliation.reconcile(store, "S1", 1)
        assert [r.item_id for r in rows] == ["B200", "A100"]

    @pytest.mark.asyncio
    async def test_unknown_run(self, store):
        with pytest.raises(NotFoundError):
            await reconciliation.reconcile(store, "S1", 99)

    @pytest.mark.asyncio
    async def test_notable_differences(self, store, counted_run):
        notable = await reconciliation.notable_differences(store, "S1", 1)

        assert [n.item_id for n in notable] == ["B200", "A100"]
        assert notable[1].variance == -5
        assert notable[1].variance_pct == 10.0
        assert notable[1].physical == 45


class TestRecount:
    @pytest.mark.asyncio
    async def test_recount_changes_effective_count_not_variance(self, store, counted_run):
        # When
        await reconciliation.record_adjustment(
            store,
            RecountAdjustmentCreate(
                consecutive_number=1, site="S1", item_id="A100",
                adjusted_quantity=50, previous_quantity=45, recorded_by="eva@example.com",
            ),
        )

        # Then
        rows = {r.item_id: r for r in await reconciliation.reconcile(store, "S1", 1)}
        assert rows["A100"].adjusted == 50
        assert rows["A100"].effective_count == 50
        assert rows["A100"].variance == -5
        assert rows["A100"].final_count == 45

    @pytest.mark.asyncio
    async def test_later_recount_supersedes(self, store, counted_run):
        for quantity in (48, 50):
            await reconciliation.record_adjustment(
                store,
                RecountAdjustmentCreate(
                    consecutive_number=1, site="S1", item_id="A100",
                    adjusted_quantity=quantity, previous_quantity=45,
                ),
            )

        rows = {r.item_id: r for r in await reconciliation.reconcile(store, "S1", 1)}

        assert rows["A100"].adjusted == 50
        assert len(await store.list_adjustments("S1", 1)) == 2

    @pytest.mark.asyncio
    async def test_item_must_be_in_scope(self, store, counted_run):
        with pytest.raises(ValidationError) as exc_info:
            await reconciliation.record_adjustment(
                store,
                RecountAdjustmentCreate(
                    consecutive_number=1, site="S1", item_id="C300",
                    adjusted_quantity=1, previous_quantity=0,
                ),
            )
        assert exc_info.value.field == "item_id"

    @pytest.mark.asyncio
    async def test_unknown_run(self, store):
        with pytest.raises(NotFoundError):
            await reconciliation.record_adjustment(
                store,
                RecountAdjustmentCreate(
                    consecutive_number=7, site="S1", item_id="A100",
                    adjusted_quantity=1, previous_quantity=0,
                ),
            )

    @pytest.mark.asyncio
    async def test_closed_after_run_approval(self, store, counted_run):
        await runs.finalize_run(store, counted_run.id)
        await runs.review_run(
            store, counted_run.id, RunReview(decision=ReviewDecision.APPROVED, reviewer_id="boss@example.com")
        )

        with pytest.raises(ConflictError):
            await reconciliation.record_adjustment(
                store,
                RecountAdjustmentCreate(
                    consecutive_number=1, site="S1", item_id="A100",
                    adjusted_quantity=50, previous_quantity=45,
                ),
            )


class TestPromotionAndExport:
    @pytest.mark.asyncio
    async def test_promoted_recount_becomes_final(self, store, counted_run):
        await reconciliation.record_adjustment(
            store,
            RecountAdjustmentCreate(
                consecutive_number=1, site="S1", item_id="A100",
                adjusted_quantity=50, previous_quantity=45,
            ),
        )

        final = await reconciliation.promote_adjustment(
            store, "S1", 1, "A100", PromotionRequest(promoted_by="boss@example.com")
        )

        assert final.quantity == 50
        rows = {r.item_id: r for r in await reconciliation.reconcile(store, "S1", 1)}
        assert rows["A100"].final_count == 50
        assert rows["A100"].variance == -5

    @pytest.mark.asyncio
    async def test_nothing_to_promote(self, store, counted_run):
        with pytest.raises(NotFoundError):
            await reconciliation.promote_adjustment(
                store, "S1", 1, "A100", PromotionRequest(promoted_by="boss@example.com")
            )

    @pytest.mark.asyncio
    async def test_export_uses_erp_number_format(self, store, counted_run):
        await reconciliation.record_adjustment(
            store,
            RecountAdjustmentCreate(
                consecutive_number=1, site="S1", item_id="A100",
                adjusted_quantity=50.5, previous_quantity=45,
            ),
        )
        await reconciliation.promote_adjustment(
            store, "S1", 1, "A100", PromotionRequest(promoted_by="boss@example.com")
        )

        export = await reconciliation.physical_count_export(store, "S1", 1)

        # B200 was never counted and is left out
        assert [(r.item_id, r.warehouse, r.quantity) for r in export] == [("A100", "001", "50,50")]
        assert all(r.consecutive_number == 1 for r in export)

    @pytest.mark.asyncio
    async def test_export_refused_without_counts(self, store, run):
        with pytest.raises(ValidationError):
            await reconciliation.physical_count_export(store, "S1", 1)

    @pytest.mark.asyncio
    async def test_recount_to_zero_drops_item_from_export(self, store, counted_run):
        await reconciliation.record_adjustment(
            store,
            RecountAdjustmentCreate(
                consecutive_number=1, site="S1", item_id="A100",
                adjusted_quantity=0, previous_quantity=45,
            ),
        )
        await reconciliation.promote_adjustment(
            store, "S1", 1, "A100", PromotionRequest(promoted_by="boss@example.com")
        )

        with pytest.raises(ValidationError):
            await reconciliation.physical_count_export(store, "S1", 1)
