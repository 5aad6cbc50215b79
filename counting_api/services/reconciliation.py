"""
Three-way comparison per item: theoretical (ERP snapshot), first physical
count (approved zones) and recount adjustment.

``variance`` is always ``first_physical - expected``. A recount changes the
effective count shown to reviewers, never the variance; the value sent back
to the ERP only changes once an adjustment is promoted.
"""
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from counting_api.crud.protocols import CountingStore
from counting_api.exceptions import ConflictError, NotFoundError, ValidationError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.reconciliation import (
    FinalCount,
    NotableDifference,
    PhysicalCountExportRow,
    PromotionRequest,
    RecountAdjustment,
    RecountAdjustmentCreate,
    ReconciliationRow,
)
from counting_api.models.run import ApprovalState, InventoryRun
from counting_api.models.zone import LocationTag
from counting_api.services.aggregator import aggregate, aggregate_by_location, approved_run_events

logger = get_child_logger("services.reconciliation")

NOTABLE_ABSOLUTE = 5
NOTABLE_RELATIVE = 0.10


async def find_run_or_404(store: CountingStore, site: str, consecutive_number: int) -> InventoryRun:
    run = await store.find_run(site, consecutive_number)
    if run is None:
        raise NotFoundError(f"Inventory #{consecutive_number} for site '{site}' not found")
    return run


def latest_adjustments(adjustments: List[RecountAdjustment]) -> Dict[str, RecountAdjustment]:
    """Latest adjustment per item: newest ``recorded_at``, then highest ``sequence``."""
    latest: Dict[str, RecountAdjustment] = {}
    for adjustment in adjustments:
        current = latest.get(adjustment.item_id)
        if current is None or (adjustment.recorded_at, adjustment.sequence) > (
            current.recorded_at,
            current.sequence,
        ):
            latest[adjustment.item_id] = adjustment
    return latest


async def reconcile(store: CountingStore, site: str, consecutive_number: int) -> List[ReconciliationRow]:
    with tracer.start_as_current_span("reconcile") as span:
        span.set_attribute("site", site)
        span.set_attribute("consecutive_number", consecutive_number)

        run = await find_run_or_404(store, site, consecutive_number)
        expected = await store.list_expected(site, consecutive_number)
        events = await approved_run_events(store, run)
        physical = aggregate(events)
        split = aggregate_by_location(events)
        adjusted = latest_adjustments(await store.list_adjustments(site, consecutive_number))
        finals = {f.item_id: f for f in await store.list_final_counts(site, consecutive_number)}

        rows = []
        for row in expected:
            first_physical = physical.get(row.item_id, 0.0)
            buckets = split.get(row.item_id, {})
            adjustment = adjusted.get(row.item_id)
            adjusted_quantity: Optional[float] = (
                adjustment.adjusted_quantity if adjustment is not None else None
            )
            final = finals.get(row.item_id)
            rows.append(
                ReconciliationRow(
                    item_id=row.item_id,
                    description=row.description,
                    barcode=row.barcode,
                    warehouse=row.warehouse,
                    expected=row.quantity,
                    first_physical=first_physical,
                    point_of_sale=buckets.get(LocationTag.POINT_OF_SALE.value, 0.0),
                    warehouse_count=buckets.get(LocationTag.WAREHOUSE.value, 0.0),
                    adjusted=adjusted_quantity,
                    effective_count=adjusted_quantity if adjusted_quantity is not None else first_physical,
                    final_count=final.quantity if final is not None else first_physical,
                    variance=first_physical - row.quantity,
                )
            )
        rows.sort(key=lambda r: (-abs(r.variance), r.item_id))

        span.set_attribute("rows.count", len(rows))
        return rows


def notable_difference(row: ReconciliationRow) -> Optional[NotableDifference]:
    """
    ``|variance| >= 5`` or ``|variance| / expected >= 10%``. With nothing (or
    less than nothing) expected, any variance is notable and counts as 100%.
    """
    magnitude = abs(row.variance)
    if magnitude == 0:
        return None
    if row.expected > 0:
        relative = magnitude / row.expected
    else:
        relative = 1.0
    if magnitude < NOTABLE_ABSOLUTE and relative < NOTABLE_RELATIVE:
        return None
    return NotableDifference(
        item_id=row.item_id,
        description=row.description,
        expected=row.expected,
        physical=row.first_physical,
        variance=row.variance,
        variance_pct=round(relative * 100, 2),
        magnitude=magnitude,
    )


async def notable_differences(
    store: CountingStore, site: str, consecutive_number: int
) -> List[NotableDifference]:
    rows = await reconcile(store, site, consecutive_number)
    notable = [n for n in (notable_difference(row) for row in rows) if n is not None]
    notable.sort(key=lambda n: (-n.magnitude, n.item_id))
    logger.info(
        "Notable differences computed",
        extra={"site": site, "consecutive_number": consecutive_number, "notable": len(notable)},
    )
    return notable


def _ensure_open_for_review(run: InventoryRun) -> None:
    if run.approval_state != ApprovalState.PENDING:
        raise ConflictError(
            f"Inventory #{run.consecutive_number} for site '{run.site}' is already "
            f"{run.approval_state.value}; its counts can no longer change"
        )


async def record_adjustment(store: CountingStore, request: RecountAdjustmentCreate) -> RecountAdjustment:
    """Append a recount for an in-scope item. Earlier recounts are kept."""
    with tracer.start_as_current_span("record_adjustment") as span:
        span.set_attribute("site", request.site)
        span.set_attribute("consecutive_number", request.consecutive_number)
        span.set_attribute("item.id", request.item_id)

        run = await find_run_or_404(store, request.site, request.consecutive_number)
        _ensure_open_for_review(run)
        scope = {row.item_id for row in await store.list_expected(run.site, run.consecutive_number)}
        if request.item_id not in scope:
            raise ValidationError(
                f"Item '{request.item_id}' is not part of inventory #{run.consecutive_number} "
                f"for site '{run.site}'",
                field="item_id",
            )

        adjustment = RecountAdjustment(
            id=str(uuid.uuid4()),
            consecutive_number=run.consecutive_number,
            site=run.site,
            item_id=request.item_id,
            adjusted_quantity=request.adjusted_quantity,
            previous_quantity=request.previous_quantity,
            recorded_by=request.recorded_by,
            recorded_at=datetime.now(timezone.utc),
        )
        adjustment = await store.add_adjustment(adjustment)
        logger.info(
            "Recount recorded",
            extra={
                "site": run.site,
                "consecutive_number": run.consecutive_number,
                "item_id": request.item_id,
                "adjusted_quantity": request.adjusted_quantity,
            },
        )
        return adjustment


async def promote_adjustment(
    store: CountingStore,
    site: str,
    consecutive_number: int,
    item_id: str,
    request: PromotionRequest,
) -> FinalCount:
    """Make the item's latest recount its final count."""
    with tracer.start_as_current_span("promote_adjustment") as span:
        span.set_attribute("site", site)
        span.set_attribute("consecutive_number", consecutive_number)
        span.set_attribute("item.id", item_id)

        run = await find_run_or_404(store, site, consecutive_number)
        _ensure_open_for_review(run)
        latest = latest_adjustments(await store.list_adjustments(site, consecutive_number)).get(item_id)
        if latest is None:
            raise NotFoundError(
                f"No recount recorded for item '{item_id}' in inventory #{consecutive_number}"
            )

        final = FinalCount(
            consecutive_number=consecutive_number,
            site=site,
            item_id=item_id,
            quantity=latest.adjusted_quantity,
            promoted_by=request.promoted_by,
            promoted_at=datetime.now(timezone.utc),
        )
        final = await store.put_final_count(final)
        logger.info(
            "Recount promoted to final count",
            extra={"site": site, "item_id": item_id, "quantity": final.quantity},
        )
        return final


def format_erp_quantity(quantity: float) -> str:
    return f"{quantity:.2f}".replace(".", ",")


async def physical_count_export(
    store: CountingStore, site: str, consecutive_number: int
) -> List[PhysicalCountExportRow]:
    """
    Final physical count for the ERP: items with a positive final count only.
    An inventory with nothing counted has nothing to export.
    """
    rows = await reconcile(store, site, consecutive_number)
    export = [
        PhysicalCountExportRow(
            consecutive_number=consecutive_number,
            item_id=row.item_id,
            warehouse=row.warehouse,
            quantity=format_erp_quantity(row.final_count),
        )
        for row in sorted(rows, key=lambda r: r.item_id)
        if row.final_count > 0
    ]
    if not export:
        raise ValidationError(
            f"Inventory #{consecutive_number} at '{site}' has no approved counts to export"
        )
    return export
