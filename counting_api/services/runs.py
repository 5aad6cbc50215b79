"""
Inventory run administration: creation with the theoretical snapshot,
consecutive-number availability, run closing and approval.
"""
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from counting_api.crud.protocols import CountingStore
from counting_api.exceptions import ConflictError, DatabaseError, PreconditionFailedError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.run import (
    ApprovalState,
    ConsecutiveAvailability,
    ExpectedQuantity,
    InventoryRun,
    InventoryRunCreate,
    RunDetail,
    RunReview,
    RunState,
    ZoneSummary,
)
from counting_api.services.aggregator import aggregate
from counting_api.services.sessions import close_empty_zones, get_run_or_404

logger = get_child_logger("services.runs")

AVAILABILITY_ATTEMPTS = 3
AVAILABILITY_WAIT = wait_exponential(multiplier=0.5, min=0.5, max=4)


def _expected_rows(request: InventoryRunCreate) -> List[ExpectedQuantity]:
    """One row per item; repeated items (one per store-room) are summed."""
    rows: Dict[str, ExpectedQuantity] = {}
    for row in request.expected:
        current = rows.get(row.item_id)
        if current is not None:
            current.quantity += row.quantity
            continue
        rows[row.item_id] = ExpectedQuantity(
            consecutive_number=request.consecutive_number,
            site=request.site,
            item_id=row.item_id,
            quantity=row.quantity,
            description=row.description,
            barcode=row.barcode,
            warehouse=row.warehouse,
        )
    return list(rows.values())


async def create_run(store: CountingStore, request: InventoryRunCreate) -> InventoryRun:
    """
    Create a run and its scope. A consecutive number already used at the
    site raises ConflictError from the store itself, so two concurrent
    creations cannot both succeed.
    """
    with tracer.start_as_current_span("create_run") as span:
        span.set_attribute("site", request.site)
        span.set_attribute("consecutive_number", request.consecutive_number)

        run = InventoryRun(
            id=str(uuid.uuid4()),
            consecutive_number=request.consecutive_number,
            site=request.site,
            category=request.category,
            description=request.description,
            created_by=request.created_by,
            start_date=request.start_date,
            created_at=datetime.now(timezone.utc),
        )
        expected = _expected_rows(request)
        run = await store.create_run(run, expected)

        span.set_attribute("run.id", run.id)
        span.set_attribute("expected.count", len(expected))
        logger.info(
            "Inventory run created",
            extra={
                "run_id": run.id,
                "site": run.site,
                "consecutive_number": run.consecutive_number,
                "expected_items": len(expected),
            },
        )
        return run


async def check_availability(
    store: CountingStore, site: str, consecutive_number: int
) -> ConsecutiveAvailability:
    """
    Whether ``consecutive_number`` is still free at ``site``.

    Advisory only: creation is guarded by the store. When the store cannot be
    reached after retries the answer is unverified with a warning, so the
    administrator can confirm by hand instead of being blocked.
    """

    @retry(
        stop=stop_after_attempt(AVAILABILITY_ATTEMPTS),
        wait=AVAILABILITY_WAIT,
        retry=retry_if_exception_type(DatabaseError),
        reraise=True,
    )
    async def _lookup() -> Optional[InventoryRun]:
        return await store.find_run(site, consecutive_number)

    with tracer.start_as_current_span("check_availability") as span:
        span.set_attribute("site", site)
        span.set_attribute("consecutive_number", consecutive_number)
        try:
            existing = await _lookup()
        except DatabaseError as e:
            span.set_attribute("verified", False)
            logger.warning(
                "Consecutive number could not be verified",
                extra={"site": site, "consecutive_number": consecutive_number, "error": str(e)},
            )
            return ConsecutiveAvailability(
                site=site,
                consecutive_number=consecutive_number,
                verified=False,
                warning="Could not verify the consecutive number right now; confirm it manually before creating the run.",
            )

        span.set_attribute("verified", True)
        return ConsecutiveAvailability(
            site=site,
            consecutive_number=consecutive_number,
            available=existing is None,
            verified=True,
        )


async def list_runs(store: CountingStore, state: Optional[RunState] = None) -> List[InventoryRun]:
    return await store.list_runs(state)


async def run_zones(store: CountingStore, run_id: str) -> List[ZoneSummary]:
    """Every zone of the run with its event count and unit total."""
    run = await get_run_or_404(store, run_id)
    events = await store.list_run_events(run.id)
    summaries = []
    for zone in await store.list_zones(run.id):
        zone_events = [e for e in events if e.zone_id == zone.id]
        summaries.append(
            ZoneSummary(
                zone_id=zone.id,
                operator_email=zone.operator_email,
                location_description=zone.location_description,
                state=zone.state.value,
                verification_state=zone.verification_state.value,
                event_count=len(zone_events),
                total_count=sum(aggregate(zone_events).values()),
            )
        )
    return summaries


async def run_detail(store: CountingStore, run_id: str) -> RunDetail:
    run = await get_run_or_404(store, run_id)
    return RunDetail(run=run, zones=await run_zones(store, run_id))


async def finalize_run(store: CountingStore, run_id: str) -> InventoryRun:
    """
    Close the run to new counts. In-progress zones with no counts are closed
    with it; zones holding counts stay open for their operators to finalize.
    """
    with tracer.start_as_current_span("finalize_run") as span:
        span.set_attribute("run.id", run_id)
        run = await get_run_or_404(store, run_id)
        if run.state != RunState.ACTIVE:
            raise ConflictError(f"Inventory run #{run.consecutive_number} is already finalized")

        run.state = RunState.FINALIZED
        run.finished_at = datetime.now(timezone.utc)
        try:
            run = await store.replace_run(run)
        except PreconditionFailedError as e:
            raise ConflictError(str(e)) from e

        closed = await close_empty_zones(store, run)
        span.set_attribute("zones_closed", len(closed))
        logger.info("Inventory run finalized", extra={"run_id": run.id, "site": run.site})
        return run


async def review_run(store: CountingStore, run_id: str, review: RunReview) -> InventoryRun:
    with tracer.start_as_current_span("review_run") as span:
        span.set_attribute("run.id", run_id)
        span.set_attribute("decision", review.decision.value)

        run = await get_run_or_404(store, run_id)
        if run.state != RunState.FINALIZED:
            raise ConflictError(
                f"Inventory run #{run.consecutive_number} must be finalized before review"
            )
        if run.approval_state != ApprovalState.PENDING:
            raise ConflictError(
                f"Inventory run #{run.consecutive_number} has already been {run.approval_state.value}"
            )

        run.approval_state = ApprovalState(review.decision.value)
        run.reviewed_by = review.reviewer_id
        run.reviewed_at = datetime.now(timezone.utc)
        try:
            run = await store.replace_run(run)
        except PreconditionFailedError as e:
            raise ConflictError(str(e)) from e

        logger.info(
            f"Inventory run {review.decision.value}",
            extra={"run_id": run.id, "reviewer": review.reviewer_id},
        )
        return run
