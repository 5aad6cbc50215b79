"""
Counting session (zone) lifecycle:

    in_progress -> finalized -> approved | rejected

Operators start/resume, scan and finalize; administrators verify. Every
state change is a conditioned write, so two requests racing on the same zone
cannot both win.
"""
import math
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from counting_api.crud.protocols import CatalogStore, CountingStore
from counting_api.exceptions import (
    AmbiguousMatchError,
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.catalog import DEFAULT_UNIT, Resolution
from counting_api.models.run import ExpectedQuantity, InventoryRun, RunState
from counting_api.models.zone import (
    CountEvent,
    CountSubmission,
    CountSubmissionResult,
    MissingItem,
    SessionStart,
    SessionStarted,
    VerificationState,
    Zone,
    ZoneFinalized,
    ZoneState,
    ZoneTotals,
    ZoneVerification,
)
from counting_api.services.aggregator import item_totals, zone_events
from counting_api.services.resolver import resolve
from counting_api.services.units import compute_quantity

logger = get_child_logger("services.sessions")


async def get_run_or_404(store: CountingStore, run_id: str) -> InventoryRun:
    run = await store.get_run(run_id)
    if run is None:
        raise NotFoundError(f"Inventory run '{run_id}' not found")
    return run


async def get_zone_or_404(store: CountingStore, zone_id: str) -> Zone:
    zone = await store.get_zone(zone_id)
    if zone is None:
        raise NotFoundError(f"Zone '{zone_id}' not found")
    return zone


async def run_scope(store: CountingStore, run: InventoryRun) -> Dict[str, ExpectedQuantity]:
    """The run's ExpectedQuantity rows for its own site, keyed by item id."""
    rows = await store.list_expected(run.site, run.consecutive_number)
    return {row.item_id: row for row in rows}


async def _zone_unchanged(
    store: CountingStore, zone: Zone, still_allowed: Callable[[Zone], bool]
) -> bool:
    """
    Conditioned write of ``zone`` as read before an event write. When another
    request changed the zone first, its current state decides.
    """
    try:
        await store.replace_zone(zone)
        return True
    except PreconditionFailedError:
        return still_allowed(await get_zone_or_404(store, zone.id))


async def _started(store: CountingStore, zone: Zone, run: InventoryRun, resumed: bool) -> SessionStarted:
    scope = await run_scope(store, run)
    return SessionStarted(
        zone_id=zone.id,
        inventory_run_id=run.id,
        resumed=resumed,
        scope_item_ids=sorted(scope),
    )


async def start_session(store: CountingStore, request: SessionStart) -> SessionStarted:
    """
    Resume the operator's in-progress zone, or open a new one on the
    requested run. ``inventory_run_id`` is ignored when resuming.
    """
    with tracer.start_as_current_span("start_session") as span:
        span.set_attribute("operator", request.operator_email)

        open_zone = await store.find_open_zone(request.operator_email)
        if open_zone is not None:
            span.set_attribute("resumed", True)
            logger.info(
                "Resuming zone in progress",
                extra={"zone_id": open_zone.id, "operator": request.operator_email},
            )
            run = await get_run_or_404(store, open_zone.inventory_run_id)
            return await _started(store, open_zone, run, resumed=True)

        if not request.inventory_run_id:
            raise ValidationError(
                "inventory_run_id is required to open a new zone", field="inventory_run_id"
            )
        run = await get_run_or_404(store, request.inventory_run_id)
        if run.state != RunState.ACTIVE:
            raise ConflictError(f"Inventory run #{run.consecutive_number} is no longer active")

        zone = Zone(
            id=str(uuid.uuid4()),
            inventory_run_id=run.id,
            operator_email=request.operator_email,
            location_description=request.location_description,
            created_at=datetime.now(timezone.utc),
        )
        try:
            zone = await store.create_zone(zone)
        except ConflictError:
            # another request opened a zone for this operator first
            open_zone = await store.find_open_zone(request.operator_email)
            if open_zone is None:
                raise
            span.set_attribute("resumed", True)
            run = await get_run_or_404(store, open_zone.inventory_run_id)
            return await _started(store, open_zone, run, resumed=True)

        span.set_attribute("resumed", False)
        span.set_attribute("zone.id", zone.id)
        logger.info(
            "Zone opened",
            extra={"zone_id": zone.id, "run_id": run.id, "operator": request.operator_email},
        )
        return await _started(store, zone, run, resumed=False)


def select_unit(resolution: Resolution, unit_selection: Optional[str]) -> str:
    """
    Unit of measure for a scan. ``unit_selection`` may name one of the item's
    barcodes or one of its unit codes; without it the default variant counts.
    """
    variants = resolution.unit_variants
    if not unit_selection:
        for variant in variants:
            if variant.barcode == resolution.default_barcode:
                return variant.unit_of_measure
        return DEFAULT_UNIT

    for variant in variants:
        if variant.barcode == unit_selection:
            return variant.unit_of_measure
    wanted = unit_selection.strip().upper()
    for variant in variants:
        if variant.unit_of_measure.strip().upper() == wanted:
            return variant.unit_of_measure
    if not variants and wanted == DEFAULT_UNIT:
        return DEFAULT_UNIT

    raise ValidationError(
        f"Unit '{unit_selection}' is not available for item '{resolution.item.item_id}'",
        field="unit_selection",
    )


async def submit_count(
    store: CountingStore,
    catalog: CatalogStore,
    zone_id: str,
    submission: CountSubmission,
) -> CountSubmissionResult:
    """
    Resolve, validate and record one scan. Nothing is written unless every
    check passes; an ambiguous scan comes back unaccepted with candidates.
    """
    with tracer.start_as_current_span("submit_count") as span:
        span.set_attribute("zone.id", zone_id)
        span.set_attribute("scanned_code", submission.scanned_code)

        multiplier = submission.quantity_multiplier
        if multiplier is None or not math.isfinite(multiplier) or multiplier < 0:
            raise ValidationError(
                "quantity_multiplier must be a finite, non-negative number", field="quantity_multiplier"
            )

        zone = await get_zone_or_404(store, zone_id)
        if zone.state != ZoneState.IN_PROGRESS:
            raise ConflictError(f"Zone '{zone_id}' is {zone.state.value}; counting is closed")
        run = await get_run_or_404(store, zone.inventory_run_id)
        if run.state != RunState.ACTIVE:
            raise ConflictError(f"Inventory run #{run.consecutive_number} is no longer active")

        try:
            resolution = await resolve(catalog, submission.scanned_code)
        except AmbiguousMatchError as e:
            span.set_attribute("accepted", False)
            return CountSubmissionResult(accepted=False, candidates=e.candidates)

        item = resolution.item
        scope = await run_scope(store, run)
        if item.item_id not in scope:
            span.set_attribute("accepted", False)
            logger.warning(
                "Scanned item outside run scope",
                extra={"item_id": item.item_id, "run_id": run.id, "zone_id": zone_id},
            )
            raise ValidationError(
                f"'{item.description}' (item {item.item_id}) is not part of inventory "
                f"#{run.consecutive_number} for site '{run.site}'",
                field="scanned_code",
            )

        unit = select_unit(resolution, submission.unit_selection)
        quantity = compute_quantity(unit, submission.quantity_multiplier)

        event = CountEvent(
            id=str(uuid.uuid4()),
            zone_id=zone.id,
            inventory_run_id=run.id,
            item_id=item.item_id,
            scanned_code=submission.scanned_code,
            unit_of_measure=unit,
            quantity=quantity,
            location_tag=submission.location_tag,
            timestamp=datetime.now(timezone.utc),
            operator_email=zone.operator_email,
        )
        event = await store.add_event(event)
        if not await _zone_unchanged(store, zone, lambda z: z.state == ZoneState.IN_PROGRESS):
            await store.delete_event(run.id, event.id)
            span.set_attribute("accepted", False)
            raise ConflictError(f"Zone '{zone_id}' was finalized while the scan was recorded; scan again")

        span.set_attribute("accepted", True)
        span.set_attribute("item.id", item.item_id)
        span.set_attribute("quantity", quantity)
        logger.info(
            "Count registered",
            extra={"zone_id": zone.id, "item_id": item.item_id, "quantity": quantity, "unit": unit},
        )
        return CountSubmissionResult(
            accepted=True,
            resolved_item_id=item.item_id,
            computed_quantity=quantity,
            unit_of_measure=unit,
            event_id=event.id,
        )


async def list_events(store: CountingStore, zone_id: str) -> List[CountEvent]:
    zone = await get_zone_or_404(store, zone_id)
    return await zone_events(store, zone)


async def delete_event(store: CountingStore, zone_id: str, event_id: str) -> None:
    """Operator correction; only while the zone is awaiting verification."""
    zone = await get_zone_or_404(store, zone_id)
    if zone.verification_state != VerificationState.PENDING:
        raise ConflictError(
            f"Zone '{zone_id}' is {zone.verification_state.value}; its counts can no longer change"
        )
    event = await store.get_event(zone.inventory_run_id, event_id)
    if event is None or event.zone_id != zone.id:
        raise NotFoundError(f"Count event '{event_id}' not found in zone '{zone_id}'")
    await store.delete_event(zone.inventory_run_id, event_id)
    if not await _zone_unchanged(store, zone, lambda z: z.verification_state == VerificationState.PENDING):
        await store.add_event(event)
        raise ConflictError(f"Zone '{zone_id}' was reviewed meanwhile; its counts can no longer change")
    logger.info("Count event deleted", extra={"zone_id": zone_id, "event_id": event_id})


async def missing_items(store: CountingStore, zone_id: str) -> List[MissingItem]:
    """
    In-scope items with a nonzero theoretical quantity that nobody in the
    whole run has counted yet. Rejected zones do not count as coverage.
    """
    zone = await get_zone_or_404(store, zone_id)
    run = await get_run_or_404(store, zone.inventory_run_id)

    rejected = {
        z.id
        for z in await store.list_zones(run.id)
        if z.verification_state == VerificationState.REJECTED
    }
    counted = {
        e.item_id for e in await store.list_run_events(run.id) if e.zone_id not in rejected
    }
    scope = await run_scope(store, run)
    return [
        MissingItem(item_id=row.item_id, description=row.description, expected=row.quantity)
        for item_id, row in sorted(scope.items())
        if row.quantity != 0 and item_id not in counted
    ]


async def finalize_zone(store: CountingStore, zone_id: str) -> ZoneFinalized:
    """
    Close counting on a zone. The uncounted-items list is informational;
    finalization does not wait on it.
    """
    with tracer.start_as_current_span("finalize_zone") as span:
        span.set_attribute("zone.id", zone_id)

        zone = await get_zone_or_404(store, zone_id)
        if zone.state != ZoneState.IN_PROGRESS:
            raise ConflictError(f"Zone '{zone_id}' is already {zone.state.value}")
        if not await zone_events(store, zone):
            # empty zones close only once their run has
            run = await get_run_or_404(store, zone.inventory_run_id)
            if run.state == RunState.ACTIVE:
                raise ConflictError(
                    f"Zone '{zone_id}' has no counts; register at least one before finalizing"
                )

        pending = await missing_items(store, zone_id)

        zone.state = ZoneState.FINALIZED
        zone.finalized_at = datetime.now(timezone.utc)
        try:
            zone = await store.replace_zone(zone)
        except PreconditionFailedError as e:
            raise ConflictError(str(e)) from e

        span.set_attribute("pending_items.count", len(pending))
        logger.info(
            "Zone finalized",
            extra={"zone_id": zone_id, "pending_items": len(pending)},
        )
        return ZoneFinalized(zone=zone, pending_zero_count_items=pending)


async def close_empty_zones(store: CountingStore, run: InventoryRun) -> List[str]:
    """
    Finalize the run's in-progress zones that hold no counts, so their
    operators can open a zone on another run. A zone that changed meanwhile
    is left to its operator.
    """
    closed = []
    for zone in await store.list_zones(run.id):
        if zone.state != ZoneState.IN_PROGRESS or await zone_events(store, zone):
            continue
        zone.state = ZoneState.FINALIZED
        zone.finalized_at = datetime.now(timezone.utc)
        try:
            await store.replace_zone(zone)
        except PreconditionFailedError:
            logger.warning(
                "Zone changed while closing empty zones",
                extra={"zone_id": zone.id, "run_id": run.id},
            )
            continue
        closed.append(zone.id)

    if closed:
        logger.info(
            "Empty zones closed with their run",
            extra={"run_id": run.id, "zones_closed": len(closed)},
        )
    return closed


async def verify_zone(store: CountingStore, zone_id: str, verification: ZoneVerification) -> Zone:
    """
    Approve or reject a finalized zone. Approval puts the zone's events into
    the run's first physical count; a decision is never revisited.
    """
    with tracer.start_as_current_span("verify_zone") as span:
        span.set_attribute("zone.id", zone_id)
        span.set_attribute("decision", verification.decision.value)

        if verification.decision == VerificationState.PENDING:
            raise ValidationError("decision must be 'approved' or 'rejected'", field="decision")

        zone = await get_zone_or_404(store, zone_id)
        if zone.state != ZoneState.FINALIZED:
            raise ConflictError(f"Zone '{zone_id}' must be finalized before verification")
        if zone.verification_state != VerificationState.PENDING:
            raise ConflictError(
                f"Zone '{zone_id}' has already been {zone.verification_state.value}"
            )

        zone.verification_state = verification.decision
        zone.reviewed_by = verification.reviewer_id
        zone.reviewed_at = datetime.now(timezone.utc)
        try:
            zone = await store.replace_zone(zone)
        except PreconditionFailedError as e:
            raise ConflictError(str(e)) from e

        logger.info(
            f"Zone {verification.decision.value}",
            extra={"zone_id": zone_id, "reviewer": verification.reviewer_id},
        )
        return zone


async def zone_totals(store: CountingStore, zone_id: str) -> ZoneTotals:
    zone = await get_zone_or_404(store, zone_id)
    return ZoneTotals(zone_id=zone.id, totals=item_totals(await zone_events(store, zone)))
