from typing import List
from fastapi import APIRouter, Body, Depends, Path, status

from counting_api.crud.protocols import CatalogStore, CountingStore
from counting_api.db import get_catalog_store, get_counting_store
from counting_api.exceptions import ApplicationError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.zone import (
    CountEvent,
    CountSubmission,
    CountSubmissionResult,
    MissingItem,
    SessionStart,
    SessionStarted,
    Zone,
    ZoneFinalized,
    ZoneTotals,
    ZoneVerification,
)
from counting_api.routes.errors import http_error
from counting_api.services import sessions

# Create a child logger for this module
logger = get_child_logger("routes.session")

router = APIRouter(tags=["sessions"])


@router.post("/sessions", response_model=SessionStarted)
async def start_or_resume_session(
    request: SessionStart = Body(..., description="Operator and the run to count"),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_start_session") as span:
        span.set_attribute("operator", request.operator_email)
        logger.info(
            "Handling POST /sessions request",
            extra={"operator": request.operator_email, "run_id": request.inventory_run_id},
        )
        try:
            started = await sessions.start_session(store, request)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)

        span.set_attribute("zone.id", started.zone_id)
        span.set_attribute("resumed", started.resumed)
        return started


@router.post("/zones/{zone_id}/events", response_model=CountSubmissionResult)
async def submit_count(
    zone_id: str = Path(..., title="Zone being counted"),
    submission: CountSubmission = Body(...),
    store: CountingStore = Depends(get_counting_store),
    catalog: CatalogStore = Depends(get_catalog_store),
):
    with tracer.start_as_current_span("api_submit_count") as span:
        span.set_attribute("zone.id", zone_id)
        span.set_attribute("scanned_code", submission.scanned_code)

        try:
            result = await sessions.submit_count(store, catalog, zone_id, submission)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            logger.info(
                "Count rejected",
                extra={"zone_id": zone_id, "scanned_code": submission.scanned_code, "reason": str(e)},
            )
            raise http_error(e)

        span.set_attribute("accepted", result.accepted)
        return result


@router.get("/zones/{zone_id}/events", response_model=List[CountEvent])
async def get_zone_events(
    zone_id: str = Path(..., title="Zone"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await sessions.list_events(store, zone_id)
    except ApplicationError as e:
        raise http_error(e)


@router.delete("/zones/{zone_id}/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_zone_event(
    zone_id: str = Path(..., title="Zone"),
    event_id: str = Path(..., title="Count event to delete"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        await sessions.delete_event(store, zone_id, event_id)
    except ApplicationError as e:
        raise http_error(e)


@router.get("/zones/{zone_id}/missing-items", response_model=List[MissingItem])
async def get_missing_items(
    zone_id: str = Path(..., title="Zone"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await sessions.missing_items(store, zone_id)
    except ApplicationError as e:
        raise http_error(e)


@router.post("/zones/{zone_id}/finalize", response_model=ZoneFinalized)
async def finalize_zone(
    zone_id: str = Path(..., title="Zone to close"),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_finalize_zone") as span:
        span.set_attribute("zone.id", zone_id)
        logger.info("Handling POST /zones/{zone_id}/finalize request", extra={"zone_id": zone_id})
        try:
            return await sessions.finalize_zone(store, zone_id)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)


@router.post("/zones/{zone_id}/verification", response_model=Zone)
async def verify_zone(
    zone_id: str = Path(..., title="Finalized zone to review"),
    verification: ZoneVerification = Body(...),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_verify_zone") as span:
        span.set_attribute("zone.id", zone_id)
        span.set_attribute("decision", verification.decision.value)
        logger.info(
            "Handling POST /zones/{zone_id}/verification request",
            extra={"zone_id": zone_id, "decision": verification.decision.value},
        )
        try:
            return await sessions.verify_zone(store, zone_id, verification)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)


@router.get("/zones/{zone_id}/totals", response_model=ZoneTotals)
async def get_zone_totals(
    zone_id: str = Path(..., title="Zone"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await sessions.zone_totals(store, zone_id)
    except ApplicationError as e:
        raise http_error(e)
