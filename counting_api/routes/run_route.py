from typing import List, Optional
from fastapi import APIRouter, Body, Depends, Path, Query, status

from counting_api.crud.protocols import CountingStore
from counting_api.db import get_counting_store
from counting_api.exceptions import ApplicationError, ConflictError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.run import (
    ConsecutiveAvailability,
    InventoryRun,
    InventoryRunCreate,
    RunDetail,
    RunReview,
    RunState,
    ZoneSummary,
)
from counting_api.routes.errors import http_error
from counting_api.services import runs

# Create a child logger for this module
logger = get_child_logger("routes.run")

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post("/", response_model=InventoryRun, status_code=status.HTTP_201_CREATED)
async def create_run(
    request: InventoryRunCreate = Body(..., description="Run header and its theoretical quantities"),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_create_run") as span:
        span.set_attribute("site", request.site)
        span.set_attribute("consecutive_number", request.consecutive_number)
        span.set_attribute("expected.count", len(request.expected))

        logger.info(
            "Handling POST /runs request",
            extra={
                "site": request.site,
                "consecutive_number": request.consecutive_number,
                "expected_rows": len(request.expected),
            },
        )
        try:
            return await runs.create_run(store, request)
        except ConflictError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", "conflict")
            logger.warning(
                "Consecutive number already used",
                extra={"site": request.site, "consecutive_number": request.consecutive_number},
            )
            raise http_error(e)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)


@router.get("/availability", response_model=ConsecutiveAvailability)
async def consecutive_availability(
    site: str = Query(..., min_length=1, title="Site"),
    consecutive_number: int = Query(..., gt=0, title="Consecutive number to check"),
    store: CountingStore = Depends(get_counting_store),
):
    return await runs.check_availability(store, site, consecutive_number)


@router.get("/", response_model=List[InventoryRun])
async def list_runs(
    state: Optional[RunState] = Query(None, title="Only runs in this state"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await runs.list_runs(store, state)
    except ApplicationError as e:
        raise http_error(e)


@router.get("/{run_id}", response_model=RunDetail)
async def get_run(
    run_id: str = Path(..., title="Inventory run"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await runs.run_detail(store, run_id)
    except ApplicationError as e:
        raise http_error(e)


@router.get("/{run_id}/zones", response_model=List[ZoneSummary])
async def get_run_zones(
    run_id: str = Path(..., title="Inventory run"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await runs.run_zones(store, run_id)
    except ApplicationError as e:
        raise http_error(e)


@router.post("/{run_id}/finalize", response_model=InventoryRun)
async def finalize_run(
    run_id: str = Path(..., title="Inventory run to close"),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_finalize_run") as span:
        span.set_attribute("run.id", run_id)
        try:
            return await runs.finalize_run(store, run_id)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)


@router.post("/{run_id}/approval", response_model=InventoryRun)
async def review_run(
    run_id: str = Path(..., title="Finalized inventory run"),
    review: RunReview = Body(...),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_review_run") as span:
        span.set_attribute("run.id", run_id)
        span.set_attribute("decision", review.decision.value)
        try:
            return await runs.review_run(store, run_id, review)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)
