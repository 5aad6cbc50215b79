from typing import List
from fastapi import APIRouter, Body, Depends, Path, status

from counting_api.crud.protocols import CountingStore
from counting_api.db import get_counting_store
from counting_api.exceptions import ApplicationError
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
from counting_api.routes.errors import http_error
from counting_api.services import reconciliation

# Create a child logger for this module
logger = get_child_logger("routes.reconciliation")

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.get("/{site}/{consecutive_number}", response_model=List[ReconciliationRow])
async def get_reconciliation(
    site: str = Path(..., title="Site"),
    consecutive_number: int = Path(..., gt=0, title="Consecutive number of the run"),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_get_reconciliation") as span:
        span.set_attribute("site", site)
        span.set_attribute("consecutive_number", consecutive_number)
        try:
            rows = await reconciliation.reconcile(store, site, consecutive_number)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)

        span.set_attribute("rows.count", len(rows))
        return rows


@router.get("/{site}/{consecutive_number}/notable", response_model=List[NotableDifference])
async def get_notable_differences(
    site: str = Path(..., title="Site"),
    consecutive_number: int = Path(..., gt=0, title="Consecutive number of the run"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await reconciliation.notable_differences(store, site, consecutive_number)
    except ApplicationError as e:
        raise http_error(e)


@router.post("/adjustments", response_model=RecountAdjustment, status_code=status.HTTP_201_CREATED)
async def record_adjustment(
    request: RecountAdjustmentCreate = Body(..., description="Recount result for one item"),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_record_adjustment") as span:
        span.set_attribute("site", request.site)
        span.set_attribute("item.id", request.item_id)
        logger.info(
            "Handling POST /reconciliation/adjustments request",
            extra={
                "site": request.site,
                "consecutive_number": request.consecutive_number,
                "item_id": request.item_id,
            },
        )
        try:
            return await reconciliation.record_adjustment(store, request)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)


@router.post("/{site}/{consecutive_number}/items/{item_id}/promote", response_model=FinalCount)
async def promote_adjustment(
    site: str = Path(..., title="Site"),
    consecutive_number: int = Path(..., gt=0, title="Consecutive number of the run"),
    item_id: str = Path(..., title="Item whose latest recount becomes final"),
    request: PromotionRequest = Body(...),
    store: CountingStore = Depends(get_counting_store),
):
    with tracer.start_as_current_span("api_promote_adjustment") as span:
        span.set_attribute("site", site)
        span.set_attribute("item.id", item_id)
        try:
            return await reconciliation.promote_adjustment(
                store, site, consecutive_number, item_id, request
            )
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)


@router.get("/{site}/{consecutive_number}/physical-count", response_model=List[PhysicalCountExportRow])
async def get_physical_count(
    site: str = Path(..., title="Site"),
    consecutive_number: int = Path(..., gt=0, title="Consecutive number of the run"),
    store: CountingStore = Depends(get_counting_store),
):
    try:
        return await reconciliation.physical_count_export(store, site, consecutive_number)
    except ApplicationError as e:
        raise http_error(e)
