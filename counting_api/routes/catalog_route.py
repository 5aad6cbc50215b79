from typing import List
from fastapi import APIRouter, Body, Depends, Path, Query, status
from fastapi.responses import JSONResponse

from counting_api.crud.protocols import CatalogStore, CountingStore
from counting_api.db import get_catalog_store, get_counting_store
from counting_api.exceptions import AmbiguousMatchError, ApplicationError, PartialBatchFailure
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.catalog import (
    AmbiguousResolution,
    CatalogSnapshot,
    Item,
    Resolution,
    ScopeMatch,
    SpreadsheetRows,
    SyncFailureReport,
    SyncResult,
)
from counting_api.routes.errors import http_error
from counting_api.services import columns, lookup, resolver, synchronizer

# Create a child logger for this module
logger = get_child_logger("routes.catalog")

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get(
    "/resolve/{code}",
    response_model=Resolution,
    responses={status.HTTP_300_MULTIPLE_CHOICES: {"model": AmbiguousResolution}},
)
async def resolve_code(
    code: str = Path(..., title="Scanned barcode or item id"),
    catalog: CatalogStore = Depends(get_catalog_store),
):
    try:
        return await resolver.resolve(catalog, code)
    except AmbiguousMatchError as e:
        return JSONResponse(
            status_code=status.HTTP_300_MULTIPLE_CHOICES,
            content=AmbiguousResolution(candidates=e.candidates).model_dump(mode="json"),
        )
    except ApplicationError as e:
        raise http_error(e)


@router.get("/groups", response_model=List[str])
async def list_groups(catalog: CatalogStore = Depends(get_catalog_store)):
    try:
        return await catalog.list_groups()
    except ApplicationError as e:
        raise http_error(e)


@router.get("/items", response_model=List[Item])
async def list_items_by_group(
    group: List[str] = Query(..., description="Group names; repeat the parameter or separate with commas"),
    catalog: CatalogStore = Depends(get_catalog_store),
):
    try:
        return await lookup.items_by_group(catalog, group)
    except ApplicationError as e:
        raise http_error(e)


@router.get("/search", response_model=List[ScopeMatch])
async def search_run_scope(
    run_id: str = Query(..., description="Inventory run whose scope is searched"),
    q: str = Query(..., description="Words of the item description"),
    store: CountingStore = Depends(get_counting_store),
    catalog: CatalogStore = Depends(get_catalog_store),
):
    logger.info("Handling GET /catalog/search request", extra={"run_id": run_id, "term": q})
    try:
        return await lookup.search_scope(store, catalog, run_id, q)
    except ApplicationError as e:
        raise http_error(e)


async def _sync(catalog: CatalogStore, snapshot: CatalogSnapshot, span):
    span.set_attribute("snapshot.items", len(snapshot.items))
    span.set_attribute("snapshot.barcodes", len(snapshot.barcodes))
    try:
        result = await synchronizer.sync(catalog, snapshot)
    except PartialBatchFailure as e:
        span.set_attribute("error", True)
        span.set_attribute("error.type", "partial_batch_failure")
        span.set_attribute("failed_batches", len(e.failures))
        logger.error(
            "Catalog sync finished with failed batches",
            extra={"failed_batches": len(e.failures)},
        )
        report = SyncFailureReport(detail=str(e), result=e.result, failures=e.failures)
        return JSONResponse(
            status_code=status.HTTP_207_MULTI_STATUS,
            content=report.model_dump(mode="json"),
        )
    except ApplicationError as e:
        span.set_attribute("error", True)
        span.set_attribute("error.type", type(e).__name__)
        raise http_error(e)

    logger.info(
        "Catalog synchronized",
        extra={"items_upserted": result.items_upserted, "barcodes_upserted": result.barcodes_upserted},
    )
    return result


@router.post(
    "/sync",
    response_model=SyncResult,
    responses={status.HTTP_207_MULTI_STATUS: {"model": SyncFailureReport}},
)
async def sync_catalog(
    snapshot: CatalogSnapshot = Body(..., description="Complete catalog: items and barcodes"),
    catalog: CatalogStore = Depends(get_catalog_store),
):
    with tracer.start_as_current_span("api_sync_catalog") as span:
        logger.info(
            "Handling POST /catalog/sync request",
            extra={"items": len(snapshot.items), "barcodes": len(snapshot.barcodes)},
        )
        return await _sync(catalog, snapshot, span)


@router.post(
    "/sync/rows",
    response_model=SyncResult,
    responses={status.HTTP_207_MULTI_STATUS: {"model": SyncFailureReport}},
)
async def sync_catalog_rows(
    spreadsheet: SpreadsheetRows = Body(..., description="Master spreadsheet rows keyed by header"),
    catalog: CatalogStore = Depends(get_catalog_store),
):
    with tracer.start_as_current_span("api_sync_catalog_rows") as span:
        span.set_attribute("rows.count", len(spreadsheet.rows))
        try:
            snapshot = columns.snapshot_from_rows(spreadsheet.rows)
        except ApplicationError as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            raise http_error(e)
        return await _sync(catalog, snapshot, span)
