"""
Catalog synchronizer: make the store match an external catalog snapshot.

Only differences are written. Rows new to the store, inactive in the store or
changed are upserted; active rows missing from the snapshot are deactivated.
Running the same snapshot twice writes nothing the second time.

Writes go out in batches. A batch that still fails after its retries is
reported, the remaining batches carry on, and nothing already committed is
rolled back; re-running the sync picks up whatever is left.
"""
import os
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from counting_api.crud.protocols import CatalogStore
from counting_api.exceptions import DatabaseError, PartialBatchFailure
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.catalog import (
    BarcodeUnit,
    BatchFailure,
    CatalogSnapshot,
    Item,
    SyncPhase,
    SyncResult,
)

logger = get_child_logger("services.synchronizer")

DEFAULT_SYNC_BATCH_SIZE = 200
RETRY_ATTEMPTS = 3
RETRY_WAIT = wait_exponential(multiplier=1, min=1, max=10)

T = TypeVar("T")


def sync_batch_size() -> int:
    value = os.environ.get("CATALOG_SYNC_BATCH_SIZE")
    if not value:
        return DEFAULT_SYNC_BATCH_SIZE
    size = int(value)
    if size <= 0:
        raise ValueError("CATALOG_SYNC_BATCH_SIZE must be a positive integer")
    return size


def normalize(snapshot: CatalogSnapshot):
    """First occurrence wins; barcodes of items absent from the snapshot are dropped."""
    items: Dict[str, Item] = {}
    for row in snapshot.items:
        if row.item_id and row.item_id not in items:
            items[row.item_id] = Item(
                item_id=row.item_id,
                description=row.description,
                group=row.group,
                active=True,
            )

    barcodes: Dict[str, BarcodeUnit] = {}
    skipped = 0
    for row in snapshot.barcodes:
        if not row.barcode or row.barcode in barcodes:
            continue
        if row.item_id not in items:
            skipped += 1
            continue
        barcodes[row.barcode] = BarcodeUnit(
            barcode=row.barcode,
            item_id=row.item_id,
            unit_of_measure=row.unit_of_measure,
            active=True,
        )
    if skipped:
        logger.warning(
            "Barcodes skipped: their item is not in the snapshot",
            extra={"skipped": skipped},
        )
    return items, barcodes


def _changed(wanted: Dict[str, T], stored: Dict[str, T]) -> List[T]:
    return [row for key, row in wanted.items() if stored.get(key) != row]


def _absent(wanted: Dict[str, object], stored: Dict[str, object]) -> List[str]:
    return sorted(key for key, row in stored.items() if row.active and key not in wanted)


def _chunks(rows: List[T], size: int) -> List[List[T]]:
    return [rows[i:i + size] for i in range(0, len(rows), size)]


async def _write_with_retry(write: Callable[[List[T]], Awaitable[None]], batch: List[T]) -> None:
    @retry(
        stop=stop_after_attempt(RETRY_ATTEMPTS),
        wait=RETRY_WAIT,
        retry=retry_if_exception_type(DatabaseError),
        reraise=True,
    )
    async def _attempt():
        await write(batch)

    await _attempt()


async def _run_phase(
    phase: SyncPhase,
    rows: List[T],
    key: Callable[[T], str],
    write: Callable[[List[T]], Awaitable[None]],
    batch_size: int,
    failures: List[BatchFailure],
) -> int:
    committed = 0
    for index, batch in enumerate(_chunks(rows, batch_size)):
        try:
            await _write_with_retry(write, batch)
        except DatabaseError as e:
            logger.error(
                "Catalog sync batch failed after retries",
                extra={"phase": phase.value, "batch_index": index, "batch_size": len(batch)},
            )
            failures.append(
                BatchFailure(
                    phase=phase,
                    batch_index=index,
                    keys=[key(row) for row in batch],
                    message=str(e),
                )
            )
            continue
        committed += len(batch)
    return committed


async def sync(
    catalog: CatalogStore,
    snapshot: CatalogSnapshot,
    batch_size: Optional[int] = None,
) -> SyncResult:
    """
    Reconcile the stored catalog with ``snapshot``.

    Raises:
        PartialBatchFailure: some batches failed; carries the committed counts
    """
    batch_size = batch_size or sync_batch_size()
    with tracer.start_as_current_span("catalog_sync") as span:
        items, barcodes = normalize(snapshot)
        stored_items = await catalog.load_items()
        stored_barcodes = await catalog.load_barcodes()

        items_to_upsert = _changed(items, stored_items)
        barcodes_to_upsert = _changed(barcodes, stored_barcodes)
        items_to_deactivate = _absent(items, stored_items)
        barcodes_to_deactivate = _absent(barcodes, stored_barcodes)

        span.set_attribute("snapshot.items", len(items))
        span.set_attribute("snapshot.barcodes", len(barcodes))
        logger.info(
            "Catalog sync plan",
            extra={
                "items_to_upsert": len(items_to_upsert),
                "barcodes_to_upsert": len(barcodes_to_upsert),
                "items_to_deactivate": len(items_to_deactivate),
                "barcodes_to_deactivate": len(barcodes_to_deactivate),
            },
        )

        failures: List[BatchFailure] = []
        result = SyncResult(
            items_upserted=await _run_phase(
                SyncPhase.UPSERT_ITEMS, items_to_upsert, lambda i: i.item_id,
                catalog.upsert_items, batch_size, failures,
            ),
            barcodes_upserted=await _run_phase(
                SyncPhase.UPSERT_BARCODES, barcodes_to_upsert, lambda b: b.barcode,
                catalog.upsert_barcodes, batch_size, failures,
            ),
            items_deactivated=await _run_phase(
                SyncPhase.DEACTIVATE_ITEMS, items_to_deactivate, str,
                catalog.deactivate_items, batch_size, failures,
            ),
            barcodes_deactivated=await _run_phase(
                SyncPhase.DEACTIVATE_BARCODES, barcodes_to_deactivate, str,
                catalog.deactivate_barcodes, batch_size, failures,
            ),
        )

        span.set_attribute("items.upserted", result.items_upserted)
        span.set_attribute("barcodes.upserted", result.barcodes_upserted)
        span.set_attribute("items.deactivated", result.items_deactivated)
        span.set_attribute("barcodes.deactivated", result.barcodes_deactivated)
        span.set_attribute("failed_batches", len(failures))

        if failures:
            raise PartialBatchFailure(
                f"{len(failures)} catalog sync batch(es) failed", result=result, failures=failures
            )

        logger.info("Catalog sync complete", extra=result.model_dump())
        return result
