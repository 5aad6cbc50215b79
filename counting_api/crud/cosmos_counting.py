import time
from typing import Any, Dict, List, Optional, Tuple

from azure.core import MatchConditions
from azure.cosmos.aio import ContainerProxy
from azure.cosmos.exceptions import (
    CosmosBatchOperationError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)

from counting_api.crud.cosmos_utils import database_error, query_all, run_key, to_document
from counting_api.exceptions import ConflictError, NotFoundError, PreconditionFailedError
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.reconciliation import FinalCount, RecountAdjustment
from counting_api.models.run import ExpectedQuantity, InventoryRun, RunState
from counting_api.models.zone import CountEvent, Zone, ZoneState

logger = get_child_logger("crud.counting")

# Cosmos transactional batches accept at most 100 operations
MAX_BATCH_OPERATIONS = 100

OPEN_SESSION = "in_progress"


class CosmosCountingStore:
    """
    Counting data spread over Cosmos containers:

    - runs          partition ``/site``, unique key ``/consecutive_number``
    - expected      partition ``/run_key`` (site|consecutive), id = item_id
    - zones         partition ``/operator_email``, unique key ``/open_session``
    - events        partition ``/inventory_run_id``
    - adjustments   partition ``/run_key``
    - final_counts  partition ``/run_key``, id = item_id

    ``open_session`` holds the literal "in_progress" while a zone is open and
    the zone id afterwards, so the unique key allows one open zone per operator.
    """

    def __init__(
        self,
        runs: ContainerProxy,
        expected: ContainerProxy,
        zones: ContainerProxy,
        events: ContainerProxy,
        adjustments: ContainerProxy,
        final_counts: ContainerProxy,
    ):
        self.runs = runs
        self.expected = expected
        self.zones = zones
        self.events = events
        self.adjustments = adjustments
        self.final_counts = final_counts

    # Runs

    async def create_run(
        self, run: InventoryRun, expected: List[ExpectedQuantity]
    ) -> InventoryRun:
        with tracer.start_as_current_span("create_run") as span:
            span.set_attribute("run.site", run.site)
            span.set_attribute("run.consecutive_number", run.consecutive_number)
            span.set_attribute("expected.count", len(expected))

            try:
                doc = await self.runs.create_item(body=to_document(run))
            except CosmosHttpResponseError as e:
                if e.status_code == 409:
                    span.set_attribute("error", True)
                    span.set_attribute("error.type", "conflict")
                    logger.warning(
                        "Consecutive number already used for site",
                        extra={"site": run.site, "consecutive_number": run.consecutive_number},
                    )
                    raise ConflictError(
                        f"Consecutive number {run.consecutive_number} already exists for site '{run.site}'"
                    ) from e
                raise database_error("run creation", e, span, run_id=run.id) from e
            except Exception as e:
                raise database_error("run creation", e, span, run_id=run.id) from e

            try:
                await self._write_expected(run, expected)
            except Exception as e:
                # a run without its full scope is unusable: take it back
                logger.error(
                    "Expected quantities could not be written, removing run",
                    extra={"run_id": run.id, "site": run.site},
                )
                try:
                    await self.runs.delete_item(item=run.id, partition_key=run.site)
                except CosmosHttpResponseError:
                    logger.error("Could not remove partially created run", extra={"run_id": run.id}, exc_info=True)
                raise database_error("expected quantity write", e, span, run_id=run.id) from e

            return InventoryRun.model_validate(doc)

    async def _write_expected(self, run: InventoryRun, expected: List[ExpectedQuantity]) -> None:
        partition = run_key(run.site, run.consecutive_number)
        for start in range(0, len(expected), MAX_BATCH_OPERATIONS):
            chunk = expected[start:start + MAX_BATCH_OPERATIONS]
            operations: List[Tuple[str, Tuple[Any, ...], Dict[str, Any]]] = [
                ("upsert", (to_document(row, id=row.item_id, run_key=partition),), {})
                for row in chunk
            ]
            try:
                await self.expected.execute_item_batch(
                    batch_operations=operations, partition_key=partition
                )
            except CosmosBatchOperationError as e:
                logger.error(
                    f"Cosmos DB batch error writing expected quantities for run '{run.id}': "
                    f"First failed op index: {e.error_index}",
                    extra={"run_id": run.id, "batch_start": start},
                )
                raise

    async def get_run(self, run_id: str) -> Optional[InventoryRun]:
        try:
            docs = await query_all(
                self.runs, "SELECT * FROM c WHERE c.id = @id", [{"name": "@id", "value": run_id}]
            )
        except Exception as e:
            raise database_error("run lookup", e, run_id=run_id) from e
        return InventoryRun.model_validate(docs[0]) if docs else None

    async def find_run(self, site: str, consecutive_number: int) -> Optional[InventoryRun]:
        try:
            docs = await query_all(
                self.runs,
                "SELECT * FROM c WHERE c.consecutive_number = @number",
                [{"name": "@number", "value": consecutive_number}],
                partition_key=site,
            )
        except Exception as e:
            raise database_error("run lookup", e, site=site, consecutive_number=consecutive_number) from e
        return InventoryRun.model_validate(docs[0]) if docs else None

    async def list_runs(self, state: Optional[RunState] = None) -> List[InventoryRun]:
        query = "SELECT * FROM c"
        params = []
        if state is not None:
            query += " WHERE c.state = @state"
            params.append({"name": "@state", "value": state.value})
        query += " ORDER BY c.start_date DESC"
        try:
            docs = await query_all(self.runs, query, params)
        except Exception as e:
            raise database_error("run listing", e) from e
        return [InventoryRun.model_validate(d) for d in docs]

    async def replace_run(self, run: InventoryRun) -> InventoryRun:
        with tracer.start_as_current_span("replace_run") as span:
            span.set_attribute("run.id", run.id)
            try:
                doc = await self.runs.replace_item(
                    item=run.id,
                    body=to_document(run),
                    etag=run.etag,
                    match_condition=MatchConditions.IfNotModified,
                )
                return InventoryRun.model_validate(doc)
            except CosmosHttpResponseError as e:
                if e.status_code == 404:
                    raise NotFoundError(f"Inventory run '{run.id}' not found") from e
                if e.status_code == 412:
                    raise PreconditionFailedError(
                        f"Inventory run '{run.id}' has been modified since last retrieved (ETag mismatch)."
                    ) from e
                raise database_error("run update", e, span, run_id=run.id) from e

    async def list_expected(self, site: str, consecutive_number: int) -> List[ExpectedQuantity]:
        try:
            docs = await query_all(
                self.expected, "SELECT * FROM c", partition_key=run_key(site, consecutive_number)
            )
        except Exception as e:
            raise database_error("expected quantity listing", e, site=site) from e
        return [ExpectedQuantity.model_validate(d) for d in docs]

    # Zones

    @staticmethod
    def _zone_document(zone: Zone) -> Dict[str, Any]:
        open_session = OPEN_SESSION if zone.state == ZoneState.IN_PROGRESS else zone.id
        return to_document(zone, open_session=open_session)

    async def create_zone(self, zone: Zone) -> Zone:
        with tracer.start_as_current_span("create_zone") as span:
            span.set_attribute("zone.id", zone.id)
            span.set_attribute("zone.run_id", zone.inventory_run_id)
            try:
                doc = await self.zones.create_item(body=self._zone_document(zone))
                return Zone.model_validate(doc)
            except CosmosHttpResponseError as e:
                if e.status_code == 409:
                    raise ConflictError(
                        f"Operator '{zone.operator_email}' already has a zone in progress"
                    ) from e
                raise database_error("zone creation", e, span, zone_id=zone.id) from e

    async def get_zone(self, zone_id: str) -> Optional[Zone]:
        try:
            docs = await query_all(
                self.zones, "SELECT * FROM c WHERE c.id = @id", [{"name": "@id", "value": zone_id}]
            )
        except Exception as e:
            raise database_error("zone lookup", e, zone_id=zone_id) from e
        return Zone.model_validate(docs[0]) if docs else None

    async def find_open_zone(self, operator_email: str) -> Optional[Zone]:
        try:
            docs = await query_all(
                self.zones,
                "SELECT * FROM c WHERE c.open_session = @open",
                [{"name": "@open", "value": OPEN_SESSION}],
                partition_key=operator_email,
            )
        except Exception as e:
            raise database_error("open zone lookup", e, operator_email=operator_email) from e
        return Zone.model_validate(docs[0]) if docs else None

    async def list_zones(self, run_id: str) -> List[Zone]:
        try:
            docs = await query_all(
                self.zones,
                "SELECT * FROM c WHERE c.inventory_run_id = @run_id ORDER BY c.created_at",
                [{"name": "@run_id", "value": run_id}],
            )
        except Exception as e:
            raise database_error("zone listing", e, run_id=run_id) from e
        return [Zone.model_validate(d) for d in docs]

    async def replace_zone(self, zone: Zone) -> Zone:
        with tracer.start_as_current_span("replace_zone") as span:
            span.set_attribute("zone.id", zone.id)
            span.set_attribute("zone.state", zone.state.value)
            span.set_attribute("zone.verification_state", zone.verification_state.value)
            try:
                doc = await self.zones.replace_item(
                    item=zone.id,
                    body=self._zone_document(zone),
                    etag=zone.etag,
                    match_condition=MatchConditions.IfNotModified,
                )
                return Zone.model_validate(doc)
            except CosmosHttpResponseError as e:
                if e.status_code == 404:
                    raise NotFoundError(f"Zone '{zone.id}' not found") from e
                if e.status_code == 412:
                    raise PreconditionFailedError(
                        f"Zone '{zone.id}' has been modified since last retrieved (ETag mismatch)."
                    ) from e
                raise database_error("zone update", e, span, zone_id=zone.id) from e

    # Count events

    async def add_event(self, event: CountEvent) -> CountEvent:
        try:
            doc = await self.events.create_item(body=to_document(event))
        except Exception as e:
            raise database_error("count event insert", e, zone_id=event.zone_id) from e
        return CountEvent.model_validate(doc)

    async def get_event(self, run_id: str, event_id: str) -> Optional[CountEvent]:
        try:
            doc = await self.events.read_item(item=event_id, partition_key=run_id)
            return CountEvent.model_validate(doc)
        except CosmosResourceNotFoundError:
            return None
        except Exception as e:
            raise database_error("count event lookup", e, event_id=event_id) from e

    async def delete_event(self, run_id: str, event_id: str) -> None:
        try:
            await self.events.delete_item(item=event_id, partition_key=run_id)
        except CosmosResourceNotFoundError as e:
            raise NotFoundError(f"Count event '{event_id}' not found") from e
        except Exception as e:
            raise database_error("count event deletion", e, event_id=event_id) from e

    async def list_zone_events(self, run_id: str, zone_id: str) -> List[CountEvent]:
        try:
            docs = await query_all(
                self.events,
                "SELECT * FROM c WHERE c.zone_id = @zone_id ORDER BY c.timestamp",
                [{"name": "@zone_id", "value": zone_id}],
                partition_key=run_id,
            )
        except Exception as e:
            raise database_error("count event listing", e, zone_id=zone_id) from e
        return [CountEvent.model_validate(d) for d in docs]

    async def list_run_events(self, run_id: str) -> List[CountEvent]:
        try:
            docs = await query_all(
                self.events, "SELECT * FROM c ORDER BY c.timestamp", partition_key=run_id
            )
        except Exception as e:
            raise database_error("count event listing", e, run_id=run_id) from e
        return [CountEvent.model_validate(d) for d in docs]

    # Recounts

    async def add_adjustment(self, adjustment: RecountAdjustment) -> RecountAdjustment:
        stored = adjustment.model_copy(update={"sequence": time.time_ns()})
        partition = run_key(adjustment.site, adjustment.consecutive_number)
        try:
            doc = await self.adjustments.create_item(body=to_document(stored, run_key=partition))
        except Exception as e:
            raise database_error("recount adjustment insert", e, item_id=adjustment.item_id) from e
        return RecountAdjustment.model_validate(doc)

    async def list_adjustments(self, site: str, consecutive_number: int) -> List[RecountAdjustment]:
        try:
            docs = await query_all(
                self.adjustments, "SELECT * FROM c", partition_key=run_key(site, consecutive_number)
            )
        except Exception as e:
            raise database_error("recount adjustment listing", e, site=site) from e
        return [RecountAdjustment.model_validate(d) for d in docs]

    async def put_final_count(self, final_count: FinalCount) -> FinalCount:
        partition = run_key(final_count.site, final_count.consecutive_number)
        try:
            doc = await self.final_counts.upsert_item(
                body=to_document(final_count, id=final_count.item_id, run_key=partition)
            )
        except Exception as e:
            raise database_error("final count write", e, item_id=final_count.item_id) from e
        return FinalCount.model_validate(doc)

    async def list_final_counts(self, site: str, consecutive_number: int) -> List[FinalCount]:
        try:
            docs = await query_all(
                self.final_counts, "SELECT * FROM c", partition_key=run_key(site, consecutive_number)
            )
        except Exception as e:
            raise database_error("final count listing", e, site=site) from e
        return [FinalCount.model_validate(d) for d in docs]
