import asyncio
from typing import Dict, List, Optional, Tuple

from azure.cosmos.aio import ContainerProxy
from azure.cosmos.exceptions import CosmosResourceNotFoundError

from counting_api.crud.cosmos_utils import database_error, query_all, to_document
from counting_api.logging_config import get_child_logger, tracer
from counting_api.models.catalog import BarcodeUnit, Item
from counting_api.services.similarity import trigram_similarity

logger = get_child_logger("crud.catalog")


class CosmosCatalogStore:
    """
    Catalog over two containers, both partitioned by ``/id``:
    items keyed by ``item_id`` and barcodes keyed by the barcode itself.
    """

    def __init__(self, items: ContainerProxy, barcodes: ContainerProxy):
        self.items = items
        self.barcodes = barcodes

    async def get_barcode(self, barcode: str) -> Optional[BarcodeUnit]:
        with tracer.start_as_current_span("get_barcode") as span:
            span.set_attribute("barcode", barcode)
            try:
                doc = await self.barcodes.read_item(item=barcode, partition_key=barcode)
                return BarcodeUnit.model_validate(doc)
            except CosmosResourceNotFoundError:
                return None
            except Exception as e:
                raise database_error("barcode lookup", e, span, barcode=barcode) from e

    async def get_item(self, item_id: str) -> Optional[Item]:
        with tracer.start_as_current_span("get_item") as span:
            span.set_attribute("item.id", item_id)
            try:
                doc = await self.items.read_item(item=item_id, partition_key=item_id)
                return Item.model_validate(doc)
            except CosmosResourceNotFoundError:
                return None
            except Exception as e:
                raise database_error("item lookup", e, span, item_id=item_id) from e

    async def list_item_barcodes(self, item_id: str) -> List[BarcodeUnit]:
        query = (
            "SELECT * FROM c WHERE c.item_id = @item_id AND c.active = true "
            "ORDER BY c.id"
        )
        try:
            docs = await query_all(
                self.barcodes, query, [{"name": "@item_id", "value": item_id}]
            )
        except Exception as e:
            raise database_error("barcode listing", e, item_id=item_id) from e
        return [BarcodeUnit.model_validate(d) for d in docs]

    async def find_similar_barcodes(
        self, code: str, threshold: float, limit: int
    ) -> List[Tuple[BarcodeUnit, float]]:
        """
        Scores every active barcode client-side; Cosmos has no trigram index.
        """
        with tracer.start_as_current_span("find_similar_barcodes") as span:
            span.set_attribute("code", code)
            span.set_attribute("threshold", threshold)
            query = "SELECT c.barcode, c.item_id, c.unit_of_measure, c.active FROM c WHERE c.active = true"
            scored = []
            try:
                async for doc in self.barcodes.query_items(query=query):
                    score = trigram_similarity(code, doc["barcode"])
                    if score >= threshold:
                        scored.append((BarcodeUnit.model_validate(doc), score))
            except Exception as e:
                raise database_error("similarity search", e, span, code=code) from e

            scored.sort(key=lambda pair: (-pair[1], pair[0].barcode))
            results = []
            for unit, score in scored:
                item = await self.get_item(unit.item_id)
                if item is not None and item.active:
                    results.append((unit, score))
                if len(results) >= limit:
                    break
            span.set_attribute("candidates.count", len(results))
            return results

    async def list_groups(self) -> List[str]:
        # "group" is a reserved word in Cosmos SQL
        query = 'SELECT DISTINCT VALUE c["group"] FROM c WHERE c.active = true'
        try:
            groups = await query_all(self.items, query)
        except Exception as e:
            raise database_error("group listing", e) from e
        return sorted(g for g in groups if g)

    async def list_items_by_group(self, groups: List[str]) -> List[Item]:
        query = (
            'SELECT * FROM c WHERE c.active = true AND ARRAY_CONTAINS(@groups, c["group"]) '
            "ORDER BY c.description"
        )
        try:
            docs = await query_all(self.items, query, [{"name": "@groups", "value": groups}])
        except Exception as e:
            raise database_error("item listing by group", e, groups=",".join(groups)) from e
        return [Item.model_validate(d) for d in docs]

    async def load_items(self) -> Dict[str, Item]:
        try:
            docs = await query_all(self.items, "SELECT * FROM c")
        except Exception as e:
            raise database_error("item load", e) from e
        return {d["item_id"]: Item.model_validate(d) for d in docs}

    async def load_barcodes(self) -> Dict[str, BarcodeUnit]:
        try:
            docs = await query_all(self.barcodes, "SELECT * FROM c")
        except Exception as e:
            raise database_error("barcode load", e) from e
        return {d["barcode"]: BarcodeUnit.model_validate(d) for d in docs}

    async def upsert_items(self, items: List[Item]) -> None:
        await self._write_batch(
            "item upsert",
            [self.items.upsert_item(body=to_document(i, id=i.item_id)) for i in items],
        )

    async def upsert_barcodes(self, units: List[BarcodeUnit]) -> None:
        await self._write_batch(
            "barcode upsert",
            [self.barcodes.upsert_item(body=to_document(u, id=u.barcode)) for u in units],
        )

    async def deactivate_items(self, item_ids: List[str]) -> None:
        await self._write_batch(
            "item deactivation",
            [self._deactivate(self.items, item_id) for item_id in item_ids],
        )

    async def deactivate_barcodes(self, barcodes: List[str]) -> None:
        await self._write_batch(
            "barcode deactivation",
            [self._deactivate(self.barcodes, code) for code in barcodes],
        )

    async def _deactivate(self, container: ContainerProxy, key: str) -> None:
        try:
            await container.patch_item(
                item=key,
                partition_key=key,
                patch_operations=[{"op": "set", "path": "/active", "value": False}],
            )
        except CosmosResourceNotFoundError:
            logger.warning("Document vanished before deactivation", extra={"key": key})

    async def _write_batch(self, operation: str, writes) -> None:
        """
        Run one sync batch of writes concurrently. The first failure fails the
        whole batch; the writes are idempotent so the batch can be retried.
        """
        with tracer.start_as_current_span("catalog_write_batch") as span:
            span.set_attribute("operation", operation)
            span.set_attribute("batch.size", len(writes))
            results = await asyncio.gather(*writes, return_exceptions=True)
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                span.set_attribute("batch.error_count", len(errors))
                first = errors[0]
                raise database_error(operation, first, span, failed=len(errors)) from first
