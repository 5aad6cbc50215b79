from typing import Dict, List, Optional
from azure.cosmos import PartitionKey
from azure.cosmos.aio import CosmosClient, ContainerProxy
from azure.identity.aio import DefaultAzureCredential
import os

from enum import Enum

from counting_api.crud.cosmos_catalog import CosmosCatalogStore
from counting_api.crud.cosmos_counting import CosmosCountingStore
from counting_api.crud.memory import InMemoryCatalogStore, InMemoryCountingStore
from counting_api.crud.protocols import CatalogStore, CountingStore
from counting_api.logging_config import get_child_logger

logger = get_child_logger("db")


class ContainerType(str, Enum):
    ITEMS = "items"
    BARCODES = "barcodes"
    RUNS = "runs"
    EXPECTED = "expected"
    ZONES = "zones"
    EVENTS = "events"
    ADJUSTMENTS = "adjustments"
    FINAL_COUNTS = "final_counts"


# Partition key and unique keys per container. The unique keys carry the
# per-site consecutive number rule and the one-open-zone-per-operator rule.
CONTAINER_LAYOUT: Dict[ContainerType, Dict[str, object]] = {
    ContainerType.ITEMS: {"partition_key": "/id", "unique_keys": []},
    ContainerType.BARCODES: {"partition_key": "/id", "unique_keys": []},
    ContainerType.RUNS: {"partition_key": "/site", "unique_keys": ["/consecutive_number"]},
    ContainerType.EXPECTED: {"partition_key": "/run_key", "unique_keys": []},
    ContainerType.ZONES: {"partition_key": "/operator_email", "unique_keys": ["/open_session"]},
    ContainerType.EVENTS: {"partition_key": "/inventory_run_id", "unique_keys": []},
    ContainerType.ADJUSTMENTS: {"partition_key": "/run_key", "unique_keys": []},
    ContainerType.FINAL_COUNTS: {"partition_key": "/run_key", "unique_keys": []},
}

_client: Optional[CosmosClient] = None
_credential: Optional[DefaultAzureCredential] = None

_memory_catalog: Optional[InMemoryCatalogStore] = None
_memory_counting: Optional[InMemoryCountingStore] = None


def store_backend() -> str:
    """``cosmos`` (default) or ``memory``."""
    return os.environ.get("COUNTING_STORE_BACKEND", "cosmos").strip().lower()


def container_name(container_type: ContainerType) -> str:
    return os.environ.get(f"COSMOSDB_CONTAINER_{container_type.name}", container_type.value)


async def _ensure_client() -> CosmosClient:
    global _client, _credential
    if _client is None:
        endpoint = os.environ.get("COSMOSDB_ENDPOINT")
        if not endpoint:
            raise ValueError("COSMOSDB_ENDPOINT environment variable must be set")
        logger.info("Creating CosmosDB client with DefaultAzureCredential")
        _credential = DefaultAzureCredential()
        _client = CosmosClient(endpoint, _credential)
    return _client


def _database_name() -> str:
    name = os.environ.get("COSMOSDB_DATABASE")
    if not name:
        raise ValueError("COSMOSDB_DATABASE environment variable must be set")
    return name


async def get_container(container_type: ContainerType) -> ContainerProxy:
    if container_type not in CONTAINER_LAYOUT:
        raise ValueError(
            f"Container '{container_type}' not configured. "
            f"Valid options: {[c.value for c in CONTAINER_LAYOUT]}"
        )

    client = await _ensure_client()
    database = client.get_database_client(_database_name())
    return database.get_container_client(container_name(container_type))


async def ensure_containers() -> None:
    """Create any missing container with its partition key and unique keys."""
    client = await _ensure_client()
    database = await client.create_database_if_not_exists(id=_database_name())
    for container_type, layout in CONTAINER_LAYOUT.items():
        unique_keys: List[str] = layout["unique_keys"]
        kwargs = {}
        if unique_keys:
            kwargs["unique_key_policy"] = {"uniqueKeys": [{"paths": [path]} for path in unique_keys]}
        await database.create_container_if_not_exists(
            id=container_name(container_type),
            partition_key=PartitionKey(path=layout["partition_key"]),
            **kwargs,
        )
        logger.info("Container ready", extra={"container": container_name(container_type)})


async def close_client() -> None:
    global _client, _credential
    if _client is not None:
        await _client.close()
        _client = None
    if _credential is not None:
        await _credential.close()
        _credential = None


async def get_catalog_store() -> CatalogStore:
    global _memory_catalog
    if store_backend() == "memory":
        if _memory_catalog is None:
            _memory_catalog = InMemoryCatalogStore()
        return _memory_catalog
    return CosmosCatalogStore(
        items=await get_container(ContainerType.ITEMS),
        barcodes=await get_container(ContainerType.BARCODES),
    )


async def get_counting_store() -> CountingStore:
    global _memory_counting
    if store_backend() == "memory":
        if _memory_counting is None:
            _memory_counting = InMemoryCountingStore()
        return _memory_counting
    return CosmosCountingStore(
        runs=await get_container(ContainerType.RUNS),
        expected=await get_container(ContainerType.EXPECTED),
        zones=await get_container(ContainerType.ZONES),
        events=await get_container(ContainerType.EVENTS),
        adjustments=await get_container(ContainerType.ADJUSTMENTS),
        final_counts=await get_container(ContainerType.FINAL_COUNTS),
    )
