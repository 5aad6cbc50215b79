from typing import Any, Dict, List, Optional

from azure.cosmos.aio import ContainerProxy
from azure.cosmos.exceptions import CosmosHttpResponseError
from pydantic import BaseModel

from counting_api.exceptions import DatabaseError
from counting_api.logging_config import get_child_logger

logger = get_child_logger("crud.cosmos")


def to_document(model: BaseModel, **extra: Any) -> Dict[str, Any]:
    """Serialize a model for Cosmos, dropping the ETag (Cosmos owns ``_etag``)."""
    data = model.model_dump(mode="json", exclude={"etag"})
    data.update(extra)
    return data


def run_key(site: str, consecutive_number: int) -> str:
    """Partition value shared by every document of one run's reconciliation data."""
    return f"{site}|{consecutive_number}"


async def query_all(
    container: ContainerProxy,
    query: str,
    parameters: Optional[List[Dict[str, Any]]] = None,
    partition_key: Optional[str] = None,
) -> List[Dict[str, Any]]:
    kwargs: Dict[str, Any] = {"query": query, "parameters": parameters or []}
    if partition_key is not None:
        kwargs["partition_key"] = partition_key
    return [item async for item in container.query_items(**kwargs)]


def database_error(operation: str, e: Exception, span=None, **context: Any) -> DatabaseError:
    """
    Log a store failure and wrap it the way every store method reports it.
    """
    if span is not None:
        span.set_attribute("error", True)
        span.set_attribute("error.type", type(e).__name__)

    if isinstance(e, CosmosHttpResponseError):
        if span is not None:
            span.set_attribute("error.status_code", e.status_code)
        logger.error(
            f"Cosmos DB error during {operation}",
            extra={"status_code": e.status_code, "cosmos_message": e.message, **context},
            exc_info=True,
        )
        return DatabaseError(
            f"Cosmos DB error during {operation}: Status Code {e.status_code}, Message: {e.message}",
            original_exception=e,
        )

    logger.error(
        f"Unexpected error during {operation}",
        extra={"error_type": type(e).__name__, **context},
        exc_info=True,
    )
    return DatabaseError(
        "An unexpected error occurred during database operation.",
        original_exception=e,
    )
