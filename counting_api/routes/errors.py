from fastapi import HTTPException, status

from counting_api.exceptions import (
    ApplicationError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from counting_api.logging_config import get_child_logger

logger = get_child_logger("routes.errors")


def http_error(e: ApplicationError) -> HTTPException:
    """Translate a domain error into the HTTPException the routes raise."""
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "field": e.field},
        )
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (ConflictError, PreconditionFailedError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, DatabaseError):
        logger.error(f"Database error: {e}", exc_info=e.original_exception)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="A database error occurred.",
        )
    logger.error(f"Unhandled application error: {e}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected internal server error occurred.",
    )
