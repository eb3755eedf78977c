"""MCP tool definitions."""

from datetime import datetime, timezone
from typing import Any

from branch_context.exceptions import (
    CacheUnavailableError,
    ContextEngineError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)

__all__ = ["create_error_response", "error_response_from"]

# Exception classes whose names are part of the tool contract
PUBLIC_ERROR_TYPES = (
    NotFoundError,
    ValidationError,
    StoreUnavailableError,
    CacheUnavailableError,
    ContextEngineError,
)


def create_error_response(
    message: str,
    error_type: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create standardized error response for MCP tools.

    Args:
        message: User-friendly error message
        error_type: Error type name (e.g., ValidationError, NotFoundError)
        details: Optional additional details

    Returns:
        Structured error response dictionary
    """
    response: dict[str, Any] = {
        "error": True,
        "message": message,
        "error_type": error_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        response["details"] = details
    return response


def error_response_from(
    error: ContextEngineError,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Error response named after the nearest public exception class."""
    error_type = next(
        cls.__name__ for cls in type(error).__mro__ if cls in PUBLIC_ERROR_TYPES
    )
    return create_error_response(message=str(error), error_type=error_type, details=details)
