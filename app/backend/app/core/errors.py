"""Domain errors raised by allocation services.

Every error is an ``HTTPException`` so services can raise it directly and
FastAPI renders ``{"detail": {"error": ..., "message": ..., **payload}}``.
The payload carries the numbers a caller needs to correct the request.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import HTTPException, status


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


class AllocationError(HTTPException):
    """Base class for structured allocation errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "allocation_error"

    def __init__(self, message: str, **payload: Any) -> None:
        self.message = message
        self.payload = payload
        super().__init__(
            status_code=self.status_code,
            detail={"error": self.code, "message": message, **_jsonable(payload)},
        )


class ValidationError(AllocationError):
    """Malformed input, rejected before any state is read."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class Forbidden(AllocationError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFound(AllocationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PreconditionFailed(AllocationError):
    """Entity is not in the state required by the requested transition."""

    code = "precondition_failed"


class StaleState(PreconditionFailed):
    """Lost a race against a concurrent decision."""

    status_code = status.HTTP_409_CONFLICT
    code = "stale_state"


class InvalidDestinationState(PreconditionFailed):
    """Reallocation destination moved out of PENDING/APPROVED before the decision."""

    code = "invalid_destination_state"


class BudgetExceeded(AllocationError):
    code = "budget_exceeded"


class BelowPlannedHours(AllocationError):
    code = "below_planned_hours"


class DataIntegrityError(AllocationError):
    """Linked reallocation records disagree; the transaction is aborted."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "data_integrity_error"
