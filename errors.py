"""
Error types raised by the relationship, vote and topic engines.

Every error carries enough context for the API layer to build a response
without inspecting the message:
- status_code: HTTP status the error maps to
- code: stable machine-readable identifier
- retryable: whether re-invoking the same call is safe and may succeed
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class SocialGraphError(Exception):
    """Base exception for all engine errors."""

    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class NotFoundError(SocialGraphError):
    """A referenced User, Topic or Resource does not exist."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"{entity.capitalize()} not found",
            details={"entity": entity, "id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidOperationError(SocialGraphError):
    """The request breaks a business rule (e.g. following yourself)."""

    status_code = 400
    code = "INVALID_OPERATION"


class ConflictError(SocialGraphError):
    """A write violated a uniqueness constraint in the store."""

    status_code = 400
    code = "CONFLICT"

    def __init__(self, message: str, collection: str, key: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details={"collection": collection, "key": key or {}})
        self.collection = collection
        self.key = key or {}


class ConflictOnCreateError(ConflictError):
    """Another writer created the same unique record first.

    The vote engine treats this as success and re-reads the winner's record.
    """

    code = "CONFLICT_ON_CREATE"


class StoreUnavailableError(SocialGraphError):
    """Transient store failure. The whole operation is safe to retry."""

    status_code = 503
    code = "STORE_UNAVAILABLE"
    retryable = True


class PartialUpdateError(SocialGraphError):
    """A multi-record update applied some sides but not all.

    Re-invoking the same call converges because every side is an idempotent
    set-membership change.
    """

    status_code = 503
    code = "PARTIAL_UPDATE"
    retryable = True

    def __init__(self, message: str, result: Any) -> None:
        super().__init__(
            message,
            details={
                "operation": result.operation,
                "applied": list(result.applied),
                "pending": list(result.pending),
            },
        )
        self.result = result
