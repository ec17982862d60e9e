"""Lifecycle error taxonomy.

Internal helpers raise these; the public lifecycle operations catch them
and return a failed :class:`~wastewarden.services.base.LifecycleResult`
instead, so callers branch on ``result.error.code`` rather than on
exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar
from uuid import UUID


def _status_value(status: Any) -> str | None:
    if status is None:
        return None
    if isinstance(status, Enum):
        return str(status.value)
    return str(status)


class LifecycleError(Exception):
    """Base exception for lifecycle operations.

    Attributes:
        entity_type: Kind of entity involved ("request", "donation", ...).
        entity_id: Identifier of that entity, when known.
        attempted: Transition or operation that was refused.
        current_status: Status the entity was actually in.
    """

    code: ClassVar[str] = "lifecycle_error"

    def __init__(
        self,
        message: str,
        *,
        entity_type: str,
        entity_id: UUID | None = None,
        attempted: str | None = None,
        current_status: Any = None,
    ) -> None:
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempted = attempted
        self.current_status = _status_value(current_status)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "attempted": self.attempted,
            "current_status": self.current_status,
        }


class NotFoundError(LifecycleError):
    """Raised when an entity does not exist."""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: UUID, *, attempted: str | None = None) -> None:
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} not found",
            entity_type=entity_type,
            entity_id=entity_id,
            attempted=attempted,
        )


class ConflictError(LifecycleError):
    """Raised when the entity's current status forbids the transition."""

    code = "conflict"

    def __init__(
        self,
        entity_type: str,
        entity_id: UUID,
        *,
        attempted: str,
        current_status: Any,
        message: str | None = None,
    ) -> None:
        status = _status_value(current_status)
        super().__init__(
            message or f"Cannot {attempted} {entity_type} {entity_id} while it is {status}",
            entity_type=entity_type,
            entity_id=entity_id,
            attempted=attempted,
            current_status=current_status,
        )


class ExpiredError(LifecycleError):
    """Raised when a time-boxed entity is past its deadline."""

    code = "expired"

    def __init__(self, entity_type: str, entity_id: UUID, *, attempted: str) -> None:
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} has expired",
            entity_type=entity_type,
            entity_id=entity_id,
            attempted=attempted,
            current_status="expired",
        )


class ForbiddenError(LifecycleError):
    """Raised when the caller is not allowed to act on the entity."""

    code = "forbidden"

    def __init__(
        self,
        entity_type: str,
        entity_id: UUID | None,
        *,
        attempted: str,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Not authorized to {attempted} {entity_type} {entity_id}",
            entity_type=entity_type,
            entity_id=entity_id,
            attempted=attempted,
        )


class InvalidReferenceError(LifecycleError):
    """Raised when a linked entity is missing, of the wrong kind, or not owned by the caller."""

    code = "invalid_reference"


class NotApprovedError(InvalidReferenceError):
    """Raised when the referenced NGO exists but is not approved and active."""

    code = "not_approved"


class InvalidInputError(LifecycleError):
    """Raised when a payload value is out of range."""

    code = "invalid_input"


class InvalidExpiryError(InvalidInputError):
    """Raised when a donation's expiry time is not in the future."""

    code = "invalid_expiry"
