"""Shared plumbing for lifecycle managers.

Provides the caller identity (:class:`Actor`), the typed outcome of every
public operation (:class:`LifecycleResult`) and the ``lifecycle_operation``
decorator that turns a raised :class:`LifecycleError` into a failed result
after rolling back the session.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Concatenate, ParamSpec, TypeVar

from wastewarden.core.clock import utc_now
from wastewarden.db.models.base import UserRole
from wastewarden.services.errors import ForbiddenError, LifecycleError, NotFoundError
from wastewarden.services.notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationEvent,
)

if TYPE_CHECKING:
    from uuid import UUID

    from wastewarden.core.clock import Clock
    from wastewarden.core.config import Settings
    from wastewarden.services.store import EntityStore

logger = logging.getLogger(__name__)

P = ParamSpec("P")
S = TypeVar("S", bound="LifecycleService")


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller of a lifecycle operation."""

    user_id: UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True, slots=True)
class LifecycleResult:
    """Outcome of a lifecycle operation.

    Attributes:
        success: Whether the operation took effect (or was an accepted no-op).
        operation: Name of the operation, e.g. "delivery.confirm_receipt".
        entity: The entity as re-read after the operation, when available.
        previous_status: Status before the operation.
        new_status: Status after the operation (equals previous on failure).
        error: The refusal reason when ``success`` is False.
        data: Operation-specific extras (points awarded, time remaining...).
    """

    success: bool
    operation: str
    entity: Any = None
    previous_status: Enum | None = None
    new_status: Enum | None = None
    error: LifecycleError | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        operation: str,
        entity: Any = None,
        *,
        previous_status: Enum | None = None,
        new_status: Enum | None = None,
        **data: Any,
    ) -> LifecycleResult:
        return cls(
            success=True,
            operation=operation,
            entity=entity,
            previous_status=previous_status,
            new_status=new_status,
            data=data,
        )

    @classmethod
    def failed(cls, operation: str, error: LifecycleError) -> LifecycleResult:
        return cls(success=False, operation=operation, error=error)

    @property
    def code(self) -> str | None:
        return self.error.code if self.error else None


def lifecycle_operation(
    name: str,
) -> Callable[
    [Callable[Concatenate[S, P], Awaitable[LifecycleResult]]],
    Callable[Concatenate[S, P], Awaitable[LifecycleResult]],
]:
    """Mark a public lifecycle operation.

    A :class:`LifecycleError` raised by the wrapped coroutine rolls back the
    session and is returned as a failed result. Any other exception rolls
    back and propagates.
    """

    def decorator(
        fn: Callable[Concatenate[S, P], Awaitable[LifecycleResult]],
    ) -> Callable[Concatenate[S, P], Awaitable[LifecycleResult]]:
        @functools.wraps(fn)
        async def wrapper(self: S, *args: P.args, **kwargs: P.kwargs) -> LifecycleResult:
            try:
                return await fn(self, *args, **kwargs)
            except LifecycleError as e:
                await self._store.rollback()
                logger.warning(
                    "Lifecycle operation rejected: %s (%s)",
                    name,
                    e.code,
                    extra={
                        "operation": name,
                        "entity_type": e.entity_type,
                        "entity_id": str(e.entity_id) if e.entity_id else None,
                        "attempted": e.attempted,
                        "current_status": e.current_status,
                    },
                )
                return LifecycleResult.failed(name, e)
            except Exception:
                await self._store.rollback()
                raise

        return wrapper

    return decorator


class LifecycleService:
    """Base class for the lifecycle managers.

    Args:
        store: Entity store bound to the caller's session.
        notifier: Dispatcher for post-commit notifications.
        clock: Time source; read once per operation.
        settings: Application settings (lifecycle timings, geo radius).
    """

    def __init__(
        self,
        store: EntityStore,
        notifier: NotificationDispatcher | None = None,
        *,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        if settings is None:
            from wastewarden.core.settings import get_settings

            settings = get_settings()
        self._store = store
        self._notifier = notifier or NotificationDispatcher(LoggingNotificationSink())
        self._clock = clock
        self._settings = settings

    def _notify(
        self,
        event: NotificationEvent,
        target_user_id: UUID | None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if target_user_id is not None:
            self._notifier.publish(event, target_user_id, payload)

    @staticmethod
    def _log_transition(
        entity_type: str,
        entity_id: UUID,
        from_status: Enum | None,
        to_status: Enum,
        actor: Actor | None = None,
    ) -> None:
        logger.info(
            "State transition completed: %s %s %s -> %s",
            entity_type,
            entity_id,
            from_status.value if from_status else None,
            to_status.value,
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "from_status": from_status.value if from_status else None,
                "to_status": to_status.value,
                "actor_id": str(actor.user_id) if actor else None,
            },
        )

    async def _load(
        self,
        model: type[Any],
        entity_id: UUID,
        *,
        entity_type: str,
        attempted: str,
    ) -> Any:
        entity = await self._store.get(model, entity_id)
        if entity is None:
            raise NotFoundError(entity_type, entity_id, attempted=attempted)
        return entity

    @staticmethod
    def _require_role(
        actor: Actor,
        roles: Collection[UserRole],
        *,
        entity_type: str,
        entity_id: UUID | None,
        attempted: str,
    ) -> None:
        if actor.role not in roles:
            raise ForbiddenError(
                entity_type,
                entity_id,
                attempted=attempted,
                message=f"Role {actor.role.value} may not {attempted} a {entity_type}",
            )
