"""Entity store: the only place lifecycle managers touch SQL.

Every status change goes through :meth:`EntityStore.transition`, a single
``UPDATE ... WHERE id = :id AND status IN (...)`` statement. Two callers
racing on the same row cannot both match: the loser's update affects zero
rows and it reports a conflict instead of overwriting the winner.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Collection, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import delete, func, literal, select, update
from sqlalchemy.dialects.postgresql import JSONB

from wastewarden.db.models import Delivery, Request, User
from wastewarden.db.models.base import Base, RequestStatus, UserRole
from wastewarden.services.geo import bounding_box, haversine_m

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Base)


def primary_key_name(model: type[Base]) -> str:
    return model.__mapper__.primary_key[0].key


class EntityStore:
    """Async persistence operations over one SQLAlchemy session.

    Conditional updates take their guards as plain mappings so the same
    contract can be honoured by non-SQL stores:

    - ``expected``: allowed current values of ``status``
    - ``match``: columns that must equal the given value (``None`` means IS NULL)
    - ``unexpired``: columns that must be ``>=`` the given instant
    - ``overdue``: columns that must be ``<`` the given instant
    - ``stamp``: columns set to the given instant only if currently NULL
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def get(self, model: type[M], entity_id: uuid.UUID) -> M | None:
        """Load an entity, refreshing any stale copy in the identity map."""
        return await self._session.get(model, entity_id, populate_existing=True)

    async def add(self, entity: M) -> M:
        """Persist a new entity, assigning a uuid4 primary key if unset."""
        pk = primary_key_name(type(entity))
        if getattr(entity, pk, None) is None:
            setattr(entity, pk, uuid.uuid4())
        self._session.add(entity)
        await self._session.flush()
        return entity

    async def delete(
        self,
        model: type[M],
        entity_id: uuid.UUID,
        *,
        expected: Collection[Any] | None = None,
    ) -> bool:
        """Hard delete, optionally only while the status is one of ``expected``."""
        pk = getattr(model, primary_key_name(model))
        stmt = delete(model).where(pk == entity_id)
        if expected is not None:
            stmt = stmt.where(model.status.in_(list(expected)))
        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition(
        self,
        model: type[M],
        entity_id: uuid.UUID,
        *,
        values: Mapping[str, Any],
        expected: Collection[Any] | None = None,
        match: Mapping[str, Any] | None = None,
        unexpired: Mapping[str, datetime] | None = None,
        overdue: Mapping[str, datetime] | None = None,
        stamp: Mapping[str, datetime] | None = None,
    ) -> bool:
        """Atomic conditional update of a single row.

        Returns:
            True if the row matched every guard and was updated.
        """
        pk = getattr(model, primary_key_name(model))
        stmt = update(model).where(pk == entity_id)

        if expected is not None:
            stmt = stmt.where(model.status.in_(list(expected)))
        for name, value in (match or {}).items():
            column = getattr(model, name)
            if value is None or isinstance(value, bool):
                stmt = stmt.where(column.is_(value))
            else:
                stmt = stmt.where(column == value)
        for name, instant in (unexpired or {}).items():
            stmt = stmt.where(getattr(model, name) >= instant)
        for name, instant in (overdue or {}).items():
            stmt = stmt.where(getattr(model, name) < instant)

        assignments: dict[str, Any] = dict(values)
        for name, instant in (stamp or {}).items():
            assignments[name] = func.coalesce(getattr(model, name), instant)
        assignments.setdefault("updated_at", func.now())

        result = await self._session.execute(
            stmt.values(assignments).execution_options(synchronize_session=False)
        )
        matched = result.rowcount == 1
        if not matched:
            logger.debug(
                "Conditional update matched no row",
                extra={"table": model.__tablename__, "entity_id": str(entity_id)},
            )
        return matched

    async def increment(
        self,
        model: type[M],
        entity_id: uuid.UUID,
        field: str,
        amount: int = 1,
    ) -> None:
        """Atomically add ``amount`` to a counter column, never going below zero."""
        pk = getattr(model, primary_key_name(model))
        column = getattr(model, field)
        await self._session.execute(
            update(model)
            .where(pk == entity_id)
            .values({field: func.greatest(column + amount, 0)})
            .execution_options(synchronize_session=False)
        )

    async def append_issue(self, delivery_id: uuid.UUID, issue: dict[str, Any]) -> bool:
        """Append one entry to a delivery's issue log without touching prior entries."""
        result = await self._session.execute(
            update(Delivery)
            .where(Delivery.delivery_id == delivery_id)
            .values(
                issues=Delivery.issues.op("||", return_type=JSONB)(literal([issue], JSONB)),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def expire_stale_requests(
        self,
        now: datetime,
        limit: int,
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """Flip up to ``limit`` overdue pending requests to expired.

        Rows locked by a concurrent transaction are skipped and picked up by
        a later batch.

        Returns:
            (request_id, requester_id) for every request expired.
        """
        stale = (
            select(Request.request_id)
            .where(
                Request.status == RequestStatus.PENDING,
                Request.expiry_timestamp < now,
            )
            .order_by(Request.expiry_timestamp)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(
            update(Request)
            .where(
                Request.request_id.in_(stale),
                Request.status == RequestStatus.PENDING,
            )
            .values(status=RequestStatus.EXPIRED, updated_at=func.now())
            .returning(Request.request_id, Request.requester_id)
            .execution_options(synchronize_session=False)
        )
        return [(row.request_id, row.requester_id) for row in result.all()]

    async def find_nearby(
        self,
        model: type[M],
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        statuses: Collection[Any] | None = None,
        unexpired: Mapping[str, datetime] | None = None,
        limit: int = 50,
    ) -> list[tuple[M, float]]:
        """Entities of ``model`` within ``radius_m``, nearest first, with their distance.

        ``unexpired`` has the same meaning as in :meth:`transition`: rows whose
        deadline column is before the given instant are left out.
        """
        box = bounding_box(latitude, longitude, radius_m)
        stmt = select(model).where(
            model.latitude.between(box.min_latitude, box.max_latitude),
            model.longitude.between(box.min_longitude, box.max_longitude),
        )
        if statuses is not None:
            stmt = stmt.where(model.status.in_(list(statuses)))
        for name, instant in (unexpired or {}).items():
            stmt = stmt.where(getattr(model, name) >= instant)

        rows = (await self._session.execute(stmt)).scalars().all()
        matches = []
        for row in rows:
            distance = haversine_m(latitude, longitude, row.latitude, row.longitude)
            if distance <= radius_m:
                matches.append((row, distance))
        matches.sort(key=lambda match: match[1])
        return matches[:limit]

    async def find_nearby_users(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        roles: Collection[UserRole],
    ) -> list[User]:
        """Active users with one of ``roles`` near a point; NGOs must be approved."""
        box = bounding_box(latitude, longitude, radius_m)
        stmt = select(User).where(
            User.is_active.is_(True),
            User.role.in_(list(roles)),
            User.latitude.between(box.min_latitude, box.max_latitude),
            User.longitude.between(box.min_longitude, box.max_longitude),
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return [
            user
            for user in rows
            if (user.role != UserRole.NGO or user.is_approved)
            and haversine_m(latitude, longitude, user.latitude, user.longitude) <= radius_m
        ]

    async def find_user_by_email(self, email: str) -> User | None:
        result = await self._session.execute(
            select(User).where(func.lower(User.email) == email.lower())
        )
        return result.scalar_one_or_none()

    async def find_admin_ids(self) -> list[uuid.UUID]:
        result = await self._session.execute(
            select(User.user_id).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def list_deliveries(
        self,
        *,
        ngo_id: uuid.UUID | None = None,
        statuses: Collection[Any] | None = None,
    ) -> list[Delivery]:
        stmt = select(Delivery).order_by(Delivery.created_at.desc())
        if ngo_id is not None:
            stmt = stmt.where(Delivery.ngo_id == ngo_id)
        if statuses is not None:
            stmt = stmt.where(Delivery.status.in_(list(statuses)))
        return list((await self._session.execute(stmt)).scalars().all())

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
