"""User registration, NGO approval and proximity discovery.

Users are never deleted; an admin deactivates them instead. NGOs register
unapproved and cannot take deliveries until an admin approves them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from wastewarden.db.models import Donation, Request, User
from wastewarden.db.models.base import DonationStatus, RequestStatus, UserRole
from wastewarden.services.base import LifecycleResult, LifecycleService, lifecycle_operation
from wastewarden.services.errors import ConflictError, InvalidInputError
from wastewarden.services.geo import validate_coordinates
from wastewarden.services.notifications import NotificationEvent

if TYPE_CHECKING:
    from uuid import UUID

    from wastewarden.services.base import Actor
    from wastewarden.services.schemas import UserRegistration

logger = logging.getLogger(__name__)

ENTITY = "user"


class UserService(LifecycleService):
    """Account operations that sit beside the lifecycle managers."""

    @lifecycle_operation("user.register")
    async def register(self, payload: UserRegistration) -> LifecycleResult:
        """Create an account. Emails are unique, compared case-insensitively."""
        existing = await self._store.find_user_by_email(payload.email)
        if existing is not None:
            raise ConflictError(
                ENTITY,
                existing.user_id,
                attempted="register",
                current_status="registered",
                message="Email is already registered",
            )

        now = self._clock()
        user = User(
            **payload.model_dump(),
            points=0,
            total_donations=0,
            total_requests=0,
            total_deliveries=0,
            is_active=True,
            is_approved=payload.role != UserRole.NGO,
            created_at=now,
            updated_at=now,
        )
        await self._store.add(user)
        await self._store.commit()

        logger.info(
            "User registered",
            extra={"user_id": str(user.user_id), "role": user.role.value},
        )
        return LifecycleResult.ok("user.register", user)

    @lifecycle_operation("user.approve_ngo")
    async def approve_ngo(self, ngo_id: UUID, actor: Actor) -> LifecycleResult:
        attempted = "approve_ngo"
        self._require_role(
            actor, {UserRole.ADMIN}, entity_type=ENTITY, entity_id=ngo_id, attempted=attempted
        )
        now = self._clock()
        ngo = await self._load(User, ngo_id, entity_type=ENTITY, attempted=attempted)
        if ngo.role != UserRole.NGO:
            raise InvalidInputError(
                f"User {ngo_id} is not an NGO",
                entity_type=ENTITY,
                entity_id=ngo_id,
                attempted=attempted,
            )

        approved = await self._store.transition(
            User,
            ngo_id,
            match={"role": UserRole.NGO, "is_approved": False},
            values={"is_approved": True, "approved_by": actor.user_id},
            stamp={"approved_at": now},
        )
        if not approved:
            raise ConflictError(
                ENTITY,
                ngo_id,
                attempted=attempted,
                current_status="approved",
                message=f"NGO {ngo_id} is already approved",
            )
        await self._store.commit()

        logger.info(
            "NGO approved",
            extra={"ngo_id": str(ngo_id), "approved_by": str(actor.user_id)},
        )
        self._notify(NotificationEvent.NGO_APPROVED, ngo_id, {"approved_at": now.isoformat()})
        return LifecycleResult.ok("user.approve_ngo", await self._store.get(User, ngo_id))

    @lifecycle_operation("user.deactivate")
    async def deactivate(self, user_id: UUID, actor: Actor) -> LifecycleResult:
        attempted = "deactivate"
        self._require_role(
            actor, {UserRole.ADMIN}, entity_type=ENTITY, entity_id=user_id, attempted=attempted
        )
        now = self._clock()
        await self._load(User, user_id, entity_type=ENTITY, attempted=attempted)

        deactivated = await self._store.transition(
            User,
            user_id,
            match={"is_active": True},
            values={"is_active": False},
            stamp={"deactivated_at": now},
        )
        if not deactivated:
            raise ConflictError(
                ENTITY,
                user_id,
                attempted=attempted,
                current_status="inactive",
                message=f"User {user_id} is already deactivated",
            )
        await self._store.commit()

        logger.info(
            "User deactivated",
            extra={"user_id": str(user_id), "deactivated_by": str(actor.user_id)},
        )
        return LifecycleResult.ok("user.deactivate", await self._store.get(User, user_id))

    @lifecycle_operation("user.find_nearby_donations")
    async def find_nearby_donations(
        self,
        latitude: float,
        longitude: float,
        radius_m: float | None = None,
    ) -> LifecycleResult:
        """Active donations around a point, nearest first."""
        radius = self._check_search(latitude, longitude, radius_m, "find_nearby_donations")
        matches = await self._store.find_nearby(
            Donation,
            latitude,
            longitude,
            radius,
            statuses={DonationStatus.ACTIVE},
            unexpired={"expiry_time": self._clock()},
        )
        return LifecycleResult.ok(
            "user.find_nearby_donations", matches, count=len(matches), radius_m=radius
        )

    @lifecycle_operation("user.find_nearby_requests")
    async def find_nearby_requests(
        self,
        latitude: float,
        longitude: float,
        radius_m: float | None = None,
    ) -> LifecycleResult:
        """Pending requests around a point, nearest first."""
        radius = self._check_search(latitude, longitude, radius_m, "find_nearby_requests")
        matches = await self._store.find_nearby(
            Request,
            latitude,
            longitude,
            radius,
            statuses={RequestStatus.PENDING},
            unexpired={"expiry_timestamp": self._clock()},
        )
        return LifecycleResult.ok(
            "user.find_nearby_requests", matches, count=len(matches), radius_m=radius
        )

    def _check_search(
        self,
        latitude: float,
        longitude: float,
        radius_m: float | None,
        attempted: str,
    ) -> float:
        geo = self._settings.geo
        radius = geo.default_radius_m if radius_m is None else radius_m
        try:
            validate_coordinates(latitude, longitude)
        except ValueError as e:
            raise InvalidInputError(str(e), entity_type="location", attempted=attempted) from e
        if not 0 < radius <= geo.max_radius_m:
            raise InvalidInputError(
                f"Search radius must be between 0 and {geo.max_radius_m} meters",
                entity_type="location",
                attempted=attempted,
            )
        return radius
