"""Donation lifecycle state machine service.

State machine:
    active -> assigned_to_ngo -> picked_up -> delivered
    active -> assigned_to_requester -> picked_up -> delivered
    active -> expired            (lazily, once expiry_time has passed)
    any non-terminal -> cancelled
    assigned_to_ngo | picked_up -> active    (only when the claiming delivery is cancelled)

Donations are not swept: donors act at will, so expiry is only applied
when a caller touches the donation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar

from wastewarden.db.models import Donation, User
from wastewarden.db.models.base import DonationStatus, UserRole
from wastewarden.services.base import LifecycleResult, LifecycleService, lifecycle_operation
from wastewarden.services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidExpiryError,
    InvalidInputError,
    InvalidReferenceError,
    NotApprovedError,
)
from wastewarden.services.notifications import NotificationEvent

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping
    from datetime import datetime
    from uuid import UUID

    from wastewarden.services.base import Actor
    from wastewarden.services.schemas import DonationCreate, DonationUpdate

logger = logging.getLogger(__name__)

ENTITY = "donation"


class DonationLifecycleService(LifecycleService):
    """Service for donation state transitions.

    Every status change is a conditional update on the expected source
    statuses taken from ``VALID_TRANSITIONS``.
    """

    VALID_TRANSITIONS: ClassVar[dict[DonationStatus, set[DonationStatus]]] = {
        DonationStatus.ACTIVE: {
            DonationStatus.ASSIGNED_TO_NGO,
            DonationStatus.ASSIGNED_TO_REQUESTER,
            DonationStatus.EXPIRED,
            DonationStatus.CANCELLED,
        },
        DonationStatus.ASSIGNED_TO_NGO: {
            DonationStatus.PICKED_UP,
            DonationStatus.ACTIVE,  # Delivery cancelled, released for re-matching
            DonationStatus.CANCELLED,
        },
        DonationStatus.ASSIGNED_TO_REQUESTER: {
            DonationStatus.PICKED_UP,
            DonationStatus.ACTIVE,  # Losing half of a donor acceptance race
            DonationStatus.CANCELLED,
        },
        DonationStatus.PICKED_UP: {
            DonationStatus.DELIVERED,
            DonationStatus.ACTIVE,  # Delivery cancelled after pickup
            DonationStatus.CANCELLED,
        },
        # Terminal states
        DonationStatus.DELIVERED: set(),
        DonationStatus.EXPIRED: set(),
        DonationStatus.CANCELLED: set(),
    }

    # Timestamp column stamped the first time a status is entered
    STATUS_TIMESTAMPS: ClassVar[dict[DonationStatus, str]] = {
        DonationStatus.ASSIGNED_TO_NGO: "assigned_at",
        DonationStatus.ASSIGNED_TO_REQUESTER: "assigned_at",
        DonationStatus.PICKED_UP: "picked_up_at",
        DonationStatus.DELIVERED: "delivered_at",
        DonationStatus.CANCELLED: "cancelled_at",
    }

    def is_valid_transition(self, from_status: DonationStatus, to_status: DonationStatus) -> bool:
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def is_terminal_status(self, status: DonationStatus) -> bool:
        return len(self.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def sources_of(cls, to_status: DonationStatus) -> set[DonationStatus]:
        """Statuses from which ``to_status`` can be entered."""
        return {src for src, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    @lifecycle_operation("donation.create")
    async def create(self, actor: Actor, payload: DonationCreate) -> LifecycleResult:
        """Post a donation.

        The expiry time must be strictly in the future. Nearby approved NGOs
        and requesters are notified once the donation is committed.
        """
        self._require_role(
            actor, {UserRole.DONOR}, entity_type=ENTITY, entity_id=None, attempted="create"
        )
        now = self._clock()
        if payload.expiry_time <= now:
            raise InvalidExpiryError(
                "Donation expiry time must be in the future",
                entity_type=ENTITY,
                attempted="create",
            )

        donation = Donation(
            donor_id=actor.user_id,
            **payload.model_dump(),
            status=DonationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        await self._store.add(donation)
        await self._store.increment(User, actor.user_id, "total_donations", 1)
        nearby = await self._store.find_nearby_users(
            donation.latitude,
            donation.longitude,
            self._settings.geo.default_radius_m,
            roles=(UserRole.NGO, UserRole.REQUESTER),
        )
        await self._store.commit()

        self._log_transition(ENTITY, donation.donation_id, None, DonationStatus.ACTIVE, actor)
        event_payload = {
            "donation_id": str(donation.donation_id),
            "food_type": donation.food_type,
            "category": donation.category.value,
            "expiry_time": donation.expiry_time.isoformat(),
        }
        for user in nearby:
            self._notify(NotificationEvent.NEW_DONATION, user.user_id, event_payload)

        return LifecycleResult.ok("donation.create", donation, new_status=DonationStatus.ACTIVE)

    @lifecycle_operation("donation.assign_ngo")
    async def assign_ngo(self, donation_id: UUID, actor: Actor, ngo_id: UUID) -> LifecycleResult:
        """Hand an active donation to an approved, active NGO."""
        attempted = "assign_ngo"
        now = self._clock()
        donation = await self._load(Donation, donation_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner_or_admin(donation, actor, attempted)

        if donation.status != DonationStatus.ACTIVE:
            raise ConflictError(
                ENTITY, donation_id, attempted=attempted, current_status=donation.status
            )

        ngo = await self._store.get(User, ngo_id)
        if ngo is None or ngo.role != UserRole.NGO:
            raise InvalidReferenceError(
                f"User {ngo_id} is not an NGO",
                entity_type="user",
                entity_id=ngo_id,
                attempted=attempted,
            )
        if not ngo.is_approved_ngo:
            raise NotApprovedError(
                f"NGO {ngo_id} is not approved and active",
                entity_type="user",
                entity_id=ngo_id,
                attempted=attempted,
            )

        await self.claim(
            donation,
            to_status=DonationStatus.ASSIGNED_TO_NGO,
            now=now,
            values={"assigned_ngo_id": ngo_id},
            attempted=attempted,
        )
        await self._store.commit()

        self._log_transition(
            ENTITY, donation_id, DonationStatus.ACTIVE, DonationStatus.ASSIGNED_TO_NGO, actor
        )
        self._notify(
            NotificationEvent.DONATION_ASSIGNED,
            ngo_id,
            {"donation_id": str(donation_id), "food_type": donation.food_type},
        )
        return LifecycleResult.ok(
            "donation.assign_ngo",
            await self._store.get(Donation, donation_id),
            previous_status=DonationStatus.ACTIVE,
            new_status=DonationStatus.ASSIGNED_TO_NGO,
        )

    @lifecycle_operation("donation.cancel")
    async def cancel(
        self,
        donation_id: UUID,
        actor: Actor,
        reason: str | None = None,
    ) -> LifecycleResult:
        """Withdraw a donation that is not yet delivered, expired or cancelled."""
        attempted = "cancel"
        now = self._clock()
        donation = await self._load(Donation, donation_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner_or_admin(donation, actor, attempted)

        previous = donation.status
        if not self.is_valid_transition(previous, DonationStatus.CANCELLED):
            raise ConflictError(ENTITY, donation_id, attempted=attempted, current_status=previous)

        cancelled = await self.advance(
            donation_id,
            DonationStatus.CANCELLED,
            now,
            values={"cancellation_reason": reason or "Cancelled by donor"},
        )
        if not cancelled:
            raise await self._conflict_from_current(donation_id, attempted)
        await self._store.commit()

        self._log_transition(ENTITY, donation_id, previous, DonationStatus.CANCELLED, actor)
        event_payload = {"donation_id": str(donation_id), "reason": reason}
        self._notify(NotificationEvent.DONATION_CANCELLED, donation.assigned_ngo_id, event_payload)
        self._notify(
            NotificationEvent.DONATION_CANCELLED, donation.assigned_requester_id, event_payload
        )
        return LifecycleResult.ok(
            "donation.cancel",
            await self._store.get(Donation, donation_id),
            previous_status=previous,
            new_status=DonationStatus.CANCELLED,
        )

    @lifecycle_operation("donation.delete")
    async def delete(self, donation_id: UUID, actor: Actor) -> LifecycleResult:
        """Hard delete; only allowed while the donation is still active."""
        attempted = "delete"
        donation = await self._load(Donation, donation_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner(donation, actor, attempted)

        if donation.status != DonationStatus.ACTIVE:
            raise ConflictError(
                ENTITY, donation_id, attempted=attempted, current_status=donation.status
            )
        deleted = await self._store.delete(
            Donation, donation_id, expected={DonationStatus.ACTIVE}
        )
        if not deleted:
            raise await self._conflict_from_current(donation_id, attempted)
        await self._store.increment(User, donation.donor_id, "total_donations", -1)
        await self._store.commit()

        logger.info(
            "Donation deleted",
            extra={"donation_id": str(donation_id), "actor_id": str(actor.user_id)},
        )
        return LifecycleResult.ok("donation.delete", previous_status=DonationStatus.ACTIVE)

    @lifecycle_operation("donation.update")
    async def update(
        self,
        donation_id: UUID,
        actor: Actor,
        changes: DonationUpdate,
    ) -> LifecycleResult:
        """Edit descriptive fields of an active donation."""
        attempted = "update"
        now = self._clock()
        donation = await self._load(Donation, donation_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner(donation, actor, attempted)

        values = changes.model_dump(exclude_unset=True)
        if not values:
            raise InvalidInputError(
                "No fields to update",
                entity_type=ENTITY,
                entity_id=donation_id,
                attempted=attempted,
            )
        new_expiry = values.get("expiry_time", now)
        if "expiry_time" in values and (new_expiry is None or new_expiry <= now):
            raise InvalidExpiryError(
                "Donation expiry time must be in the future",
                entity_type=ENTITY,
                entity_id=donation_id,
                attempted=attempted,
            )
        if donation.status != DonationStatus.ACTIVE:
            raise ConflictError(
                ENTITY, donation_id, attempted=attempted, current_status=donation.status
            )
        if donation.is_expired(now):
            await self.expire_lazily(donation, now)
            raise ExpiredError(ENTITY, donation_id, attempted=attempted)

        updated = await self._store.transition(
            Donation,
            donation_id,
            expected={DonationStatus.ACTIVE},
            values=values,
        )
        if not updated:
            raise await self._conflict_from_current(donation_id, attempted)
        await self._store.commit()

        return LifecycleResult.ok(
            "donation.update",
            await self._store.get(Donation, donation_id),
            previous_status=DonationStatus.ACTIVE,
            new_status=DonationStatus.ACTIVE,
            updated_fields=sorted(values),
        )

    @lifecycle_operation("donation.expire_if_stale")
    async def expire_if_stale(self, donation_id: UUID) -> LifecycleResult:
        """Apply lazy expiry to one donation; a no-op if it is not stale."""
        now = self._clock()
        donation = await self._load(
            Donation, donation_id, entity_type=ENTITY, attempted="expire_if_stale"
        )
        previous = donation.status
        expired = False
        if previous == DonationStatus.ACTIVE and donation.is_expired(now):
            expired = await self.expire_lazily(donation, now)

        current = await self._store.get(Donation, donation_id)
        return LifecycleResult.ok(
            "donation.expire_if_stale",
            current,
            previous_status=previous,
            new_status=current.status if current else previous,
            expired=expired,
        )

    # -------------------------------------------------------------------------
    # Helpers shared with the request and delivery managers
    # -------------------------------------------------------------------------

    async def claim(
        self,
        donation: Donation,
        *,
        to_status: DonationStatus,
        now: datetime,
        values: Mapping[str, Any],
        attempted: str,
        match: Mapping[str, Any] | None = None,
    ) -> None:
        """Move an active, unexpired donation into an assigned status.

        Raises:
            ExpiredError: The donation is past its expiry (it is expired as a side effect).
            ConflictError: Another caller claimed it first.
        """
        if donation.is_expired(now):
            await self.expire_lazily(donation, now)
            raise ExpiredError(ENTITY, donation.donation_id, attempted=attempted)

        claimed = await self._store.transition(
            Donation,
            donation.donation_id,
            expected={DonationStatus.ACTIVE},
            match=match,
            unexpired={"expiry_time": now},
            values={"status": to_status, **values},
            stamp={self.STATUS_TIMESTAMPS[to_status]: now},
        )
        if not claimed:
            raise await self._conflict_from_current(donation.donation_id, attempted)

    async def release(
        self,
        donation_id: UUID,
        *,
        from_statuses: Collection[DonationStatus],
        match: Mapping[str, Any] | None = None,
    ) -> bool:
        """Put a claimed donation back to active with its assignment cleared."""
        released = await self._store.transition(
            Donation,
            donation_id,
            expected=from_statuses,
            match=match,
            values={
                "status": DonationStatus.ACTIVE,
                "assigned_ngo_id": None,
                "assigned_requester_id": None,
            },
        )
        if released:
            logger.info(
                "Donation released for re-matching", extra={"donation_id": str(donation_id)}
            )
        else:
            logger.warning(
                "Donation release matched nothing",
                extra={
                    "donation_id": str(donation_id),
                    "from_statuses": sorted(s.value for s in from_statuses),
                },
            )
        return released

    async def advance(
        self,
        donation_id: UUID,
        to_status: DonationStatus,
        now: datetime,
        *,
        values: Mapping[str, Any] | None = None,
        from_statuses: Collection[DonationStatus] | None = None,
    ) -> bool:
        """Conditional transition into ``to_status`` from its valid sources.

        Stamps the status timestamp on first entry. Returns False when the
        donation was not in an expected status.
        """
        stamp_column = self.STATUS_TIMESTAMPS.get(to_status)
        return await self._store.transition(
            Donation,
            donation_id,
            expected=from_statuses if from_statuses is not None else self.sources_of(to_status),
            values={"status": to_status, **(values or {})},
            stamp={stamp_column: now} if stamp_column else None,
        )

    async def expire_lazily(self, donation: Donation, now: datetime) -> bool:
        """Flip an overdue active donation to expired and commit immediately."""
        expired = await self._store.transition(
            Donation,
            donation.donation_id,
            expected={DonationStatus.ACTIVE},
            overdue={"expiry_time": now},
            values={"status": DonationStatus.EXPIRED},
        )
        if expired:
            await self._store.commit()
            self._log_transition(
                ENTITY, donation.donation_id, DonationStatus.ACTIVE, DonationStatus.EXPIRED
            )
        return expired

    async def _conflict_from_current(self, donation_id: UUID, attempted: str) -> ConflictError:
        current = await self._store.get(Donation, donation_id)
        return ConflictError(
            ENTITY,
            donation_id,
            attempted=attempted,
            current_status=current.status if current else None,
        )

    @staticmethod
    def _require_owner(donation: Donation, actor: Actor, attempted: str) -> None:
        if donation.donor_id != actor.user_id:
            raise ForbiddenError(ENTITY, donation.donation_id, attempted=attempted)

    @staticmethod
    def _require_owner_or_admin(donation: Donation, actor: Actor, attempted: str) -> None:
        if donation.donor_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError(ENTITY, donation.donation_id, attempted=attempted)
