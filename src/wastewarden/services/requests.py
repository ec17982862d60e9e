"""Request lifecycle state machine service.

State machine:
    pending -> accepted_by_donor | accepted_by_ngo -> in_transit -> delivered
    pending -> expired        (sweeper, or lazily on access)
    any non-terminal -> cancelled (requester only)
    accepted_by_ngo | in_transit -> pending (claiming delivery cancelled or failed)

A request has at most one acceptor. Acceptance is a conditional update
guarded on ``status = pending`` and an unexpired deadline, so of two
concurrent acceptors exactly one wins and the other gets a conflict.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from wastewarden.db.models import Donation, Request, User
from wastewarden.db.models.base import AcceptorKind, DonationStatus, RequestStatus, UserRole
from wastewarden.db.models.requests import AcceptedByDonor, Unaccepted
from wastewarden.services.base import LifecycleResult, LifecycleService, lifecycle_operation
from wastewarden.services.donations import DonationLifecycleService
from wastewarden.services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidInputError,
    InvalidReferenceError,
    LifecycleError,
    NotApprovedError,
    NotFoundError,
)
from wastewarden.services.notifications import NotificationEvent

if TYPE_CHECKING:
    from collections.abc import Mapping
    from uuid import UUID

    from wastewarden.services.base import Actor
    from wastewarden.services.schemas import RequestCreate, RequestUpdate

logger = logging.getLogger(__name__)

ENTITY = "request"
DEFAULT_CANCEL_REASON = "Cancelled by requester"


def is_expired(request: Request, now: datetime) -> bool:
    """True once ``now`` is past the request's expiry timestamp."""
    return request.is_expired(now)


def time_remaining(request: Request, now: datetime) -> timedelta:
    """Time left before expiry, never negative."""
    return request.time_remaining(now)


class RequestLifecycleService(LifecycleService):
    """Service for request state transitions.

    Example:
        service = RequestLifecycleService(EntityStore(session), dispatcher)
        result = await service.accept(request_id, donor, donation_id=donation_id)
        if not result.success:
            print(result.error.code, result.error.current_status)
    """

    VALID_TRANSITIONS: ClassVar[dict[RequestStatus, set[RequestStatus]]] = {
        RequestStatus.PENDING: {
            RequestStatus.ACCEPTED_BY_DONOR,
            RequestStatus.ACCEPTED_BY_NGO,
            RequestStatus.EXPIRED,
            RequestStatus.CANCELLED,
        },
        RequestStatus.ACCEPTED_BY_DONOR: {RequestStatus.IN_TRANSIT, RequestStatus.CANCELLED},
        RequestStatus.ACCEPTED_BY_NGO: {
            RequestStatus.IN_TRANSIT,
            RequestStatus.DELIVERED,
            RequestStatus.PENDING,  # Delivery cancelled or failed
            RequestStatus.CANCELLED,
        },
        RequestStatus.IN_TRANSIT: {
            RequestStatus.DELIVERED,
            RequestStatus.PENDING,  # Delivery cancelled or failed
            RequestStatus.CANCELLED,
        },
        # Terminal states
        RequestStatus.DELIVERED: set(),
        RequestStatus.EXPIRED: set(),
        RequestStatus.CANCELLED: set(),
    }

    STATUS_TIMESTAMPS: ClassVar[dict[RequestStatus, str]] = {
        RequestStatus.ACCEPTED_BY_DONOR: "accepted_at",
        RequestStatus.ACCEPTED_BY_NGO: "accepted_at",
        RequestStatus.IN_TRANSIT: "delivery_started_at",
        RequestStatus.DELIVERED: "delivered_at",
        RequestStatus.CANCELLED: "cancelled_at",
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._donations = DonationLifecycleService(
            self._store, self._notifier, clock=self._clock, settings=self._settings
        )

    def is_valid_transition(self, from_status: RequestStatus, to_status: RequestStatus) -> bool:
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def is_terminal_status(self, status: RequestStatus) -> bool:
        return len(self.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def sources_of(cls, to_status: RequestStatus) -> set[RequestStatus]:
        return {src for src, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    @lifecycle_operation("request.create")
    async def create(self, actor: Actor, payload: RequestCreate) -> LifecycleResult:
        """Post a request that stays pending for the configured TTL."""
        self._require_role(
            actor, {UserRole.REQUESTER}, entity_type=ENTITY, entity_id=None, attempted="create"
        )
        now = self._clock()
        request = Request(
            requester_id=actor.user_id,
            **payload.model_dump(),
            expiry_timestamp=now + timedelta(minutes=self._settings.lifecycle.request_ttl_minutes),
            status=RequestStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        await self._store.add(request)
        await self._store.increment(User, actor.user_id, "total_requests", 1)
        nearby = await self._store.find_nearby_users(
            request.latitude,
            request.longitude,
            self._settings.geo.default_radius_m,
            roles=(UserRole.DONOR, UserRole.NGO),
        )
        await self._store.commit()

        self._log_transition(ENTITY, request.request_id, None, RequestStatus.PENDING, actor)
        event_payload = {
            "request_id": str(request.request_id),
            "title": request.title,
            "urgency": request.urgency.value,
            "is_emergency": request.is_emergency,
            "expires_at": request.expiry_timestamp.isoformat(),
        }
        for user in nearby:
            self._notify(NotificationEvent.NEW_REQUEST, user.user_id, event_payload)

        return LifecycleResult.ok(
            "request.create",
            request,
            new_status=RequestStatus.PENDING,
            expires_at=request.expiry_timestamp,
        )

    @lifecycle_operation("request.accept")
    async def accept(
        self,
        request_id: UUID,
        actor: Actor,
        donation_id: UUID | None = None,
    ) -> LifecycleResult:
        """Accept a pending request as a donor or an NGO.

        A donor must commit one of their own active donations, which moves
        to ``assigned_to_requester``. An NGO only records its acceptance; the
        donation is linked later when it creates the delivery.
        """
        attempted = "accept"
        self._require_role(
            actor,
            {UserRole.DONOR, UserRole.NGO},
            entity_type=ENTITY,
            entity_id=request_id,
            attempted=attempted,
        )
        now = self._clock()
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)

        if request.status != RequestStatus.PENDING:
            raise ConflictError(
                ENTITY, request_id, attempted=attempted, current_status=request.status
            )
        if request.is_expired(now):
            await self.expire_lazily(request, now)
            raise ExpiredError(ENTITY, request_id, attempted=attempted)

        donation: Donation | None = None
        if actor.role == UserRole.DONOR:
            donation = await self._claim_donor_donation(request, actor, donation_id, now)
            new_status = RequestStatus.ACCEPTED_BY_DONOR
            values = {
                "status": new_status,
                "accepted_by_kind": AcceptorKind.DONOR,
                "accepted_by_id": actor.user_id,
                "assigned_donation_id": donation.donation_id,
            }
        else:
            ngo = await self._store.get(User, actor.user_id)
            if ngo is None or not ngo.is_approved_ngo:
                raise NotApprovedError(
                    f"NGO {actor.user_id} is not approved and active",
                    entity_type="user",
                    entity_id=actor.user_id,
                    attempted=attempted,
                )
            new_status = RequestStatus.ACCEPTED_BY_NGO
            values = {
                "status": new_status,
                "accepted_by_kind": AcceptorKind.NGO,
                "accepted_by_id": actor.user_id,
            }

        accepted = await self._store.transition(
            Request,
            request_id,
            expected={RequestStatus.PENDING},
            unexpired={"expiry_timestamp": now},
            values=values,
            stamp={"accepted_at": now},
        )
        if not accepted:
            if donation is not None:
                await self._donations.release(
                    donation.donation_id,
                    from_statuses={DonationStatus.ASSIGNED_TO_REQUESTER},
                    match={"assigned_requester_id": request.requester_id},
                )
            raise await self.lost_race(request_id, attempted, now)
        await self._store.commit()

        self._log_transition(ENTITY, request_id, RequestStatus.PENDING, new_status, actor)
        self._notify(
            NotificationEvent.REQUEST_ACCEPTED,
            request.requester_id,
            {
                "request_id": str(request_id),
                "accepted_by": actor.role.value,
                "acceptor_id": str(actor.user_id),
                "donation_id": str(donation.donation_id) if donation else None,
            },
        )
        return LifecycleResult.ok(
            "request.accept",
            await self._store.get(Request, request_id),
            previous_status=RequestStatus.PENDING,
            new_status=new_status,
        )

    @lifecycle_operation("request.extend")
    async def extend(
        self,
        request_id: UUID,
        actor: Actor,
        additional_minutes: int | None = None,
    ) -> LifecycleResult:
        """Push a pending request's expiry back by 1 to ``max_extension_minutes`` minutes."""
        attempted = "extend"
        lifecycle = self._settings.lifecycle
        minutes = (
            lifecycle.default_extension_minutes
            if additional_minutes is None
            else additional_minutes
        )
        if not 1 <= minutes <= lifecycle.max_extension_minutes:
            raise InvalidInputError(
                f"additional_minutes must be between 1 and {lifecycle.max_extension_minutes}",
                entity_type=ENTITY,
                entity_id=request_id,
                attempted=attempted,
            )

        now = self._clock()
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner_or_admin(request, actor, attempted)
        await self._require_open_pending(request, now, attempted)

        new_expiry = request.expiry_timestamp + timedelta(minutes=minutes)
        extended = await self._store.transition(
            Request,
            request_id,
            expected={RequestStatus.PENDING},
            match={"expiry_timestamp": request.expiry_timestamp},
            unexpired={"expiry_timestamp": now},
            values={"expiry_timestamp": new_expiry},
        )
        if not extended:
            raise await self.lost_race(request_id, attempted, now)
        await self._store.commit()

        logger.info(
            "Request expiry extended",
            extra={
                "request_id": str(request_id),
                "minutes": minutes,
                "expires_at": new_expiry.isoformat(),
            },
        )
        return LifecycleResult.ok(
            "request.extend",
            await self._store.get(Request, request_id),
            previous_status=RequestStatus.PENDING,
            new_status=RequestStatus.PENDING,
            expires_at=new_expiry,
            extended_by_minutes=minutes,
        )

    @lifecycle_operation("request.cancel")
    async def cancel(
        self,
        request_id: UUID,
        actor: Actor,
        reason: str | None = None,
    ) -> LifecycleResult:
        """Cancel a non-terminal request.

        The acceptor, if any, is told. The acceptance itself stays on record.
        """
        attempted = "cancel"
        now = self._clock()
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner(request, actor, attempted)

        previous = request.status
        if not self.is_valid_transition(previous, RequestStatus.CANCELLED):
            raise ConflictError(ENTITY, request_id, attempted=attempted, current_status=previous)
        if previous == RequestStatus.PENDING and request.is_expired(now):
            await self.expire_lazily(request, now)
            raise ExpiredError(ENTITY, request_id, attempted=attempted)

        cancelled = await self.advance(
            request_id,
            RequestStatus.CANCELLED,
            now,
            values={"cancellation_reason": reason or DEFAULT_CANCEL_REASON},
        )
        if not cancelled:
            raise await self.lost_race(request_id, attempted, now)
        await self._store.commit()

        self._log_transition(ENTITY, request_id, previous, RequestStatus.CANCELLED, actor)
        if not isinstance(request.acceptance, Unaccepted):
            self._notify(
                NotificationEvent.REQUEST_CANCELLED,
                request.accepted_by_id,
                {"request_id": str(request_id), "reason": reason or DEFAULT_CANCEL_REASON},
            )
        return LifecycleResult.ok(
            "request.cancel",
            await self._store.get(Request, request_id),
            previous_status=previous,
            new_status=RequestStatus.CANCELLED,
        )

    @lifecycle_operation("request.update")
    async def update(
        self,
        request_id: UUID,
        actor: Actor,
        changes: RequestUpdate,
    ) -> LifecycleResult:
        """Edit descriptive fields of a pending, unexpired request."""
        attempted = "update"
        values = changes.model_dump(exclude_unset=True)
        if not values:
            raise InvalidInputError(
                "No fields to update", entity_type=ENTITY, entity_id=request_id, attempted=attempted
            )

        now = self._clock()
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner(request, actor, attempted)
        await self._require_open_pending(request, now, attempted)

        updated = await self._store.transition(
            Request,
            request_id,
            expected={RequestStatus.PENDING},
            unexpired={"expiry_timestamp": now},
            values=values,
        )
        if not updated:
            raise await self.lost_race(request_id, attempted, now)
        await self._store.commit()

        return LifecycleResult.ok(
            "request.update",
            await self._store.get(Request, request_id),
            previous_status=RequestStatus.PENDING,
            new_status=RequestStatus.PENDING,
            updated_fields=sorted(values),
        )

    @lifecycle_operation("request.delete")
    async def delete(self, request_id: UUID, actor: Actor) -> LifecycleResult:
        """Hard delete; only allowed while the request is pending."""
        attempted = "delete"
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner(request, actor, attempted)

        if request.status != RequestStatus.PENDING:
            raise ConflictError(
                ENTITY, request_id, attempted=attempted, current_status=request.status
            )
        deleted = await self._store.delete(Request, request_id, expected={RequestStatus.PENDING})
        if not deleted:
            current = await self._store.get(Request, request_id)
            raise ConflictError(
                ENTITY,
                request_id,
                attempted=attempted,
                current_status=current.status if current else None,
            )
        await self._store.increment(User, request.requester_id, "total_requests", -1)
        await self._store.commit()

        logger.info(
            "Request deleted",
            extra={"request_id": str(request_id), "actor_id": str(actor.user_id)},
        )
        return LifecycleResult.ok("request.delete", previous_status=RequestStatus.PENDING)

    @lifecycle_operation("request.get_status")
    async def get_status(self, request_id: UUID) -> LifecycleResult:
        """Read a request, expiring it first if it is pending and overdue."""
        now = self._clock()
        request = await self._load(
            Request, request_id, entity_type=ENTITY, attempted="get_status"
        )
        previous = request.status
        if previous == RequestStatus.PENDING and request.is_expired(now):
            await self.expire_lazily(request, now)
            request = await self._store.get(Request, request_id)

        remaining = time_remaining(request, now)
        return LifecycleResult.ok(
            "request.get_status",
            request,
            previous_status=previous,
            new_status=request.status,
            is_expired=is_expired(request, now),
            time_remaining=remaining,
            time_remaining_seconds=int(remaining.total_seconds()),
        )

    @lifecycle_operation("request.sweep")
    async def sweep(self, batch_size: int | None = None) -> LifecycleResult:
        """Expire every pending request whose deadline has passed.

        Works in batches of ``batch_size`` rows, committing and notifying
        requesters after each batch, until a short batch signals the backlog
        is drained.
        """
        limit = batch_size or self._settings.sweeper.batch_size
        now = self._clock()
        expired_ids: list[UUID] = []

        while True:
            batch = await self._store.expire_stale_requests(now, limit)
            await self._store.commit()
            for request_id, requester_id in batch:
                expired_ids.append(request_id)
                self._notify(
                    NotificationEvent.REQUEST_EXPIRED,
                    requester_id,
                    {"request_id": str(request_id), "reason": "No acceptor before expiry"},
                )
            if len(batch) < limit:
                break

        if expired_ids:
            logger.info(
                "Expired %d stale requests",
                len(expired_ids),
                extra={"expired_count": len(expired_ids), "swept_at": now.isoformat()},
            )
        return LifecycleResult.ok(
            "request.sweep",
            new_status=RequestStatus.EXPIRED,
            expired_count=len(expired_ids),
            expired_ids=expired_ids,
        )

    @lifecycle_operation("request.start_transit")
    async def start_transit(self, request_id: UUID, actor: Actor) -> LifecycleResult:
        """Donor-direct handoff: the accepting donor sets off with the food."""
        attempted = "start_transit"
        now = self._clock()
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)
        if request.acceptance != AcceptedByDonor(actor.user_id):
            raise ForbiddenError(
                ENTITY,
                request_id,
                attempted=attempted,
                message="Only the accepting donor can start transit",
            )
        if request.status != RequestStatus.ACCEPTED_BY_DONOR:
            raise ConflictError(
                ENTITY, request_id, attempted=attempted, current_status=request.status
            )

        moved = await self.advance(
            request_id,
            RequestStatus.IN_TRANSIT,
            now,
            from_statuses={RequestStatus.ACCEPTED_BY_DONOR},
        )
        if not moved:
            raise await self.lost_race(request_id, attempted, now)
        if request.assigned_donation_id is not None:
            cascaded = await self._donations.advance(
                request.assigned_donation_id,
                DonationStatus.PICKED_UP,
                now,
                from_statuses={DonationStatus.ASSIGNED_TO_REQUESTER},
            )
            if not cascaded:
                logger.warning(
                    "Donation did not follow request into transit",
                    extra={
                        "request_id": str(request_id),
                        "donation_id": str(request.assigned_donation_id),
                    },
                )
        await self._store.commit()

        self._log_transition(
            ENTITY, request_id, RequestStatus.ACCEPTED_BY_DONOR, RequestStatus.IN_TRANSIT, actor
        )
        self._notify(
            NotificationEvent.DELIVERY_STARTED,
            request.requester_id,
            {"request_id": str(request_id), "donor_id": str(actor.user_id)},
        )
        return LifecycleResult.ok(
            "request.start_transit",
            await self._store.get(Request, request_id),
            previous_status=RequestStatus.ACCEPTED_BY_DONOR,
            new_status=RequestStatus.IN_TRANSIT,
        )

    @lifecycle_operation("request.confirm_direct_receipt")
    async def confirm_direct_receipt(self, request_id: UUID, actor: Actor) -> LifecycleResult:
        """Requester confirms food brought directly by the accepting donor."""
        attempted = "confirm_direct_receipt"
        now = self._clock()
        request = await self._load(Request, request_id, entity_type=ENTITY, attempted=attempted)
        self._require_owner(request, actor, attempted)

        if not isinstance(request.acceptance, AcceptedByDonor):
            raise ConflictError(
                ENTITY,
                request_id,
                attempted=attempted,
                current_status=request.status,
                message="NGO deliveries are confirmed on the delivery itself",
            )
        if request.status != RequestStatus.IN_TRANSIT:
            raise ConflictError(
                ENTITY, request_id, attempted=attempted, current_status=request.status
            )

        delivered = await self.advance(
            request_id,
            RequestStatus.DELIVERED,
            now,
            from_statuses={RequestStatus.IN_TRANSIT},
        )
        if not delivered:
            raise await self.lost_race(request_id, attempted, now)
        if request.assigned_donation_id is not None:
            await self._donations.advance(
                request.assigned_donation_id,
                DonationStatus.DELIVERED,
                now,
                from_statuses={DonationStatus.PICKED_UP},
            )
        await self._store.commit()

        self._log_transition(
            ENTITY, request_id, RequestStatus.IN_TRANSIT, RequestStatus.DELIVERED, actor
        )
        self._notify(
            NotificationEvent.RECEIPT_CONFIRMED,
            request.accepted_by_id,
            {"request_id": str(request_id)},
        )
        return LifecycleResult.ok(
            "request.confirm_direct_receipt",
            await self._store.get(Request, request_id),
            previous_status=RequestStatus.IN_TRANSIT,
            new_status=RequestStatus.DELIVERED,
        )

    # -------------------------------------------------------------------------
    # Helpers shared with the delivery manager
    # -------------------------------------------------------------------------

    async def claim_for_ngo(
        self,
        request: Request,
        ngo_id: UUID,
        donation_id: UUID,
        now: datetime,
    ) -> bool:
        """Conditionally move a pending, unexpired request to accepted_by_ngo."""
        return await self._store.transition(
            Request,
            request.request_id,
            expected={RequestStatus.PENDING},
            unexpired={"expiry_timestamp": now},
            values={
                "status": RequestStatus.ACCEPTED_BY_NGO,
                "accepted_by_kind": AcceptorKind.NGO,
                "accepted_by_id": ngo_id,
                "assigned_donation_id": donation_id,
            },
            stamp={"accepted_at": now},
        )

    async def release_to_pending(self, request_id: UUID, ngo_id: UUID) -> bool:
        """Re-open a request the given NGO had claimed, clearing the acceptance."""
        released = await self._store.transition(
            Request,
            request_id,
            expected=self.sources_of(RequestStatus.PENDING),
            match={"accepted_by_id": ngo_id},
            values={
                "status": RequestStatus.PENDING,
                "accepted_by_kind": None,
                "accepted_by_id": None,
                "assigned_donation_id": None,
            },
        )
        if released:
            logger.info("Request re-opened for matching", extra={"request_id": str(request_id)})
        else:
            logger.warning(
                "Request release matched nothing",
                extra={"request_id": str(request_id), "ngo_id": str(ngo_id)},
            )
        return released

    async def advance(
        self,
        request_id: UUID,
        to_status: RequestStatus,
        now: datetime,
        *,
        values: Mapping[str, Any] | None = None,
        from_statuses: set[RequestStatus] | None = None,
    ) -> bool:
        """Conditional transition into ``to_status``, stamping its timestamp once."""
        stamp_column = self.STATUS_TIMESTAMPS.get(to_status)
        return await self._store.transition(
            Request,
            request_id,
            expected=from_statuses if from_statuses is not None else self.sources_of(to_status),
            values={"status": to_status, **(values or {})},
            stamp={stamp_column: now} if stamp_column else None,
        )

    async def expire_lazily(self, request: Request, now: datetime) -> bool:
        """Flip an overdue pending request to expired, commit, and tell the requester."""
        expired = await self._store.transition(
            Request,
            request.request_id,
            expected={RequestStatus.PENDING},
            overdue={"expiry_timestamp": now},
            values={"status": RequestStatus.EXPIRED},
        )
        if expired:
            await self._store.commit()
            self._log_transition(
                ENTITY, request.request_id, RequestStatus.PENDING, RequestStatus.EXPIRED
            )
            self._notify(
                NotificationEvent.REQUEST_EXPIRED,
                request.requester_id,
                {"request_id": str(request.request_id), "reason": "No acceptor before expiry"},
            )
        return expired

    async def lost_race(self, request_id: UUID, attempted: str, now: datetime) -> LifecycleError:
        """Explain why a conditional update on a request matched nothing."""
        current = await self._store.get(Request, request_id)
        if current is None:
            return NotFoundError(ENTITY, request_id, attempted=attempted)
        if current.status == RequestStatus.PENDING and current.is_expired(now):
            await self.expire_lazily(current, now)
            return ExpiredError(ENTITY, request_id, attempted=attempted)
        if current.status == RequestStatus.EXPIRED:
            return ExpiredError(ENTITY, request_id, attempted=attempted)
        return ConflictError(
            ENTITY, request_id, attempted=attempted, current_status=current.status
        )

    async def _claim_donor_donation(
        self,
        request: Request,
        actor: Actor,
        donation_id: UUID | None,
        now: datetime,
    ) -> Donation:
        attempted = "accept"
        if donation_id is None:
            raise InvalidReferenceError(
                "A donor must name one of their donations to accept a request",
                entity_type="donation",
                attempted=attempted,
            )
        donation = await self._store.get(Donation, donation_id)
        if donation is None or donation.donor_id != actor.user_id:
            raise InvalidReferenceError(
                f"Donation {donation_id} does not belong to the accepting donor",
                entity_type="donation",
                entity_id=donation_id,
                attempted=attempted,
            )
        if donation.status != DonationStatus.ACTIVE:
            raise InvalidReferenceError(
                f"Donation {donation_id} is not active",
                entity_type="donation",
                entity_id=donation_id,
                attempted=attempted,
                current_status=donation.status,
            )

        await self._donations.claim(
            donation,
            to_status=DonationStatus.ASSIGNED_TO_REQUESTER,
            now=now,
            values={"assigned_requester_id": request.requester_id},
            attempted=attempted,
            match={"donor_id": actor.user_id},
        )
        return donation

    async def _require_open_pending(self, request: Request, now: datetime, attempted: str) -> None:
        if request.status != RequestStatus.PENDING:
            raise ConflictError(
                ENTITY, request.request_id, attempted=attempted, current_status=request.status
            )
        if request.is_expired(now):
            await self.expire_lazily(request, now)
            raise ExpiredError(ENTITY, request.request_id, attempted=attempted)

    @staticmethod
    def _require_owner(request: Request, actor: Actor, attempted: str) -> None:
        if request.requester_id != actor.user_id:
            raise ForbiddenError(ENTITY, request.request_id, attempted=attempted)

    @staticmethod
    def _require_owner_or_admin(request: Request, actor: Actor, attempted: str) -> None:
        if request.requester_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError(ENTITY, request.request_id, attempted=attempted)
