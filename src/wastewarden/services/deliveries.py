"""Delivery lifecycle state machine service.

State machine:
    assigned -> pickup_in_progress -> delivery_in_progress -> delivered
    any open status -> cancelled      (admin or assigned NGO)
    delivery_in_progress -> failed    (admin or assigned NGO)

``picked_up`` exists as a status but is never a resting state: completing
the pickup moves straight to ``delivery_in_progress``.

A delivery claims one active donation and one pending request. Both claims
are conditional updates; if the second one loses, the first is undone
before the conflict is reported. Points are computed once at completion and
credited to the NGO only after the requester confirms receipt.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from wastewarden.db.models import Delivery, Donation, Request, User
from wastewarden.db.models.base import (
    DeliveryPriority,
    DeliveryStatus,
    DonationStatus,
    FoodCondition,
    IssueType,
    RequestStatus,
    Urgency,
    UserRole,
)
from wastewarden.db.models.deliveries import OPEN_DELIVERY_STATUSES
from wastewarden.services.base import LifecycleResult, LifecycleService, lifecycle_operation
from wastewarden.services.donations import DonationLifecycleService
from wastewarden.services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidInputError,
    InvalidReferenceError,
    NotApprovedError,
)
from wastewarden.services.geo import validate_coordinates
from wastewarden.services.notifications import NotificationEvent
from wastewarden.services.requests import RequestLifecycleService

if TYPE_CHECKING:
    from uuid import UUID

    from wastewarden.services.base import Actor

logger = logging.getLogger(__name__)

ENTITY = "delivery"

BASE_POINTS = 10
PRIORITY_BONUS = {
    DeliveryPriority.URGENT: 15,
    DeliveryPriority.HIGH: 10,
    DeliveryPriority.MEDIUM: 5,
    DeliveryPriority.LOW: 0,
}
CONDITION_BONUS = {
    FoodCondition.EXCELLENT: 10,
    FoodCondition.GOOD: 5,
}
ON_TIME_BONUS = 10
ISSUE_PENALTY = 2
DEFAULT_ESTIMATE = timedelta(hours=1)

URGENCY_PRIORITY = {
    Urgency.CRITICAL: DeliveryPriority.URGENT,
    Urgency.HIGH: DeliveryPriority.HIGH,
}


def priority_for(urgency: Urgency) -> DeliveryPriority:
    return URGENCY_PRIORITY.get(urgency, DeliveryPriority.MEDIUM)


def calculate_points(
    priority: DeliveryPriority,
    condition_at_delivery: FoodCondition | None,
    actual_completion: datetime,
    estimated_completion: datetime | None,
    issue_count: int,
    *,
    assigned_at: datetime | None = None,
) -> int:
    """Score a completed delivery.

    Base 10, plus a priority bonus, a food-condition bonus and an on-time
    bonus, minus 2 per reported issue, never below zero. A missing estimate
    defaults to one hour after ``assigned_at``; with neither known, the
    delivery is treated as late.
    """
    points = BASE_POINTS + PRIORITY_BONUS.get(priority, 0)
    if condition_at_delivery is not None:
        points += CONDITION_BONUS.get(condition_at_delivery, 0)

    if estimated_completion is None and assigned_at is not None:
        estimated_completion = assigned_at + DEFAULT_ESTIMATE
    if estimated_completion is not None and actual_completion <= estimated_completion:
        points += ON_TIME_BONUS

    points -= ISSUE_PENALTY * issue_count
    return max(points, 0)


class DeliveryLifecycleService(LifecycleService):
    """Service for delivery state transitions and the deferred points award.

    Example:
        service = DeliveryLifecycleService(EntityStore(session), dispatcher)
        result = await service.create(ngo, donation_id=d_id, request_id=r_id)
        ...
        result = await service.confirm_receipt(result.entity.delivery_id, requester)
        assert result.data["points_awarded"] in (0, result.entity.points_earned)
    """

    VALID_TRANSITIONS: ClassVar[dict[DeliveryStatus, set[DeliveryStatus]]] = {
        DeliveryStatus.ASSIGNED: {DeliveryStatus.PICKUP_IN_PROGRESS, DeliveryStatus.CANCELLED},
        DeliveryStatus.PICKUP_IN_PROGRESS: {
            DeliveryStatus.PICKED_UP,
            DeliveryStatus.DELIVERY_IN_PROGRESS,
            DeliveryStatus.CANCELLED,
        },
        DeliveryStatus.PICKED_UP: {DeliveryStatus.DELIVERY_IN_PROGRESS, DeliveryStatus.CANCELLED},
        DeliveryStatus.DELIVERY_IN_PROGRESS: {
            DeliveryStatus.DELIVERED,
            DeliveryStatus.CANCELLED,
            DeliveryStatus.FAILED,
        },
        # Terminal states
        DeliveryStatus.DELIVERED: set(),
        DeliveryStatus.CANCELLED: set(),
        DeliveryStatus.FAILED: set(),
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._requests = RequestLifecycleService(
            self._store, self._notifier, clock=self._clock, settings=self._settings
        )
        self._donations = DonationLifecycleService(
            self._store, self._notifier, clock=self._clock, settings=self._settings
        )

    def is_valid_transition(self, from_status: DeliveryStatus, to_status: DeliveryStatus) -> bool:
        return to_status in self.VALID_TRANSITIONS.get(from_status, set())

    def is_terminal_status(self, status: DeliveryStatus) -> bool:
        return len(self.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def sources_of(cls, to_status: DeliveryStatus) -> set[DeliveryStatus]:
        return {src for src, targets in cls.VALID_TRANSITIONS.items() if to_status in targets}

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    @lifecycle_operation("delivery.create")
    async def create(
        self,
        actor: Actor,
        donation_id: UUID,
        request_id: UUID,
        *,
        pickup_scheduled_at: datetime | None = None,
        delivery_scheduled_at: datetime | None = None,
    ) -> LifecycleResult:
        """Bind an active donation and a pending request to a new delivery.

        Of two concurrent creations contending for the same donation or the
        same request, exactly one succeeds; the other gets a conflict and
        leaves no claim behind.
        """
        attempted = "create"
        self._require_role(
            actor, {UserRole.NGO}, entity_type=ENTITY, entity_id=None, attempted=attempted
        )
        ngo = await self._store.get(User, actor.user_id)
        if ngo is None or not ngo.is_approved_ngo:
            raise NotApprovedError(
                f"NGO {actor.user_id} is not approved and active",
                entity_type="user",
                entity_id=actor.user_id,
                attempted=attempted,
            )

        now = self._clock()
        donation = await self._store.get(Donation, donation_id)
        if donation is None:
            raise InvalidReferenceError(
                f"Donation {donation_id} not found",
                entity_type="donation",
                entity_id=donation_id,
                attempted=attempted,
            )
        request = await self._store.get(Request, request_id)
        if request is None:
            raise InvalidReferenceError(
                f"Request {request_id} not found",
                entity_type="request",
                entity_id=request_id,
                attempted=attempted,
            )

        if donation.status != DonationStatus.ACTIVE:
            raise ConflictError(
                "donation", donation_id, attempted=attempted, current_status=donation.status
            )
        if request.status != RequestStatus.PENDING:
            raise ConflictError(
                "request", request_id, attempted=attempted, current_status=request.status
            )
        if request.is_expired(now):
            await self._requests.expire_lazily(request, now)
            raise ExpiredError("request", request_id, attempted=attempted)

        # Claims the donation or raises Expired/Conflict with nothing held
        await self._donations.claim(
            donation,
            to_status=DonationStatus.ASSIGNED_TO_NGO,
            now=now,
            values={
                "assigned_ngo_id": actor.user_id,
                "assigned_requester_id": request.requester_id,
            },
            attempted=attempted,
        )
        claimed = await self._requests.claim_for_ngo(request, actor.user_id, donation_id, now)
        if not claimed:
            await self._donations.release(
                donation_id,
                from_statuses={DonationStatus.ASSIGNED_TO_NGO},
                match={"assigned_ngo_id": actor.user_id},
            )
            raise await self._requests.lost_race(request_id, attempted, now)

        delivery = Delivery(
            ngo_id=actor.user_id,
            donor_id=donation.donor_id,
            requester_id=request.requester_id,
            donation_id=donation_id,
            request_id=request_id,
            status=DeliveryStatus.ASSIGNED,
            priority=priority_for(request.urgency),
            pickup_address=donation.pickup_address,
            pickup_latitude=donation.latitude,
            pickup_longitude=donation.longitude,
            delivery_address=request.address,
            delivery_latitude=request.latitude,
            delivery_longitude=request.longitude,
            pickup_scheduled_at=pickup_scheduled_at,
            delivery_scheduled_at=delivery_scheduled_at,
            assigned_at=now,
            estimated_completion_at=now
            + timedelta(minutes=self._settings.lifecycle.delivery_estimate_minutes),
            issues=[],
            points_earned=0,
            points_awarded=False,
            requester_confirmed=False,
            donor_rated=False,
            requester_rated=False,
            created_at=now,
            updated_at=now,
        )
        await self._store.add(delivery)
        await self._store.increment(User, actor.user_id, "total_deliveries", 1)
        await self._store.commit()

        self._log_transition(ENTITY, delivery.delivery_id, None, DeliveryStatus.ASSIGNED, actor)
        event_payload = {
            "delivery_id": str(delivery.delivery_id),
            "donation_id": str(donation_id),
            "request_id": str(request_id),
            "ngo_id": str(actor.user_id),
            "priority": delivery.priority.value,
        }
        for target in (delivery.donor_id, delivery.requester_id, delivery.ngo_id):
            self._notify(NotificationEvent.DELIVERY_CREATED, target, event_payload)

        return LifecycleResult.ok(
            "delivery.create", delivery, new_status=DeliveryStatus.ASSIGNED
        )

    # -------------------------------------------------------------------------
    # Pickup and delivery
    # -------------------------------------------------------------------------

    @lifecycle_operation("delivery.start_pickup")
    async def start_pickup(self, delivery_id: UUID, actor: Actor) -> LifecycleResult:
        """The assigned NGO sets off for the pickup location."""
        attempted = "start_pickup"
        delivery = await self._load_for_ngo(delivery_id, actor, attempted)
        await self._advance(
            delivery,
            DeliveryStatus.PICKUP_IN_PROGRESS,
            attempted,
            from_statuses={DeliveryStatus.ASSIGNED},
        )
        await self._store.commit()

        self._log_transition(
            ENTITY, delivery_id, DeliveryStatus.ASSIGNED, DeliveryStatus.PICKUP_IN_PROGRESS, actor
        )
        event_payload = {"delivery_id": str(delivery_id)}
        self._notify(NotificationEvent.PICKUP_STARTED, delivery.donor_id, event_payload)
        self._notify(NotificationEvent.PICKUP_STARTED, delivery.requester_id, event_payload)
        return LifecycleResult.ok(
            "delivery.start_pickup",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.ASSIGNED,
            new_status=DeliveryStatus.PICKUP_IN_PROGRESS,
        )

    @lifecycle_operation("delivery.complete_pickup")
    async def complete_pickup(
        self,
        delivery_id: UUID,
        actor: Actor,
        food_condition: FoodCondition,
        notes: str | None = None,
        photos: list[str] | None = None,
    ) -> LifecycleResult:
        """Record the pickup and move straight on to delivery.

        The donation follows to ``picked_up`` and the request to
        ``in_transit``; both cascades are best-effort.
        """
        attempted = "complete_pickup"
        now = self._clock()
        delivery = await self._load_for_ngo(delivery_id, actor, attempted)
        await self._advance(
            delivery,
            DeliveryStatus.DELIVERY_IN_PROGRESS,
            attempted,
            from_statuses={DeliveryStatus.PICKUP_IN_PROGRESS},
            values={
                "food_condition_at_pickup": food_condition,
                "pickup_confirmation": self._confirmation(actor, now, notes, photos),
                "pickup_actual_at": now,
            },
        )

        if not await self._donations.advance(
            delivery.donation_id,
            DonationStatus.PICKED_UP,
            now,
            from_statuses={DonationStatus.ASSIGNED_TO_NGO},
        ):
            self._log_cascade_miss(delivery, "donation", DonationStatus.PICKED_UP)
        if not await self._requests.advance(
            delivery.request_id,
            RequestStatus.IN_TRANSIT,
            now,
            from_statuses={RequestStatus.ACCEPTED_BY_NGO},
        ):
            self._log_cascade_miss(delivery, "request", RequestStatus.IN_TRANSIT)
        await self._store.commit()

        self._log_transition(
            ENTITY,
            delivery_id,
            DeliveryStatus.PICKUP_IN_PROGRESS,
            DeliveryStatus.DELIVERY_IN_PROGRESS,
            actor,
        )
        self._notify(
            NotificationEvent.PICKUP_COMPLETED,
            delivery.donor_id,
            {"delivery_id": str(delivery_id), "food_condition": food_condition.value},
        )
        self._notify(
            NotificationEvent.DELIVERY_STARTED,
            delivery.requester_id,
            {"delivery_id": str(delivery_id), "ngo_id": str(delivery.ngo_id)},
        )
        return LifecycleResult.ok(
            "delivery.complete_pickup",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.PICKUP_IN_PROGRESS,
            new_status=DeliveryStatus.DELIVERY_IN_PROGRESS,
        )

    @lifecycle_operation("delivery.complete_delivery")
    async def complete_delivery(
        self,
        delivery_id: UUID,
        actor: Actor,
        food_condition: FoodCondition,
        notes: str | None = None,
        photos: list[str] | None = None,
    ) -> LifecycleResult:
        """Mark the food as handed over and freeze the points earned.

        The NGO's balance is untouched here; see :meth:`confirm_receipt`.
        """
        attempted = "complete_delivery"
        now = self._clock()
        delivery = await self._load_for_ngo(delivery_id, actor, attempted)
        points = calculate_points(
            delivery.priority,
            food_condition,
            now,
            delivery.estimated_completion_at,
            len(delivery.issues or []),
            assigned_at=delivery.assigned_at,
        )
        await self._advance(
            delivery,
            DeliveryStatus.DELIVERED,
            attempted,
            from_statuses={DeliveryStatus.DELIVERY_IN_PROGRESS},
            values={
                "food_condition_at_delivery": food_condition,
                "delivery_confirmation": self._confirmation(actor, now, notes, photos),
                "delivery_actual_at": now,
                "actual_completion_at": now,
                "points_earned": points,
            },
        )

        if not await self._donations.advance(
            delivery.donation_id,
            DonationStatus.DELIVERED,
            now,
            from_statuses={DonationStatus.PICKED_UP},
        ):
            self._log_cascade_miss(delivery, "donation", DonationStatus.DELIVERED)
        if not await self._requests.advance(
            delivery.request_id,
            RequestStatus.DELIVERED,
            now,
            from_statuses={RequestStatus.ACCEPTED_BY_NGO, RequestStatus.IN_TRANSIT},
        ):
            self._log_cascade_miss(delivery, "request", RequestStatus.DELIVERED)
        await self._store.commit()

        self._log_transition(
            ENTITY,
            delivery_id,
            DeliveryStatus.DELIVERY_IN_PROGRESS,
            DeliveryStatus.DELIVERED,
            actor,
        )
        event_payload = {"delivery_id": str(delivery_id), "points_earned": points}
        self._notify(NotificationEvent.DELIVERY_COMPLETED, delivery.requester_id, event_payload)
        self._notify(NotificationEvent.DELIVERY_COMPLETED, delivery.donor_id, event_payload)
        return LifecycleResult.ok(
            "delivery.complete_delivery",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.DELIVERY_IN_PROGRESS,
            new_status=DeliveryStatus.DELIVERED,
            points_earned=points,
        )

    @lifecycle_operation("delivery.confirm_receipt")
    async def confirm_receipt(self, delivery_id: UUID, actor: Actor) -> LifecycleResult:
        """Requester acknowledges receipt; credits the NGO's points exactly once.

        Both steps are one-way latches flipped by conditional updates, so a
        repeated or concurrent call never credits the points twice.
        """
        attempted = "confirm_receipt"
        now = self._clock()
        delivery = await self._load(Delivery, delivery_id, entity_type=ENTITY, attempted=attempted)
        if delivery.requester_id != actor.user_id:
            raise ForbiddenError(
                ENTITY,
                delivery_id,
                attempted=attempted,
                message="Only the requester of this delivery can confirm receipt",
            )
        if delivery.status != DeliveryStatus.DELIVERED:
            raise ConflictError(
                ENTITY, delivery_id, attempted=attempted, current_status=delivery.status
            )

        if delivery.requester_confirmed and delivery.points_awarded:
            return LifecycleResult.ok(
                "delivery.confirm_receipt",
                delivery,
                previous_status=DeliveryStatus.DELIVERED,
                new_status=DeliveryStatus.DELIVERED,
                already_confirmed=True,
                points_awarded=0,
            )

        await self._store.transition(
            Delivery,
            delivery_id,
            expected={DeliveryStatus.DELIVERED},
            match={"requester_confirmed": False},
            values={"requester_confirmed": True},
            stamp={"requester_confirmed_at": now},
        )
        awarded = await self._store.transition(
            Delivery,
            delivery_id,
            expected={DeliveryStatus.DELIVERED},
            match={"points_awarded": False},
            values={"points_awarded": True},
        )
        if awarded:
            await self._store.increment(User, delivery.ngo_id, "points", delivery.points_earned)
        await self._store.commit()

        if awarded:
            logger.info(
                "Delivery points awarded",
                extra={
                    "delivery_id": str(delivery_id),
                    "ngo_id": str(delivery.ngo_id),
                    "points": delivery.points_earned,
                },
            )
            self._notify(
                NotificationEvent.RECEIPT_CONFIRMED,
                delivery.ngo_id,
                {"delivery_id": str(delivery_id), "points_awarded": delivery.points_earned},
            )
        return LifecycleResult.ok(
            "delivery.confirm_receipt",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.DELIVERED,
            new_status=DeliveryStatus.DELIVERED,
            already_confirmed=not awarded,
            points_awarded=delivery.points_earned if awarded else 0,
        )

    # -------------------------------------------------------------------------
    # Tracking and issues
    # -------------------------------------------------------------------------

    @lifecycle_operation("delivery.update_location")
    async def update_location(
        self,
        delivery_id: UUID,
        actor: Actor,
        latitude: float,
        longitude: float,
    ) -> LifecycleResult:
        """Overwrite the live position; no history is kept."""
        attempted = "update_location"
        try:
            validate_coordinates(latitude, longitude)
        except ValueError as e:
            raise InvalidInputError(
                str(e), entity_type=ENTITY, entity_id=delivery_id, attempted=attempted
            ) from e

        now = self._clock()
        delivery = await self._load_for_ngo(delivery_id, actor, attempted)
        await self._store.transition(
            Delivery,
            delivery_id,
            match={"ngo_id": actor.user_id},
            values={
                "current_latitude": latitude,
                "current_longitude": longitude,
                "location_updated_at": now,
            },
        )
        await self._store.commit()

        self._notify(
            NotificationEvent.LOCATION_UPDATE,
            delivery.requester_id,
            {
                "delivery_id": str(delivery_id),
                "latitude": latitude,
                "longitude": longitude,
                "updated_at": now.isoformat(),
            },
        )
        return LifecycleResult.ok(
            "delivery.update_location",
            await self._store.get(Delivery, delivery_id),
            previous_status=delivery.status,
            new_status=delivery.status,
        )

    @lifecycle_operation("delivery.report_issue")
    async def report_issue(
        self,
        delivery_id: UUID,
        actor: Actor,
        issue_type: IssueType,
        description: str,
    ) -> LifecycleResult:
        """Append an issue to the delivery's log. The status is left alone."""
        attempted = "report_issue"
        now = self._clock()
        delivery = await self._load(Delivery, delivery_id, entity_type=ENTITY, attempted=attempted)
        if not (actor.is_admin or delivery.involves(actor.user_id)):
            raise ForbiddenError(ENTITY, delivery_id, attempted=attempted)

        issue = {
            "type": issue_type.value,
            "description": description,
            "reported_by": str(actor.user_id),
            "reported_at": now.isoformat(),
        }
        await self._store.append_issue(delivery_id, issue)
        admin_ids = await self._store.find_admin_ids()
        await self._store.commit()

        logger.info(
            "Delivery issue reported",
            extra={"delivery_id": str(delivery_id), "issue_type": issue_type.value},
        )
        for admin_id in admin_ids:
            self._notify(
                NotificationEvent.DELIVERY_ISSUE_REPORTED,
                admin_id,
                {"delivery_id": str(delivery_id), "issue": issue},
            )
        return LifecycleResult.ok(
            "delivery.report_issue",
            await self._store.get(Delivery, delivery_id),
            previous_status=delivery.status,
            new_status=delivery.status,
            issue=issue,
        )

    # -------------------------------------------------------------------------
    # Cancellation and failure
    # -------------------------------------------------------------------------

    @lifecycle_operation("delivery.cancel")
    async def cancel(self, delivery_id: UUID, actor: Actor, reason: str) -> LifecycleResult:
        """Cancel an open delivery and hand its donation and request back for matching."""
        attempted = "cancel"
        now = self._clock()
        delivery = await self._load_for_ngo_or_admin(delivery_id, actor, attempted)
        previous = delivery.status
        await self._advance(
            delivery,
            DeliveryStatus.CANCELLED,
            attempted,
            values={"cancelled_by": actor.user_id, "cancellation_reason": reason},
            stamp={"cancelled_at": now},
        )

        await self._donations.release(
            delivery.donation_id,
            from_statuses={DonationStatus.ASSIGNED_TO_NGO, DonationStatus.PICKED_UP},
            match={"assigned_ngo_id": delivery.ngo_id},
        )
        await self._requests.release_to_pending(delivery.request_id, delivery.ngo_id)
        await self._store.commit()

        self._log_transition(ENTITY, delivery_id, previous, DeliveryStatus.CANCELLED, actor)
        event_payload = {"delivery_id": str(delivery_id), "reason": reason}
        for target in (delivery.donor_id, delivery.requester_id, delivery.ngo_id):
            if target != actor.user_id:
                self._notify(NotificationEvent.DELIVERY_CANCELLED, target, event_payload)
        return LifecycleResult.ok(
            "delivery.cancel",
            await self._store.get(Delivery, delivery_id),
            previous_status=previous,
            new_status=DeliveryStatus.CANCELLED,
        )

    @lifecycle_operation("delivery.fail")
    async def fail(self, delivery_id: UUID, actor: Actor, reason: str) -> LifecycleResult:
        """Give up on a delivery in progress.

        The donation cannot be re-offered once it has left the donor, so it
        is cancelled; the request goes back to pending.
        """
        attempted = "fail"
        now = self._clock()
        delivery = await self._load_for_ngo_or_admin(delivery_id, actor, attempted)
        await self._advance(
            delivery,
            DeliveryStatus.FAILED,
            attempted,
            from_statuses={DeliveryStatus.DELIVERY_IN_PROGRESS},
            values={"failure_reason": reason},
            stamp={"failed_at": now},
        )

        if not await self._donations.advance(
            delivery.donation_id,
            DonationStatus.CANCELLED,
            now,
            from_statuses={DonationStatus.ASSIGNED_TO_NGO, DonationStatus.PICKED_UP},
            values={"cancellation_reason": f"Delivery failed: {reason}"},
        ):
            self._log_cascade_miss(delivery, "donation", DonationStatus.CANCELLED)
        await self._requests.release_to_pending(delivery.request_id, delivery.ngo_id)
        await self._store.commit()

        self._log_transition(
            ENTITY, delivery_id, DeliveryStatus.DELIVERY_IN_PROGRESS, DeliveryStatus.FAILED, actor
        )
        event_payload = {"delivery_id": str(delivery_id), "status": "failed", "reason": reason}
        self._notify(NotificationEvent.DELIVERY_CANCELLED, delivery.donor_id, event_payload)
        self._notify(NotificationEvent.DELIVERY_CANCELLED, delivery.requester_id, event_payload)
        return LifecycleResult.ok(
            "delivery.fail",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.DELIVERY_IN_PROGRESS,
            new_status=DeliveryStatus.FAILED,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @lifecycle_operation("delivery.get")
    async def get_for_actor(self, delivery_id: UUID, actor: Actor) -> LifecycleResult:
        delivery = await self._load(Delivery, delivery_id, entity_type=ENTITY, attempted="view")
        if not (actor.is_admin or delivery.involves(actor.user_id)):
            raise ForbiddenError(ENTITY, delivery_id, attempted="view")
        return LifecycleResult.ok(
            "delivery.get",
            delivery,
            previous_status=delivery.status,
            new_status=delivery.status,
        )

    @lifecycle_operation("delivery.list_active_for_ngo")
    async def list_active_for_ngo(self, ngo_id: UUID) -> LifecycleResult:
        deliveries = await self._store.list_deliveries(
            ngo_id=ngo_id, statuses=OPEN_DELIVERY_STATUSES
        )
        return LifecycleResult.ok(
            "delivery.list_active_for_ngo", deliveries, count=len(deliveries)
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load_for_ngo(self, delivery_id: UUID, actor: Actor, attempted: str) -> Delivery:
        delivery = await self._load(Delivery, delivery_id, entity_type=ENTITY, attempted=attempted)
        if delivery.ngo_id != actor.user_id:
            raise ForbiddenError(
                ENTITY,
                delivery_id,
                attempted=attempted,
                message="Only the assigned NGO can perform this action",
            )
        return delivery

    async def _load_for_ngo_or_admin(
        self, delivery_id: UUID, actor: Actor, attempted: str
    ) -> Delivery:
        delivery = await self._load(Delivery, delivery_id, entity_type=ENTITY, attempted=attempted)
        if delivery.ngo_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError(ENTITY, delivery_id, attempted=attempted)
        return delivery

    async def _advance(
        self,
        delivery: Delivery,
        to_status: DeliveryStatus,
        attempted: str,
        *,
        from_statuses: set[DeliveryStatus] | None = None,
        values: dict[str, Any] | None = None,
        stamp: dict[str, datetime] | None = None,
    ) -> None:
        """Conditionally move the delivery, raising Conflict if it is elsewhere."""
        expected = from_statuses if from_statuses is not None else self.sources_of(to_status)
        if delivery.status not in expected:
            raise ConflictError(
                ENTITY, delivery.delivery_id, attempted=attempted, current_status=delivery.status
            )
        moved = await self._store.transition(
            Delivery,
            delivery.delivery_id,
            expected=expected,
            values={"status": to_status, **(values or {})},
            stamp=stamp,
        )
        if not moved:
            current = await self._store.get(Delivery, delivery.delivery_id)
            raise ConflictError(
                ENTITY,
                delivery.delivery_id,
                attempted=attempted,
                current_status=current.status if current else None,
            )

    @staticmethod
    def _confirmation(
        actor: Actor,
        now: datetime,
        notes: str | None,
        photos: list[str] | None,
    ) -> dict[str, Any]:
        return {
            "confirmed_by": str(actor.user_id),
            "confirmed_at": now.isoformat(),
            "notes": notes,
            "photos": list(photos or []),
        }

    @staticmethod
    def _log_cascade_miss(delivery: Delivery, entity_type: str, to_status: Any) -> None:
        logger.warning(
            "Cascade update skipped: %s did not move to %s",
            entity_type,
            to_status.value,
            extra={
                "delivery_id": str(delivery.delivery_id),
                "donation_id": str(delivery.donation_id),
                "request_id": str(delivery.request_id),
            },
        )
