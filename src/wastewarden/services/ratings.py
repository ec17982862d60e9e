"""Post-delivery ratings and the points they award.

Each party may rate a delivered delivery once. The one-submission rule is a
latch column flipped by a conditional update, so the rating points are
credited at most once per direction, independently of the NGO's delivery
award.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from wastewarden.db.models import Delivery, Donation, Request, User
from wastewarden.db.models.base import DeliveryStatus
from wastewarden.services.base import LifecycleResult, LifecycleService, lifecycle_operation
from wastewarden.services.errors import ConflictError, ForbiddenError, InvalidInputError
from wastewarden.services.notifications import NotificationEvent

if TYPE_CHECKING:
    from uuid import UUID

    from wastewarden.services.base import Actor

logger = logging.getLogger(__name__)

ENTITY = "delivery"
MIN_RATING = 1
MAX_RATING = 5


class RatingService(LifecycleService):
    """Records ratings on delivered deliveries and credits the rating points."""

    @lifecycle_operation("rating.submit_requester")
    async def submit_requester_rating(
        self,
        delivery_id: UUID,
        actor: Actor,
        *,
        donor_rating: int | None = None,
        donor_feedback: str | None = None,
        ngo_rating: int | None = None,
        ngo_feedback: str | None = None,
    ) -> LifecycleResult:
        """Requester rates the donor and/or the NGO.

        Credits the donor ``donor_rating`` points, the NGO ``ngo_rating``
        points and the requester a flat feedback bonus.
        """
        attempted = "rate_as_requester"
        if donor_rating is None and ngo_rating is None:
            raise InvalidInputError(
                "At least one rating is required",
                entity_type=ENTITY,
                entity_id=delivery_id,
                attempted=attempted,
            )
        self._check_rating(donor_rating, delivery_id, attempted)
        self._check_rating(ngo_rating, delivery_id, attempted)

        now = self._clock()
        delivery = await self._load_delivered(delivery_id, attempted)
        if delivery.requester_id != actor.user_id:
            raise ForbiddenError(ENTITY, delivery_id, attempted=attempted)

        record = {
            "donor_rating": donor_rating,
            "donor_feedback": donor_feedback,
            "ngo_rating": ngo_rating,
            "ngo_feedback": ngo_feedback,
            "rated_at": now.isoformat(),
        }
        await self._latch(delivery, "requester_rated", "rating_from_requester", record, attempted)

        bonus = self._settings.lifecycle.feedback_bonus_points
        awards: dict[UUID, int] = {delivery.requester_id: bonus}
        if donor_rating is not None:
            awards[delivery.donor_id] = awards.get(delivery.donor_id, 0) + donor_rating
            await self._store.transition(
                Donation,
                delivery.donation_id,
                values={"rating": donor_rating, "feedback": donor_feedback},
            )
        if ngo_rating is not None:
            awards[delivery.ngo_id] = awards.get(delivery.ngo_id, 0) + ngo_rating
            await self._store.transition(
                Request,
                delivery.request_id,
                values={"rating": ngo_rating, "feedback": ngo_feedback},
            )
        await self._credit(awards)
        await self._store.commit()

        self._log_rating(delivery_id, actor, awards)
        if donor_rating is not None:
            self._notify(
                NotificationEvent.RATED,
                delivery.donor_id,
                {"delivery_id": str(delivery_id), "rating": donor_rating, "from": "requester"},
            )
        if ngo_rating is not None:
            self._notify(
                NotificationEvent.RATED,
                delivery.ngo_id,
                {"delivery_id": str(delivery_id), "rating": ngo_rating, "from": "requester"},
            )
        return LifecycleResult.ok(
            "rating.submit_requester",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.DELIVERED,
            new_status=DeliveryStatus.DELIVERED,
            points_awarded={str(user_id): points for user_id, points in awards.items()},
        )

    @lifecycle_operation("rating.submit_donor")
    async def submit_donor_rating(
        self,
        delivery_id: UUID,
        actor: Actor,
        ngo_rating: int,
        feedback: str | None = None,
    ) -> LifecycleResult:
        """Donor rates the NGO that carried their donation."""
        attempted = "rate_as_donor"
        self._check_rating(ngo_rating, delivery_id, attempted)

        now = self._clock()
        delivery = await self._load_delivered(delivery_id, attempted)
        if delivery.donor_id != actor.user_id:
            raise ForbiddenError(ENTITY, delivery_id, attempted=attempted)

        record = {"ngo_rating": ngo_rating, "feedback": feedback, "rated_at": now.isoformat()}
        await self._latch(delivery, "donor_rated", "rating_from_donor", record, attempted)

        awards = {
            delivery.ngo_id: ngo_rating,
            delivery.donor_id: self._settings.lifecycle.feedback_bonus_points,
        }
        await self._credit(awards)
        await self._store.commit()

        self._log_rating(delivery_id, actor, awards)
        self._notify(
            NotificationEvent.RATED,
            delivery.ngo_id,
            {"delivery_id": str(delivery_id), "rating": ngo_rating, "from": "donor"},
        )
        return LifecycleResult.ok(
            "rating.submit_donor",
            await self._store.get(Delivery, delivery_id),
            previous_status=DeliveryStatus.DELIVERED,
            new_status=DeliveryStatus.DELIVERED,
            points_awarded={str(user_id): points for user_id, points in awards.items()},
        )

    async def _load_delivered(self, delivery_id: UUID, attempted: str) -> Delivery:
        delivery = await self._load(Delivery, delivery_id, entity_type=ENTITY, attempted=attempted)
        if delivery.status != DeliveryStatus.DELIVERED:
            raise ConflictError(
                ENTITY,
                delivery_id,
                attempted=attempted,
                current_status=delivery.status,
                message="Only delivered deliveries can be rated",
            )
        return delivery

    async def _latch(
        self,
        delivery: Delivery,
        latch: str,
        record_field: str,
        record: dict[str, Any],
        attempted: str,
    ) -> None:
        latched = await self._store.transition(
            Delivery,
            delivery.delivery_id,
            expected={DeliveryStatus.DELIVERED},
            match={latch: False},
            values={latch: True, record_field: record},
        )
        if not latched:
            raise ConflictError(
                ENTITY,
                delivery.delivery_id,
                attempted=attempted,
                current_status=delivery.status,
                message="This delivery has already been rated",
            )

    async def _credit(self, awards: dict[UUID, int]) -> None:
        for user_id, points in awards.items():
            if points:
                await self._store.increment(User, user_id, "points", points)

    @staticmethod
    def _check_rating(rating: int | None, delivery_id: UUID, attempted: str) -> None:
        if rating is not None and not MIN_RATING <= rating <= MAX_RATING:
            raise InvalidInputError(
                f"Rating must be between {MIN_RATING} and {MAX_RATING}",
                entity_type=ENTITY,
                entity_id=delivery_id,
                attempted=attempted,
            )

    @staticmethod
    def _log_rating(delivery_id: UUID, actor: Actor, awards: dict[UUID, int]) -> None:
        logger.info(
            "Rating recorded for delivery %s",
            delivery_id,
            extra={
                "delivery_id": str(delivery_id),
                "rated_by": str(actor.user_id),
                "points": {str(k): v for k, v in awards.items()},
            },
        )
