"""Delivery model: an NGO moving one donation to one requester."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from wastewarden.db.models.base import (
    Base,
    DeliveryPriority,
    DeliveryStatus,
    FoodCondition,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    pg_enum,
)

# Statuses in which a delivery still holds its donation and request
OPEN_DELIVERY_STATUSES = (
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.PICKUP_IN_PROGRESS,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.DELIVERY_IN_PROGRESS,
)


class Delivery(Base):
    """Join record binding one NGO, donor, requester, donation and request.

    Never deleted. ``points_earned`` is frozen at delivery completion and
    credited to the NGO only once the requester confirms receipt; the
    ``requester_confirmed`` and ``points_awarded`` latches only go from
    false to true.
    """

    __tablename__ = "deliveries"

    delivery_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    ngo_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    donor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    donation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("donations.donation_id", ondelete="RESTRICT"),
        nullable=False,
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("requests.request_id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[DeliveryStatus] = mapped_column(
        pg_enum(DeliveryStatus, "delivery_status"),
        nullable=False,
        default=DeliveryStatus.ASSIGNED,
    )
    priority: Mapped[DeliveryPriority] = mapped_column(
        pg_enum(DeliveryPriority, "delivery_priority"),
        nullable=False,
        default=DeliveryPriority.MEDIUM,
    )

    pickup_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    pickup_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    delivery_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_longitude: Mapped[float] = mapped_column(Float, nullable=False)

    pickup_scheduled_at: Mapped[OptionalTimestampTZ]
    pickup_actual_at: Mapped[OptionalTimestampTZ]
    delivery_scheduled_at: Mapped[OptionalTimestampTZ]
    delivery_actual_at: Mapped[OptionalTimestampTZ]

    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    estimated_completion_at: Mapped[OptionalTimestampTZ]
    actual_completion_at: Mapped[OptionalTimestampTZ]

    # Live GPS position, overwritten on each update
    current_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[OptionalTimestampTZ]

    food_condition_at_pickup: Mapped[FoodCondition | None] = mapped_column(
        pg_enum(FoodCondition, "food_condition"), nullable=True
    )
    food_condition_at_delivery: Mapped[FoodCondition | None] = mapped_column(
        pg_enum(FoodCondition, "food_condition"), nullable=True
    )
    # {confirmed_by, confirmed_at, notes, photos}
    pickup_confirmation: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    delivery_confirmation: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    # Append-only issue log
    issues: Mapped[list] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )

    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requester_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requester_confirmed_at: Mapped[OptionalTimestampTZ]

    # {rating, feedback, rated_at} per direction
    rating_from_donor: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    rating_from_requester: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    donor_rated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requester_rated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )
    cancelled_at: Mapped[OptionalTimestampTZ]
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    failed_at: Mapped[OptionalTimestampTZ]
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_deliveries_ngo_id_status", "ngo_id", "status"),
        Index("ix_deliveries_donor_id", "donor_id"),
        Index("ix_deliveries_requester_id", "requester_id"),
        # At most one open delivery per donation and per request
        Index(
            "uq_deliveries_open_donation",
            "donation_id",
            unique=True,
            postgresql_where=text("status NOT IN ('delivered', 'cancelled', 'failed')"),
        ),
        Index(
            "uq_deliveries_open_request",
            "request_id",
            unique=True,
            postgresql_where=text("status NOT IN ('delivered', 'cancelled', 'failed')"),
        ),
    )

    def involves(self, user_id: uuid.UUID) -> bool:
        """Whether ``user_id`` is one of the bound parties."""
        return user_id in (self.ngo_id, self.donor_id, self.requester_id)
