"""Donation model: surplus food posted by a donor."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from wastewarden.db.models.base import (
    Base,
    DonationStatus,
    FoodCategory,
    OptionalTimestampTZ,
    QuantityUnit,
    TimestampTZ,
    UUIDPrimaryKey,
    pg_enum,
)


class Donation(Base):
    """An offer of surplus food.

    Status only moves forward, except that cancelling the delivery that
    claimed it puts an ``assigned_to_ngo`` donation back to ``active``.
    Non-active donations are never hard deleted.
    """

    __tablename__ = "donations"

    donation_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    donor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )

    food_type: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[FoodCategory] = mapped_column(
        pg_enum(FoodCategory, "food_category"), nullable=False
    )
    quantity_amount: Mapped[float] = mapped_column(Float, nullable=False)
    quantity_unit: Mapped[QuantityUnit] = mapped_column(
        pg_enum(QuantityUnit, "quantity_unit"), nullable=False
    )
    dietary_info: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    special_instructions: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    images: Mapped[list | None] = mapped_column(JSONB, nullable=True)

    # Must be strictly in the future at creation
    expiry_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    pickup_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[DonationStatus] = mapped_column(
        pg_enum(DonationStatus, "donation_status"),
        nullable=False,
        default=DonationStatus.ACTIVE,
    )

    # Non-owning back-references, resolved through the store on demand
    assigned_ngo_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_requester_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )

    # Status timestamps, each stamped on first entry only
    assigned_at: Mapped[OptionalTimestampTZ]
    picked_up_at: Mapped[OptionalTimestampTZ]
    delivered_at: Mapped[OptionalTimestampTZ]
    cancelled_at: Mapped[OptionalTimestampTZ]
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Mirrored from the requester's rating of the donor
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    feedback: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    __table_args__ = (
        Index("ix_donations_donor_id", "donor_id"),
        Index("ix_donations_status", "status"),
        Index("ix_donations_expiry_time", "expiry_time"),
        Index("ix_donations_location", "latitude", "longitude"),
    )

    def is_expired(self, now: datetime) -> bool:
        """Whether the food is past its expiry time at ``now``."""
        return now > self.expiry_time
