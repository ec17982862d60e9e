"""Request model: time-boxed food needs posted by a requester."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from wastewarden.db.models.base import (
    AcceptorKind,
    Base,
    OptionalTimestampTZ,
    QuantityUnit,
    RequestStatus,
    TimestampTZ,
    Urgency,
    UUIDPrimaryKey,
    pg_enum,
)


@dataclass(frozen=True, slots=True)
class Unaccepted:
    """The request has no acceptor."""


@dataclass(frozen=True, slots=True)
class AcceptedByDonor:
    donor_id: uuid.UUID


@dataclass(frozen=True, slots=True)
class AcceptedByNgo:
    ngo_id: uuid.UUID


Acceptance = Unaccepted | AcceptedByDonor | AcceptedByNgo

UNACCEPTED = Unaccepted()


class Request(Base):
    """A posted need for food.

    A request has at most one acceptor. The acceptor is persisted as the
    (``accepted_by_kind``, ``accepted_by_id``) pair, both set or both null,
    and read back through :attr:`acceptance`.
    """

    __tablename__ = "requests"

    request_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    requester_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="RESTRICT"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    food_types: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    quantity_amount: Mapped[float] = mapped_column(Float, nullable=False)
    quantity_unit: Mapped[QuantityUnit] = mapped_column(
        pg_enum(QuantityUnit, "quantity_unit"), nullable=False
    )
    dietary_restrictions: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    urgency: Mapped[Urgency] = mapped_column(
        pg_enum(Urgency, "urgency"), nullable=False, default=Urgency.MEDIUM
    )
    special_circumstances: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    contact_preferences: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)

    expiry_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        pg_enum(RequestStatus, "request_status"),
        nullable=False,
        default=RequestStatus.PENDING,
    )

    accepted_by_kind: Mapped[AcceptorKind | None] = mapped_column(
        pg_enum(AcceptorKind, "acceptor_kind"), nullable=True
    )
    accepted_by_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_donation_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("donations.donation_id", ondelete="SET NULL"),
        nullable=True,
    )

    # Status timestamps, each stamped on first entry only
    accepted_at: Mapped[OptionalTimestampTZ]
    delivery_started_at: Mapped[OptionalTimestampTZ]
    delivered_at: Mapped[OptionalTimestampTZ]
    cancelled_at: Mapped[OptionalTimestampTZ]
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Mirrored from the requester's rating of the NGO
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    feedback: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(accepted_by_kind IS NULL) = (accepted_by_id IS NULL)",
            name="acceptance_complete",
        ),
        Index("ix_requests_requester_id", "requester_id"),
        Index("ix_requests_status_expiry", "status", "expiry_timestamp"),
        Index("ix_requests_location", "latitude", "longitude"),
    )

    @property
    def acceptance(self) -> Acceptance:
        if self.accepted_by_kind is None or self.accepted_by_id is None:
            return UNACCEPTED
        if self.accepted_by_kind == AcceptorKind.DONOR:
            return AcceptedByDonor(self.accepted_by_id)
        return AcceptedByNgo(self.accepted_by_id)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiry_timestamp

    def time_remaining(self, now: datetime) -> timedelta:
        """Time left before expiry, floored at zero."""
        return max(self.expiry_timestamp - now, timedelta(0))
