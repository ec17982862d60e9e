"""User model: donors, requesters, NGOs and admins."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, CheckConstraint, Float, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from wastewarden.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    UserRole,
    pg_enum,
)


class User(Base):
    """A marketplace participant.

    Users are never deleted; an admin deactivates them instead. The
    ``points`` counter only grows: it is credited by confirmed deliveries
    and by rating awards.
    """

    __tablename__ = "users"

    user_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    role: Mapped[UserRole] = mapped_column(pg_enum(UserRole, "user_role"), nullable=False)

    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_donations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Only meaningful for NGOs; other roles are approved on registration
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_at: Mapped[OptionalTimestampTZ]
    approved_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="SET NULL"),
        nullable=True,
    )
    deactivated_at: Mapped[OptionalTimestampTZ]

    # Registration number, service area, vehicle details...
    ngo_details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        CheckConstraint("points >= 0", name="points_non_negative"),
        Index("ix_users_role_active", "role", "is_active"),
        Index("ix_users_location", "latitude", "longitude"),
    )

    @property
    def is_approved_ngo(self) -> bool:
        return self.role == UserRole.NGO and self.is_approved and self.is_active
