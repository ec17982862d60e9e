"""Shared fixed-window rate limit counters."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import DateTime, Index, Integer, PrimaryKeyConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from wastewarden.db.models.base import Base


class RateLimitCounter(Base):
    """Hit counter for one key within one window.

    Kept in the database rather than process memory so every service
    instance counts against the same limit.
    """

    __tablename__ = "rate_limit_counters"

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("key", "window_start"),
        Index("ix_rate_limit_counters_expires_at", "expires_at"),
    )
