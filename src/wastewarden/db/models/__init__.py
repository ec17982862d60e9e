"""SQLAlchemy ORM models for Wastewarden.

This package contains all database models organized by domain:
- base: Common metadata, column types and enums
- users: Donors, requesters, NGOs and admins
- donations: Surplus food offers
- requests: Time-boxed food needs and their acceptance
- deliveries: NGO pickup/delivery workflow
- rate_limits: Shared rate limit counters
"""

from wastewarden.db.models.base import Base, metadata
from wastewarden.db.models.deliveries import Delivery
from wastewarden.db.models.donations import Donation
from wastewarden.db.models.rate_limits import RateLimitCounter
from wastewarden.db.models.requests import Request
from wastewarden.db.models.users import User

__all__ = [
    "Base",
    "Delivery",
    "Donation",
    "RateLimitCounter",
    "Request",
    "User",
    "metadata",
]
