"""Wastewarden service layer.

Lifecycle managers and their collaborators:
- RequestLifecycleService: Request state machine and expiry
- DonationLifecycleService: Donation state machine
- DeliveryLifecycleService: Pickup/delivery workflow and deferred points award
- RatingService: Post-delivery ratings and rating points
- UserService: Registration, NGO approval, proximity discovery
- EntityStore: Atomic conditional updates over SQLAlchemy
- NotificationDispatcher: Fire-and-forget event delivery
- RateLimiter: Shared fixed-window counters
"""

from wastewarden.services.base import Actor, LifecycleResult
from wastewarden.services.deliveries import DeliveryLifecycleService, calculate_points
from wastewarden.services.donations import DonationLifecycleService
from wastewarden.services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidExpiryError,
    InvalidInputError,
    InvalidReferenceError,
    LifecycleError,
    NotApprovedError,
    NotFoundError,
)
from wastewarden.services.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationEvent,
)
from wastewarden.services.rate_limit import RateLimitDecision, RateLimiter
from wastewarden.services.ratings import RatingService
from wastewarden.services.requests import RequestLifecycleService
from wastewarden.services.store import EntityStore
from wastewarden.services.users import UserService

__all__ = [
    "Actor",
    "ConflictError",
    "DeliveryLifecycleService",
    "DonationLifecycleService",
    "EntityStore",
    "ExpiredError",
    "ForbiddenError",
    "InvalidExpiryError",
    "InvalidInputError",
    "InvalidReferenceError",
    "LifecycleError",
    "LifecycleResult",
    "NotApprovedError",
    "NotFoundError",
    "Notification",
    "NotificationDispatcher",
    "NotificationEvent",
    "RateLimitDecision",
    "RateLimiter",
    "RatingService",
    "RequestLifecycleService",
    "UserService",
    "calculate_points",
]
