"""Pytest configuration and shared fixtures.

Lifecycle tests run against the in-memory FakeEntityStore and a recording
notification sink, with a settable clock. Store-level SQL tests use mocked
AsyncSession objects instead.
"""

from datetime import UTC, datetime

import pytest

from tests.factories import actor_for, create_user
from tests.fakes import FakeClock, FakeEntityStore, RecordingSink
from wastewarden.core.config import Settings
from wastewarden.db.models.base import UserRole
from wastewarden.services.base import Actor
from wastewarden.services.deliveries import DeliveryLifecycleService
from wastewarden.services.donations import DonationLifecycleService
from wastewarden.services.notifications import NotificationDispatcher
from wastewarden.services.ratings import RatingService
from wastewarden.services.requests import RequestLifecycleService
from wastewarden.services.users import UserService

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a fixed instant; tests move it with ``advance``."""
    return FakeClock(NOW)


@pytest.fixture
def settings() -> Settings:
    """Default settings (5 minute request TTL, 60 minute delivery estimate)."""
    return Settings()


@pytest.fixture
def store(clock: FakeClock) -> FakeEntityStore:
    return FakeEntityStore(clock)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(sink: RecordingSink, clock: FakeClock) -> NotificationDispatcher:
    return NotificationDispatcher(sink, clock=clock)


# ---------------------------------------------------------------------------
# Marketplace users (seeded into the store)
# ---------------------------------------------------------------------------
@pytest.fixture
def donor(store: FakeEntityStore):
    return store.put(create_user(UserRole.DONOR))


@pytest.fixture
def other_donor(store: FakeEntityStore):
    return store.put(create_user(UserRole.DONOR))


@pytest.fixture
def requester(store: FakeEntityStore):
    return store.put(create_user(UserRole.REQUESTER))


@pytest.fixture
def ngo(store: FakeEntityStore):
    """An approved, active NGO."""
    return store.put(create_user(UserRole.NGO))


@pytest.fixture
def other_ngo(store: FakeEntityStore):
    return store.put(create_user(UserRole.NGO))


@pytest.fixture
def admin(store: FakeEntityStore):
    return store.put(create_user(UserRole.ADMIN))


@pytest.fixture
def donor_actor(donor) -> Actor:
    return actor_for(donor)


@pytest.fixture
def requester_actor(requester) -> Actor:
    return actor_for(requester)


@pytest.fixture
def ngo_actor(ngo) -> Actor:
    return actor_for(ngo)


@pytest.fixture
def admin_actor(admin) -> Actor:
    return actor_for(admin)


# ---------------------------------------------------------------------------
# Services wired to the fakes
# ---------------------------------------------------------------------------
@pytest.fixture
def request_service(store, dispatcher, clock, settings) -> RequestLifecycleService:
    return RequestLifecycleService(store, dispatcher, clock=clock, settings=settings)


@pytest.fixture
def donation_service(store, dispatcher, clock, settings) -> DonationLifecycleService:
    return DonationLifecycleService(store, dispatcher, clock=clock, settings=settings)


@pytest.fixture
def delivery_service(store, dispatcher, clock, settings) -> DeliveryLifecycleService:
    return DeliveryLifecycleService(store, dispatcher, clock=clock, settings=settings)


@pytest.fixture
def rating_service(store, dispatcher, clock, settings) -> RatingService:
    return RatingService(store, dispatcher, clock=clock, settings=settings)


@pytest.fixture
def user_service(store, dispatcher, clock, settings) -> UserService:
    return UserService(store, dispatcher, clock=clock, settings=settings)
