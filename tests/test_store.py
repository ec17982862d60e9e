"""Tests for the SQL entity store.

The session is mocked; statements are captured and compiled with the
PostgreSQL dialect so the guards in each WHERE clause can be checked
without a database.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from tests.factories import create_user
from wastewarden.db.models import Delivery, Donation, Request, User
from wastewarden.db.models.base import DonationStatus, RequestStatus, UserRole
from wastewarden.services.store import EntityStore, primary_key_name

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def create_mock_session(rowcount: int = 1) -> AsyncMock:
    """Create a mock async session whose statements report ``rowcount``.

    Executed statements are kept in ``session.statements``.
    """
    session = AsyncMock()
    session.statements = []

    async def mock_execute(stmt, *args, **kwargs):
        session.statements.append(stmt)
        result = MagicMock()
        result.rowcount = rowcount
        return result

    session.execute = mock_execute
    session.add = MagicMock()
    session.flush = AsyncMock()
    return session


def compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestPrimaryKeyName:
    @pytest.mark.parametrize(
        ("model", "key"),
        [
            (User, "user_id"),
            (Donation, "donation_id"),
            (Request, "request_id"),
            (Delivery, "delivery_id"),
        ],
    )
    def test_primary_keys(self, model, key):
        assert primary_key_name(model) == key


class TestTransition:
    @pytest.mark.asyncio
    async def test_matched_row_reports_true(self):
        """A single affected row means every guard held."""
        store = EntityStore(create_mock_session(rowcount=1))

        moved = await store.transition(
            Request,
            uuid.uuid4(),
            expected={RequestStatus.PENDING},
            values={"status": RequestStatus.CANCELLED},
        )

        assert moved is True

    @pytest.mark.asyncio
    async def test_no_row_reports_false(self):
        """Zero affected rows means another writer got there first."""
        store = EntityStore(create_mock_session(rowcount=0))

        moved = await store.transition(
            Request,
            uuid.uuid4(),
            expected={RequestStatus.PENDING},
            values={"status": RequestStatus.CANCELLED},
        )

        assert moved is False

    @pytest.mark.asyncio
    async def test_guards_are_in_the_where_clause(self):
        session = create_mock_session()
        store = EntityStore(session)

        await store.transition(
            Request,
            uuid.uuid4(),
            expected={RequestStatus.PENDING},
            match={"accepted_by_id": None},
            unexpired={"expiry_timestamp": NOW},
            values={"status": RequestStatus.ACCEPTED_BY_NGO},
            stamp={"accepted_at": NOW},
        )

        sql = compiled(session.statements[0])
        assert sql.startswith("UPDATE requests SET")
        assert "requests.request_id =" in sql
        assert "requests.status IN" in sql
        assert "requests.accepted_by_id IS NULL" in sql
        assert "requests.expiry_timestamp >=" in sql
        assert "coalesce(requests.accepted_at" in sql
        assert "updated_at=now()" in sql

    @pytest.mark.asyncio
    async def test_boolean_match_uses_is(self):
        session = create_mock_session()
        store = EntityStore(session)

        await store.transition(
            Delivery,
            uuid.uuid4(),
            match={"points_awarded": False},
            values={"points_awarded": True},
        )

        assert "deliveries.points_awarded IS " in compiled(session.statements[0])

    @pytest.mark.asyncio
    async def test_overdue_guard(self):
        session = create_mock_session()
        store = EntityStore(session)

        await store.transition(
            Donation,
            uuid.uuid4(),
            expected={DonationStatus.ACTIVE},
            overdue={"expiry_time": NOW},
            values={"status": DonationStatus.EXPIRED},
        )

        assert "donations.expiry_time <" in compiled(session.statements[0])


class TestOtherWrites:
    @pytest.mark.asyncio
    async def test_add_assigns_id_and_flushes(self):
        session = create_mock_session()
        store = EntityStore(session)
        user = create_user(UserRole.DONOR)
        user.user_id = None

        await store.add(user)

        assert isinstance(user.user_id, uuid.UUID)
        session.add.assert_called_once_with(user)
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_increment_is_floored_at_zero(self):
        session = create_mock_session()
        store = EntityStore(session)

        await store.increment(User, uuid.uuid4(), "points", -5)

        sql = compiled(session.statements[0])
        assert "greatest(users.points +" in sql

    @pytest.mark.asyncio
    async def test_delete_with_expected_status(self):
        session = create_mock_session(rowcount=0)
        store = EntityStore(session)

        deleted = await store.delete(Request, uuid.uuid4(), expected={RequestStatus.PENDING})

        assert deleted is False
        sql = compiled(session.statements[0])
        assert sql.startswith("DELETE FROM requests")
        assert "requests.status IN" in sql

    @pytest.mark.asyncio
    async def test_append_issue_concatenates(self):
        session = create_mock_session()
        store = EntityStore(session)

        appended = await store.append_issue(uuid.uuid4(), {"type": "other"})

        assert appended is True
        assert "deliveries.issues ||" in compiled(session.statements[0])


class TestExpireStaleRequests:
    @pytest.mark.asyncio
    async def test_returns_expired_pairs(self):
        request_id, requester_id = uuid.uuid4(), uuid.uuid4()
        session = AsyncMock()
        result = MagicMock()
        result.all.return_value = [MagicMock(request_id=request_id, requester_id=requester_id)]
        session.execute = AsyncMock(return_value=result)
        store = EntityStore(session)

        expired = await store.expire_stale_requests(NOW, 100)

        assert expired == [(request_id, requester_id)]
        sql = compiled(session.execute.await_args.args[0])
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "RETURNING requests.request_id, requests.requester_id" in sql


class TestFindNearby:
    @pytest.mark.asyncio
    async def test_deadline_and_status_guards(self):
        session = AsyncMock()
        session.execute = AsyncMock(return_value=MagicMock())
        store = EntityStore(session)

        await store.find_nearby(
            Donation,
            12.97,
            77.59,
            5_000,
            statuses={DonationStatus.ACTIVE},
            unexpired={"expiry_time": NOW},
        )

        sql = compiled(session.execute.await_args.args[0])
        assert "donations.latitude BETWEEN" in sql
        assert "donations.status IN" in sql
        assert "donations.expiry_time >=" in sql

    @pytest.mark.asyncio
    async def test_box_corners_are_dropped_and_rest_sorted(self):
        """The bounding box over-selects; the exact distance decides."""
        near = MagicMock(latitude=12.971, longitude=77.591)
        nearest = MagicMock(latitude=12.9701, longitude=77.5901)
        corner = MagicMock(latitude=12.97 + 0.044, longitude=77.59 + 0.046)
        result = MagicMock()
        result.scalars.return_value.all.return_value = [near, corner, nearest]
        session = AsyncMock()
        session.execute = AsyncMock(return_value=result)
        store = EntityStore(session)

        matches = await store.find_nearby(Request, 12.97, 77.59, 5_000)

        assert [row for row, _ in matches] == [nearest, near]
        assert "requests.expiry_timestamp" not in compiled(session.execute.await_args.args[0])


class TestSessionDelegation:
    @pytest.mark.asyncio
    async def test_get_refreshes_identity_map(self):
        session = AsyncMock()
        store = EntityStore(session)
        entity_id = uuid.uuid4()

        await store.get(User, entity_id)

        session.get.assert_awaited_once_with(User, entity_id, populate_existing=True)

    @pytest.mark.asyncio
    async def test_commit_and_rollback(self):
        session = AsyncMock()
        store = EntityStore(session)

        await store.commit()
        await store.rollback()

        session.commit.assert_awaited_once()
        session.rollback.assert_awaited_once()
