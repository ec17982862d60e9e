"""Shared fixed-window rate limiting.

Counters live in the ``rate_limit_counters`` table and are bumped with a
single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING count`` statement,
so concurrent hits from any number of service instances are counted
exactly once each.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert

from wastewarden.core.clock import utc_now
from wastewarden.db.models import RateLimitCounter

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from wastewarden.core.clock import Clock
    from wastewarden.core.config import RateLimitSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of one hit against a key.

    Attributes:
        allowed: Whether the hit is within the limit.
        count: Hits recorded in the current window, this one included.
        limit: Maximum hits per window.
        reset_at: When the current window ends.
    """

    allowed: bool
    count: int
    limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


def window_start(now: datetime, window_seconds: int) -> datetime:
    """Start of the fixed window containing ``now``."""
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % window_seconds, tz=UTC)


class RateLimiter:
    """Keyed fixed-window counter.

    Example:
        limiter = RateLimiter(session, settings.rate_limit)
        decision = await limiter.hit(f"accept:{actor.user_id}")
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: RateLimitSettings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._session = session
        self._window_seconds = settings.window_seconds
        self._max_requests = settings.max_requests
        self._clock = clock

    async def hit(self, key: str) -> RateLimitDecision:
        """Record one hit for ``key`` and report whether it is allowed.

        The caller owns the transaction and must commit.
        """
        now = self._clock()
        start = window_start(now, self._window_seconds)
        reset_at = start + timedelta(seconds=self._window_seconds)

        stmt = insert(RateLimitCounter).values(
            key=key,
            window_start=start,
            count=1,
            expires_at=reset_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RateLimitCounter.key, RateLimitCounter.window_start],
            set_={"count": RateLimitCounter.count + 1},
        ).returning(RateLimitCounter.count)

        result = await self._session.execute(stmt)
        count = result.scalar_one()
        allowed = count <= self._max_requests
        if not allowed:
            logger.warning(
                "Rate limit exceeded: key=%s, count=%d, limit=%d",
                key,
                count,
                self._max_requests,
            )
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=self._max_requests,
            reset_at=reset_at,
        )

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete windows that ended before ``now``. Returns the number removed."""
        cutoff = now or self._clock()
        result = await self._session.execute(
            delete(RateLimitCounter).where(RateLimitCounter.expires_at < cutoff)
        )
        return result.rowcount or 0
