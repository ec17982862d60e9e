"""Periodic expiry sweeper.

Expires pending requests whose deadline has passed and drops rate-limit
windows that have ended. Lazy expiry on access keeps reads correct between
sweeps; the sweeper bounds how long an untouched request can sit overdue.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from wastewarden.core.clock import utc_now
from wastewarden.services.rate_limit import RateLimiter
from wastewarden.services.requests import RequestLifecycleService
from wastewarden.services.store import EntityStore

if TYPE_CHECKING:
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from wastewarden.core.clock import Clock
    from wastewarden.core.config import Settings
    from wastewarden.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep did.

    Attributes:
        expired_request_ids: Requests flipped to expired.
        purged_rate_limit_windows: Rate-limit rows removed.
    """

    expired_request_ids: list[UUID] = field(default_factory=list)
    purged_rate_limit_windows: int = 0

    @property
    def expired_count(self) -> int:
        return len(self.expired_request_ids)


class ExpirySweeper:
    """Runs one expiry pass per call to :meth:`sweep_once`.

    Example:
        sweeper = ExpirySweeper(get_session_factory(), dispatcher, settings=settings)
        report = await sweeper.sweep_once()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        *,
        clock: Clock = utc_now,
        batch_size: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        if settings is None:
            from wastewarden.core.settings import get_settings

            settings = get_settings()
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._clock = clock
        self._settings = settings
        self._batch_size = batch_size or settings.sweeper.batch_size

    async def sweep_once(self) -> SweepReport:
        """Expire overdue requests in batches, then purge stale rate-limit windows.

        Raises:
            RuntimeError: The request sweep was rejected.
        """
        report = SweepReport()

        async with self._session_factory() as session:
            service = RequestLifecycleService(
                EntityStore(session),
                self._dispatcher,
                clock=self._clock,
                settings=self._settings,
            )
            result = await service.sweep(self._batch_size)
            if not result.success:
                msg = f"Request sweep rejected: {result.code}"
                raise RuntimeError(msg)
            report.expired_request_ids = list(result.data["expired_ids"])

        async with self._session_factory() as session:
            limiter = RateLimiter(session, self._settings.rate_limit, clock=self._clock)
            report.purged_rate_limit_windows = await limiter.purge_expired()
            await session.commit()

        if report.expired_count or report.purged_rate_limit_windows:
            logger.info(
                "Sweep completed: expired=%d, purged_windows=%d",
                report.expired_count,
                report.purged_rate_limit_windows,
            )
        return report


async def run_sweeper_loop(
    sweeper: ExpirySweeper,
    interval_seconds: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the sweeper every ``interval_seconds`` until shutdown is requested.

    A failing sweep is logged and the loop carries on with the next one.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info("Expiry sweeper starting: interval=%ss", interval_seconds)

    while not shutdown_event.is_set():
        try:
            await sweeper.sweep_once()
        except Exception as e:
            logger.exception("Error in sweeper loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)

    logger.info("Expiry sweeper stopped")
