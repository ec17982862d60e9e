"""Wastewarden worker process entry point.

Runs the expiry sweeper until SIGTERM/SIGINT, then drains in-flight
notifications and disposes of the database engine.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import TYPE_CHECKING, NoReturn

from wastewarden.db import close_engine, get_session_factory
from wastewarden.services.notifications import NotificationDispatcher, create_sink
from wastewarden.worker.sweeper import ExpirySweeper, run_sweeper_loop

if TYPE_CHECKING:
    from wastewarden.core.config import Settings

logger = logging.getLogger(__name__)

# Global shutdown event for signal handlers, and the loop that owns it
_shutdown_event: asyncio.Event | None = None
_shutdown_loop: asyncio.AbstractEventLoop | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None and _shutdown_loop is not None:
        _shutdown_loop.call_soon_threadsafe(_shutdown_event.set)


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    """Run the sweeper loop and clean up once it returns."""
    sink = create_sink(settings.notifications)
    dispatcher = NotificationDispatcher(sink)
    sweeper = ExpirySweeper(get_session_factory(settings), dispatcher, settings=settings)

    try:
        if settings.sweeper.enabled:
            await run_sweeper_loop(
                sweeper,
                interval_seconds=settings.sweeper.interval_seconds,
                shutdown_event=shutdown_event,
            )
        else:
            logger.warning("Expiry sweeper disabled; waiting for shutdown")
            await shutdown_event.wait()
    finally:
        await dispatcher.drain()
        close = getattr(sink, "close", None)
        if close is not None:
            await close()
        await close_engine()


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Sets up logging
    - Registers signal handlers for graceful shutdown
    - Loads and validates settings from the environment
    - Runs the sweeper loop
    """
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    from wastewarden.core.settings import get_settings

    settings = get_settings()
    logger.info("Wastewarden worker starting: environment=%s", settings.environment.value)

    async def _run_with_event() -> None:
        global _shutdown_event, _shutdown_loop
        _shutdown_event = asyncio.Event()
        _shutdown_loop = asyncio.get_running_loop()
        await _async_main(settings, _shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Wastewarden worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
