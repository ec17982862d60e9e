"""Time source for lifecycle operations.

Operations read the clock once and reuse that instant for every timestamp
they stamp, so status and its timestamps never disagree.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)
