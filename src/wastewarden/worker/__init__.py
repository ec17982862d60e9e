"""Wastewarden worker service.

Background process that periodically:
- Expires pending requests past their deadline and notifies requesters
- Purges ended rate-limit windows

Usage:
    wastewarden-worker
    python -m wastewarden.worker.main
"""

from wastewarden.worker.main import run
from wastewarden.worker.sweeper import ExpirySweeper, SweepReport, run_sweeper_loop

__all__ = ["ExpirySweeper", "SweepReport", "run", "run_sweeper_loop"]
