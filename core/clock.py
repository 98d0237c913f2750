"""
core/clock.py -- Wall clock abstraction used for every expiry comparison.

Components take a Clock at construction instead of calling datetime.now()
themselves, so tests can move time forward past a challenge's expiry without
sleeping.

Layer rule: core/ is the kernel. No imports from api/, auth/, or notify/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Clock backed by the host's wall time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
