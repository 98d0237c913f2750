"""
auth/sweeper.py -- Background purge of expired challenges.

Expired challenges are already unusable (consume() checks expiry), so the
sweeper is housekeeping, not a security control: it keeps dead digests from
lingering in the database. It only touches rows whose expiry has passed, which
makes it safe to run alongside request handlers.

Usage:
    sweeper = ExpirySweeper(store, clock, interval_seconds=60)
    report = sweeper.sweep_once()          # one pass
    task = asyncio.create_task(sweeper.run())  # recurring, cancel on shutdown
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from auth.store import AuthStore
from core.clock import Clock


@dataclass(frozen=True)
class SweepReport:
    step_up_cleared: int
    reset_deleted: int

    @property
    def total(self) -> int:
        return self.step_up_cleared + self.reset_deleted


class ExpirySweeper:
    def __init__(
        self,
        store: AuthStore,
        clock: Clock,
        interval_seconds: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.logger = logger or logging.getLogger("stepguard.auth.sweeper")

    def sweep_once(self) -> SweepReport:
        """Clear every challenge whose expiry is before now."""
        cleared, deleted = self.store.purge_expired(self.clock.now())
        report = SweepReport(step_up_cleared=cleared, reset_deleted=deleted)
        if report.total:
            self.logger.info(
                "Purged %d expired step-up and %d expired reset challenges", cleared, deleted
            )
        else:
            self.logger.debug("No expired challenges")
        return report

    async def run(self) -> None:
        """Sweep every interval_seconds until cancelled.

        The pass runs in a worker thread so a slow SQLite write never blocks
        the event loop. A failed pass is logged and the loop carries on; the
        next pass will pick up whatever this one missed. CancelledError from
        task.cancel() propagates out of asyncio.sleep and ends the loop.
        """
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                self.logger.exception("Expiry sweep failed")
