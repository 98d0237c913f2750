"""Tests for auth/sweeper.py.

Covers:
- sweep_once() removes only challenges whose expiry has passed
- live challenges survive a sweep and stay usable
- run() keeps looping after a failed pass and stops on cancellation
"""

from __future__ import annotations

import asyncio
import logging

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import ChallengePurpose
from auth.service import AuthService
from auth.sweeper import ExpirySweeper, SweepReport


@pytest.fixture
def sweeper(service: AuthService, clock) -> ExpirySweeper:
    return ExpirySweeper(service.store, clock, interval_seconds=60)


class TestSweepOnce:
    def test_nothing_to_do(self, sweeper: ExpirySweeper) -> None:
        report = sweeper.sweep_once()
        assert report == SweepReport(step_up_cleared=0, reset_deleted=0)
        assert report.total == 0

    def test_expired_challenges_are_purged(self, service: AuthService, sweeper: ExpirySweeper, enrolled_user, clock) -> None:
        plain = service.register("plain@x.com", "pw")
        service.challenges.issue(plain.id, ChallengePurpose.PASSWORD_RESET, 240)
        service.challenges.issue(enrolled_user.id, ChallengePurpose.LOGIN, 180)

        clock.advance(300)
        report = sweeper.sweep_once()

        assert report == SweepReport(step_up_cleared=1, reset_deleted=1)
        assert service.store.count_reset_challenges(plain.id) == 0
        enrollment = service.store.get_enrollment(enrolled_user.id)
        assert enrollment.challenge_hash is None
        assert enrollment.challenge_purpose is None
        assert enrollment.challenge_expires_at is None
        # The enrollment itself is untouched
        assert enrollment.is_enabled is True

    def test_live_challenges_survive(self, service: AuthService, sweeper: ExpirySweeper, clock) -> None:
        user = service.register("live@x.com", "pw")
        issued = service.challenges.issue(user.id, ChallengePurpose.PASSWORD_RESET, 240)

        clock.advance(200)
        assert sweeper.sweep_once().total == 0
        assert service.challenges.consume(issued.envelope_token, ChallengePurpose.PASSWORD_RESET).user_id == user.id

    def test_mixed_expiry(self, service: AuthService, sweeper: ExpirySweeper, clock) -> None:
        old = service.register("old@x.com", "pw")
        service.challenges.issue(old.id, ChallengePurpose.PASSWORD_RESET, 60)
        fresh = service.register("fresh@x.com", "pw")
        service.challenges.issue(fresh.id, ChallengePurpose.PASSWORD_RESET, 600)

        clock.advance(120)
        assert sweeper.sweep_once().reset_deleted == 1
        assert service.store.count_reset_challenges(old.id) == 0
        assert service.store.count_reset_challenges(fresh.id) == 1


class TestRun:
    def test_failed_pass_does_not_stop_the_loop(self, service: AuthService, clock, monkeypatch) -> None:
        sweeper = ExpirySweeper(service.store, clock, interval_seconds=0)
        calls: list[int] = []

        def flaky(now):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return 0, 0

        monkeypatch.setattr(service.store, "purge_expired", flaky)

        async def drive() -> None:
            task = asyncio.create_task(sweeper.run())
            while len(calls) < 3:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(drive())
        assert len(calls) >= 3

    def test_unexpected_error_is_logged_and_loop_continues(self, service: AuthService, clock, monkeypatch, caplog) -> None:
        sweeper = ExpirySweeper(service.store, clock, interval_seconds=0)
        calls: list[int] = []

        def broken(now):
            calls.append(1)
            if len(calls) == 1:
                raise ValueError("bad timestamp in row")
            return 0, 0

        monkeypatch.setattr(service.store, "purge_expired", broken)

        async def drive() -> None:
            task = asyncio.create_task(sweeper.run())
            while len(calls) < 2:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with caplog.at_level(logging.ERROR, logger="stepguard.auth.sweeper"):
            asyncio.run(drive())
        assert len(calls) >= 2
        assert "Expiry sweep failed" in caplog.text
