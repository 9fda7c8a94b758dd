"""
Unit tests for the in-process Scheduler.

Tests cron parsing and matching, interval jobs, error isolation and the
asyncio start/stop lifecycle.
"""

import asyncio
import threading
from datetime import datetime

import pytest

from courier.src.utils.clock import ManualClock
from courier.src.utils.scheduler import Scheduler, cron_matches, parse_cron


# ============================================================================
# Test: Cron expressions
# ============================================================================


class TestCron:
    """Tests for parse_cron and cron_matches."""

    def test_daily_at_eight(self):
        schedule = parse_cron("0 8 * * *")
        assert cron_matches(schedule, datetime(2025, 1, 7, 8, 0))
        assert not cron_matches(schedule, datetime(2025, 1, 7, 8, 1))
        assert not cron_matches(schedule, datetime(2025, 1, 7, 9, 0))

    def test_weekly_monday(self):
        schedule = parse_cron("0 9 * * 1")
        assert cron_matches(schedule, datetime(2025, 1, 6, 9, 0))  # Monday
        assert not cron_matches(schedule, datetime(2025, 1, 5, 9, 0))  # Sunday
        assert not cron_matches(schedule, datetime(2025, 1, 7, 9, 0))  # Tuesday

    def test_sunday_is_zero(self):
        assert cron_matches(parse_cron("30 6 * * 0"), datetime(2025, 1, 5, 6, 30))

    def test_step_and_list(self):
        schedule = parse_cron("*/15 8,20 * * *")
        assert cron_matches(schedule, datetime(2025, 1, 7, 20, 45))
        assert not cron_matches(schedule, datetime(2025, 1, 7, 20, 50))

    @pytest.mark.parametrize("expression", ["0 8 * *", "61 8 * * *", "0 25 * * *", "x y z w v"])
    def test_invalid_expressions(self, expression):
        with pytest.raises(ValueError):
            parse_cron(expression)


# ============================================================================
# Test: run_pending
# ============================================================================


class TestRunPending:
    """Tests for synchronous job evaluation."""

    def test_cron_fires_once_per_matching_minute(self):
        clock = ManualClock(datetime(2025, 1, 6, 7, 59, 30))
        scheduler = Scheduler(clock=clock)
        calls = []
        scheduler.add_cron_job("daily-digest", "0 8 * * *", lambda: calls.append(clock.now()))

        assert scheduler.run_pending() == []

        clock.advance(seconds=30)
        assert [run.name for run in scheduler.run_pending()] == ["daily-digest"]

        clock.advance(seconds=20)
        assert scheduler.run_pending() == []

        clock.advance(days=1)
        scheduler.run_pending()
        assert len(calls) == 2

    def test_interval_job(self):
        clock = ManualClock()
        scheduler = Scheduler(clock=clock)
        calls = []
        scheduler.add_interval_job("tick", 5, lambda: calls.append(1))

        scheduler.run_pending()
        assert len(calls) == 1

        clock.advance(seconds=4)
        scheduler.run_pending()
        assert len(calls) == 1

        clock.advance(seconds=1)
        scheduler.run_pending()
        assert len(calls) == 2

    def test_interval_job_delayed_start(self):
        clock = ManualClock()
        scheduler = Scheduler(clock=clock)
        calls = []
        scheduler.add_interval_job("tick", 5, lambda: calls.append(1), run_immediately=False)

        scheduler.run_pending()
        assert calls == []

    def test_failing_job_does_not_stop_others(self):
        clock = ManualClock(datetime(2025, 1, 6, 8, 0))
        scheduler = Scheduler(clock=clock)
        calls = []

        def broken():
            raise RuntimeError("user service down")

        scheduler.add_cron_job("daily-digest", "0 8 * * *", broken)
        scheduler.add_interval_job("tick", 5, lambda: calls.append(1))

        runs = scheduler.run_pending()

        assert [(r.name, r.ok) for r in runs] == [("tick", True), ("daily-digest", False)]
        assert runs[1].error == "user service down"
        assert calls == [1]

    def test_duplicate_name_rejected(self):
        scheduler = Scheduler(clock=ManualClock())
        scheduler.add_interval_job("tick", 5, lambda: None)
        with pytest.raises(ValueError):
            scheduler.add_cron_job("tick", "* * * * *", lambda: None)

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            Scheduler(clock=ManualClock()).add_interval_job("tick", 0, lambda: None)

    def test_job_names(self):
        scheduler = Scheduler(clock=ManualClock())
        scheduler.add_interval_job("tick", 5, lambda: None)
        scheduler.add_cron_job("cleanup", "0 3 * * *", lambda: None)
        assert scheduler.job_names == ["tick", "cleanup"]


# ============================================================================
# Test: asyncio lifecycle
# ============================================================================


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_runs_jobs_and_stop_waits(self):
        scheduler = Scheduler(clock=ManualClock(), poll_interval=0.01)
        ran = threading.Event()
        scheduler.add_interval_job("tick", 60, ran.set)

        await scheduler.start()
        assert scheduler.is_running

        for _ in range(100):
            if ran.is_set():
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()
        assert ran.is_set()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_runs_do_not_overlap(self):
        clock = ManualClock()
        scheduler = Scheduler(clock=clock, poll_interval=0.01)
        release = threading.Event()
        started = []

        def slow_job():
            started.append(1)
            release.wait(timeout=5)

        scheduler.add_interval_job("slow", 1, slow_job)
        await scheduler.start()

        for _ in range(100):
            if started:
                break
            await asyncio.sleep(0.01)

        # The job is due again while its first run is still in flight
        clock.advance(seconds=5)
        await asyncio.sleep(0.05)
        assert len(started) == 1

        release.set()
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await Scheduler(clock=ManualClock()).stop()
