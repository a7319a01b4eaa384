import asyncio
from datetime import timedelta

import pytest

from scheduler import FineScheduler


def test_next_run_is_the_configured_utc_hour(lib, clock):
    # clock starts at 10:00 UTC
    assert FineScheduler(lib.sweeper, run_at_hour=0, clock=clock).seconds_until_next_run() == 14 * 3600
    assert FineScheduler(lib.sweeper, run_at_hour=12, clock=clock).seconds_until_next_run() == 2 * 3600
    # Exactly on the hour: the next run is tomorrow
    assert FineScheduler(lib.sweeper, run_at_hour=10, clock=clock).seconds_until_next_run() == 24 * 3600


def test_interval_overrides_daily_schedule(lib, clock):
    scheduler = FineScheduler(lib.sweeper, run_at_hour=0, interval_seconds=30, clock=clock)
    assert scheduler.seconds_until_next_run() == 30


def test_invalid_schedule_is_rejected(lib):
    with pytest.raises(ValueError):
        FineScheduler(lib.sweeper, run_at_hour=24)
    with pytest.raises(ValueError):
        FineScheduler(lib.sweeper, interval_seconds=-5)


def test_run_once_sweeps_with_configured_rate(lib, clock):
    book = lib.add_book("Dune", "Frank Herbert")
    loan_id = lib.borrow_book("Ada", "ada@example.com", book.id, clock() + timedelta(days=1)).loan_id
    clock.advance(days=3)
    scheduler = FineScheduler(lib.sweeper, fine_per_day=10, clock=clock)

    report = asyncio.run(scheduler.run_once())

    assert report.updated_count == 1
    assert report.trigger == "scheduled"
    assert scheduler.last_report is report
    assert lib.get_loan(loan_id).fine == 20
    assert lib.fine_update_history()[0]["trigger_source"] == "scheduled"


def test_loop_runs_until_stopped(lib):
    scheduler = FineScheduler(lib.sweeper, fine_per_day=5, interval_seconds=0.01)

    async def run():
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.2)
        await scheduler.stop()

    asyncio.run(run())

    assert not scheduler.running
    history = lib.fine_update_history(limit=100)
    assert history
    assert all(entry["trigger_source"] == "scheduled" for entry in history)


def test_loop_survives_a_failed_sweep(lib, monkeypatch):
    calls = []
    real_sweep = lib.sweeper.sweep

    def flaky_sweep(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("storage unavailable")
        return real_sweep(*args, **kwargs)

    monkeypatch.setattr(lib.sweeper, "sweep", flaky_sweep)
    scheduler = FineScheduler(lib.sweeper, fine_per_day=5, interval_seconds=0.01)

    async def run():
        scheduler.start()
        for _ in range(200):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

    asyncio.run(run())

    assert len(calls) >= 2
    assert scheduler.last_report is not None
