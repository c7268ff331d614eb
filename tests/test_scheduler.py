from __future__ import annotations

import threading

import pytest

from tradesim.data.exchange import ExchangeAPIError
from tradesim.live.scheduler import TickScheduler


def test_failing_ticks_do_not_stop_the_scheduler(caplog) -> None:
    errors = [ExchangeAPIError("HTTP 503"), RuntimeError("boom")]

    def tick() -> None:
        if errors:
            raise errors.pop(0)

    scheduler = TickScheduler(tick, 1.0)

    assert scheduler.run_once()
    assert scheduler.run_once()
    assert scheduler.run_once()
    assert scheduler.failures == 2
    assert scheduler.ticks_run == 1
    assert "exchange API error" in caplog.text
    assert "unhandled tick error" in caplog.text


def test_ticks_never_overlap() -> None:
    entered = threading.Event()
    release = threading.Event()

    def slow_tick() -> None:
        entered.set()
        release.wait(5)

    scheduler = TickScheduler(slow_tick, 1.0)
    worker = threading.Thread(target=scheduler.run_once)
    worker.start()
    assert entered.wait(5)

    assert scheduler.run_once() is False
    release.set()
    worker.join(5)

    assert scheduler.ticks_skipped == 1
    assert scheduler.ticks_run == 1


def test_overrun_skips_missed_slots() -> None:
    now = [0.0]
    holder: dict[str, TickScheduler] = {}

    def overrunning_tick() -> None:
        now[0] += 25.0
        holder["scheduler"].stop()

    scheduler = TickScheduler(overrunning_tick, 10.0, clock=lambda: now[0])
    holder["scheduler"] = scheduler

    scheduler.run_forever()

    assert scheduler.ticks_run == 1
    assert scheduler.ticks_skipped == 2


def test_start_and_stop() -> None:
    seen = threading.Event()
    count = [0]

    def tick() -> None:
        count[0] += 1
        if count[0] >= 2:
            seen.set()

    scheduler = TickScheduler(tick, 0.01, name="test-loop")
    scheduler.start()
    assert seen.wait(5)
    scheduler.stop(timeout=5)

    assert not scheduler.is_running
    assert scheduler.ticks_run >= 2


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TickScheduler(lambda: None, 0)
