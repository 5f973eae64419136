"""Fake clock behaviour."""

from __future__ import annotations

from datetime import timedelta

import pytest

from traffic_dfa.scheduler import ManualScheduler, Scheduler


def test_callbacks_fire_in_deadline_order(clock):
    fired = []
    clock.schedule(3, 1, lambda: fired.append("c"))
    clock.schedule(1, 1, lambda: fired.append("a"))
    clock.schedule(2, 1, lambda: fired.append("b"))

    assert clock.advance(2.5) == 2
    assert fired == ["a", "b"]
    clock.advance(1)
    assert fired == ["a", "b", "c"]


def test_speed_factor_shortens_delay(clock):
    fired = []
    clock.schedule(4, 2, lambda: fired.append(clock.now()))
    clock.advance(10)
    assert fired == [2.0]


def test_cancelled_timer_never_fires(clock):
    fired = []
    handle = clock.schedule(1, 1, lambda: fired.append(1))
    assert clock.pending() == 1
    clock.cancel(handle)
    assert clock.pending() == 0
    clock.advance(5)
    assert fired == []
    # Cancelling twice is harmless
    clock.cancel(handle)
    clock.cancel(None)


def test_timer_armed_by_callback_fires_in_same_window(clock):
    fired = []

    def first():
        fired.append(clock.now())
        clock.schedule(2, 1, lambda: fired.append(clock.now()))

    clock.schedule(1, 1, first)
    clock.advance(5)
    assert fired == [1.0, 3.0]
    assert clock.now() == 5.0


def test_remaining_is_in_simulated_seconds(clock):
    handle = clock.schedule(10, 2, lambda: None)
    clock.advance(1)
    assert clock.remaining(handle) == pytest.approx(8.0)
    clock.advance(4)
    assert clock.remaining(handle) == 0.0


def test_rejects_bad_arguments(clock):
    with pytest.raises(ValueError):
        clock.schedule(1, 0, lambda: None)
    with pytest.raises(ValueError):
        clock.advance(-1)


def test_timestamp_follows_logical_clock():
    clock = ManualScheduler()
    start = clock.timestamp()
    clock.advance(90)
    assert clock.timestamp() - start == timedelta(seconds=90)


def test_run_until_idle_drains_chain(clock):
    fired = []

    def chain(n):
        fired.append(n)
        if n < 3:
            clock.schedule(1, 1, lambda: chain(n + 1))

    clock.schedule(1, 1, lambda: chain(1))
    assert clock.run_until_idle() == 3
    assert fired == [1, 2, 3]
    assert clock.now() == 3.0


def test_chained_fractional_delays_fire_on_target(clock):
    fired = []

    def chain(n):
        fired.append(n)
        if n < 30:
            clock.schedule(1, 3, lambda: chain(n + 1))

    clock.schedule(1, 3, lambda: chain(1))
    clock.advance(30 / 3)
    assert fired == list(range(1, 31))
    assert clock.pending() == 0


def test_scheduler_base_is_abstract():
    with pytest.raises(TypeError):
        Scheduler()
