"""Engine behaviour on a fake clock.

Default configuration: green 5s, yellow 2s, walk 3s, 5 cycles, so one
cycle is 17 simulated seconds.
"""

from __future__ import annotations

import math
import random

import pytest

from traffic_dfa.errors import InvalidConfiguration
from traffic_dfa.models import (
    EmergencyState,
    EventKind,
    Input,
    NotificationKind,
    Phase,
    RunState,
    SignalConfig,
    TrafficDensity,
)
from traffic_dfa.scheduler import ManualScheduler
from traffic_dfa.simulator import IntersectionSimulator


def messages(sim: IntersectionSimulator) -> list[str]:
    return [e.message for e in sim.event_log(newest_first=False)]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def test_initial_state(sim, clock):
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    assert sim.emergency_state == EmergencyState.STANDBY
    assert not sim.pedestrian_pending
    assert sim.cycle_count == 1
    assert sim.run_state == RunState.PAUSED
    assert clock.pending() == 0


def test_full_cycle_follows_durations(sim, clock):
    sim.play()
    expected = [
        (5, Phase.NS_YELLOW_EW_RED),
        (2, Phase.NS_RED_EW_GREEN),
        (5, Phase.NS_RED_EW_YELLOW),
        (2, Phase.PEDESTRIAN_WALK),
        (3, Phase.NS_GREEN_EW_RED),
    ]
    for seconds, phase in expected:
        clock.advance(seconds - 0.5)
        assert sim.current_phase != phase
        clock.advance(0.5)
        assert sim.current_phase == phase
    assert sim.cycle_count == 2


def test_default_run_completes_after_85_seconds(sim, clock):
    sim.play()
    clock.advance(84)
    assert sim.run_state == RunState.RUNNING
    assert sim.current_phase == Phase.PEDESTRIAN_WALK
    assert sim.cycle_count == 5

    clock.advance(1)
    assert sim.run_state == RunState.COMPLETE
    assert sim.cycle_count == 6
    assert sim.current_phase == Phase.PEDESTRIAN_WALK
    assert clock.pending() == 0
    assert sim.event_log()[0].kind == EventKind.COMPLETE

    stats = sim.statistics()
    assert stats.time_in_phase == {
        "NS_GREEN_EW_RED": 25.0,
        "NS_YELLOW_EW_RED": 10.0,
        "NS_RED_EW_GREEN": 25.0,
        "NS_RED_EW_YELLOW": 10.0,
        "PEDESTRIAN_WALK": 15.0,
    }
    assert stats.total_transitions == 24
    assert stats.throughput == round(stats.cars_passed / 6, 1)


def test_unbounded_cycles_never_complete(clock):
    sim = IntersectionSimulator(SignalConfig(max_cycles=None), scheduler=clock)
    sim.play()
    clock.advance(17 * 20)
    assert sim.run_state == RunState.RUNNING
    assert sim.cycle_count == 21


def test_commands_after_completion_are_rejected(clock):
    sim = IntersectionSimulator(SignalConfig(max_cycles=1), scheduler=clock)
    sim.play()
    clock.advance(17)
    assert sim.run_state == RunState.COMPLETE

    assert sim.request_pedestrian() is False
    assert sim.activate_emergency() is False
    assert sim.play() is False
    assert sim.step() is False
    assert sim.event_log()[0].kind == EventKind.REJECTED
    assert clock.pending() == 0


def test_multiple_engines_are_independent():
    a_clock, b_clock = ManualScheduler(), ManualScheduler()
    a = IntersectionSimulator(scheduler=a_clock)
    b = IntersectionSimulator(scheduler=b_clock)
    a.play()
    b.play()
    a.request_pedestrian()
    a_clock.advance(5)
    assert a.current_phase == Phase.PEDESTRIAN_WALK
    assert b.current_phase == Phase.NS_GREEN_EW_RED
    assert not b.pedestrian_pending


# ---------------------------------------------------------------------------
# Pedestrian overlay
# ---------------------------------------------------------------------------

def test_pedestrian_request_redirects_next_transition(sim, clock):
    sim.play()
    clock.advance(1)
    assert sim.request_pedestrian() is True
    assert sim.pedestrian_pending

    # The current green is not cut short
    clock.advance(3.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED

    clock.advance(0.5)
    assert sim.current_phase == Phase.PEDESTRIAN_WALK
    assert not sim.pedestrian_pending
    assert sim.statistics().pedestrian_requests_served == 1
    assert sim.event_log()[0].reason == Input.PEDESTRIAN_REQUEST


def test_duplicate_request_is_rejected(sim, clock):
    sim.play()
    assert sim.request_pedestrian() is True
    assert sim.request_pedestrian() is False
    assert sim.event_log()[0].kind == EventKind.REJECTED

    clock.advance(5)
    assert sim.statistics().pedestrian_requests_served == 1


def test_request_during_walk_is_rejected(sim):
    for _ in range(4):
        sim.step()
    assert sim.current_phase == Phase.PEDESTRIAN_WALK
    assert sim.request_pedestrian() is False
    assert not sim.pedestrian_pending
    assert "already in pedestrian phase" in sim.event_log()[0].message


def test_preempted_cycle_counts_once(sim, clock):
    sim.play()
    clock.advance(7)
    assert sim.current_phase == Phase.NS_RED_EW_GREEN
    sim.request_pedestrian()

    clock.advance(5)
    assert sim.current_phase == Phase.PEDESTRIAN_WALK
    assert sim.cycle_count == 1

    clock.advance(3)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    assert sim.cycle_count == 2

    clock.advance(17)
    assert sim.cycle_count == 3


# ---------------------------------------------------------------------------
# Emergency overlay
# ---------------------------------------------------------------------------

def test_emergency_freezes_then_restarts_phase(sim, clock):
    sim.play()
    clock.advance(2)
    assert sim.activate_emergency() is True
    assert sim.emergency_state == EmergencyState.ACTIVATED
    state = sim.snapshot()
    assert state.ns_light.status == state.ew_light.status == "EMERGENCY"

    # Would have left NS green at t=5 without the override
    clock.advance(4.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    assert sim.step() is False

    clock.advance(0.5)   # t=7: hold over
    assert sim.emergency_state == EmergencyState.CLEARING
    assert sim.step() is False

    clock.advance(2)     # t=9: clearing over, NS green restarts with 5s
    assert sim.emergency_state == EmergencyState.STANDBY
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(4.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED
    assert sim.statistics().emergency_activations == 1


def test_emergency_only_from_standby(sim, clock):
    assert sim.activate_emergency() is True
    assert sim.activate_emergency() is False
    clock.advance(5)
    assert sim.emergency_state == EmergencyState.CLEARING
    assert sim.activate_emergency() is False
    assert sim.statistics().emergency_activations == 1


def test_emergency_runs_to_completion_while_paused(sim, clock):
    sim.play()
    sim.activate_emergency()
    sim.pause()
    clock.advance(7)
    assert sim.emergency_state == EmergencyState.STANDBY
    assert sim.run_state == RunState.PAUSED
    assert clock.pending() == 0


def test_manual_cancel(sim, clock):
    sim.play()
    sim.activate_emergency()
    assert sim.cancel_emergency() is True
    assert sim.emergency_state == EmergencyState.STANDBY
    assert clock.pending() == 1
    assert sim.cancel_emergency() is False

    # The cancelled hold timer must not start clearing later
    clock.advance(4)
    assert sim.emergency_state == EmergencyState.STANDBY


def test_step_during_emergency_is_logged_as_rejected(sim):
    sim.activate_emergency()
    size = len(sim.event_log())
    assert sim.step() is False
    log = sim.event_log()
    assert len(log) == size + 1
    assert log[0].kind == EventKind.REJECTED
    assert log[0].reason == Input.MANUAL_STEP


@pytest.mark.parametrize("command,reason,text", [
    ("force_red", Input.FORCE_RED, "Force red command issued"),
    ("force_green", Input.FORCE_GREEN, "Force green command issued"),
])
def test_force_commands_alias_emergency(sim, command, reason, text):
    seen = []
    sim.add_listener(seen.append)
    assert getattr(sim, command)() is True
    assert sim.emergency_state == EmergencyState.ACTIVATED
    assert text in messages(sim)
    changes = [n for n in seen if n.kind == NotificationKind.EMERGENCY_CHANGED]
    assert changes[0].reason == reason


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------

def test_pause_is_idempotent(sim, clock):
    sim.play()
    clock.advance(2)
    assert sim.pause() is True
    before = sim.snapshot()
    log_size = len(sim.event_log())

    assert sim.pause() is False
    assert sim.snapshot() == before
    assert len(sim.event_log()) == log_size
    assert clock.pending() == 0


def test_resume_restarts_phase_duration(sim, clock):
    sim.play()
    clock.advance(3)
    sim.pause()
    clock.advance(100)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED

    sim.play()
    clock.advance(4.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED
    assert sim.statistics().time_in_phase["NS_GREEN_EW_RED"] == pytest.approx(8.0)


def test_step_while_paused_arms_nothing(sim, clock):
    assert sim.step() is True
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED
    assert sim.run_state == RunState.PAUSED
    assert clock.pending() == 0
    assert sim.event_log()[0].reason == Input.MANUAL_STEP


def test_reset_restores_initial_state(sim, clock):
    sim.play()
    clock.advance(20)
    sim.request_pedestrian()
    sim.activate_emergency()
    sim.set_speed_factor(3)

    sim.reset()
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    assert sim.cycle_count == 1
    assert sim.emergency_state == EmergencyState.STANDBY
    assert not sim.pedestrian_pending
    assert sim.speed_factor == 1.0
    assert sim.run_state == RunState.PAUSED
    assert clock.pending() == 0

    stats = sim.statistics()
    assert all(v == 0 for v in stats.time_in_phase.values())
    assert stats.total_transitions == 0
    assert stats.pedestrian_requests_served == 0
    assert stats.emergency_activations == 0
    assert stats.cars_passed == 0

    # Nothing fires afterwards, however long we wait
    clock.advance(1000)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    assert sim.emergency_state == EmergencyState.STANDBY
    assert sim.event_log()[0].message == "Simulation reset"


def test_old_timer_does_not_fire_after_reset_and_play(sim, clock):
    sim.play()
    clock.advance(4)
    sim.reset()
    sim.play()
    clock.advance(4.5)      # old deadline t=5 has passed
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED


# ---------------------------------------------------------------------------
# Configuration, speed and density
# ---------------------------------------------------------------------------

def test_config_change_keeps_elapsed_time(sim, clock):
    sim.play()
    clock.advance(3)
    sim.update_configuration({"ns_green": 10})
    assert sim.config.ns_green == 10
    assert sim.config.ew_green == 5

    clock.advance(6.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED


def test_config_shorter_than_elapsed_ends_phase(sim, clock):
    sim.play()
    clock.advance(3)
    sim.update_configuration({"ns_green": 2})
    clock.advance(0)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED


def test_config_change_while_paused_arms_nothing(sim, clock):
    sim.update_configuration({"pedestrian": 9, "max_cycles": None})
    assert clock.pending() == 0
    assert sim.config.max_cycles is None
    assert sim.phase_remaining() == 5


@pytest.mark.parametrize("update", [
    {"ns_green": 0},
    {"pedestrian": -3},
    {"max_cycles": 0},
    {"ns_yellow": None},
    {"bogus": 1},
])
def test_invalid_config_is_rejected(sim, update):
    before = sim.config
    with pytest.raises(InvalidConfiguration):
        sim.update_configuration(update)
    assert sim.config == before
    assert sim.event_log()[0].kind == EventKind.REJECTED
    # Still operable
    assert sim.step() is True


def test_speed_change_rescales_remaining_wait(sim, clock):
    sim.play()
    clock.advance(1)              # 4 simulated seconds left
    sim.set_speed_factor(2)
    clock.advance(1.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED
    clock.advance(1)              # yellow: 2s at 2x
    assert sim.current_phase == Phase.NS_RED_EW_GREEN


def test_speed_change_rescales_emergency_timers(sim, clock):
    sim.activate_emergency()
    sim.set_speed_factor(5)
    clock.advance(1)              # hold: 5s at 5x
    assert sim.emergency_state == EmergencyState.CLEARING
    clock.advance(0.5)            # clearing: 2s at 5x
    assert sim.emergency_state == EmergencyState.STANDBY


def test_fractional_speed_keeps_whole_run_on_time(sim, clock):
    sim.set_speed_factor(3)
    sim.play()
    clock.advance(85 / 3)
    assert sim.run_state == RunState.COMPLETE
    assert sim.cycle_count == 6
    assert sim.statistics().total_transitions == 24


@pytest.mark.parametrize("factor", [0, -1, math.nan, math.inf, "fast"])
def test_invalid_speed_is_rejected(sim, factor):
    with pytest.raises(InvalidConfiguration):
        sim.set_speed_factor(factor)
    assert sim.speed_factor == 1.0


def test_high_density_lengthens_green(clock):
    sim = IntersectionSimulator(scheduler=clock, density=TrafficDensity.HIGH)
    sim.play()
    clock.advance(9.5)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED


def test_density_change_mid_phase_keeps_elapsed(sim, clock):
    sim.play()
    clock.advance(2)
    sim.set_density(TrafficDensity.LOW)    # green becomes 2.5s
    clock.advance(0.25)
    assert sim.current_phase == Phase.NS_GREEN_EW_RED
    clock.advance(0.25)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED


def test_cars_pass_only_on_green(clock):
    sim = IntersectionSimulator(scheduler=clock, rng=random.Random(11))
    sim.step()   # leaves NS green
    after_green = sim.statistics().cars_passed
    sim.step()   # leaves NS yellow
    assert sim.statistics().cars_passed == after_green


# ---------------------------------------------------------------------------
# Queries, notifications and log
# ---------------------------------------------------------------------------

def test_snapshot_preview(sim):
    state = sim.snapshot()
    assert state.next_phase == Phase.NS_YELLOW_EW_RED
    assert state.next_input == Input.TIMER_EXPIRED
    assert state.seconds_until_pedestrian == 14

    sim.request_pedestrian()
    state = sim.snapshot()
    assert state.next_phase == Phase.PEDESTRIAN_WALK
    assert state.next_input == Input.PEDESTRIAN_REQUEST
    assert state.seconds_until_pedestrian == 5


def test_snapshot_counts_emergency_time(sim):
    sim.activate_emergency()
    state = sim.snapshot()
    assert state.next_phase == Phase.NS_GREEN_EW_RED
    # hold 5 + clearing 2 + full NS green, yellow, EW green, EW yellow
    assert state.seconds_until_pedestrian == 21


def test_listeners_see_every_change(sim, clock):
    seen = []
    sim.add_listener(seen.append)
    sim.play()
    clock.advance(5)
    sim.activate_emergency()
    clock.advance(7)

    phase_changes = [n for n in seen if n.kind == NotificationKind.PHASE_CHANGED]
    assert phase_changes[0].phase == Phase.NS_YELLOW_EW_RED
    assert phase_changes[0].reason == Input.TIMER_EXPIRED

    emergencies = [n.emergency_state for n in seen if n.kind == NotificationKind.EMERGENCY_CHANGED]
    assert emergencies == [
        EmergencyState.ACTIVATED, EmergencyState.CLEARING, EmergencyState.STANDBY,
    ]

    appended = [n for n in seen if n.kind == NotificationKind.LOG_APPENDED]
    assert len(appended) == len(sim.event_log())
    assert all(n.entry is not None for n in appended)

    sim.remove_listener(seen.append)
    count = len(seen)
    sim.step()
    assert len(seen) == count


def test_failing_listener_does_not_break_engine(sim, clock):
    def broken(notification):
        raise RuntimeError("renderer crashed")

    sim.add_listener(broken)
    sim.play()
    clock.advance(5)
    assert sim.current_phase == Phase.NS_YELLOW_EW_RED


def test_event_log_is_bounded_newest_first(clock):
    sim = IntersectionSimulator(scheduler=clock, log_capacity=5)
    for _ in range(12):
        sim.step()
    log = sim.event_log()
    assert len(log) == 5
    assert log[0].timestamp >= log[-1].timestamp
    assert "to q2" in log[0].message   # 12th step: q1 -> q2
