"""Transition table for the intersection.

Everything that depends on "which phase comes next" or "how long does a
phase last" reads from the tables below, so the engine and any renderer
can never disagree.

    q0 NS_GREEN_EW_RED  -> q1 NS_YELLOW_EW_RED
    q1 NS_YELLOW_EW_RED -> q2 NS_RED_EW_GREEN
    q2 NS_RED_EW_GREEN  -> q3 NS_RED_EW_YELLOW
    q3 NS_RED_EW_YELLOW -> q4 PEDESTRIAN_WALK
    q4 PEDESTRIAN_WALK  -> q0 NS_GREEN_EW_RED

A pending pedestrian request sends any phase other than q4 straight to q4.
"""

from __future__ import annotations

from .models import (
    EmergencyState,
    Input,
    LightInfo,
    LightState,
    Phase,
    SignalConfig,
    TrafficDensity,
)

SUCCESSOR: dict[Phase, Phase] = {
    Phase.NS_GREEN_EW_RED:  Phase.NS_YELLOW_EW_RED,
    Phase.NS_YELLOW_EW_RED: Phase.NS_RED_EW_GREEN,
    Phase.NS_RED_EW_GREEN:  Phase.NS_RED_EW_YELLOW,
    Phase.NS_RED_EW_YELLOW: Phase.PEDESTRIAN_WALK,
    Phase.PEDESTRIAN_WALK:  Phase.NS_GREEN_EW_RED,
}

# Phase -> SignalConfig field holding its duration
DURATION_FIELD: dict[Phase, str] = {
    Phase.NS_GREEN_EW_RED:  "ns_green",
    Phase.NS_YELLOW_EW_RED: "ns_yellow",
    Phase.NS_RED_EW_GREEN:  "ew_green",
    Phase.NS_RED_EW_YELLOW: "ew_yellow",
    Phase.PEDESTRIAN_WALK:  "pedestrian",
}

# Phase -> (north-south light, east-west light)
SIGNALS: dict[Phase, tuple[LightInfo, LightInfo]] = {
    Phase.NS_GREEN_EW_RED: (
        LightInfo(state=LightState.GREEN, status="GO"),
        LightInfo(state=LightState.RED, status="STOP"),
    ),
    Phase.NS_YELLOW_EW_RED: (
        LightInfo(state=LightState.YELLOW, status="CAUTION"),
        LightInfo(state=LightState.RED, status="STOP"),
    ),
    Phase.NS_RED_EW_GREEN: (
        LightInfo(state=LightState.RED, status="STOP"),
        LightInfo(state=LightState.GREEN, status="GO"),
    ),
    Phase.NS_RED_EW_YELLOW: (
        LightInfo(state=LightState.RED, status="STOP"),
        LightInfo(state=LightState.YELLOW, status="CAUTION"),
    ),
    Phase.PEDESTRIAN_WALK: (
        LightInfo(state=LightState.RED, status="STOP (PED)"),
        LightInfo(state=LightState.RED, status="STOP (PED)"),
    ),
}

ALL_RED = LightInfo(state=LightState.RED, status="EMERGENCY")

GREEN_PHASES = frozenset({Phase.NS_GREEN_EW_RED, Phase.NS_RED_EW_GREEN})

# Green time multiplier per traffic density
GREEN_SCALE: dict[TrafficDensity, float] = {
    TrafficDensity.LOW:    0.5,
    TrafficDensity.MEDIUM: 1.0,
    TrafficDensity.HIGH:   2.0,
}


def compute_next_phase(current: Phase, pedestrian_pending: bool) -> Phase:
    """Return the phase that follows ``current``.  Pure."""
    if pedestrian_pending and current != Phase.PEDESTRIAN_WALK:
        return Phase.PEDESTRIAN_WALK
    return SUCCESSOR[current]


def phase_duration(
    config: SignalConfig,
    phase: Phase,
    density: TrafficDensity = TrafficDensity.MEDIUM,
) -> float:
    """Simulated seconds ``phase`` lasts under ``config`` and ``density``."""
    seconds = float(getattr(config, DURATION_FIELD[phase]))
    if phase in GREEN_PHASES:
        seconds *= GREEN_SCALE[density]
    return seconds


def lights_for(
    phase: Phase, emergency: EmergencyState
) -> tuple[LightInfo, LightInfo]:
    if emergency != EmergencyState.STANDBY:
        return ALL_RED, ALL_RED
    return SIGNALS[phase]


def pending_input(pedestrian_pending: bool, emergency: EmergencyState) -> Input:
    """The input the machine will see at its next decision point."""
    if emergency == EmergencyState.ACTIVATED:
        return Input.EMERGENCY_OVERRIDE
    if pedestrian_pending:
        return Input.PEDESTRIAN_REQUEST
    return Input.TIMER_EXPIRED


def seconds_until_pedestrian(
    config: SignalConfig,
    phase: Phase,
    remaining: float,
    pedestrian_pending: bool,
    density: TrafficDensity = TrafficDensity.MEDIUM,
) -> float:
    """Simulated seconds before the walk phase starts.

    ``remaining`` is what is left of the current phase.  Zero while the
    walk phase is showing.
    """
    if phase == Phase.PEDESTRIAN_WALK:
        return 0.0
    total = remaining
    if pedestrian_pending:
        return total
    nxt = SUCCESSOR[phase]
    while nxt != Phase.PEDESTRIAN_WALK:
        total += phase_duration(config, nxt, density)
        nxt = SUCCESSOR[nxt]
    return total
