"""Pydantic models and enums shared by the engine and the REST API."""

from __future__ import annotations

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

# ---------------------------------------------------------------------------
# Domain enums
# ---------------------------------------------------------------------------

class Phase(IntEnum):
    NS_GREEN_EW_RED  = 0
    NS_YELLOW_EW_RED = 1
    NS_RED_EW_GREEN  = 2
    NS_RED_EW_YELLOW = 3
    PEDESTRIAN_WALK  = 4


class EmergencyState(IntEnum):
    STANDBY   = 0
    ACTIVATED = 1
    CLEARING  = 2


class LightState(IntEnum):
    RED    = 0
    YELLOW = 1
    GREEN  = 2


class TrafficDensity(IntEnum):
    LOW    = 1
    MEDIUM = 2
    HIGH   = 3


class RunState(str, Enum):
    PAUSED   = "paused"
    RUNNING  = "running"
    COMPLETE = "complete"


class Input(str, Enum):
    """Inputs and control triggers that can move the machine."""

    TIMER_EXPIRED      = "TIMER_EXPIRED"
    PEDESTRIAN_REQUEST = "PEDESTRIAN_REQUEST"
    EMERGENCY_OVERRIDE = "EMERGENCY_OVERRIDE"
    EMERGENCY_TIMEOUT  = "EMERGENCY_TIMEOUT"
    EMERGENCY_CLEARED  = "EMERGENCY_CLEARED"
    FORCE_RED          = "FORCE_RED"
    FORCE_GREEN        = "FORCE_GREEN"
    MANUAL_STEP        = "MANUAL_STEP"
    RESET              = "RESET"


class EventKind(str, Enum):
    TRANSITION = "transition"
    REQUEST    = "request"
    REJECTED   = "rejected"
    EMERGENCY  = "emergency"
    CONTROL    = "control"
    CONFIG     = "config"
    COMPLETE   = "complete"


class NotificationKind(str, Enum):
    PHASE_CHANGED     = "phase_changed"
    EMERGENCY_CHANGED = "emergency_changed"
    RUN_STATE_CHANGED = "run_state_changed"
    LOG_APPENDED      = "log_appended"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class SignalConfig(BaseModel):
    """Phase durations in simulated seconds plus the cycle limit.

    ``max_cycles=None`` runs forever.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ns_green: PositiveInt = 5
    ns_yellow: PositiveInt = 2
    ew_green: PositiveInt = 5
    ew_yellow: PositiveInt = 2
    pedestrian: PositiveInt = 3
    max_cycles: Optional[PositiveInt] = 5
    emergency_hold: PositiveInt = 5
    emergency_clearing: PositiveInt = 2


class ConfigUpdate(BaseModel):
    """Partial configuration; only the fields that were set are merged."""

    model_config = ConfigDict(extra="forbid")

    ns_green: Optional[PositiveInt] = None
    ns_yellow: Optional[PositiveInt] = None
    ew_green: Optional[PositiveInt] = None
    ew_yellow: Optional[PositiveInt] = None
    pedestrian: Optional[PositiveInt] = None
    max_cycles: Optional[PositiveInt] = None
    emergency_hold: Optional[PositiveInt] = None
    emergency_clearing: Optional[PositiveInt] = None

    @field_validator(
        "ns_green", "ns_yellow", "ew_green", "ew_yellow", "pedestrian",
        "emergency_hold", "emergency_clearing",
    )
    @classmethod
    def durations_not_null(cls, v: int | None) -> int:
        # An explicit null only makes sense for max_cycles (unbounded)
        if v is None:
            raise ValueError("duration must be a positive integer")
        return v


# ---------------------------------------------------------------------------
# Events and notifications
# ---------------------------------------------------------------------------

class EventEntry(BaseModel):
    timestamp: datetime
    kind: EventKind
    message: str
    phase: Phase
    reason: Optional[Input] = None

    def format(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.message}"


class Notification(BaseModel):
    kind: NotificationKind
    phase: Phase
    emergency_state: EmergencyState
    timestamp: datetime
    reason: Optional[Input] = None
    entry: Optional[EventEntry] = None


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

class LightInfo(BaseModel):
    state: LightState
    status: str   # "GO" | "CAUTION" | "STOP" | "STOP (PED)" | "EMERGENCY"


class StatisticsSnapshot(BaseModel):
    time_in_phase: dict[str, float]   # keyed by Phase name
    total_transitions: int
    pedestrian_requests_served: int
    emergency_activations: int
    cars_passed: int
    throughput: float                 # cars per cycle


class IntersectionState(BaseModel):
    phase: Phase
    phase_name: str
    run_state: RunState
    emergency_state: EmergencyState
    pedestrian_pending: bool
    cycle: int
    max_cycles: Optional[int]
    speed_factor: float
    density: TrafficDensity
    phase_remaining: float
    seconds_until_pedestrian: float
    ns_light: LightInfo
    ew_light: LightInfo
    next_input: Input
    next_phase: Phase


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------

class SpeedRequest(BaseModel):
    factor: float = Field(gt=0, le=100)


class DensityRequest(BaseModel):
    density: TrafficDensity

    @field_validator("density", mode="before")
    @classmethod
    def accept_names(cls, v):
        if isinstance(v, str) and not v.isdigit():
            try:
                return TrafficDensity[v.upper()]
            except KeyError:
                raise ValueError(f"unknown density {v!r}") from None
        return v


class CommandResponse(BaseModel):
    ok: bool
    state: IntersectionState
