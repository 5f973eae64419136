"""Counters derived from engine events."""

from __future__ import annotations

import random

from .fsm import GREEN_PHASES
from .models import Phase, StatisticsSnapshot, TrafficDensity

# Upper bound of the per-phase car draw for each density
MAX_ARRIVALS: dict[TrafficDensity, int] = {
    TrafficDensity.LOW:    2,
    TrafficDensity.MEDIUM: 4,
    TrafficDensity.HIGH:   7,
}


class StatisticsCollector:
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self.reset()

    def reset(self) -> None:
        self.time_in_phase: dict[Phase, float] = {phase: 0.0 for phase in Phase}
        self.total_transitions = 0
        self.pedestrian_requests_served = 0
        self.emergency_activations = 0
        self.cars_passed = 0

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def record_time(self, phase: Phase, seconds: float) -> None:
        if seconds > 0:
            self.time_in_phase[phase] += seconds

    def record_transition(self) -> None:
        self.total_transitions += 1

    def record_pedestrian_served(self) -> None:
        self.pedestrian_requests_served += 1

    def record_emergency(self) -> None:
        self.emergency_activations += 1

    def simulate_arrivals(self, phase: Phase, density: TrafficDensity) -> int:
        """Draw how many cars cleared the stop line while ``phase`` showed.

        Only the two green phases move traffic.
        """
        if phase not in GREEN_PHASES:
            return 0
        cars = self._rng.randint(0, MAX_ARRIVALS[density])
        self.cars_passed += cars
        return cars

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def throughput(self, cycle: int) -> float:
        if cycle <= 0:
            return 0.0
        return round(self.cars_passed / cycle, 1)

    def snapshot(self, cycle: int) -> StatisticsSnapshot:
        return StatisticsSnapshot(
            time_in_phase={phase.name: secs for phase, secs in self.time_in_phase.items()},
            total_transitions=self.total_transitions,
            pedestrian_requests_served=self.pedestrian_requests_served,
            emergency_activations=self.emergency_activations,
            cars_passed=self.cars_passed,
            throughput=self.throughput(cycle),
        )
