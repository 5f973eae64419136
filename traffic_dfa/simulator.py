"""Intersection controller engine.

The controller is the five-phase machine from fsm.py, advanced by a timer.
Two overlays change what happens when the timer fires:

  - A pedestrian request redirects the *next* transition to the walk
    phase.  It never cuts the current phase short.
  - An emergency override freezes the machine with every light red for
    ``emergency_hold`` seconds, shows CLEARING for ``emergency_clearing``
    seconds, then restarts the interrupted phase from its full duration.

Timing bookkeeping: a phase lasts ``_phase_target`` simulated seconds.
Time is accumulated in running segments; a segment starts whenever the
phase timer is armed and is closed when the timer is cancelled or
re-armed.  Speed or configuration changes close the segment and re-arm
the timer with what is left, so the phase is never restarted by them.
A speed change re-arms a running emergency timer the same way.
Pause and emergency close the segment *and* drop the progress: the phase
starts over with its full duration when the machine resumes.

Every armed timer carries a sequence number.  A callback whose number no
longer matches the engine's current one is stale and does nothing, which
is what guarantees nothing fires after ``reset()``.

Thread safety: a single RLock serialises all public methods and timer
callbacks.
"""

from __future__ import annotations

import itertools
import logging
import math
import random
import threading
from functools import partial
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from .errors import InvalidConfiguration, PersistenceFailure
from .events import DEFAULT_CAPACITY, EventLog, Listener, Notifier
from .fsm import (
    compute_next_phase,
    lights_for,
    pending_input,
    phase_duration,
    seconds_until_pedestrian,
)
from .models import (
    ConfigUpdate,
    EmergencyState,
    EventEntry,
    EventKind,
    Input,
    IntersectionState,
    Notification,
    NotificationKind,
    Phase,
    RunState,
    SignalConfig,
    StatisticsSnapshot,
    TrafficDensity,
)
from .persistence import CONFIG_KEY, EVENT_LOG_KEY, StateStore
from .scheduler import ManualScheduler, Scheduler, TimerHandle
from .stats import StatisticsCollector

logger = logging.getLogger(__name__)


def _q(phase: Phase) -> str:
    return f"q{phase.value} ({phase.name})"


class IntersectionSimulator:
    """One intersection.  Create as many as you like; nothing is global."""

    def __init__(
        self,
        config: SignalConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        store: StateStore | None = None,
        density: TrafficDensity = TrafficDensity.MEDIUM,
        rng: random.Random | None = None,
        log_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._lock = threading.RLock()
        self._scheduler = scheduler if scheduler is not None else ManualScheduler()
        self._store = store
        self._log = EventLog(log_capacity)
        self._notifier = Notifier()
        self._stats = StatisticsCollector(rng)
        self._density = TrafficDensity(density)
        self._seq = itertools.count(1)

        self._transition_timer: TimerHandle | None = None
        self._transition_seq = 0
        self._emergency_timer: TimerHandle | None = None
        self._emergency_seq = 0

        loaded = False
        if config is None:
            config, loaded = self._restore_config()
        self._config = config
        self._init_state()
        self._restore_event_log()
        if loaded:
            self._record(EventKind.CONFIG, "Configuration loaded from storage")

    def _init_state(self) -> None:
        self._phase = Phase.NS_GREEN_EW_RED
        self._emergency = EmergencyState.STANDBY
        self._pedestrian_pending = False
        self._cycle = 1
        self._run_state = RunState.PAUSED
        self._speed_factor = 1.0
        self._phase_target = self._duration(self._phase)
        self._phase_elapsed = 0.0
        self._segment_start: float | None = None
        self._stats.reset()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def current_phase(self) -> Phase:
        return self._phase

    @property
    def emergency_state(self) -> EmergencyState:
        return self._emergency

    @property
    def pedestrian_pending(self) -> bool:
        return self._pedestrian_pending

    @property
    def cycle_count(self) -> int:
        return self._cycle

    @property
    def run_state(self) -> RunState:
        return self._run_state

    @property
    def speed_factor(self) -> float:
        return self._speed_factor

    @property
    def density(self) -> TrafficDensity:
        return self._density

    @property
    def config(self) -> SignalConfig:
        return self._config

    def statistics(self) -> StatisticsSnapshot:
        with self._lock:
            return self._stats.snapshot(self._cycle)

    def event_log(self, newest_first: bool = True) -> list[EventEntry]:
        with self._lock:
            return self._log.entries(newest_first)

    def phase_remaining(self) -> float:
        """Simulated seconds until the current phase ends, if left alone."""
        with self._lock:
            if self._run_state == RunState.COMPLETE:
                return 0.0
            if self._transition_timer is None:
                # Resuming always restarts the phase from its full duration
                return self._duration(self._phase)
            return max(0.0, self._phase_target - self._elapsed())

    def snapshot(self) -> IntersectionState:
        with self._lock:
            remaining = self.phase_remaining()
            ns_light, ew_light = lights_for(self._phase, self._emergency)
            frozen = (
                self._emergency != EmergencyState.STANDBY
                or self._run_state == RunState.COMPLETE
            )
            next_phase = (
                self._phase if frozen
                else compute_next_phase(self._phase, self._pedestrian_pending)
            )
            until_walk = seconds_until_pedestrian(
                self._config, self._phase, remaining,
                self._pedestrian_pending, self._density,
            )
            if self._phase != Phase.PEDESTRIAN_WALK:
                until_walk += self._emergency_remaining()
            return IntersectionState(
                phase=self._phase,
                phase_name=self._phase.name,
                run_state=self._run_state,
                emergency_state=self._emergency,
                pedestrian_pending=self._pedestrian_pending,
                cycle=self._cycle,
                max_cycles=self._config.max_cycles,
                speed_factor=self._speed_factor,
                density=self._density,
                phase_remaining=remaining,
                seconds_until_pedestrian=until_walk,
                ns_light=ns_light,
                ew_light=ew_light,
                next_input=pending_input(self._pedestrian_pending, self._emergency),
                next_phase=next_phase,
            )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._notifier.add(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._notifier.remove(listener)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def advance(self, reason: Input = Input.TIMER_EXPIRED) -> bool:
        """Leave the current phase.  Returns False when frozen or finished."""
        with self._lock:
            if self._emergency != EmergencyState.STANDBY:
                if reason == Input.MANUAL_STEP:
                    return self._reject("Step ignored - emergency override in progress", reason)
                return False
            if self._run_state == RunState.COMPLETE:
                if reason == Input.MANUAL_STEP:
                    return self._reject("Step ignored - simulation complete", reason)
                return False

            current = self._phase
            self._bank_phase_time()
            self._cancel_transition()
            self._stats.simulate_arrivals(current, self._density)

            preempted = self._pedestrian_pending and current != Phase.PEDESTRIAN_WALK
            nxt = compute_next_phase(current, self._pedestrian_pending)
            if preempted:
                self._pedestrian_pending = False
                self._stats.record_pedestrian_served()
                reason = Input.PEDESTRIAN_REQUEST

            if current == Phase.PEDESTRIAN_WALK and nxt == Phase.NS_GREEN_EW_RED:
                self._cycle += 1
                limit = self._config.max_cycles
                if limit is not None and self._cycle > limit:
                    self._complete(reason)
                    return True

            self._phase = nxt
            self._stats.record_transition()
            self._phase_target = self._duration(nxt)
            self._phase_elapsed = 0.0
            if self._run_state == RunState.RUNNING:
                self._arm_transition()

            logger.debug("%s -> %s on %s", current.name, nxt.name, reason.value)
            self._notify(NotificationKind.PHASE_CHANGED, reason)
            self._record(
                EventKind.TRANSITION,
                f"State changed from {_q(current)} to {_q(nxt)}",
                reason,
            )
            return True

    def step(self) -> bool:
        """Advance by hand.  Works while paused; never arms a timer then."""
        return self.advance(Input.MANUAL_STEP)

    def _complete(self, reason: Input) -> None:
        self._cancel_all_timers()
        self._set_run_state(RunState.COMPLETE, reason)
        stats = self._stats
        self._record(
            EventKind.COMPLETE,
            f"Simulation complete: {self._config.max_cycles} cycles, "
            f"{stats.pedestrian_requests_served} pedestrian requests, "
            f"{stats.cars_passed} cars, "
            f"{stats.throughput(self._cycle)} cars/cycle",
            reason,
        )
        self.save()

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    def play(self) -> bool:
        with self._lock:
            if self._run_state != RunState.PAUSED:
                return False
            self._set_run_state(RunState.RUNNING)
            if self._emergency == EmergencyState.STANDBY:
                self._arm_transition()
            self._record(EventKind.CONTROL, "Simulation running")
            return True

    def pause(self) -> bool:
        """Stop the phase timer.  Calling it again changes nothing.

        An emergency episode keeps running while paused.
        """
        with self._lock:
            if self._run_state != RunState.RUNNING:
                return False
            self._bank_phase_time()
            self._cancel_transition()
            self._phase_target = self._duration(self._phase)
            self._set_run_state(RunState.PAUSED)
            self._record(EventKind.CONTROL, "Simulation paused")
            self.save()
            return True

    def reset(self) -> None:
        """Back to q0, cycle 1, standby, paused, zeroed statistics."""
        with self._lock:
            self._cancel_all_timers()
            was = (self._phase, self._emergency, self._run_state)
            self._init_state()
            if was[0] != self._phase:
                self._notify(NotificationKind.PHASE_CHANGED, Input.RESET)
            if was[1] != self._emergency:
                self._notify(NotificationKind.EMERGENCY_CHANGED, Input.RESET)
            if was[2] != self._run_state:
                self._notify(NotificationKind.RUN_STATE_CHANGED, Input.RESET)
            self._record(EventKind.CONTROL, "Simulation reset", Input.RESET)
            self.save()

    def set_speed_factor(self, factor: float) -> None:
        try:
            value = float(factor)
        except (TypeError, ValueError):
            value = math.nan
        if not math.isfinite(value) or value <= 0:
            with self._lock:
                self._record(EventKind.REJECTED, f"Speed factor {factor!r} rejected")
            raise InvalidConfiguration(f"speed factor must be a positive number, got {factor!r}")
        factor = value
        with self._lock:
            if self._transition_timer is not None:
                self._close_segment()
                self._cancel_transition()
                self._speed_factor = factor
                self._arm_transition(self._phase_target - self._phase_elapsed)
            else:
                self._speed_factor = factor
            if self._emergency_timer is not None:
                left = self._scheduler.remaining(self._emergency_timer)
                action = (
                    self.begin_clearing if self._emergency == EmergencyState.ACTIVATED
                    else self.cancel_emergency
                )
                self._arm_emergency(left, action)
            self._record(EventKind.CONFIG, f"Simulation speed changed to {factor:g}x")

    def set_density(self, density: TrafficDensity) -> None:
        density = TrafficDensity(density)
        with self._lock:
            self._density = density
            self._retime()
            self._record(EventKind.CONFIG, f"Traffic density set to {density.name}")

    def update_configuration(
        self, update: ConfigUpdate | Mapping[str, Any]
    ) -> SignalConfig:
        """Merge ``update`` into the configuration.

        Raises InvalidConfiguration and keeps the old values when the
        merged result does not validate.
        """
        with self._lock:
            try:
                if not isinstance(update, ConfigUpdate):
                    update = ConfigUpdate.model_validate(dict(update))
                merged = {**self._config.model_dump(), **update.model_dump(exclude_unset=True)}
                new_config = SignalConfig.model_validate(merged)
            except (ValidationError, TypeError, ValueError) as exc:
                self._record(EventKind.REJECTED, "Configuration update rejected")
                logger.warning("Rejected configuration update: %s", exc)
                errors = (
                    exc.errors(include_url=False, include_context=False)
                    if isinstance(exc, ValidationError) else []
                )
                raise InvalidConfiguration(str(exc), errors) from exc

            self._config = new_config
            self._persist(CONFIG_KEY, new_config.model_dump(mode="json"))
            self._retime()
            self._record(EventKind.CONFIG, "Configuration updated")
            self.save()
            return new_config

    # ------------------------------------------------------------------
    # Pedestrian overlay
    # ------------------------------------------------------------------

    def request_pedestrian(self) -> bool:
        with self._lock:
            if self._run_state == RunState.COMPLETE:
                return self._reject("Pedestrian request ignored - simulation complete",
                                    Input.PEDESTRIAN_REQUEST)
            if self._phase == Phase.PEDESTRIAN_WALK:
                return self._reject("Pedestrian request ignored - already in pedestrian phase",
                                    Input.PEDESTRIAN_REQUEST)
            if self._pedestrian_pending:
                return self._reject("Pedestrian request ignored - request already pending",
                                    Input.PEDESTRIAN_REQUEST)
            self._pedestrian_pending = True
            self._record(EventKind.REQUEST, "Pedestrian crossing requested",
                         Input.PEDESTRIAN_REQUEST)
            return True

    # ------------------------------------------------------------------
    # Emergency overlay
    # ------------------------------------------------------------------

    def activate_emergency(self, reason: Input = Input.EMERGENCY_OVERRIDE) -> bool:
        with self._lock:
            if self._run_state == RunState.COMPLETE:
                return self._reject("Emergency override ignored - simulation complete", reason)
            if self._emergency != EmergencyState.STANDBY:
                return self._reject("Emergency override ignored - episode in progress", reason)

            self._bank_phase_time()
            self._cancel_transition()
            self._phase_target = self._duration(self._phase)
            self._stats.record_emergency()
            self._set_emergency(EmergencyState.ACTIVATED, reason)
            self._arm_emergency(self._config.emergency_hold, self.begin_clearing)
            self._record(EventKind.EMERGENCY, "Emergency override activated", reason)
            return True

    def begin_clearing(self) -> bool:
        with self._lock:
            if self._emergency != EmergencyState.ACTIVATED:
                return self._reject("Emergency clearing ignored - override not active",
                                    Input.EMERGENCY_TIMEOUT)
            self._set_emergency(EmergencyState.CLEARING, Input.EMERGENCY_TIMEOUT)
            self._arm_emergency(self._config.emergency_clearing, self.cancel_emergency)
            self._record(EventKind.EMERGENCY, "Emergency clearing", Input.EMERGENCY_TIMEOUT)
            return True

    def cancel_emergency(self) -> bool:
        with self._lock:
            if self._emergency == EmergencyState.STANDBY:
                return self._reject("Emergency cancel ignored - no emergency in progress",
                                    Input.EMERGENCY_CLEARED)
            self._cancel_emergency_timer()
            self._set_emergency(EmergencyState.STANDBY, Input.EMERGENCY_CLEARED)
            if self._run_state == RunState.RUNNING:
                self._arm_transition()
            self._record(EventKind.EMERGENCY, "Emergency override cancelled",
                         Input.EMERGENCY_CLEARED)
            return True

    def force_red(self) -> bool:
        with self._lock:
            self._record(EventKind.CONTROL, "Force red command issued", Input.FORCE_RED)
            return self.activate_emergency(Input.FORCE_RED)

    def force_green(self) -> bool:
        with self._lock:
            self._record(EventKind.CONTROL, "Force green command issued", Input.FORCE_GREEN)
            return self.activate_emergency(Input.FORCE_GREEN)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _duration(self, phase: Phase) -> float:
        return phase_duration(self._config, phase, self._density)

    def _elapsed(self) -> float:
        elapsed = self._phase_elapsed
        if self._segment_start is not None:
            elapsed += (self._scheduler.now() - self._segment_start) * self._speed_factor
        return min(elapsed, self._phase_target)

    def _close_segment(self) -> None:
        self._phase_elapsed = self._elapsed()
        self._segment_start = None

    def _bank_phase_time(self) -> None:
        self._close_segment()
        self._stats.record_time(self._phase, self._phase_elapsed)
        self._phase_elapsed = 0.0

    def _arm_transition(self, duration: float | None = None) -> None:
        """Arm the phase timer; the full phase duration when ``duration`` is None."""
        self._cancel_transition()
        if duration is None:
            self._phase_target = self._duration(self._phase)
            self._phase_elapsed = 0.0
            duration = self._phase_target
        self._segment_start = self._scheduler.now()
        self._transition_seq = next(self._seq)
        self._transition_timer = self._scheduler.schedule(
            max(0.0, duration),
            self._speed_factor,
            partial(self._on_transition_timer, self._transition_seq),
        )

    def _cancel_transition(self) -> None:
        self._scheduler.cancel(self._transition_timer)
        self._transition_timer = None
        self._transition_seq = 0
        self._segment_start = None

    def _on_transition_timer(self, seq: int) -> None:
        with self._lock:
            if seq != self._transition_seq:
                return
            self.advance(Input.TIMER_EXPIRED)

    def _retime(self) -> None:
        """Apply a new phase duration without restarting the phase."""
        new_target = self._duration(self._phase)
        if self._transition_timer is None:
            self._phase_target = new_target
            return
        self._close_segment()
        self._cancel_transition()
        self._phase_target = max(new_target, self._phase_elapsed)
        self._arm_transition(self._phase_target - self._phase_elapsed)

    def _arm_emergency(self, duration: float, action: Callable[[], bool]) -> None:
        self._cancel_emergency_timer()
        self._emergency_seq = next(self._seq)
        self._emergency_timer = self._scheduler.schedule(
            duration,
            self._speed_factor,
            partial(self._on_emergency_timer, self._emergency_seq, action),
        )

    def _cancel_emergency_timer(self) -> None:
        self._scheduler.cancel(self._emergency_timer)
        self._emergency_timer = None
        self._emergency_seq = 0

    def _on_emergency_timer(self, seq: int, action: Callable[[], bool]) -> None:
        with self._lock:
            if seq != self._emergency_seq:
                return
            self._emergency_timer = None
            self._emergency_seq = 0
            action()

    def _emergency_remaining(self) -> float:
        if self._emergency_timer is None:
            return 0.0
        left = self._scheduler.remaining(self._emergency_timer)
        if self._emergency == EmergencyState.ACTIVATED:
            left += self._config.emergency_clearing
        return left

    def _cancel_all_timers(self) -> None:
        self._cancel_transition()
        self._cancel_emergency_timer()

    # ------------------------------------------------------------------
    # Notifications and log
    # ------------------------------------------------------------------

    def _set_run_state(self, state: RunState, reason: Input | None = None) -> None:
        if state == self._run_state:
            return
        self._run_state = state
        self._notify(NotificationKind.RUN_STATE_CHANGED, reason)

    def _set_emergency(self, state: EmergencyState, reason: Input) -> None:
        self._emergency = state
        self._notify(NotificationKind.EMERGENCY_CHANGED, reason)

    def _notify(
        self,
        kind: NotificationKind,
        reason: Input | None = None,
        entry: EventEntry | None = None,
    ) -> None:
        self._notifier.emit(Notification(
            kind=kind,
            phase=self._phase,
            emergency_state=self._emergency,
            timestamp=self._scheduler.timestamp(),
            reason=reason,
            entry=entry,
        ))

    def _record(self, kind: EventKind, message: str, reason: Input | None = None) -> EventEntry:
        entry = EventEntry(
            timestamp=self._scheduler.timestamp(),
            kind=kind,
            message=message,
            phase=self._phase,
            reason=reason,
        )
        self._log.append(entry)
        level = logging.DEBUG if kind == EventKind.TRANSITION else logging.INFO
        logger.log(level, message)
        self._notify(NotificationKind.LOG_APPENDED, reason, entry)
        return entry

    def _reject(self, message: str, reason: Input) -> bool:
        self._record(EventKind.REJECTED, message, reason)
        return False

    # ------------------------------------------------------------------
    # Persistence (best effort)
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Write the event log to the store.

        Called on pause, reset, completion and configuration changes, and
        by the service at shutdown.
        """
        with self._lock:
            self._persist(
                EVENT_LOG_KEY,
                [e.model_dump(mode="json") for e in self._log.entries(newest_first=False)],
            )

    def _persist(self, key: str, value: Any) -> None:
        if self._store is None:
            return
        try:
            self._store.put(key, value)
        except PersistenceFailure as exc:
            logger.warning("Failed to save %s: %s", key, exc)

    def _restore_config(self) -> tuple[SignalConfig, bool]:
        if self._store is None:
            return SignalConfig(), False
        try:
            raw = self._store.get(CONFIG_KEY)
        except PersistenceFailure as exc:
            logger.warning("Failed to load configuration, using defaults: %s", exc)
            return SignalConfig(), False
        if raw is None:
            return SignalConfig(), False
        try:
            return SignalConfig.model_validate(raw), True
        except ValidationError as exc:
            logger.warning("Stored configuration is invalid, using defaults: %s", exc)
            return SignalConfig(), False

    def _restore_event_log(self) -> None:
        if self._store is None:
            return
        try:
            raw = self._store.get(EVENT_LOG_KEY)
        except PersistenceFailure as exc:
            logger.warning("Failed to load event log: %s", exc)
            return
        if raw is None:
            return
        if not isinstance(raw, list):
            logger.warning("Stored event log is not a list, ignoring it")
            return
        try:
            entries = [EventEntry.model_validate(item) for item in raw]
        except ValidationError as exc:
            logger.warning("Stored event log is invalid, ignoring it: %s", exc)
            return
        self._log.extend(entries)
