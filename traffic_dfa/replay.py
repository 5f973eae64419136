#!/usr/bin/env python3
"""Replay a JSON command script against a simulator on a fake clock.

Usage:
    python -m traffic_dfa.replay input.json output.json

Input:
    {
      "config":  {"ns_green": 5, "max_cycles": 2},      optional
      "density": "medium",                               optional
      "seed":    42,                                     optional, default 0
      "commands": [
        {"type": "play"},
        {"type": "wait", "seconds": 5},
        {"type": "pedestrian"},
        ...
      ]
    }

Every command produces one entry in "statuses" in the output, in order.
Command types: play, pause, reset, step, wait, pedestrian, emergency,
cancelEmergency, forceRed, forceGreen, speed (factor), density (density),
config (values).
"""

from __future__ import annotations

import json
import random
import sys
from typing import Any, Callable

from .errors import InvalidConfiguration
from .models import DensityRequest, SignalConfig, TrafficDensity
from .scheduler import ManualScheduler
from .simulator import IntersectionSimulator


class ReplayError(ValueError):
    """The script itself is malformed."""


def _density(value: Any) -> TrafficDensity:
    return DensityRequest(density=value).density


def _command_table(sim: IntersectionSimulator, clock: ManualScheduler) -> dict[str, Callable[[dict], bool]]:
    def wait(cmd: dict) -> bool:
        seconds = float(cmd.get("seconds", 0))
        if seconds < 0:
            raise ReplayError("wait needs a non-negative 'seconds'")
        clock.advance(seconds)
        return True

    def reset(cmd: dict) -> bool:
        sim.reset()
        return True

    def speed(cmd: dict) -> bool:
        sim.set_speed_factor(cmd["factor"])
        return True

    def density(cmd: dict) -> bool:
        sim.set_density(_density(cmd["density"]))
        return True

    def config(cmd: dict) -> bool:
        sim.update_configuration(cmd.get("values", {}))
        return True

    return {
        "play":            lambda cmd: sim.play(),
        "pause":           lambda cmd: sim.pause(),
        "reset":           reset,
        "step":            lambda cmd: sim.step(),
        "wait":            wait,
        "pedestrian":      lambda cmd: sim.request_pedestrian(),
        "emergency":       lambda cmd: sim.activate_emergency(),
        "cancelEmergency": lambda cmd: sim.cancel_emergency(),
        "forceRed":        lambda cmd: sim.force_red(),
        "forceGreen":      lambda cmd: sim.force_green(),
        "speed":           speed,
        "density":         density,
        "config":          config,
    }


def replay(data: dict) -> dict:
    """Run the script in ``data`` and return the output document."""
    clock = ManualScheduler()
    config = SignalConfig.model_validate(data.get("config", {}))
    sim = IntersectionSimulator(
        config,
        scheduler=clock,
        density=_density(data.get("density", TrafficDensity.MEDIUM)),
        rng=random.Random(data.get("seed", 0)),
    )
    table = _command_table(sim, clock)

    statuses = []
    for index, cmd in enumerate(data.get("commands", [])):
        kind = cmd.get("type")
        handler = table.get(kind)
        if handler is None:
            raise ReplayError(f"command {index}: unknown type {kind!r}")
        status: dict[str, Any] = {"type": kind}
        try:
            status["ok"] = bool(handler(cmd))
        except InvalidConfiguration as exc:
            status["ok"] = False
            status["error"] = str(exc)
        except KeyError as exc:
            raise ReplayError(f"command {index}: missing field {exc}") from None
        state = sim.snapshot()
        status.update(
            time=clock.now(),
            phase=state.phase_name,
            cycle=state.cycle,
            emergency=state.emergency_state.name,
            pedestrianPending=state.pedestrian_pending,
            runState=state.run_state.value,
        )
        statuses.append(status)

    return {
        "statuses": statuses,
        "statistics": sim.statistics().model_dump(mode="json"),
        "events": [e.format() for e in sim.event_log(newest_first=False)],
    }


def run(input_path: str, output_path: str) -> None:
    with open(input_path) as f:
        data = json.load(f)

    result = replay(data)

    with open(output_path, "w") as f:
        json.dump(result, f, indent=2)
        f.write("\n")


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 2:
        print("Usage: python -m traffic_dfa.replay input.json output.json", file=sys.stderr)
        return 1
    try:
        run(argv[0], argv[1])
    except (OSError, ValueError) as exc:
        print(f"Replay failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
