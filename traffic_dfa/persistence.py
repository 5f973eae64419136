"""Best-effort key/value store for configuration and the event log.

Each key is one JSON file in a directory.  The directory defaults to
``$TRAFFIC_DFA_STATE_DIR`` and falls back to ``~/.traffic_dfa``.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from .errors import PersistenceFailure

CONFIG_KEY = "config"
EVENT_LOG_KEY = "event_log"


def default_state_dir() -> Path:
    env = os.environ.get("TRAFFIC_DFA_STATE_DIR")
    if env:
        return Path(env)
    return Path.home() / ".traffic_dfa"


class StateStore:
    def __init__(self, directory: Path | str | None = None) -> None:
        self.directory = Path(directory) if directory is not None else default_state_dir()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Any | None:
        """Return the stored value, or None when nothing was stored."""
        path = self._path(key)
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(key, exc) from exc

    def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2)
                f.write("\n")
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(key, exc) from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceFailure(key, exc) from exc
