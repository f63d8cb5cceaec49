# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
import json
import threading
from pathlib import Path
from .interface import Observer
from .events import BaseEvent

class JsonFileObserver(Observer):
    """Append-only JSON-lines audit log of every event in a run."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": event.__class__.__name__, **event.dict()})
        with self._lock, self.path.open("a") as f:
            f.write(line + "\n")
