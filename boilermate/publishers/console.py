"""Publisher that prints change sets as JSON lines."""

from __future__ import annotations

import json
import sys
import threading
from collections.abc import Mapping
from typing import TextIO

from boilermate.core.model import Session
from boilermate.protocol.payload import Value, to_json


def render_change_set(category: str, changes: Mapping[str, Value]) -> str:
    values = ",".join(f"{json.dumps(key)}:{to_json(value)}" for key, value in changes.items())
    return f'{{"category":{json.dumps(category)},"values":{{{values}}}}}'


class ConsolePublisher:
    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout
        self._lock = threading.Lock()

    def start(self, session: Session, writer: object = None) -> None:
        pass

    def publish(self, category: str, changes: Mapping[str, Value]) -> None:
        if not changes:
            return
        line = render_change_set(category, changes)
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()

    def stop(self) -> None:
        pass
