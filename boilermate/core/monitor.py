"""Polling and change detection for controller register categories.

Each category runs in its own thread: read the category, compare the result
against that category's cache, and publish only the keys whose value changed.
Caches are private to their monitor thread and never shared.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from boilermate.core.errors import TransportError
from boilermate.core.model import (
    ADVANCED_DATA,
    IDLE_STATE,
    OPERATING_DATA,
    SETTING_CATEGORIES,
    Function,
    power_state_text,
)
from boilermate.protocol.frame import ResponseFrame
from boilermate.protocol.payload import Value

SETTINGS_INTERVAL_S = 10.0
DATA_INTERVAL_S = 5.0
LOGGER = logging.getLogger(__name__)

ChangeSet = dict[str, Value]
PublishCallback = Callable[[str, ChangeSet], None]


class Reader(Protocol):
    def get(self, function: Function | int, path: str) -> ResponseFrame:
        """Read one category synchronously."""


@dataclass(frozen=True)
class PollTarget:
    category: str
    function: Function
    path: str
    interval_s: float
    signals_ready: bool = True


def setting_target(category: str) -> PollTarget:
    return PollTarget(
        category=category,
        function=Function.GET_SETUP,
        path=f"{category}.*",
        interval_s=SETTINGS_INTERVAL_S,
    )


OPERATING_DATA_TARGET = PollTarget(
    category=OPERATING_DATA,
    function=Function.GET_OPERATING_DATA,
    path="*",
    interval_s=DATA_INTERVAL_S,
)

ADVANCED_DATA_TARGET = PollTarget(
    category=ADVANCED_DATA,
    function=Function.GET_ADVANCED_DATA,
    path="*",
    interval_s=DATA_INTERVAL_S,
    signals_ready=False,
)


def default_targets(categories: Iterable[str] = SETTING_CATEGORIES) -> list[PollTarget]:
    targets = [setting_target(category) for category in categories]
    targets.append(OPERATING_DATA_TARGET)
    targets.append(ADVANCED_DATA_TARGET)
    return targets


def compute_changes(cache: dict[str, Value], values: Mapping[str, Value]) -> ChangeSet:
    """Return the entries of ``values`` that differ from ``cache`` and update it."""
    changes: ChangeSet = {}
    for key, value in values.items():
        if key in cache and cache[key] == value:
            continue
        changes[key] = value
        cache[key] = value
    return changes


def add_state_fields(changes: ChangeSet) -> ChangeSet:
    state = changes.get("state")
    if isinstance(state, int) and not isinstance(state, bool):
        changes["state_text"] = power_state_text(state)
        changes["state_on"] = "OFF" if state == IDLE_STATE else "ON"
    return changes


class CategoryMonitor:
    """Polls one category and publishes its change sets."""

    def __init__(
        self,
        reader: Reader,
        target: PollTarget,
        publish: PublishCallback,
        *,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.reader = reader
        self.target = target
        self.publish = publish
        self.cache: dict[str, Value] = {}
        self.ready = threading.Event()
        self._stop = stop_event or threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def category(self) -> str:
        return self.target.category

    def handle_response(self, response: ResponseFrame) -> ChangeSet | None:
        if response.function == Function.UNKNOWN:
            LOGGER.warning("%s: controller reported an error: %s", self.category, response.payload.get("error"))
            return None

        changes = compute_changes(self.cache, response.payload)
        if self.category == OPERATING_DATA:
            add_state_fields(changes)

        try:
            self.publish(self.category, changes)
        except Exception:
            LOGGER.exception("%s: publishing %d changes failed", self.category, len(changes))
            return changes

        if changes and self.target.signals_ready and not self.ready.is_set():
            self.ready.set()
            LOGGER.debug("%s: first data published", self.category)
        return changes

    def poll_once(self) -> ChangeSet | None:
        try:
            response = self.reader.get(self.target.function, self.target.path)
        except TransportError as exc:
            LOGGER.warning("%s: poll failed: %s", self.category, exc)
            return None
        return self.handle_response(response)

    def run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.target.interval_s)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self.run, name=f"monitor-{self.category}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class MonitorGroup:
    """All category monitors for one controller, sharing a stop signal."""

    def __init__(
        self,
        reader: Reader,
        publish: PublishCallback,
        *,
        categories: Iterable[str] = SETTING_CATEGORIES,
    ) -> None:
        self._stop = threading.Event()
        self.monitors = [
            CategoryMonitor(reader, target, publish, stop_event=self._stop)
            for target in default_targets(categories)
        ]

    def __getitem__(self, category: str) -> CategoryMonitor:
        for monitor in self.monitors:
            if monitor.category == category:
                return monitor
        raise KeyError(category)

    def start(self) -> None:
        for monitor in self.monitors:
            monitor.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        for monitor in self.monitors:
            monitor.join(timeout)

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until every ready-signalling category has published data."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for monitor in self.monitors:
            if not monitor.target.signals_ready:
                continue
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not monitor.ready.wait(remaining):
                return False
        return True