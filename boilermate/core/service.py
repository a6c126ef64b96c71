"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace

from boilermate.core.config_loader import BridgeConfig, load_config
from boilermate.core.connection import ControllerConnection
from boilermate.core.model import Function, Session
from boilermate.core.monitor import MonitorGroup
from boilermate.protocol.frame import ResponseFrame
from boilermate.publishers.base import Publisher

MONITOR_JOIN_TIMEOUT_S = 5.0
LOGGER = logging.getLogger(__name__)

ConnectionFactory = Callable[[BridgeConfig], ControllerConnection]


def _default_connection(config: BridgeConfig) -> ControllerConnection:
    return ControllerConnection(config.controller, timeout_s=config.timeout_s)


class BoilerService:
    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.config = config or load_config()
        self._connection_factory = connection_factory or _default_connection

    def open(self) -> ControllerConnection:
        """Return a connected controller session; the caller closes it."""
        connection = self._connection_factory(self.config)
        connection.connect()
        return connection

    def discover(self) -> Session:
        with self.open() as connection:
            return replace(connection.session)

    def get(self, path: str, function: Function | int = Function.GET_SETUP) -> ResponseFrame:
        with self.open() as connection:
            return connection.get(function, path)

    def set(self, path: str, value: str) -> ResponseFrame:
        with self.open() as connection:
            return connection.set(path, value)

    def run(
        self,
        publisher: Publisher,
        *,
        stop_event: threading.Event | None = None,
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        """Poll every category and feed change sets to ``publisher`` until stopped."""
        stop_event = stop_event or threading.Event()
        with self.open() as connection:
            publisher.start(connection.session, connection)
            group = MonitorGroup(connection, publisher.publish, categories=self.config.categories)
            try:
                group.start()
                threading.Thread(
                    target=_signal_ready,
                    args=(group, stop_event, on_ready),
                    name="monitor-ready",
                    daemon=True,
                ).start()
                while not stop_event.wait(1.0):
                    pass
            finally:
                group.stop()
                group.join(MONITOR_JOIN_TIMEOUT_S)
                publisher.stop()


def _signal_ready(
    group: MonitorGroup,
    stop_event: threading.Event,
    on_ready: Callable[[], None] | None,
) -> None:
    while not stop_event.is_set():
        if group.wait_ready(1.0):
            LOGGER.info("Initial values published for all categories")
            if on_ready is not None:
                on_ready()
            return
