from __future__ import annotations

import threading

from boilermate.core.config_loader import BridgeConfig
from boilermate.core.model import OPERATING_DATA, Function, Session
from boilermate.core.service import BoilerService
from boilermate.protocol.frame import ResponseFrame


class FakeConnection:
    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.session = Session(app_id="ABCDEFGHIJKL", controller_id="XYZUVW", serial="12345")
        self.closed = False
        self.writes: list[tuple[str, str]] = []

    def __enter__(self) -> FakeConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True

    def connect(self) -> Session:
        return self.session

    def get(self, function: Function | int, path: str) -> ResponseFrame:
        payloads = {
            Function.GET_SETUP: {"temp": 65},
            Function.GET_OPERATING_DATA: {"state": 14},
            Function.GET_ADVANCED_DATA: {"fan_speed": 0},
        }
        return ResponseFrame(
            app_id="A", controller_id="B", function=function, seq_no=0, payload=dict(payloads.get(function, {}))
        )

    def set(self, path: str, value: str) -> ResponseFrame:
        self.writes.append((path, value))
        return ResponseFrame(app_id="A", controller_id="B", function=Function.SET_SETUP, seq_no=1)


class RecordingPublisher:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.started_with: Session | None = None
        self.published: list[tuple[str, dict[str, object]]] = []
        self.stopped = False

    def start(self, session: Session, writer: object) -> None:
        self.started_with = session

    def publish(self, category: str, changes: dict[str, object]) -> None:
        with self.lock:
            self.published.append((category, dict(changes)))

    def stop(self) -> None:
        self.stopped = True


def _service(connections: list[FakeConnection], **config) -> BoilerService:
    def factory(cfg: BridgeConfig) -> FakeConnection:
        connection = FakeConnection(cfg)
        connections.append(connection)
        return connection

    return BoilerService(BridgeConfig(**config), connection_factory=factory)


def test_discover_returns_session_copy_and_closes() -> None:
    connections: list[FakeConnection] = []
    session = _service(connections).discover()

    assert session.serial == "12345"
    assert session is not connections[0].session
    assert connections[0].closed


def test_get_and_set_use_fresh_connection() -> None:
    connections: list[FakeConnection] = []
    service = _service(connections)

    assert service.get("boiler.*").payload == {"temp": 65}
    service.set("boiler.temp", "70")

    assert len(connections) == 2
    assert connections[1].writes == [("boiler.temp", "70")]
    assert all(connection.closed for connection in connections)


def test_run_publishes_until_stopped() -> None:
    connections: list[FakeConnection] = []
    service = _service(connections, categories=("boiler",))
    publisher = RecordingPublisher()
    stop_event = threading.Event()

    service.run(publisher, stop_event=stop_event, on_ready=stop_event.set)

    assert publisher.started_with is connections[0].session
    assert publisher.stopped
    assert connections[0].closed
    assert ("boiler", {"temp": 65}) in publisher.published
    assert (
        OPERATING_DATA,
        {"state": 14, "state_text": "Off", "state_on": "OFF"},
    ) in publisher.published
