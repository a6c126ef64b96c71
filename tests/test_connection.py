from __future__ import annotations

import base64
import logging
import socket
import threading

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from boilermate.core.connection import DISCOVERY_PAYLOAD, ControllerConnection
from boilermate.core.errors import (
    DiscoveryError,
    EncryptionError,
    TransportSendError,
    TransportTimeoutError,
)
from boilermate.core.model import ControllerURI, Function, RSAPublicKey
from boilermate.protocol.crypto import BLOCK_SIZE
from boilermate.protocol.frame import (
    ENCRYPTED_MARKER,
    ResponseFrame,
    decode_request,
    encode_response,
)
from boilermate.protocol.payload import RoundedFloat


class FakeTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[bytes] = []

    def open(self) -> None:
        pass

    def send(self, data: bytes) -> None:
        if self.fail:
            raise TransportSendError("network unreachable")
        self.sent.append(data)

    def receive(self) -> bytes | None:
        return None

    def close(self) -> None:
        pass


def _connection(transport: FakeTransport, **kwargs) -> ControllerConnection:
    return ControllerConnection(ControllerURI(host="127.0.0.1"), transport=transport, **kwargs)


def _response(seq_no: int, **payload) -> ResponseFrame:
    return ResponseFrame(
        app_id="A", controller_id="B", function=Function.GET_SETUP, seq_no=seq_no, payload=payload
    )


def test_session_ids_are_random_uppercase() -> None:
    connection = _connection(FakeTransport())
    assert len(connection.session.app_id) == 12
    assert len(connection.session.controller_id) == 6
    assert connection.session.app_id.isalpha() and connection.session.app_id.isupper()


def test_sequence_numbers_wrap_after_99() -> None:
    connection = _connection(FakeTransport())
    issued = [connection.next_seq() for _ in range(102)]
    assert issued[:100] == list(range(100))
    assert issued[100:] == [0, 1]


def test_timeout_leaves_no_pending_entry() -> None:
    connection = _connection(FakeTransport(), timeout_s=0.05)

    with pytest.raises(TransportTimeoutError):
        connection.get(Function.GET_SETUP, "boiler.*")

    assert len(connection.pending) == 0


def test_send_failure_leaves_no_pending_entry() -> None:
    connection = _connection(FakeTransport(fail=True))

    with pytest.raises(TransportSendError):
        connection.get_async(Function.GET_SETUP, "boiler.*", lambda response: None)

    assert len(connection.pending) == 0


def test_write_without_public_key_is_refused() -> None:
    transport = FakeTransport()
    connection = _connection(transport)

    with pytest.raises(EncryptionError):
        connection.set("boiler.temp", "70")

    assert transport.sent == []
    assert len(connection.pending) == 0


def test_dispatch_delivers_once_and_clears_slot(caplog: pytest.LogCaptureFixture) -> None:
    connection = _connection(FakeTransport())
    received: list[ResponseFrame] = []
    seq_no = connection.get_async(Function.GET_SETUP, "boiler.*", received.append)
    assert seq_no in connection.pending

    caplog.set_level(logging.INFO)
    connection.dispatch(_response(seq_no, temp=65))
    connection.dispatch(_response(seq_no, temp=66))

    assert [r.payload for r in received] == [{"temp": 65}]
    assert seq_no not in connection.pending
    assert f"sequence {seq_no} has no callback" in caplog.text


def test_dispatch_out_of_order() -> None:
    connection = _connection(FakeTransport())
    received: dict[str, int] = {}
    first = connection.get_async(Function.GET_SETUP, "boiler.*", lambda r: received.setdefault("first", r.seq_no))
    second = connection.get_async(Function.GET_SETUP, "fan.*", lambda r: received.setdefault("second", r.seq_no))

    connection.dispatch(_response(second))
    connection.dispatch(_response(first))

    assert received == {"first": first, "second": second}


def test_dispatch_ignores_protocol_errors(caplog: pytest.LogCaptureFixture) -> None:
    connection = _connection(FakeTransport())
    received: list[ResponseFrame] = []
    connection.get_async(Function.GET_SETUP, "boiler.*", received.append)

    connection.dispatch(
        ResponseFrame(app_id="A", controller_id="B", function=Function.UNKNOWN, seq_no=-1, payload={"error": "bad"})
    )

    assert received == []
    assert len(connection.pending) == 1
    assert "protocol error: bad" in caplog.text


def test_dispatch_logs_callback_failures(caplog: pytest.LogCaptureFixture) -> None:
    connection = _connection(FakeTransport())

    def explode(response: ResponseFrame) -> None:
        raise RuntimeError("boom")

    seq_no = connection.get_async(Function.GET_SETUP, "boiler.*", explode)
    connection.dispatch(_response(seq_no))

    assert f"callback for sequence {seq_no} failed" in caplog.text


def test_sequence_collision_replaces_callback(caplog: pytest.LogCaptureFixture) -> None:
    connection = _connection(FakeTransport())
    connection.session.seq_no = 5
    connection.get_async(Function.GET_SETUP, "boiler.*", lambda r: None)
    connection.session.seq_no = 5
    connection.get_async(Function.GET_SETUP, "fan.*", lambda r: None)

    assert len(connection.pending) == 1
    assert "sequence 5 is still pending" in caplog.text


class FakeController:
    """Minimal NBE controller answering on a localhost UDP socket."""

    def __init__(self, private_key: rsa.RSAPrivateKey, *, serial: str = "12345") -> None:
        self.private_key = private_key
        self.serial = serial
        self.writes: list[tuple[bytes, str]] = []
        self.settings = {"temp": "65", "hysteresis": "2.5", "mode": "auto"}
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.bind(("127.0.0.1", 0))
        self.socket.settimeout(0.1)
        self.port = self.socket.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def __enter__(self) -> FakeController:
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join(timeout=2.0)
        self.socket.close()

    def _public_key_b64(self) -> str:
        der = self.private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return base64.b64encode(der).decode()

    def _plaintext(self, data: bytes) -> bytes:
        if data[18:19] != ENCRYPTED_MARKER:
            return data
        numbers = self.private_key.private_numbers()
        block = pow(int.from_bytes(data[19:], "big"), numbers.d, numbers.public_numbers.n)
        return data[:18] + b" " + block.to_bytes(BLOCK_SIZE, "big")

    def _answer(self, function: int, payload: bytes, pin_code: str) -> dict[str, object]:
        if function == Function.DISCOVERY and payload == DISCOVERY_PAYLOAD:
            return {"serial": self.serial}
        if function == Function.GET_SETUP and payload == b"misc.rsa_key":
            return {"rsa_key": self._public_key_b64()}
        if function == Function.GET_SETUP and payload == b"boiler.*":
            return dict(self.settings)
        if function == Function.SET_SETUP:
            self.writes.append((payload, pin_code))
            return {}
        return {}

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                data, address = self.socket.recvfrom(1024)
            except socket.timeout:
                continue
            request = decode_request(self._plaintext(data))
            response = ResponseFrame(
                app_id=request.app_id,
                controller_id=request.controller_id,
                function=request.function,
                seq_no=request.seq_no,
                payload=self._answer(int(request.function), request.payload, request.pin_code),
            )
            self.socket.sendto(encode_response(response), address)


@pytest.fixture(scope="module")
def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


def test_connect_get_and_set_against_fake_controller(private_key: rsa.RSAPrivateKey) -> None:
    with FakeController(private_key) as controller:
        uri = ControllerURI(host="127.0.0.1", port=controller.port, serial="00000", pin_code="1234")
        with ControllerConnection(uri) as connection:
            session = connection.connect()

            assert session.serial == "12345"
            numbers = private_key.public_key().public_numbers()
            assert session.rsa_key == RSAPublicKey(n=numbers.n, e=numbers.e)

            response = connection.get(Function.GET_SETUP, "boiler.*")
            assert response.payload == {"temp": 65, "hysteresis": RoundedFloat(2.5), "mode": "auto"}

            connection.set("boiler.temp", "70")
            assert controller.writes == [(b"boiler.temp=70", "1234")]
            assert len(connection.pending) == 0

        assert not connection.running


def test_connect_without_controller_raises_discovery_error() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    try:
        connection = ControllerConnection(ControllerURI(host="127.0.0.1", port=port), timeout_s=0.2)
        with pytest.raises(DiscoveryError):
            connection.connect()
        assert not connection.running
    finally:
        listener.close()
