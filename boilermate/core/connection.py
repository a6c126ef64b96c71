"""Controller session, request/response correlation, and discovery.

A ``ControllerConnection`` owns one UDP transport and two background threads:
the receive thread decodes datagrams and hands them to a bounded queue, and
the dispatch thread matches each response to the pending request with the
same sequence number. Sequence numbers cycle through 0..99, so at most 100
requests can be outstanding; a reused slot replaces the older callback.
"""

from __future__ import annotations

import logging
import queue
import secrets
import string
import threading
from collections.abc import Callable

from boilermate.core.errors import (
    DiscoveryError,
    EncryptionError,
    FrameDecodeError,
    TransportError,
    TransportTimeoutError,
)
from boilermate.core.model import SEQ_MODULO, ControllerURI, Function, RSAPublicKey, Session
from boilermate.protocol.crypto import load_public_key
from boilermate.protocol.frame import RequestFrame, ResponseFrame, decode_response, encode_request
from boilermate.transports.base import DatagramTransport
from boilermate.transports.udp import UDPTransport

APP_ID_LENGTH = 12
CONTROLLER_ID_LENGTH = 6
SEND_TIMEOUT_S = 3.0
DISPATCH_QUEUE_SIZE = 256
DISCOVERY_PAYLOAD = b"NBE Discovery"
RSA_KEY_PATH = "misc.rsa_key"
LOGGER = logging.getLogger(__name__)

ResponseCallback = Callable[[ResponseFrame], None]


def random_id(length: int) -> str:
    return "".join(secrets.choice(string.ascii_uppercase) for _ in range(length))


class PendingTable:
    """Fixed table of response callbacks indexed by sequence number."""

    def __init__(self, size: int = SEQ_MODULO) -> None:
        self.lock = threading.Lock()
        self._slots: list[ResponseCallback | None] = [None] * size

    def register(self, seq_no: int, callback: ResponseCallback) -> None:
        with self.lock:
            if self._slots[seq_no] is not None:
                LOGGER.warning("sequence %d is still pending; replacing its callback", seq_no)
            self._slots[seq_no] = callback

    def pop(self, seq_no: int) -> ResponseCallback | None:
        if not 0 <= seq_no < len(self._slots):
            return None
        with self.lock:
            callback = self._slots[seq_no]
            self._slots[seq_no] = None
        return callback

    def discard(self, seq_no: int, callback: ResponseCallback) -> bool:
        """Clear ``seq_no`` only if it still holds ``callback``."""
        with self.lock:
            if self._slots[seq_no] is callback:
                self._slots[seq_no] = None
                return True
        return False

    def __contains__(self, seq_no: int) -> bool:
        with self.lock:
            return 0 <= seq_no < len(self._slots) and self._slots[seq_no] is not None

    def __len__(self) -> int:
        with self.lock:
            return sum(1 for slot in self._slots if slot is not None)


class ControllerConnection:
    """Request/response engine for one controller.

    Usage::

        with ControllerConnection(ControllerURI.parse(uri)) as conn:
            conn.connect()
            response = conn.get(Function.GET_OPERATING_DATA, "*")
    """

    def __init__(
        self,
        uri: ControllerURI,
        *,
        transport: DatagramTransport | None = None,
        timeout_s: float = SEND_TIMEOUT_S,
        rsa_key: RSAPublicKey | None = None,
        queue_size: int = DISPATCH_QUEUE_SIZE,
    ) -> None:
        self.uri = uri
        self.timeout_s = timeout_s
        self.session = Session(
            app_id=random_id(APP_ID_LENGTH),
            controller_id=random_id(CONTROLLER_ID_LENGTH),
            serial=uri.serial,
            pin_code=uri.pin_code,
            rsa_key=rsa_key,
            ip_address=uri.host,
        )
        self.transport = transport or UDPTransport(uri.host, uri.port)
        self.pending = PendingTable()
        self._inbox: queue.Queue[ResponseFrame | None] = queue.Queue(maxsize=queue_size)
        self._threads: list[threading.Thread] = []
        self._running = False

    def __enter__(self) -> ControllerConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Open the transport and start the receive and dispatch threads."""
        if self._running:
            return
        self.transport.open()
        self._running = True
        self._threads = [
            threading.Thread(target=self._receive_loop, name="nbe-receive", daemon=True),
            threading.Thread(target=self._dispatch_loop, name="nbe-dispatch", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def connect(self) -> Session:
        """Start the engine and run discovery; closes again on failure."""
        self.start()
        try:
            self.discover()
        except Exception:
            self.close()
            raise
        LOGGER.info("Connected to controller at %s:%d (serial: %s)", self.uri.host, self.uri.port, self.session.serial)
        return self.session

    def close(self) -> None:
        if not self._running:
            return
        self._running = False
        self.transport.close()
        try:
            self._inbox.put_nowait(None)
        except queue.Full:
            pass
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=2.0)
        self._threads = []

    def _receive_loop(self) -> None:
        while self._running:
            try:
                data = self.transport.receive()
            except TransportError as exc:
                LOGGER.error("%s", exc)
                break
            if data is None:
                break
            try:
                response = decode_response(data)
            except FrameDecodeError as exc:
                LOGGER.error("failed to unpack response: %s", exc)
                continue
            LOGGER.debug("recv %d %s %s", response.seq_no, response.function, response.payload)
            try:
                self._inbox.put_nowait(response)
            except queue.Full:
                LOGGER.warning("dispatch queue full; dropping response for sequence %d", response.seq_no)

    def _dispatch_loop(self) -> None:
        while self._running:
            try:
                response = self._inbox.get(timeout=0.5)
            except queue.Empty:
                continue
            if response is None:
                break
            self.dispatch(response)

    def dispatch(self, response: ResponseFrame) -> None:
        """Deliver a decoded response to the callback waiting on its sequence number."""
        if response.is_protocol_error:
            LOGGER.error("protocol error: %s", response.payload.get("error"))
            return
        callback = self.pending.pop(response.seq_no)
        if callback is None:
            LOGGER.info("sequence %d has no callback", response.seq_no)
            return
        try:
            callback(response)
        except Exception:
            LOGGER.exception("callback for sequence %d failed", response.seq_no)

    def next_seq(self) -> int:
        with self.pending.lock:
            seq_no = self.session.seq_no
            self.session.seq_no = (seq_no + 1) % SEQ_MODULO
        return seq_no

    def request(self, function: Function | int, payload: bytes, *, authenticated: bool = False) -> RequestFrame:
        return RequestFrame(
            app_id=self.session.app_id,
            controller_id=self.session.controller_id,
            function=function,
            payload=payload,
            pin_code=self.session.pin_code if authenticated else "",
        )

    def send_async(
        self,
        request: RequestFrame,
        callback: ResponseCallback,
        *,
        encrypt: bool = False,
    ) -> int:
        """Send ``request`` and register ``callback`` for its response.

        Returns the sequence number used. Raises ``TransportSendError`` when the
        datagram cannot be written; no callback is left pending in that case.
        """
        rsa_key = None
        if encrypt:
            rsa_key = self.session.rsa_key
            if rsa_key is None:
                raise EncryptionError("Controller public key is not known; refusing to send a plaintext write")

        request.seq_no = self.next_seq()
        packet = encode_request(request, rsa_key)
        self.pending.register(request.seq_no, callback)
        LOGGER.debug("send %d %s %r", request.seq_no, request.function, request.payload)
        try:
            self.transport.send(packet)
        except TransportError:
            self.pending.discard(request.seq_no, callback)
            raise
        return request.seq_no

    def send(self, request: RequestFrame, *, encrypt: bool = False) -> ResponseFrame:
        """Send ``request`` and wait up to ``timeout_s`` for the correlated response."""
        slot: queue.Queue[ResponseFrame] = queue.Queue(maxsize=1)
        deliver = slot.put_nowait
        seq_no = self.send_async(request, deliver, encrypt=encrypt)
        try:
            return slot.get(timeout=self.timeout_s)
        except queue.Empty:
            self.pending.discard(seq_no, deliver)
            raise TransportTimeoutError(
                f"timeout waiting for response to sequence {seq_no} after {self.timeout_s:g}s"
            ) from None

    def get_async(self, function: Function | int, path: str, callback: ResponseCallback) -> int:
        return self.send_async(self.request(function, path.encode()), callback)

    def get(self, function: Function | int, path: str) -> ResponseFrame:
        return self.send(self.request(function, path.encode()))

    def _set_request(self, path: str, value: bytes | str) -> RequestFrame:
        if isinstance(value, str):
            value = value.encode()
        return self.request(Function.SET_SETUP, path.encode() + b"=" + value, authenticated=True)

    def set_async(self, path: str, value: bytes | str, callback: ResponseCallback) -> int:
        return self.send_async(self._set_request(path, value), callback, encrypt=True)

    def set(self, path: str, value: bytes | str) -> ResponseFrame:
        return self.send(self._set_request(path, value), encrypt=True)

    def discover(self) -> Session:
        """Learn the controller serial number and, if needed, its public key."""
        try:
            response = self.send(self.request(Function.DISCOVERY, DISCOVERY_PAYLOAD))
        except TransportTimeoutError as exc:
            raise DiscoveryError(
                f"Controller at {self.uri.host}:{self.uri.port} did not answer discovery: {exc}"
            ) from exc
        serial = response.payload.get("serial")
        if serial is None:
            raise DiscoveryError(f"Discovery response has no serial: {response.payload}")
        self.session.serial = str(serial)

        if self.session.rsa_key is None:
            self.session.rsa_key = self.fetch_rsa_key()
        return self.session

    def fetch_rsa_key(self) -> RSAPublicKey:
        try:
            response = self.get(Function.GET_SETUP, RSA_KEY_PATH)
        except TransportTimeoutError as exc:
            raise DiscoveryError(f"Controller did not return its public key: {exc}") from exc
        encoded = response.payload.get("rsa_key")
        if not isinstance(encoded, str):
            raise DiscoveryError(f"Controller returned no usable rsa_key: {response.payload}")
        try:
            return load_public_key(encoded)
        except EncryptionError as exc:
            raise DiscoveryError(str(exc)) from exc
