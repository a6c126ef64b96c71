"""UDP transport implementation using Python sockets."""

from __future__ import annotations

import logging
import socket

from boilermate.core.errors import TransportConnectError, TransportError, TransportSendError

RECV_BUFFER_SIZE = 1024
LOGGER = logging.getLogger(__name__)


class UDPTransport:
    """One UDP socket on an ephemeral port, talking to a single controller.

    Datagrams from any address other than the controller are discarded.
    """

    def __init__(self, host: str, port: int, *, poll_interval_s: float = 0.5) -> None:
        self.host = host
        self.port = port
        self.poll_interval_s = poll_interval_s
        self.remote_address: tuple[str, int] | None = None
        self._socket: socket.socket | None = None
        self._closed = False

    @property
    def local_address(self) -> tuple[str, int] | None:
        if self._socket is None:
            return None
        return self._socket.getsockname()

    def open(self) -> None:
        try:
            infos = socket.getaddrinfo(self.host, self.port, socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise TransportConnectError(f"Could not resolve controller host {self.host}: {exc}") from exc
        self.remote_address = infos[0][4][:2]

        try:
            udp_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise TransportConnectError(f"Could not create UDP socket: {exc}") from exc
        try:
            udp_socket.bind(("0.0.0.0", 0))
        except OSError as exc:
            udp_socket.close()
            raise TransportConnectError(f"Could not bind UDP socket: {exc}") from exc
        udp_socket.settimeout(self.poll_interval_s)
        self._socket = udp_socket
        self._closed = False
        LOGGER.debug("UDP socket bound to %s:%d", *udp_socket.getsockname())

    def send(self, data: bytes) -> None:
        if self._socket is None or self.remote_address is None:
            raise TransportSendError("UDP transport is not open")
        try:
            self._socket.sendto(data, self.remote_address)
        except OSError as exc:
            raise TransportSendError(f"UDP send to {self.host}:{self.port} failed: {exc}") from exc

    def receive(self) -> bytes | None:
        while not self._closed:
            udp_socket = self._socket
            if udp_socket is None:
                return None
            try:
                data, address = udp_socket.recvfrom(RECV_BUFFER_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closed:
                    return None
                raise TransportError(f"UDP receive failed: {exc}") from exc
            if address[:2] != self.remote_address:
                LOGGER.debug("Ignoring datagram from %s:%d", *address[:2])
                continue
            return data
        return None

    def close(self) -> None:
        self._closed = True
        if self._socket is not None:
            self._socket.close()
            self._socket = None
