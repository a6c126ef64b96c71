from __future__ import annotations

import socket

import pytest

from boilermate.core.errors import TransportConnectError, TransportSendError
from boilermate.transports.udp import UDPTransport


@pytest.fixture
def controller_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


def test_datagrams_from_other_sources_are_ignored(controller_socket: socket.socket) -> None:
    transport = UDPTransport("127.0.0.1", controller_socket.getsockname()[1], poll_interval_s=0.05)
    transport.open()
    stranger = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        local_port = transport.local_address[1]
        transport.send(b"hello")
        data, client_address = controller_socket.recvfrom(1024)
        assert data == b"hello"

        stranger.sendto(b"spoofed", ("127.0.0.1", local_port))
        controller_socket.sendto(b"genuine", client_address)

        assert transport.receive() == b"genuine"
    finally:
        stranger.close()
        transport.close()


def test_receive_returns_none_after_close(controller_socket: socket.socket) -> None:
    transport = UDPTransport("127.0.0.1", controller_socket.getsockname()[1], poll_interval_s=0.05)
    transport.open()
    transport.close()
    assert transport.receive() is None


def test_send_before_open_fails() -> None:
    with pytest.raises(TransportSendError):
        UDPTransport("127.0.0.1", 8483).send(b"x")


def test_unresolvable_host(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(*args, **kwargs):
        raise socket.gaierror("Name or service not known")

    monkeypatch.setattr(socket, "getaddrinfo", fail)
    with pytest.raises(TransportConnectError):
        UDPTransport("boiler.invalid", 8483).open()
