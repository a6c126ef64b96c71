"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol


class DatagramTransport(Protocol):
    def open(self) -> None:
        """Bind the local socket."""

    def send(self, data: bytes) -> None:
        """Write one datagram to the controller."""

    def receive(self) -> bytes | None:
        """Block for the next datagram from the controller, or None once closed."""

    def close(self) -> None:
        """Release the socket and unblock ``receive``."""
