"""Change-set publisher interfaces."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Protocol

from boilermate.core.model import Session
from boilermate.protocol.frame import ResponseFrame
from boilermate.protocol.payload import Value


class Writer(Protocol):
    def set_async(self, path: str, value: bytes | str, callback: Callable[[ResponseFrame], None]) -> int:
        """Queue an authenticated write of ``path=value``."""


class Publisher(Protocol):
    def start(self, session: Session, writer: Writer) -> None:
        """Connect the sink; ``writer`` accepts inbound write requests."""

    def publish(self, category: str, changes: Mapping[str, Value]) -> None:
        """Emit one change set; empty sets may be ignored."""

    def stop(self) -> None:
        """Disconnect the sink."""
