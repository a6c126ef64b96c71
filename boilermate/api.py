"""Stable public API for building tooling on top of boilermate.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

from boilermate.core.config_loader import BridgeConfig, load_config
from boilermate.core.connection import ControllerConnection
from boilermate.core.errors import (
    BoilerMateError,
    ConfigLoadError,
    ConfigValidationError,
    DiscoveryError,
    EncryptionError,
    FrameDecodeError,
    FrameEncodeError,
    FrameError,
    PublishError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from boilermate.core.model import (
    SETTING_CATEGORIES,
    ControllerURI,
    Function,
    RSAPublicKey,
    Session,
)
from boilermate.core.monitor import ChangeSet, MonitorGroup
from boilermate.core.service import BoilerService
from boilermate.protocol.frame import ResponseFrame
from boilermate.protocol.payload import RoundedFloat, SetupRange, Value
from boilermate.publishers.base import Publisher
from boilermate.publishers.console import ConsolePublisher
from boilermate.publishers.mqtt import BrokerURI, MQTTPublisher

__all__ = [
    "BoilerMateError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DiscoveryError",
    "EncryptionError",
    "FrameError",
    "FrameDecodeError",
    "FrameEncodeError",
    "PublishError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "SETTING_CATEGORIES",
    "BridgeConfig",
    "BrokerURI",
    "ChangeSet",
    "ControllerConnection",
    "ControllerURI",
    "Function",
    "MonitorGroup",
    "Publisher",
    "ConsolePublisher",
    "MQTTPublisher",
    "ResponseFrame",
    "RoundedFloat",
    "RSAPublicKey",
    "Session",
    "SetupRange",
    "Value",
    "Client",
]


class Client:
    """Public client for talking to one NBE controller.

    A `Client` wraps configuration loading, discovery and the read/write
    round trips behind a stable API intended for third-party tools
    (dashboards/services/scripts).
    """

    def __init__(
        self,
        controller: str | None = None,
        *,
        config_path: Path | None = None,
        config: BridgeConfig | None = None,
    ) -> None:
        if config is None:
            config = load_config(config_path, overrides={"controller": controller})
        self._service = BoilerService(config)

    @property
    def config(self) -> BridgeConfig:
        return self._service.config

    def connect(self) -> ControllerConnection:
        """Open a long-lived connection; the caller must close it."""
        return self._service.open()

    def discover(self) -> Session:
        return self._service.discover()

    def get(self, path: str, function: Function | int = Function.GET_SETUP) -> dict[str, Value]:
        return dict(self._service.get(path, function).payload)

    def set(self, path: str, value: str) -> ResponseFrame:
        return self._service.set(path, value)

    def run(
        self,
        publisher: Publisher,
        *,
        stop_event: threading.Event | None = None,
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        self._service.run(publisher, stop_event=stop_event, on_ready=on_ready)
