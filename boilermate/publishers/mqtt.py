"""MQTT publisher for controller change sets.

Every changed key is published retained to ``<prefix>/<category>/<key>`` as a
JSON value. Messages on ``<prefix>/set/<category>/<param>`` are forwarded to
the controller as authenticated writes of ``<category>.<param>``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

import paho.mqtt.client as mqtt

from boilermate.core.errors import BoilerMateError, ConfigValidationError, PublishError
from boilermate.core.model import Session
from boilermate.protocol.frame import ResponseFrame
from boilermate.protocol.payload import Value, to_json
from boilermate.publishers.base import Writer

DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTTS_PORT = 8883
CONNECT_TIMEOUT_S = 3.0
KEEPALIVE_S = 60
SET_TOPIC = "set/+/+"
DEVICE_CATEGORY = "device"
POWER_SWITCH_KEY = "device.power_switch"
_PLAIN_SCHEMES = {"mqtt", "tcp"}
_TLS_SCHEMES = {"mqtts", "ssl"}
LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[str], mqtt.Client]


@dataclass(frozen=True)
class BrokerURI:
    host: str
    port: int = DEFAULT_MQTT_PORT
    username: str | None = None
    password: str | None = None
    tls: bool = False
    prefix: str = ""

    @classmethod
    def parse(cls, uri: str) -> BrokerURI:
        """Parse ``mqtt[s]://[user[:password]@]host[:port][/prefix]``."""
        try:
            parts = urlsplit(uri)
            port = parts.port
        except ValueError as exc:
            raise ConfigValidationError(f"Invalid MQTT URI '{uri}': {exc}") from exc
        scheme = parts.scheme.lower()
        if scheme not in _PLAIN_SCHEMES | _TLS_SCHEMES:
            raise ConfigValidationError(f"Unsupported MQTT URI scheme '{parts.scheme}' in '{uri}'")
        if not parts.hostname:
            raise ConfigValidationError(f"MQTT URI '{uri}' has no host")
        tls = scheme in _TLS_SCHEMES
        return cls(
            host=parts.hostname,
            port=port if port is not None else (DEFAULT_MQTTS_PORT if tls else DEFAULT_MQTT_PORT),
            username=unquote(parts.username) if parts.username else None,
            password=unquote(parts.password) if parts.password is not None else None,
            tls=tls,
            prefix=parts.path.strip("/"),
        )


def topic_prefix(broker: BrokerURI, serial: str) -> str:
    return broker.prefix or f"nbe/{serial}"


def parse_set_topic(topic: str) -> str:
    """``prefix/set/boiler/temp`` -> ``boiler.temp``."""
    parts = topic.split("/")
    if len(parts) < 2:
        return ""
    return f"{parts[-2]}.{parts[-1]}"


def translate_power_command(key: str, value: bytes) -> tuple[str, bytes]:
    if key != POWER_SWITCH_KEY:
        return key, value
    if value in (b"ON", b"1"):
        return "misc.start", b"1"
    return "misc.stop", b"1"


def _default_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)


class MQTTPublisher:
    def __init__(
        self,
        broker: BrokerURI,
        *,
        client_factory: ClientFactory | None = None,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
    ) -> None:
        self.broker = broker
        self.connect_timeout_s = connect_timeout_s
        self.prefix = broker.prefix
        self.client: mqtt.Client | None = None
        self._client_factory = client_factory or _default_client
        self._writer: Writer | None = None
        self._connected = threading.Event()
        self._connect_error: str | None = None

    @classmethod
    def from_url(cls, url: str, **kwargs: object) -> MQTTPublisher:
        return cls(BrokerURI.parse(url), **kwargs)

    def start(self, session: Session, writer: Writer) -> None:
        self.prefix = topic_prefix(self.broker, session.serial)
        self._writer = writer

        client = self._client_factory(f"nbemqtt-{session.serial}")
        client.enable_logger(LOGGER)
        if self.broker.username:
            client.username_pw_set(self.broker.username, self.broker.password)
        if self.broker.tls:
            client.tls_set()
        client.will_set(self._topic(DEVICE_CATEGORY, "status"), '"offline"', qos=0, retain=True)
        client.on_connect = self._on_connect
        client.on_message = self._on_message
        self.client = client

        try:
            client.connect(self.broker.host, self.broker.port, KEEPALIVE_S)
        except OSError as exc:
            raise PublishError(f"Could not connect to MQTT broker {self.broker.host}:{self.broker.port}: {exc}") from exc
        client.loop_start()

        if not self._connected.wait(self.connect_timeout_s) or self._connect_error:
            client.loop_stop()
            reason = self._connect_error or f"no CONNACK after {self.connect_timeout_s:g}s"
            raise PublishError(f"MQTT broker {self.broker.host}:{self.broker.port} refused connection: {reason}")

        LOGGER.info(
            "Connected to MQTT broker %s:%d (publishing on \"%s\")", self.broker.host, self.broker.port, self.prefix
        )
        self.publish(
            DEVICE_CATEGORY,
            {"status": "online", "serial": session.serial, "ip_address": session.ip_address},
        )

    def stop(self) -> None:
        client = self.client
        if client is None:
            return
        client.publish(self._topic(DEVICE_CATEGORY, "status"), '"offline"', qos=0, retain=True)
        client.loop_stop()
        client.disconnect()
        self.client = None
        self._connected.clear()

    def publish(self, category: str, changes: Mapping[str, Value]) -> None:
        client = self.client
        if client is None or not changes:
            return
        for key, value in changes.items():
            topic = self._topic(category, key)
            info = client.publish(topic, to_json(value), qos=0, retain=True)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                LOGGER.error("Publishing %s failed: %s", topic, mqtt.error_string(info.rc))

    def _topic(self, category: str, key: str) -> str:
        return f"{self.prefix}/{category}/{key}"

    def _on_connect(self, client: mqtt.Client, userdata: object, flags: object, reason_code, properties) -> None:
        if reason_code.is_failure:
            self._connect_error = str(reason_code)
            LOGGER.error("MQTT connection refused: %s", reason_code)
            self._connected.set()
            return
        self._connect_error = None
        client.subscribe(f"{self.prefix}/{SET_TOPIC}", qos=1)
        self._connected.set()

    def _on_message(self, client: mqtt.Client, userdata: object, message: mqtt.MQTTMessage) -> None:
        key = parse_set_topic(message.topic)
        if not key or self._writer is None:
            return
        key, value = translate_power_command(key, message.payload)

        def _log_result(response: ResponseFrame) -> None:
            LOGGER.info("Set %s to %s: %s", key, value.decode(errors="replace"), response.payload)

        try:
            self._writer.set_async(key, value, _log_result)
        except BoilerMateError as exc:
            LOGGER.error("Failed to set %s to %s: %s", key, value.decode(errors="replace"), exc)
