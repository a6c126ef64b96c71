"""Core data models shared by the protocol engine, monitors, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from urllib.parse import unquote, urlsplit

from boilermate.core.errors import ConfigValidationError

DEFAULT_CONTROLLER_PORT = 8483
SEQ_MODULO = 100
IDLE_STATE = 14


class Function(IntEnum):
    """Controller function codes."""

    UNKNOWN = -1
    DISCOVERY = 0
    GET_SETUP = 1
    SET_SETUP = 2
    GET_SETUP_RANGE = 3
    GET_OPERATING_DATA = 4
    GET_ADVANCED_DATA = 5
    GET_CONSUMPTION_DATA = 6
    GET_CHART_DATA = 7
    GET_EVENT_LOG = 8
    GET_INFO = 9
    GET_AVAILABLE_PROGRAMS = 10


SETTING_CATEGORIES: tuple[str, ...] = (
    "boiler",
    "hot_water",
    "regulation",
    "weather",
    "weather2",
    "oxygen",
    "cleaning",
    "hopper",
    "fan",
    "auger",
    "ignition",
    "pump",
    "sun",
    "vacuum",
    "misc",
    "alarm",
    "manual",
)

OPERATING_DATA = "operating_data"
ADVANCED_DATA = "advanced_data"

POWER_STATES: dict[int, str] = {
    0: "Waiting",
    1: "Ignition 1",
    2: "Ignition 2",
    3: "Burning",
    4: "Power",
    5: "Stopping",
    6: "Safety stop",
    7: "Alarm",
    8: "Cleaning",
    9: "Pump test",
    10: "Backup",
    11: "Heat up",
    12: "Kindling",
    13: "Sleep",
    IDLE_STATE: "Off",
}


def power_state_text(code: int) -> str:
    return POWER_STATES.get(code, f"Unknown ({code})")


def coerce_function(code: int) -> Function | int:
    """Return the matching ``Function`` member, or the raw code for device-specific reads."""
    try:
        return Function(code)
    except ValueError:
        return code


@dataclass(frozen=True)
class ControllerURI:
    host: str
    port: int = DEFAULT_CONTROLLER_PORT
    serial: str = ""
    pin_code: str = ""

    @classmethod
    def parse(cls, uri: str) -> ControllerURI:
        """Parse ``tcp://<serial>:<pin>@<host>:<port>``."""
        try:
            parts = urlsplit(uri)
            port = parts.port
        except ValueError as exc:
            raise ConfigValidationError(f"Invalid controller URI '{uri}': {exc}") from exc
        if not parts.hostname:
            raise ConfigValidationError(f"Controller URI '{uri}' has no host")
        return cls(
            host=parts.hostname,
            port=port if port is not None else DEFAULT_CONTROLLER_PORT,
            serial=unquote(parts.username or ""),
            pin_code=unquote(parts.password or ""),
        )


@dataclass(frozen=True)
class RSAPublicKey:
    n: int
    e: int


@dataclass
class Session:
    """Identity of one controller connection.

    ``seq_no`` holds the next sequence number to issue.
    """

    app_id: str
    controller_id: str
    serial: str = ""
    pin_code: str = ""
    rsa_key: RSAPublicKey | None = None
    seq_no: int = 0
    ip_address: str = ""
