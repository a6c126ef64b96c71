"""Register payload values: type inference and ``key=value;`` serialization.

Values reported by the controller are untyped text. They are classified, in
order, as a 32-bit signed integer, a single-precision float, or plain text.
Floats are wrapped in :class:`RoundedFloat`, whose textual form and equality
are fixed at two decimal places.
"""

from __future__ import annotations

import json
import math
import re
import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Union

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


class RoundedFloat:
    """A float whose render and equality use two decimal places."""

    __slots__ = ("value",)

    def __init__(self, value: float) -> None:
        self.value = _to_float32(float(value))

    def __str__(self) -> str:
        return f"{self.value:.2f}"

    def __repr__(self) -> str:
        return f"RoundedFloat({self})"

    def __float__(self) -> float:
        return self.value

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RoundedFloat):
            return str(self) == str(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))


@dataclass(frozen=True)
class SetupRange:
    """Bounds reported by the setup-range function for one setting."""

    min: Value
    max: Value
    default: Value
    decimals: Value

    def __str__(self) -> str:
        return f"{self.min},{self.max},{self.default},{self.decimals}"


Value = Union[int, RoundedFloat, str, SetupRange]


def _to_float32(value: float) -> float:
    if math.isnan(value) or math.isinf(value):
        return value
    return struct.unpack(">f", struct.pack(">f", value))[0]


def _parse_float32(raw: str) -> float | None:
    if raw != raw.strip() or "_" in raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if math.isinf(value) and not raw.lstrip("+-").lower().startswith("inf"):
        return None
    try:
        return _to_float32(value)
    except OverflowError:
        return None


def parse_value(raw: str) -> Value:
    """Infer the typed value of a raw register string."""
    if _INT_RE.fullmatch(raw):
        number = int(raw)
        if _INT32_MIN <= number <= _INT32_MAX:
            return number
    parsed = _parse_float32(raw)
    if parsed is not None:
        return RoundedFloat(parsed)
    return raw


def parse_setup_range(raw: str) -> SetupRange | None:
    parts = raw.split(",")
    if len(parts) < 4:
        return None
    return SetupRange(
        min=parse_value(parts[0]),
        max=parse_value(parts[1]),
        default=parse_value(parts[2]),
        decimals=parse_value(parts[3]),
    )


def parse_payload(text: str, *, ranged: bool = False) -> dict[str, Value]:
    """Split ``key=value;...`` into a mapping with lower-cased keys.

    Parts without ``=`` are skipped. With ``ranged`` each value is read as a
    ``min,max,default,decimals`` tuple and incomplete tuples are dropped.
    """
    values: dict[str, Value] = {}
    for part in text.split(";"):
        key, sep, raw = part.partition("=")
        if not sep:
            continue
        key = key.lower()
        if ranged:
            setup_range = parse_setup_range(raw)
            if setup_range is not None:
                values[key] = setup_range
        else:
            values[key] = parse_value(raw)
    return values


def serialize_payload(values: Mapping[str, Value]) -> str:
    if not values:
        return ""
    return ";".join(f"{key}={value}" for key, value in values.items())


def to_json(value: Value) -> str:
    """Render a value as JSON, keeping rounded floats at two decimals."""
    if isinstance(value, RoundedFloat):
        if math.isnan(value.value) or math.isinf(value.value):
            return "null"
        return str(value)
    if isinstance(value, SetupRange):
        fields = ("min", "max", "default", "decimals")
        body = ",".join(f"{json.dumps(name)}:{to_json(getattr(value, name))}" for name in fields)
        return "{" + body + "}"
    return json.dumps(value)
