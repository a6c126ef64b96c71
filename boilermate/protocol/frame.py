"""Request/response frame codec for the NBE UDP protocol.

Frame layout (request)::

    +--------+--------+-----+-----+------+-----+---------+-----------+------+-----+---------+-----+
    | AppID  | CtrlID | Enc | STX | Func | Seq | PinCode | Timestamp | extr | Len | Payload | EOT |
    | 12 B   | 6 B    | 1 B | 1 B | 2 B  | 2 B | 10 B    | 10 B      | 4 B  | 3 B | Len B   | 1 B |
    +--------+--------+-----+-----+------+-----+---------+-----------+------+-----+---------+-----+

Frame layout (response)::

    +--------+--------+-----+------+-----+--------+-----+---------+-----+
    | AppID  | CtrlID | STX | Func | Seq | Status | Len | Payload | EOT |
    | 12 B   | 6 B    | 1 B | 2 B  | 2 B | 1 B    | 3 B | Len B   | 1 B |
    +--------+--------+-----+------+-----+--------+-----+---------+-----+

- Numeric fields are zero-padded ASCII decimals.
- Enc: ``*`` when the body (STX..EOT) is RSA-encrypted, a space otherwise.
- Response payloads are ``key=value`` pairs separated by ``;``.
"""

from __future__ import annotations

import io
import re
import time
from dataclasses import dataclass, field

from boilermate.core.errors import FrameDecodeError, FrameEncodeError
from boilermate.core.model import Function, RSAPublicKey, coerce_function
from boilermate.protocol.crypto import encrypt_block
from boilermate.protocol.payload import Value, parse_payload, serialize_payload

APP_ID_SIZE = 12
CONTROLLER_ID_SIZE = 6
FUNCTION_SIZE = 2
SEQ_NO_SIZE = 2
STATUS_SIZE = 1
PIN_CODE_SIZE = 10
TIMESTAMP_SIZE = 10
PAYLOAD_LEN_SIZE = 3

START_MARKER = b"\x02"
END_MARKER = b"\x04"
EXTR_MARKER = b"extr"
ENCRYPTED_MARKER = b"*"
PLAIN_MARKER = b" "
DEFAULT_PIN_CODE = "0" * PIN_CODE_SIZE

_SIGNED_RE = re.compile(r"[+-]?[0-9]+")


@dataclass
class RequestFrame:
    """A request sent from the client to the controller."""

    app_id: str
    controller_id: str
    function: Function | int
    payload: bytes
    seq_no: int = 0
    pin_code: str = ""
    timestamp: int = 0

    def validate(self) -> None:
        if not self.app_id:
            raise FrameEncodeError("AppID is empty")
        if not self.controller_id:
            raise FrameEncodeError("ControllerID is empty")
        if not self.payload:
            raise FrameEncodeError("Payload is empty")

    def __repr__(self) -> str:
        return (
            f"RequestFrame(function={self.function!r}, seq_no={self.seq_no}, "
            f"payload={self.payload!r})"
        )


@dataclass
class ResponseFrame:
    """A response received from the controller."""

    app_id: str
    controller_id: str
    function: Function | int
    seq_no: int
    status: int = 0
    payload: dict[str, Value] = field(default_factory=dict)

    @property
    def is_protocol_error(self) -> bool:
        return self.seq_no == -1


def _ascii_field(value: str, size: int, name: str) -> bytes:
    try:
        return value.rjust(size)[:size].encode("ascii")
    except UnicodeEncodeError:
        raise FrameEncodeError(f"{name} must be ASCII") from None


def _ascii_int(value: int, size: int, name: str) -> bytes:
    formatted = f"{value:0{size}d}"
    if len(formatted) > size:
        raise FrameEncodeError(f"{name} value {value} too large for {size} digits")
    return formatted.encode("ascii")


def _encode_body(frame: RequestFrame) -> bytes:
    if frame.timestamp == 0:
        frame.timestamp = int(time.time())
    pin_code = _ascii_field(frame.pin_code, PIN_CODE_SIZE, "PinCode") if frame.pin_code else DEFAULT_PIN_CODE.encode()
    return b"".join(
        (
            START_MARKER,
            _ascii_int(int(frame.function), FUNCTION_SIZE, "Function"),
            _ascii_int(frame.seq_no, SEQ_NO_SIZE, "SeqNo"),
            pin_code,
            _ascii_int(frame.timestamp, TIMESTAMP_SIZE, "Timestamp"),
            EXTR_MARKER,
            _ascii_int(len(frame.payload), PAYLOAD_LEN_SIZE, "PayloadLen"),
            frame.payload,
            END_MARKER,
        )
    )


def encode_request(frame: RequestFrame, rsa_key: RSAPublicKey | None = None) -> bytes:
    """Serialize a request, encrypting the body when ``rsa_key`` is given.

    A zero timestamp is replaced with the current time on the frame itself.
    """
    frame.validate()
    header = _ascii_field(frame.app_id, APP_ID_SIZE, "AppID") + _ascii_field(
        frame.controller_id, CONTROLLER_ID_SIZE, "ControllerID"
    )
    body = _encode_body(frame)
    if rsa_key is not None:
        return header + ENCRYPTED_MARKER + encrypt_block(body, rsa_key)
    return header + PLAIN_MARKER + body


def encode_response(frame: ResponseFrame) -> bytes:
    """Serialize a response frame (used by controller simulators)."""
    text = serialize_payload(frame.payload).encode("ascii")
    return b"".join(
        (
            _ascii_field(frame.app_id, APP_ID_SIZE, "AppID"),
            _ascii_field(frame.controller_id, CONTROLLER_ID_SIZE, "ControllerID"),
            START_MARKER,
            _ascii_int(int(frame.function), FUNCTION_SIZE, "Function"),
            _ascii_int(frame.seq_no, SEQ_NO_SIZE, "SeqNo"),
            _ascii_int(frame.status, STATUS_SIZE, "Status"),
            _ascii_int(len(text), PAYLOAD_LEN_SIZE, "PayloadLen"),
            text,
            END_MARKER,
        )
    )


def _read(reader: io.BytesIO, size: int, name: str) -> bytes:
    data = reader.read(size)
    if len(data) != size:
        raise FrameDecodeError(f"failed to read {name}: expected {size} bytes, got {len(data)}")
    return data


def _read_text(reader: io.BytesIO, size: int, name: str) -> str:
    return _read(reader, size, name).decode("ascii", errors="replace")


def _parse_int(text: str, *, strip: bool = True) -> int | None:
    if strip:
        text = text.strip()
    if not _SIGNED_RE.fullmatch(text):
        return None
    return int(text)


def _expect_marker(reader: io.BytesIO, expected: bytes, name: str) -> None:
    marker = _read(reader, len(expected), name)
    if marker != expected:
        raise FrameDecodeError(f"invalid {name}: expected 0x{expected.hex()}, got 0x{marker.hex()}")


def decode_response(data: bytes) -> ResponseFrame:
    """Parse a datagram into a ``ResponseFrame``.

    Unparsable function codes become ``Function.UNKNOWN`` and unparsable
    sequence numbers become -1; both are reported upstream rather than
    failing the decode.
    """
    reader = io.BytesIO(data)
    app_id = _read_text(reader, APP_ID_SIZE, "AppID")
    controller_id = _read_text(reader, CONTROLLER_ID_SIZE, "ControllerID")
    _expect_marker(reader, START_MARKER, "start marker")

    function_code = _parse_int(_read_text(reader, FUNCTION_SIZE, "Function"))
    if function_code is None or not 0 <= function_code <= 127:
        function_code = Function.UNKNOWN
    function = coerce_function(function_code)

    seq_no = _parse_int(_read_text(reader, SEQ_NO_SIZE, "SeqNo"))
    if seq_no is None or not 0 <= seq_no <= 127:
        seq_no = -1

    status_text = _read_text(reader, STATUS_SIZE, "Status")
    status = _parse_int(status_text)
    if status is None or status < 0:
        raise FrameDecodeError(f"invalid status: {status_text!r}")

    length_text = _read_text(reader, PAYLOAD_LEN_SIZE, "payload length")
    length = _parse_int(length_text, strip=False)
    if length is None or length < 0:
        raise FrameDecodeError(f"invalid payload length: {length_text!r}")
    text = _read(reader, length, "payload").decode("utf-8", errors="replace")
    _expect_marker(reader, END_MARKER, "end marker")

    if function == Function.UNKNOWN:
        payload: dict[str, Value] = {"error": text}
    else:
        payload = parse_payload(text, ranged=function == Function.GET_SETUP_RANGE)

    return ResponseFrame(
        app_id=app_id.strip(),
        controller_id=controller_id.strip(),
        function=function,
        seq_no=seq_no,
        status=status,
        payload=payload,
    )


def decode_request(data: bytes) -> RequestFrame:
    """Parse a plaintext request datagram (controller side)."""
    reader = io.BytesIO(data)
    app_id = _read_text(reader, APP_ID_SIZE, "AppID")
    controller_id = _read_text(reader, CONTROLLER_ID_SIZE, "ControllerID")
    marker = _read(reader, 1, "encryption marker")
    if marker == ENCRYPTED_MARKER:
        raise FrameDecodeError("request body is encrypted")
    _expect_marker(reader, START_MARKER, "start marker")

    fields: dict[str, int] = {}
    for name, size in (("Function", FUNCTION_SIZE), ("SeqNo", SEQ_NO_SIZE)):
        text = _read_text(reader, size, name)
        value = _parse_int(text)
        if value is None:
            raise FrameDecodeError(f"failed to parse {name} as integer: {text!r}")
        fields[name] = value

    pin_code = _read_text(reader, PIN_CODE_SIZE, "PinCode")
    timestamp_text = _read_text(reader, TIMESTAMP_SIZE, "Timestamp")
    timestamp = _parse_int(timestamp_text)
    if timestamp is None:
        raise FrameDecodeError(f"failed to parse Timestamp as integer: {timestamp_text!r}")
    _expect_marker(reader, EXTR_MARKER, "extr marker")

    length_text = _read_text(reader, PAYLOAD_LEN_SIZE, "payload length")
    length = _parse_int(length_text, strip=False)
    if length is None or length < 0:
        raise FrameDecodeError(f"invalid payload length: {length_text!r}")
    payload = _read(reader, length, "payload")
    _expect_marker(reader, END_MARKER, "end marker")

    return RequestFrame(
        app_id=app_id.strip(),
        controller_id=controller_id.strip(),
        function=coerce_function(fields["Function"]),
        seq_no=fields["SeqNo"],
        pin_code="" if pin_code == DEFAULT_PIN_CODE else pin_code.strip(),
        timestamp=timestamp,
        payload=payload,
    )
