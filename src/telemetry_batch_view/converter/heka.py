"""
Decoder for Heka-framed telemetry blobs.

Each blob is a concatenation of frames::

    0x1E | header length (1 byte) | Header | 0x1F | Message

`Header` and `Message` are protobuf messages; only the fields the converter
needs are decoded, everything else is skipped by wire type. Decoding is lazy
and stops at the first corrupt or truncated frame of a blob, keeping the
frames already yielded.
"""

from __future__ import annotations
import logging
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = 0x1E
UNIT_SEPARATOR = 0x1F

# Largest message body a frame may declare; anything bigger is corrupt
MAX_MESSAGE_SIZE = 8 * 1024 * 1024
_READ_CHUNK = 64 * 1024

# Field.ValueType
VALUE_STRING = 0
VALUE_BYTES = 1
VALUE_INTEGER = 2
VALUE_DOUBLE = 3
VALUE_BOOL = 4

# protobuf wire types
_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH = 2
_WIRE_FIXED32 = 5

FieldValue = Union[str, bytes, int, float, bool]
Ping = Dict[str, FieldValue]


class HekaFrameError(ValueError):
    """Raised when a frame cannot be decoded."""


class FieldTypeError(TypeError):
    """Raised when a ping field is missing or not of the expected type."""


@dataclass(frozen=True)
class HekaField:
    name: str
    value_type: int = VALUE_STRING
    representation: str = ""
    value_string: Tuple[str, ...] = ()
    value_bytes: Tuple[bytes, ...] = ()
    value_integer: Tuple[int, ...] = ()
    value_double: Tuple[float, ...] = ()
    value_bool: Tuple[bool, ...] = ()

    @property
    def value(self) -> Optional[FieldValue]:
        """First value of the declared type, or None when the field is empty."""
        values = {
            VALUE_STRING: self.value_string,
            VALUE_BYTES: self.value_bytes,
            VALUE_INTEGER: self.value_integer,
            VALUE_DOUBLE: self.value_double,
            VALUE_BOOL: self.value_bool,
        }.get(self.value_type, ())
        return values[0] if values else None


@dataclass(frozen=True)
class HekaMessage:
    uuid: bytes = b""
    timestamp: int = 0
    type: str = ""
    logger: str = ""
    severity: int = 7
    payload: str = ""
    env_version: str = ""
    pid: int = 0
    hostname: str = ""
    fields: Tuple[HekaField, ...] = field(default_factory=tuple)


# ── protobuf wire decoding ─────────────────────────────────────────────────────


class _ProtoReader:
    """Cursor over one serialized protobuf message."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def varint(self) -> int:
        result = 0
        shift = 0
        while True:
            if self.pos >= len(self.data):
                raise HekaFrameError("truncated varint")
            byte = self.data[self.pos]
            self.pos += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift >= 70:
                raise HekaFrameError("varint too long")

    def signed_varint(self) -> int:
        value = self.varint() & 0xFFFFFFFFFFFFFFFF
        return value - (1 << 64) if value >= (1 << 63) else value

    def take(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise HekaFrameError("truncated field")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def length_delimited(self) -> bytes:
        return self.take(self.varint())

    def tag(self) -> Tuple[int, int]:
        key = self.varint()
        return key >> 3, key & 0x07

    def skip(self, wire_type: int) -> None:
        if wire_type == _WIRE_VARINT:
            self.varint()
        elif wire_type == _WIRE_FIXED64:
            self.take(8)
        elif wire_type == _WIRE_LENGTH:
            self.length_delimited()
        elif wire_type == _WIRE_FIXED32:
            self.take(4)
        else:
            raise HekaFrameError(f"unsupported wire type {wire_type}")


def _text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise HekaFrameError(f"invalid UTF-8 string: {e}") from e


def _packed(reader: _ProtoReader, wire_type: int, scalar) -> List:
    """Read one value, or a packed run of values, of a repeated scalar field."""
    if wire_type != _WIRE_LENGTH:
        return [scalar(reader, wire_type)]
    inner = _ProtoReader(reader.length_delimited())
    values = []
    while not inner.at_end():
        values.append(scalar(inner, None))
    return values


def _int64(reader: _ProtoReader, wire_type: Optional[int]) -> int:
    if wire_type not in (None, _WIRE_VARINT):
        raise HekaFrameError("integer field with wrong wire type")
    return reader.signed_varint()


def _double(reader: _ProtoReader, wire_type: Optional[int]) -> float:
    if wire_type not in (None, _WIRE_FIXED64):
        raise HekaFrameError("double field with wrong wire type")
    return struct.unpack("<d", reader.take(8))[0]


def _bool(reader: _ProtoReader, wire_type: Optional[int]) -> bool:
    if wire_type not in (None, _WIRE_VARINT):
        raise HekaFrameError("bool field with wrong wire type")
    return reader.varint() != 0


def _parse_field(data: bytes) -> HekaField:
    reader = _ProtoReader(data)
    name = ""
    value_type = VALUE_STRING
    representation = ""
    strings: List[str] = []
    blobs: List[bytes] = []
    integers: List[int] = []
    doubles: List[float] = []
    bools: List[bool] = []
    while not reader.at_end():
        number, wire_type = reader.tag()
        if number == 1 and wire_type == _WIRE_LENGTH:
            name = _text(reader.length_delimited())
        elif number == 2 and wire_type == _WIRE_VARINT:
            value_type = reader.varint()
        elif number == 3 and wire_type == _WIRE_LENGTH:
            representation = _text(reader.length_delimited())
        elif number == 4 and wire_type == _WIRE_LENGTH:
            strings.append(_text(reader.length_delimited()))
        elif number == 5 and wire_type == _WIRE_LENGTH:
            blobs.append(reader.length_delimited())
        elif number == 6:
            integers.extend(_packed(reader, wire_type, _int64))
        elif number == 7:
            doubles.extend(_packed(reader, wire_type, _double))
        elif number == 8:
            bools.extend(_packed(reader, wire_type, _bool))
        else:
            reader.skip(wire_type)
    return HekaField(
        name=name,
        value_type=value_type,
        representation=representation,
        value_string=tuple(strings),
        value_bytes=tuple(blobs),
        value_integer=tuple(integers),
        value_double=tuple(doubles),
        value_bool=tuple(bools),
    )


def parse_message(data: bytes) -> HekaMessage:
    """Decode one serialized Heka `Message`."""
    reader = _ProtoReader(data)
    attrs: Dict[str, object] = {}
    fields: List[HekaField] = []
    while not reader.at_end():
        number, wire_type = reader.tag()
        if number == 1 and wire_type == _WIRE_LENGTH:
            attrs["uuid"] = reader.length_delimited()
        elif number == 2 and wire_type == _WIRE_VARINT:
            attrs["timestamp"] = reader.signed_varint()
        elif number in (3, 4, 6, 7, 9) and wire_type == _WIRE_LENGTH:
            attr = {3: "type", 4: "logger", 6: "payload", 7: "env_version", 9: "hostname"}[number]
            attrs[attr] = _text(reader.length_delimited())
        elif number in (5, 8) and wire_type == _WIRE_VARINT:
            attrs["severity" if number == 5 else "pid"] = reader.signed_varint()
        elif number == 10 and wire_type == _WIRE_LENGTH:
            fields.append(_parse_field(reader.length_delimited()))
        else:
            reader.skip(wire_type)
    return HekaMessage(fields=tuple(fields), **attrs)  # type: ignore[arg-type]


def _parse_header(data: bytes) -> int:
    reader = _ProtoReader(data)
    message_length = None
    while not reader.at_end():
        number, wire_type = reader.tag()
        if number == 1 and wire_type == _WIRE_VARINT:
            message_length = reader.varint()
        else:
            reader.skip(wire_type)
    if message_length is None:
        raise HekaFrameError("header without message_length")
    return message_length


# ── framing ────────────────────────────────────────────────────────────────────


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = stream.read(min(remaining, _READ_CHUNK))
        if not chunk:
            raise HekaFrameError(f"unexpected end of blob ({n - remaining}/{n} bytes)")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_frame(stream: BinaryIO, first: bytes) -> HekaMessage:
    if first[0] != RECORD_SEPARATOR:
        raise HekaFrameError(f"expected record separator, got 0x{first[0]:02x}")
    header_length = _read_exact(stream, 1)[0]
    message_length = _parse_header(_read_exact(stream, header_length))
    if message_length > MAX_MESSAGE_SIZE:
        raise HekaFrameError(
            f"message_length {message_length} exceeds the {MAX_MESSAGE_SIZE} byte limit"
        )
    unit = _read_exact(stream, 1)[0]
    if unit != UNIT_SEPARATOR:
        raise HekaFrameError(f"expected unit separator, got 0x{unit:02x}")
    return parse_message(_read_exact(stream, message_length))


def parse_frames(stream: BinaryIO, key: str) -> Iterator[HekaMessage]:
    """
    Lazily decode every frame of one blob.

    A corrupt or truncated frame ends decoding of the blob; frames before it
    have already been yielded. The stream is consumed and cannot be replayed.
    """
    index = 0
    while True:
        first = stream.read(1)
        if not first:
            return
        try:
            message = _read_frame(stream, first)
        except HekaFrameError as e:
            logger.warning(
                "Corrupt Heka frame #%d in %s (%s); dropping the rest of the blob",
                index,
                key,
                e,
            )
            return
        index += 1
        yield message


def message_fields(message: HekaMessage) -> Ping:
    """Field map of a message: each field's first value, typed by its value_type."""
    ping: Ping = {}
    for heka_field in message.fields:
        value = heka_field.value
        if value is not None:
            ping[heka_field.name] = value
    return ping


def decode_blob(stream: BinaryIO, key: str) -> Iterator[Ping]:
    """Decode a blob straight to ping field maps."""
    for message in parse_frames(stream, key):
        yield message_fields(message)


def field_as(ping: Ping, name: str, expected: Type) -> FieldValue:
    """
    Typed access to a ping field.

    `bool` is never accepted where a number is expected, and an `int` is
    widened to `float` when a float is expected.

    Raises
    ------
    FieldTypeError
        If the field is missing or holds a value of another type.
    """
    if name not in ping:
        raise FieldTypeError(f"missing field {name!r}")
    value = ping[name]
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, bool) and expected is not bool:
        raise FieldTypeError(f"field {name!r} is bool, expected {expected.__name__}")
    if not isinstance(value, expected):
        raise FieldTypeError(
            f"field {name!r} is {type(value).__name__}, expected {expected.__name__}"
        )
    return value
