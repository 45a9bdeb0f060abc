import json
import struct
from typing import Any, Dict, Iterable, List

import pytest


def _varint(value: int) -> bytes:
    value &= 0xFFFFFFFFFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _tag(number: int, wire_type: int) -> bytes:
    return _varint((number << 3) | wire_type)


def _length_delimited(number: int, payload: bytes) -> bytes:
    return _tag(number, 2) + _varint(len(payload)) + payload


def encode_field(name: str, value: Any, packed: bool = False) -> bytes:
    """Serialize one Heka `Field` holding a single value."""
    out = _length_delimited(1, name.encode("utf-8"))
    if isinstance(value, bool):
        out += _tag(2, 0) + _varint(4)
        body = _varint(int(value))
        out += _length_delimited(8, body) if packed else _tag(8, 0) + body
    elif isinstance(value, int):
        out += _tag(2, 0) + _varint(2)
        body = _varint(value)
        out += _length_delimited(6, body) if packed else _tag(6, 0) + body
    elif isinstance(value, float):
        out += _tag(2, 0) + _varint(3)
        body = struct.pack("<d", value)
        out += _length_delimited(7, body) if packed else _tag(7, 1) + body
    elif isinstance(value, bytes):
        out += _tag(2, 0) + _varint(1) + _length_delimited(5, value)
    else:
        out += _length_delimited(4, str(value).encode("utf-8"))
    return out


def encode_message(fields: Dict[str, Any], packed: bool = False) -> bytes:
    out = _length_delimited(1, b"\x00" * 16) + _tag(2, 0) + _varint(1450000000000000000)
    out += _length_delimited(3, b"telemetry")
    for name, value in fields.items():
        out += _length_delimited(10, encode_field(name, value, packed=packed))
    return out


def encode_frame(fields: Dict[str, Any], packed: bool = False) -> bytes:
    message = encode_message(fields, packed=packed)
    header = _tag(1, 0) + _varint(len(message))
    return bytes([0x1E, len(header)]) + header + bytes([0x1F]) + message


def encode_blob(pings: Iterable[Dict[str, Any]]) -> bytes:
    return b"".join(encode_frame(ping) for ping in pings)


def make_ping(
    client_id: str,
    timestamp: float,
    histograms: Dict[str, Any] = None,
    keyed_histograms: Dict[str, Any] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Ping field map as a telemetry frame carries it, JSON blobs included."""
    ping: Dict[str, Any] = {
        "clientId": client_id,
        "creationTimestamp": timestamp,
        "os": "Windows_NT",
    }
    if histograms is not None:
        ping["payload.histograms"] = json.dumps(histograms)
    if keyed_histograms is not None:
        ping["payload.keyedHistograms"] = json.dumps(keyed_histograms)
    ping.update(extra)
    return ping


@pytest.fixture
def heka():
    """Heka frame encoders for building test blobs."""

    class _Heka:
        field = staticmethod(encode_field)
        message = staticmethod(encode_message)
        frame = staticmethod(encode_frame)
        blob = staticmethod(encode_blob)

    return _Heka


@pytest.fixture
def ping_factory():
    return make_ping


def histogram(values: Dict[Any, int], total: int = 0) -> Dict[str, Any]:
    return {"sum": total, "values": {str(k): v for k, v in values.items()}}


@pytest.fixture
def hist():
    return histogram


def write_blob(root, key: str, pings: List[Dict[str, Any]]) -> None:
    path = root / key
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_blob(pings))


@pytest.fixture
def blob_writer():
    return write_blob
