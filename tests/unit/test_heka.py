import io
import logging

import pytest

from telemetry_batch_view.converter.io.storage import LocalBlobStore  # type: ignore
from telemetry_batch_view.converter.heka import (  # type: ignore
    MAX_MESSAGE_SIZE,
    FieldTypeError,
    HekaFrameError,
    VALUE_INTEGER,
    decode_blob,
    field_as,
    message_fields,
    parse_frames,
    parse_message,
)


def test_decode_single_frame(heka):
    blob = heka.frame({"clientId": "c1", "creationTimestamp": 1.5e18, "sampleId": 42})
    pings = list(decode_blob(io.BytesIO(blob), "k"))
    assert pings == [{"clientId": "c1", "creationTimestamp": 1.5e18, "sampleId": 42}]


def test_message_attributes(heka):
    message = parse_message(heka.message({"a": "b"}))
    assert message.uuid == b"\x00" * 16
    assert message.type == "telemetry"
    assert message.timestamp == 1450000000000000000
    assert len(message.fields) == 1
    assert message.fields[0].name == "a"


def test_packed_and_unpacked_values_agree(heka):
    fields = {"n": -7, "d": 2.25, "flag": True}
    unpacked = message_fields(parse_message(heka.message(fields)))
    packed = message_fields(parse_message(heka.message(fields, packed=True)))
    assert unpacked == packed == fields


def test_negative_integer_round_trips(heka):
    message = parse_message(heka.message({"n": -(1 << 40)}))
    assert message.fields[0].value_type == VALUE_INTEGER
    assert message.fields[0].value == -(1 << 40)


def test_bytes_field(heka):
    ping = message_fields(parse_message(heka.message({"raw": b"\x01\x02"})))
    assert ping == {"raw": b"\x01\x02"}


def test_empty_blob_yields_nothing():
    assert list(parse_frames(io.BytesIO(b""), "empty")) == []


def test_truncated_tail_keeps_earlier_frames(heka, caplog):
    good = heka.frame({"clientId": "a"}) + heka.frame({"clientId": "b"})
    third = heka.frame({"clientId": "c"})
    blob = good + third[: len(third) // 2]
    with caplog.at_level(logging.WARNING):
        pings = list(decode_blob(io.BytesIO(blob), "s3/key"))
    assert [p["clientId"] for p in pings] == ["a", "b"]
    assert "s3/key" in caplog.text


def test_bad_separator_stops_blob(heka):
    blob = heka.frame({"clientId": "a"}) + b"\x00garbage" + heka.frame({"clientId": "b"})
    pings = list(decode_blob(io.BytesIO(blob), "k"))
    assert [p["clientId"] for p in pings] == ["a"]


def test_missing_unit_separator(heka):
    frame = bytearray(heka.frame({"clientId": "a"}))
    header_length = frame[1]
    frame[2 + header_length] = 0x00
    assert list(decode_blob(io.BytesIO(bytes(frame)), "k")) == []


def test_parse_message_truncated_raises(heka):
    data = heka.message({"clientId": "abc"})
    with pytest.raises(HekaFrameError):
        parse_message(data[:-2])


def test_decoding_is_lazy(heka):
    stream = io.BytesIO(heka.blob([{"i": 1}, {"i": 2}]))
    frames = parse_frames(stream, "k")
    first = next(frames)
    assert message_fields(first) == {"i": 1}
    assert stream.tell() < len(stream.getvalue())


def test_field_as_types():
    ping = {"s": "x", "i": 3, "f": 2.5, "b": True}
    assert field_as(ping, "s", str) == "x"
    assert field_as(ping, "i", int) == 3
    assert field_as(ping, "i", float) == 3.0
    assert isinstance(field_as(ping, "i", float), float)
    assert field_as(ping, "f", float) == 2.5
    assert field_as(ping, "b", bool) is True


@pytest.mark.parametrize(
    "name, expected",
    [("missing", str), ("s", int), ("b", int), ("b", float), ("f", int)],
)
def test_field_as_rejects(name, expected):
    ping = {"s": "x", "f": 2.5, "b": True}
    with pytest.raises(FieldTypeError):
        field_as(ping, name, expected)


def test_oversized_message_length_ends_blob(heka, tmp_path):
    # header declaring message_length = 1 << 40, followed by a few body bytes
    header = b"\x08" + b"\x80" * 5 + b"\x20"
    bogus = bytes([0x1E, len(header)]) + header + bytes([0x1F]) + b"\x0a\x00"
    (tmp_path / "blob").write_bytes(heka.frame({"clientId": "a"}) + bogus)
    with LocalBlobStore(tmp_path).open("blob") as stream:
        pings = list(decode_blob(stream, "blob"))
    assert [p["clientId"] for p in pings] == ["a"]
    assert (1 << 40) > MAX_MESSAGE_SIZE


def test_truncated_large_message_in_real_file(heka, tmp_path):
    frame = heka.frame({"clientId": "b", "payload.info": "x" * 200_000})
    (tmp_path / "blob").write_bytes(heka.frame({"clientId": "a"}) + frame[:-10])
    with LocalBlobStore(tmp_path).open("blob") as stream:
        pings = list(decode_blob(stream, "blob"))
    assert [p["clientId"] for p in pings] == ["a"]
