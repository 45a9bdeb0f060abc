"""
Longitudinal record builder: one output row per client session.

Building never raises for bad client data. Every failure is captured in a
`BuildResult`, and `build_records` drops the failed client so one corrupt
history cannot take the rest of a batch down with it.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import pyarrow as pa  # type: ignore

from .heka import Ping, field_as
from .histograms import (
    HistogramRegistry,
    MalformedHistogramError,
    RawHistogram,
    parse_raw_histogram,
)
from .schema import PAYLOAD_FIELDS, check_row, conform
from .sessions import CLIENT_ID_FIELD, TIMESTAMP_FIELD, ClientSession, assemble_session
from .vectorizer import vectorize, vectorize_keyed

logger = logging.getLogger(__name__)

SYSTEM_FIELD = "environment.system"
HISTOGRAMS_FIELD = "payload.histograms"
KEYED_HISTOGRAMS_FIELD = "payload.keyedHistograms"


class RecordBuildError(ValueError):
    """Raised when a client's pings cannot be turned into a row."""


class MalformedPayloadError(RecordBuildError):
    """Raised when a JSON blob inside a ping does not parse as expected."""


class UnsortableSessionError(RecordBuildError):
    """Raised when a client's pings cannot be put in chronological order."""


@dataclass(frozen=True)
class BuildResult:
    client_id: str
    row: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BuildStats:
    built: int = 0
    discarded: int = 0


def _json_value(ping: Ping, name: str) -> Any:
    raw = field_as(ping, name, str)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"{name} is not valid JSON: {e}") from e


def _json_field(ping: Ping, name: str) -> Dict[str, Any]:
    if ping.get(name) is None:
        return {}
    parsed = _json_value(ping, name)
    if not isinstance(parsed, dict):
        raise MalformedPayloadError(f"{name} must be a JSON object")
    return parsed


def _payload_column(pings: Sequence[Ping], source: str) -> List[str]:
    return ["" if ping.get(source) is None else field_as(ping, source, str) for ping in pings]


def _system_column(pings: Sequence[Ping], system_type: pa.DataType) -> Optional[List[Dict[str, Any]]]:
    # a single ping without the blob leaves the whole column empty
    if any(ping.get(SYSTEM_FIELD) is None for ping in pings):
        return None
    records = []
    for ping in pings:
        record = conform(_json_value(ping, SYSTEM_FIELD), system_type)
        if record is not None:
            records.append(record)
    return records


def _histogram_payloads(
    pings: Sequence[Ping], registry: HistogramRegistry
) -> List[Dict[str, RawHistogram]]:
    payloads = []
    for ping in pings:
        parsed = _json_field(ping, HISTOGRAMS_FIELD)
        payloads.append(
            {
                name: parse_raw_histogram(histogram)
                for name, histogram in parsed.items()
                if name in registry and not registry[name].keyed
            }
        )
    return payloads


def _keyed_histogram_payloads(
    pings: Sequence[Ping], registry: HistogramRegistry
) -> List[Dict[str, Dict[str, RawHistogram]]]:
    payloads = []
    for ping in pings:
        parsed = _json_field(ping, KEYED_HISTOGRAMS_FIELD)
        histograms: Dict[str, Dict[str, RawHistogram]] = {}
        for name, labelled in parsed.items():
            if name not in registry or not registry[name].keyed:
                continue
            if not isinstance(labelled, Mapping):
                raise MalformedHistogramError(f"keyed histogram {name} must be an object")
            histograms[name] = {
                str(label): parse_raw_histogram(histogram) for label, histogram in labelled.items()
            }
        payloads.append(histograms)
    return payloads


def _build_row(
    session: ClientSession, schema: pa.Schema, registry: HistogramRegistry
) -> Dict[str, Any]:
    pings = session.pings
    first = pings[0]

    # ── 1) Scalars from the earliest ping ─────────────────────────────────────
    row: Dict[str, Any] = {
        CLIENT_ID_FIELD: field_as(first, CLIENT_ID_FIELD, str),
        TIMESTAMP_FIELD: [field_as(ping, TIMESTAMP_FIELD, float) for ping in pings],
        "os": field_as(first, "os", str),
    }

    # ── 2) Raw payload arrays ─────────────────────────────────────────────────
    for column, source in PAYLOAD_FIELDS.items():
        row[column] = _payload_column(pings, source)

    # ── 3) Environment/system records ─────────────────────────────────────────
    row["system"] = _system_column(pings, schema.field("system").type.value_type)

    # ── 4) Histograms observed in at least one ping ───────────────────────────
    histograms = _histogram_payloads(pings, registry)
    keyed = _keyed_histogram_payloads(pings, registry)
    for name, definition in registry.items():
        if definition.keyed:
            if any(name in payload for payload in keyed):
                row[name] = vectorize_keyed(name, definition, keyed)
        elif any(name in payload for payload in histograms):
            row[name] = vectorize(name, definition, histograms)
    return row


def build_record(
    session: ClientSession, schema: pa.Schema, registry: HistogramRegistry
) -> BuildResult:
    """
    Build the longitudinal row for one session, capturing any failure.

    The row is also converted under `schema` on its own, so a client whose
    values cannot be written is discarded here instead of failing a whole
    row group later.
    """
    try:
        row = _build_row(session, schema, registry)
        check_row(row, schema)
    except Exception as e:
        return BuildResult(client_id=session.client_id, error=e)
    return BuildResult(client_id=session.client_id, row=row)


def build_from_history(
    client_id: str,
    history: Sequence[Ping],
    schema: pa.Schema,
    registry: HistogramRegistry,
) -> BuildResult:
    """Sort a raw ping history and build its row; unsortable histories fail."""
    session = assemble_session(client_id, history)
    if session is None:
        return BuildResult(
            client_id=client_id,
            error=UnsortableSessionError(f"unsortable history for client {client_id}"),
        )
    return build_record(session, schema, registry)


def build_records(
    sessions: Iterable[ClientSession],
    schema: pa.Schema,
    registry: HistogramRegistry,
    stats: Optional[BuildStats] = None,
) -> Iterator[Dict[str, Any]]:
    """Yield rows for every session that builds; failed clients are logged and skipped."""
    stats = stats if stats is not None else BuildStats()
    for session in sessions:
        result = build_record(session, schema, registry)
        if result.ok:
            stats.built += 1
            yield result.row  # type: ignore[misc]
        else:
            stats.discarded += 1
            logger.warning("Discarding client %s: %s", result.client_id, result.error)
