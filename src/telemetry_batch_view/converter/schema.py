"""
Arrow schema for longitudinal records.

The schema is a fixed set of per-client fields plus one optional field per
histogram definition. The histogram field types come from the same
`(kind, keyed)` table the vectorizer's output is shaped by, so every row the
record builder emits converts losslessly under this schema.
"""

from __future__ import annotations
from collections.abc import Mapping
from typing import Any, Dict, List

import pyarrow as pa  # type: ignore

from .histograms import HistogramDefinition, HistogramKind, HistogramRegistry


class SchemaError(RuntimeError):
    """Raised when a schema cannot be generated from the registry."""


# Ping field backing each raw-payload array column, in column order
PAYLOAD_FIELDS: Dict[str, str] = {
    "simpleMeasurements": "payload.simpleMeasurements",
    "log": "payload.log",
    "info": "payload.info",
    "addonDetails": "payload.addonDetails",
    "settings": "environment.settings",
    "profile": "environment.profile",
    "build": "environment.build",
    "partner": "environment.partner",
}

SYSTEM_TYPE = pa.struct(
    [
        pa.field("cpu", pa.struct([pa.field("count", pa.int32())])),
        pa.field(
            "os",
            pa.struct(
                [
                    pa.field("name", pa.string()),
                    pa.field("locale", pa.string()),
                    pa.field("version", pa.string()),
                ]
            ),
        ),
        pa.field(
            "hdd",
            pa.struct(
                [
                    pa.field(
                        "profile",
                        pa.struct(
                            [
                                pa.field("revision", pa.string()),
                                pa.field("model", pa.string()),
                            ]
                        ),
                    )
                ]
            ),
        ),
        pa.field(
            "gfx",
            pa.struct(
                [
                    pa.field(
                        "adapters",
                        pa.list_(
                            pa.struct(
                                [
                                    pa.field("RAM", pa.int32()),
                                    pa.field("description", pa.string()),
                                    pa.field("deviceID", pa.string()),
                                    pa.field("vendorID", pa.string()),
                                    pa.field("GPUActive", pa.bool_()),
                                ]
                            )
                        ),
                    )
                ]
            ),
        ),
    ]
)


def _fixed_fields() -> List[pa.Field]:
    fields = [
        pa.field("clientId", pa.string(), nullable=False),
        pa.field("creationTimestamp", pa.list_(pa.float64()), nullable=False),
        pa.field("os", pa.string(), nullable=False),
    ]
    fields += [
        pa.field(name, pa.list_(pa.string()), nullable=False) for name in PAYLOAD_FIELDS
    ]
    fields.append(pa.field("system", pa.list_(SYSTEM_TYPE), nullable=True))
    return fields


FIXED_FIELD_NAMES = frozenset(f.name for f in _fixed_fields())


def histogram_record_type(n_buckets: int) -> pa.DataType:
    """`{values: int64[n_buckets], sum: int64}` for linear/exponential histograms."""
    return pa.struct(
        [
            pa.field("values", pa.list_(pa.int64(), n_buckets), nullable=False),
            pa.field("sum", pa.int64(), nullable=False),
        ]
    )


def _element_type(definition: HistogramDefinition) -> pa.DataType:
    kind = definition.kind
    if kind is HistogramKind.FLAG:
        return pa.bool_()
    if kind is HistogramKind.COUNT:
        return pa.int64()
    if kind is HistogramKind.BOOLEAN:
        return pa.list_(pa.int64(), 2)
    if kind is HistogramKind.ENUMERATED:
        return pa.list_(pa.int64(), definition.n_values + 1)
    if kind in (HistogramKind.LINEAR, HistogramKind.EXPONENTIAL):
        return histogram_record_type(len(definition.buckets()))
    raise SchemaError(f"Unrecognized histogram kind {kind!r}")


def histogram_field_type(definition: HistogramDefinition) -> pa.DataType:
    """One element per ping; keyed histograms map each label to such a series."""
    series = pa.list_(_element_type(definition))
    if definition.keyed:
        return pa.map_(pa.string(), series)
    return series


def build_schema(registry: HistogramRegistry) -> pa.Schema:
    """
    Generate the longitudinal schema for a histogram registry.

    Raises
    ------
    SchemaError
        If a definition has an unrecognized kind or its name collides with a
        fixed field.
    """
    fields = _fixed_fields()
    for name, definition in registry.items():
        if name in FIXED_FIELD_NAMES:
            raise SchemaError(f"Histogram {name!r} collides with a fixed field")
        fields.append(pa.field(name, histogram_field_type(definition), nullable=True))
    return pa.schema(fields)


_INT_RANGES = {
    8: (-(1 << 7), (1 << 7) - 1),
    16: (-(1 << 15), (1 << 15) - 1),
    32: (-(1 << 31), (1 << 31) - 1),
    64: (-(1 << 63), (1 << 63) - 1),
}


def conform(value: Any, arrow_type: pa.DataType) -> Any:
    """
    Coerce parsed JSON to `arrow_type`.

    Missing struct members and values of the wrong JSON type become None; a
    non-object where a struct is expected is None as a whole.
    """
    if value is None:
        return None
    if pa.types.is_struct(arrow_type):
        if not isinstance(value, Mapping):
            return None
        return {
            arrow_type.field(i).name: conform(
                value.get(arrow_type.field(i).name), arrow_type.field(i).type
            )
            for i in range(arrow_type.num_fields)
        }
    if pa.types.is_list(arrow_type):
        if not isinstance(value, list):
            return None
        return [conform(item, arrow_type.value_type) for item in value]
    if pa.types.is_boolean(arrow_type):
        return value if isinstance(value, bool) else None
    if isinstance(value, bool):
        return None
    if pa.types.is_signed_integer(arrow_type):
        if not isinstance(value, int):
            return None
        low, high = _INT_RANGES[arrow_type.bit_width]
        return value if low <= value <= high else None
    if pa.types.is_floating(arrow_type):
        return float(value) if isinstance(value, (int, float)) else None
    if pa.types.is_string(arrow_type):
        return value if isinstance(value, str) else None
    raise SchemaError(f"Cannot conform JSON to {arrow_type}")


def arrow_ready(row: Mapping[str, Any], schema: pa.Schema) -> Dict[str, Any]:
    """Row with keyed (map) columns as key/value pairs, as pyarrow expects them."""
    ready = dict(row)
    for f in schema:
        value = ready.get(f.name)
        if pa.types.is_map(f.type) and isinstance(value, Mapping):
            ready[f.name] = list(value.items())
    return ready


def check_row(row: Mapping[str, Any], schema: pa.Schema) -> None:
    """
    Convert one row under `schema`, raising if it cannot be written.

    Catches what only surfaces at conversion time, such as lone surrogates in
    strings or out-of-range integers.
    """
    pa.Table.from_pylist([arrow_ready(row, schema)], schema=schema)
