"""
Histogram vectorizer: one fixed-shape value per ping for a client's history.

Shapes per kind (matching `schema.histogram_field_type`):
  flag        -> bool                       default False
  boolean     -> [count("0"), count("1")]   default [0, 0]
  count       -> count("0")                 default 0
  enumerated  -> int64[n_values + 1]        default zeros
  linear/exp  -> {"values": int64[len(buckets)], "sum": int64}
                                            default zeros, sum 0
"""

from __future__ import annotations
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .histograms import HistogramDefinition, HistogramKind, RawHistogram

logger = logging.getLogger(__name__)

Flatten = Callable[[RawHistogram], Any]


def _flag(h: RawHistogram) -> bool:
    return h.values.get("0", 0) > 0


def _boolean(h: RawHistogram) -> List[int]:
    return [h.values.get("0", 0), h.values.get("1", 0)]


def _count(h: RawHistogram) -> int:
    return h.values.get("0", 0)


def _enumerated(n_values: int) -> Flatten:
    def flatten(h: RawHistogram) -> List[int]:
        vector = [0] * (n_values + 1)
        for label, count in h.values.items():
            try:
                index = int(label)
            except ValueError:
                index = -1
            if not 0 <= index <= n_values:
                logger.debug("Dropping enumerated label %r outside 0..%d", label, n_values)
                continue
            vector[index] = count
        return vector

    return flatten


def _bucket_label(label: str) -> Optional[int]:
    try:
        number = float(label)
    except ValueError:
        return None
    return int(number) if number.is_integer() else None


def _bucketed(definition: HistogramDefinition) -> Flatten:
    buckets = definition.buckets()
    # first index wins when a narrow range repeats a boundary
    positions: Dict[int, int] = {}
    for index, boundary in enumerate(buckets):
        positions.setdefault(boundary, index)

    def flatten(h: RawHistogram) -> Dict[str, Any]:
        values = [0] * len(buckets)
        for label, count in h.values.items():
            index = positions.get(_bucket_label(label))
            if index is not None:
                values[index] = count
        return {"values": values, "sum": h.sum}

    return flatten


def default(definition: HistogramDefinition) -> Any:
    """A fresh default value for a ping that lacks the histogram."""
    kind = definition.kind
    if kind is HistogramKind.FLAG:
        return False
    if kind is HistogramKind.BOOLEAN:
        return [0, 0]
    if kind is HistogramKind.COUNT:
        return 0
    if kind is HistogramKind.ENUMERATED:
        return [0] * (definition.n_values + 1)
    if kind in (HistogramKind.LINEAR, HistogramKind.EXPONENTIAL):
        return {"values": [0] * len(definition.buckets()), "sum": 0}
    raise ValueError(f"Unrecognized histogram kind {kind!r}")


def flattener(definition: HistogramDefinition) -> Flatten:
    """The per-ping flatten function for a definition."""
    kind = definition.kind
    if kind is HistogramKind.FLAG:
        return _flag
    if kind is HistogramKind.BOOLEAN:
        return _boolean
    if kind is HistogramKind.COUNT:
        return _count
    if kind is HistogramKind.ENUMERATED:
        return _enumerated(definition.n_values)
    if kind in (HistogramKind.LINEAR, HistogramKind.EXPONENTIAL):
        return _bucketed(definition)
    raise ValueError(f"Unrecognized histogram kind {kind!r}")


def _series(
    name: str,
    definition: HistogramDefinition,
    payloads: Sequence[Mapping[str, RawHistogram]],
    flatten: Flatten,
) -> List[Any]:
    series = []
    for histograms in payloads:
        histogram = histograms.get(name)
        series.append(default(definition) if histogram is None else flatten(histogram))
    return series


def vectorize(
    name: str,
    definition: HistogramDefinition,
    payloads: Sequence[Mapping[str, RawHistogram]],
) -> List[Any]:
    """
    Vectorize histogram `name` across a client's pings.

    Parameters
    ----------
    name : str
        Histogram name looked up in each payload.
    definition : HistogramDefinition
        Registry entry for the histogram.
    payloads : Sequence[Mapping[str, RawHistogram]]
        One histogram map per ping, in chronological order.

    Returns
    -------
    list
        One value per ping; pings lacking the histogram get the default.
    """
    return _series(name, definition, payloads, flattener(definition))


def vectorize_keyed(
    name: str,
    definition: HistogramDefinition,
    payloads: Sequence[Mapping[str, Mapping[str, RawHistogram]]],
) -> Dict[str, List[Any]]:
    """
    Vectorize keyed histogram `name`: one series per label seen in any ping.
    """
    per_ping = [histograms.get(name) or {} for histograms in payloads]
    labels: Dict[str, None] = {}
    for labelled in per_ping:
        labels.update(dict.fromkeys(labelled))
    flatten = flattener(definition)
    return {label: _series(label, definition, per_ping, flatten) for label in labels}
