"""
Histogram taxonomy, bucket math and the histogram definition registry.

The registry is the versioned definition set published alongside the client
(``Histograms.json``). It is loaded once per job, never mutated, and passed
explicitly to the schema generator and the vectorizer.
"""

from __future__ import annotations
import ast
import enum
import json
import logging
import math
import operator
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class HistogramRegistryError(ValueError):
    """Raised when the histogram definition set is invalid."""


class MalformedHistogramError(ValueError):
    """Raised when a ping carries a histogram that is not shaped like one."""


class HistogramKind(str, enum.Enum):
    FLAG = "flag"
    BOOLEAN = "boolean"
    COUNT = "count"
    ENUMERATED = "enumerated"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class HistogramDefinition:
    """One registry entry: a histogram kind plus its bucket parameters."""

    kind: HistogramKind
    keyed: bool = False
    n_values: Optional[int] = None
    low: Optional[int] = None
    high: Optional[int] = None
    n_buckets: Optional[int] = None

    def buckets(self) -> Tuple[int, ...]:
        """Bucket boundaries for linear and exponential histograms."""
        if self.kind is HistogramKind.LINEAR:
            return linear_buckets(self.low, self.high, self.n_buckets)
        if self.kind is HistogramKind.EXPONENTIAL:
            return exponential_buckets(self.low, self.high, self.n_buckets)
        raise ValueError(f"{self.kind!r} histograms have no bucket boundaries")


@dataclass(frozen=True)
class RawHistogram:
    """A histogram as reported by one ping."""

    sum: int = 0
    values: Mapping[str, int] = field(default_factory=dict)


# ── Bucket math ────────────────────────────────────────────────────────────────


@lru_cache(maxsize=None)
def linear_buckets(low: int, high: int, n_buckets: int) -> Tuple[int, ...]:
    """
    Evenly spaced boundaries: ``[0, low, ..., high]`` with `n_buckets` entries.

    Index 0 is the underflow bucket; interior boundaries are rounded half-up.
    """
    _check_bucket_args(low, high, n_buckets)
    boundaries = [0] * n_buckets
    for i in range(1, n_buckets):
        linear_range = (low * (n_buckets - 1 - i) + high * (i - 1)) / (n_buckets - 2)
        boundaries[i] = int(linear_range + 0.5)
    return tuple(boundaries)


@lru_cache(maxsize=None)
def exponential_buckets(low: int, high: int, n_buckets: int) -> Tuple[int, ...]:
    """
    Log-spaced boundaries: ``[0, low, ..., high]`` with `n_buckets` entries.

    A `low` of 0 starts the first real bucket at 1. Each boundary is strictly
    greater than the previous one, so narrow ranges degrade to unit steps.
    """
    _check_bucket_args(low, high, n_buckets)
    log_max = math.log(high)
    boundaries = [0] * n_buckets
    current = max(int(low), 1)
    boundaries[1] = current
    for index in range(2, n_buckets):
        log_current = math.log(current)
        log_ratio = (log_max - log_current) / (n_buckets - index)
        next_value = int(math.floor(math.exp(log_current + log_ratio) + 0.5))
        current = next_value if next_value > current else current + 1
        boundaries[index] = current
    return tuple(boundaries)


def _check_bucket_args(low: Any, high: Any, n_buckets: Any) -> None:
    if low is None or high is None or n_buckets is None:
        raise ValueError("low, high and n_buckets are required")
    if n_buckets < 3:
        raise ValueError(f"n_buckets must be >= 3; got {n_buckets}")
    if low < 0 or high <= low:
        raise ValueError(f"Invalid bucket range low={low!r}, high={high!r}")


# ── Raw histograms ─────────────────────────────────────────────────────────────


def parse_raw_histogram(obj: Any) -> RawHistogram:
    """
    Parse ``{"sum": .., "values": {label: count}}`` from a ping payload.

    Raises
    ------
    MalformedHistogramError
        If `obj` is not a mapping or its counts are not integers.
    """
    if not isinstance(obj, Mapping):
        raise MalformedHistogramError(f"histogram must be an object; got {type(obj).__name__}")
    values = obj.get("values") or {}
    if not isinstance(values, Mapping):
        raise MalformedHistogramError("histogram values must be an object")
    try:
        parsed = {str(label): int(count) for label, count in values.items()}
        total = int(obj.get("sum") or 0)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedHistogramError(f"non-integer histogram count: {e}") from e
    if not all(_INT64_MIN <= n <= _INT64_MAX for n in (total, *parsed.values())):
        raise MalformedHistogramError("histogram count outside the int64 range")
    return RawHistogram(sum=total, values=parsed)


# ── Registry ───────────────────────────────────────────────────────────────────


class HistogramRegistry(Mapping):
    """Immutable mapping of histogram name to definition, in load order."""

    def __init__(self, definitions: Mapping[str, HistogramDefinition]):
        self._definitions = MappingProxyType(dict(definitions))

    def __getitem__(self, name: str) -> HistogramDefinition:
        return self._definitions[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __repr__(self) -> str:
        return f"HistogramRegistry({len(self)} definitions)"

    @classmethod
    def from_json_dict(cls, data: Mapping[str, Any]) -> "HistogramRegistry":
        if not isinstance(data, Mapping):
            raise HistogramRegistryError("histogram definitions must be a JSON object")
        definitions: Dict[str, HistogramDefinition] = {}
        for name, entry in data.items():
            definitions[name] = _parse_definition(name, entry)
        return cls(definitions)


def load_registry(path: Path) -> HistogramRegistry:
    """
    Load histogram definitions from a ``Histograms.json`` style file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    HistogramRegistryError
        If the file is not valid JSON or an entry is invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Histogram definitions not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise HistogramRegistryError(f"Error parsing histogram definitions '{path}': {e}") from e
    registry = HistogramRegistry.from_json_dict(data)
    logger.info("Loaded %d histogram definitions from %s", len(registry), path)
    return registry


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.FloorDiv: operator.floordiv,
}


def _eval_int_expr(node: ast.AST) -> int:
    if isinstance(node, ast.Expression):
        return _eval_int_expr(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, int) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval_int_expr(node.left), _eval_int_expr(node.right))
    raise ValueError("unsupported expression")


def _int_attr(name: str, entry: Mapping[str, Any], attr: str, default: Optional[int] = None) -> int:
    value = entry.get(attr, default)
    if value is None:
        raise HistogramRegistryError(f"{name}: missing required attribute {attr!r}")
    if isinstance(value, bool):
        raise HistogramRegistryError(f"{name}: {attr} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        # Histograms.json allows expressions such as "60 * 1000"
        try:
            return _eval_int_expr(ast.parse(value.strip(), mode="eval"))
        except (SyntaxError, ValueError, ZeroDivisionError):
            pass
    raise HistogramRegistryError(f"{name}: invalid {attr} {value!r}")


def _parse_definition(name: str, entry: Any) -> HistogramDefinition:
    if not isinstance(entry, Mapping):
        raise HistogramRegistryError(f"{name}: definition must be an object")
    try:
        kind = HistogramKind(entry.get("kind"))
    except ValueError:
        raise HistogramRegistryError(
            f"{name}: unknown histogram kind {entry.get('kind')!r}"
        ) from None

    keyed = entry.get("keyed", False)
    if isinstance(keyed, str):
        keyed = keyed.strip().lower() == "true"

    if kind is HistogramKind.ENUMERATED:
        n_values = _int_attr(name, entry, "n_values")
        if n_values < 1:
            raise HistogramRegistryError(f"{name}: n_values must be >= 1")
        return HistogramDefinition(kind=kind, keyed=bool(keyed), n_values=n_values)

    if kind in (HistogramKind.LINEAR, HistogramKind.EXPONENTIAL):
        low = _int_attr(name, entry, "low", default=1)
        high = _int_attr(name, entry, "high")
        n_buckets = _int_attr(name, entry, "n_buckets")
        try:
            _check_bucket_args(low, high, n_buckets)
        except ValueError as e:
            raise HistogramRegistryError(f"{name}: {e}") from e
        return HistogramDefinition(
            kind=kind, keyed=bool(keyed), low=low, high=high, n_buckets=n_buckets
        )

    return HistogramDefinition(kind=kind, keyed=bool(keyed))
