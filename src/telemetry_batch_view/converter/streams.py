"""
Derived-stream registry.

A derived stream names the source stream it reads, a filter applied under each
day's prefix, and where its output lands. Streams register themselves by name
so the CLI can resolve them.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List

DATE_FORMAT = "%Y%m%d"

# Registry for derived streams, keyed by CLI name
__registry: dict[str, "DerivedStream"] = {}


class UnknownStreamError(LookupError):
    """Raised when the CLI names a stream that does not exist."""


def uncamelize(name: str) -> str:
    """``ExecutiveStream`` -> ``executive-stream``."""
    return "-".join(part.lower() for part in re.findall(r"^[^A-Z]+|[A-Z][^A-Z]*", name))


@dataclass(frozen=True)
class DerivedStream:
    name: str
    stream_name: str
    filter_prefix: str = ""

    @property
    def output_dir(self) -> str:
        return uncamelize(self.name)

    def output_prefix(self, to_date: str) -> str:
        return f"{self.output_dir}/generationDate={to_date}"

    def input_prefixes(self, source_prefix: str, dates: List[str]) -> List[str]:
        return [f"{source_prefix}/{day}/{self.filter_prefix}" for day in dates]


def register_stream(stream: DerivedStream) -> DerivedStream:
    __registry[stream.name] = stream
    return stream


def get_stream(name: str) -> DerivedStream:
    try:
        return __registry[name]
    except KeyError:
        raise UnknownStreamError(
            f"Stream does not exist: {name!r}; supported: {sorted(__registry)}"
        ) from None


def parse_date(value: str) -> date:
    return datetime.strptime(value, DATE_FORMAT).date()


def date_range(from_date: str, to_date: str) -> List[str]:
    """Inclusive list of ``YYYYMMDD`` days between two ``YYYYMMDD`` dates."""
    start, end = parse_date(from_date), parse_date(to_date)
    if end < start:
        raise ValueError(f"to-date {to_date} is before from-date {from_date}")
    return [
        (start + timedelta(days=offset)).strftime(DATE_FORMAT)
        for offset in range((end - start).days + 1)
    ]


LONGITUDINAL = register_stream(
    DerivedStream(
        name="Longitudinal",
        stream_name="telemetry-release",
        filter_prefix="telemetry/4/main/Firefox/release/*/*/*/42/",
    )
)
