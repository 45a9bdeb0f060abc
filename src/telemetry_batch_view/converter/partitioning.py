"""
Size-bounded partition planner for storage listings.

Turns an arbitrary list of (key, size) object descriptors into ordered groups
whose summed size stays below a threshold. Each group is one unit of parallel
work, so the number of groups is the maximum attainable parallelism.

The packing is a single greedy pass: descriptors keep their listing order both
within and across groups, and a descriptor larger than the threshold is never
rejected, it simply becomes its own (oversized) group.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List


# Downstream Parquet/Arrow buffers cannot address more than 2 GiB per group.
PARTITION_THRESHOLD = 1 << 31


@dataclass(frozen=True)
class ObjectDescriptor:
    """One object from a storage listing."""

    key: str
    size: int


def group_by_size(
    descriptors: Iterable[ObjectDescriptor],
    threshold: int = PARTITION_THRESHOLD,
) -> List[List[ObjectDescriptor]]:
    """
    Pack descriptors into groups whose cumulative size is below `threshold`.

    Parameters
    ----------
    descriptors : Iterable[ObjectDescriptor]
        Objects in listing order.
    threshold : int
        Exclusive upper bound for a group's summed size.

    Returns
    -------
    list[list[ObjectDescriptor]]
        Groups in input order. Every descriptor appears in exactly one group;
        a group summing to `threshold` or more holds a single oversized object.

    Raises
    ------
    ValueError
        If `threshold` is not positive or a descriptor has a negative size.
    """
    if threshold <= 0:
        raise ValueError(f"threshold must be > 0; got {threshold}")

    groups: List[List[ObjectDescriptor]] = []
    current: List[ObjectDescriptor] = []
    current_size = 0

    for descriptor in descriptors:
        if descriptor.size < 0:
            raise ValueError(
                f"Object {descriptor.key!r} has negative size {descriptor.size}"
            )
        # equal to the threshold is not "less than": start a new group
        if current and current_size + descriptor.size < threshold:
            current.append(descriptor)
            current_size += descriptor.size
            continue
        if current:
            groups.append(current)
        current = [descriptor]
        current_size = descriptor.size

    if current:
        groups.append(current)
    return groups
