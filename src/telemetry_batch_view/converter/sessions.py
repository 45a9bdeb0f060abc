"""
Client session assembly: group decoded pings by client and order them in time.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .heka import Ping

logger = logging.getLogger(__name__)

CLIENT_ID_FIELD = "clientId"
TIMESTAMP_FIELD = "creationTimestamp"


@dataclass(frozen=True)
class ClientSession:
    """All pings of one client, ascending by creation timestamp."""

    client_id: str
    pings: Tuple[Ping, ...]

    def __post_init__(self) -> None:
        if not self.pings:
            raise ValueError(f"Session for client {self.client_id!r} has no pings")


def _is_timestamp(value: object) -> bool:
    # NaN compares false with everything, so it cannot be ordered
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def group_by_client(pings: Iterable[Ping]) -> Dict[str, List[Ping]]:
    """
    Shuffle pings by client id, keeping arrival order within each client.

    Pings without a string `clientId` are dropped silently.
    """
    grouped: Dict[str, List[Ping]] = {}
    for ping in pings:
        client_id = ping.get(CLIENT_ID_FIELD)
        if not isinstance(client_id, str):
            continue
        grouped.setdefault(client_id, []).append(ping)
    return grouped


def assemble_session(client_id: str, pings: Sequence[Ping]) -> Optional[ClientSession]:
    """
    Sort one client's pings by creation timestamp.

    Returns None (the session is discarded) when there are no pings or when any
    timestamp is missing or not numeric. The sort is stable, so pings with equal
    timestamps keep their arrival order.
    """
    if not pings:
        return None
    if not all(_is_timestamp(ping.get(TIMESTAMP_FIELD)) for ping in pings):
        logger.debug("Discarding client %s: unsortable creation timestamps", client_id)
        return None
    ordered = sorted(pings, key=lambda ping: ping[TIMESTAMP_FIELD])
    return ClientSession(client_id=client_id, pings=tuple(ordered))


def assemble_sessions(pings: Iterable[Ping]) -> Iterator[ClientSession]:
    """Group and sort a full ping stream into client sessions."""
    for client_id, history in group_by_client(pings).items():
        session = assemble_session(client_id, history)
        if session is not None:
            yield session


def shard_sessions(sessions: Iterable[ClientSession], n_shards: int) -> List[List[ClientSession]]:
    """Deterministic round-robin split of sessions into `n_shards` write partitions."""
    if n_shards < 1:
        raise ValueError(f"n_shards must be >= 1; got {n_shards}")
    shards: List[List[ClientSession]] = [[] for _ in range(n_shards)]
    for i, session in enumerate(sessions):
        shards[i % n_shards].append(session)
    return shards
