"""IP-group diversity filter for the routing table."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class PeerGroupInfo:
    """A peer together with its common prefix length and IP group key."""

    id: bytes = b""
    cpl: int = 0
    ip_group_key: str = ""


class RTPeerDiversityFilter:
    """Limits how many peers of one IP group may sit in a bucket and the table.

    ``host`` must expose ``network()`` returning an object whose
    ``conns_to_peer(p)`` yields connections with a ``remote_multiaddr()`` method.
    """

    def __init__(self, host: Any, max_per_cpl: int, max_for_table: int) -> None:
        self._lock = threading.Lock()
        self._host = host
        self.max_per_cpl = max_per_cpl
        self.max_for_table = max_for_table
        self._cpl_counts: dict[int, dict[str, int]] = {}
        self._table_counts: dict[str, int] = defaultdict(int)

    def allow(self, g: PeerGroupInfo) -> bool:
        with self._lock:
            if self._table_counts.get(g.ip_group_key, 0) >= self.max_for_table:
                return False
            counts = self._cpl_counts.get(g.cpl)
            return counts is None or counts.get(g.ip_group_key, 0) < self.max_per_cpl

    def increment(self, g: PeerGroupInfo) -> None:
        with self._lock:
            key = g.ip_group_key
            self._table_counts[key] += 1
            counts = self._cpl_counts.setdefault(g.cpl, {})
            counts[key] = counts.get(key, 0) + 1

    def decrement(self, g: PeerGroupInfo) -> None:
        """Undo an ``increment``; raises KeyError if the cpl was never counted."""
        with self._lock:
            key = g.ip_group_key
            if g.cpl not in self._cpl_counts:
                raise KeyError(g.cpl)

            remaining = self._table_counts.get(key, 0) - 1
            if remaining == 0:
                self._table_counts.pop(key, None)
            else:
                self._table_counts[key] = remaining

            counts = self._cpl_counts[g.cpl]
            remaining = counts.get(key, 0) - 1
            if remaining == 0:
                counts.pop(key, None)
            else:
                counts[key] = remaining
            if not counts:
                del self._cpl_counts[g.cpl]

    def peer_addresses(self, p: bytes) -> list[Any]:
        """Return the remote addresses of all connections to ``p``."""
        return [conn.remote_multiaddr() for conn in self._host.network().conns_to_peer(p)]