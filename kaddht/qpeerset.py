"""State of the peers involved in a single asynchronous Kademlia lookup."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from kaddht.keyspace import convert_key, xor_distance


class PeerState(IntEnum):
    """Lifecycle state of a peer during one lookup."""

    HEARD = 0
    WAITING = 1
    QUERIED = 2
    UNREACHABLE = 3


@dataclass
class _PeerEntry:
    id: bytes
    distance: int
    state: PeerState
    referred_by: bytes


class QueryPeerset:
    """Set of peers known to a lookup, each labelled with a ``PeerState``."""

    def __init__(self, key: str | bytes) -> None:
        self._key = convert_key(key)
        self._all: list[_PeerEntry] = []
        self._sorted = False

    def _entry(self, p: bytes) -> _PeerEntry:
        for entry in self._all:
            if entry.id == p:
                return entry
        raise KeyError(p)

    def __contains__(self, p: bytes) -> bool:
        return any(entry.id == p for entry in self._all)

    def __len__(self) -> int:
        return len(self._all)

    def try_add(self, p: bytes, referred_by: bytes) -> bool:
        """Add ``p`` in state HEARD; return False if it was already present."""
        if p in self:
            return False
        distance = xor_distance(convert_key(p), self._key)
        self._all.append(_PeerEntry(p, distance, PeerState.HEARD, referred_by))
        self._sorted = False
        return True

    def _sort(self) -> None:
        if not self._sorted:
            self._all.sort(key=lambda entry: entry.distance)
            self._sorted = True

    def set_state(self, p: bytes, s: PeerState) -> None:
        """Set the state of ``p``; raises KeyError if ``p`` is unknown."""
        self._entry(p).state = s

    def get_state(self, p: bytes) -> PeerState:
        """Return the state of ``p``; raises KeyError if ``p`` is unknown."""
        return self._entry(p).state

    def get_referrer(self, p: bytes) -> bytes:
        """Return the peer that referred us to ``p``; raises KeyError if unknown."""
        return self._entry(p).referred_by

    def get_closest_n_in_states(self, n: int, *args: PeerState) -> list[bytes]:
        """Return up to ``n`` peers in any of the given states, closest first."""
        self._sort()
        wanted = set(args)
        result = [entry.id for entry in self._all if entry.state in wanted]
        return result[:n]

    def get_closest_in_states(self, *args: PeerState) -> list[bytes]:
        """Return all peers in any of the given states, closest first."""
        return self.get_closest_n_in_states(len(self._all), *args)

    def num_heard(self) -> int:
        return len(self.get_closest_in_states(PeerState.HEARD))

    def num_waiting(self) -> int:
        return len(self.get_closest_in_states(PeerState.WAITING))