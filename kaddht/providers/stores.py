"""In-memory key-value datastore and peer address book used by the provider manager."""

from __future__ import annotations

import math
import posixpath
import threading
import time
from typing import Any, Callable, Iterable

from kaddht.pb.message import AddrInfo


def _clean_key(key: str) -> str:
    """Normalise a datastore key to an absolute, slash-separated path."""
    cleaned = posixpath.normpath("/" + key)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


class MapDatastore:
    """Thread-safe in-memory datastore with path-like string keys."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, bytes] = {}

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[_clean_key(key)] = bytes(value)

    def get(self, key: str) -> bytes:
        """Return the value under ``key``; raises KeyError if there is none."""
        with self._lock:
            return self._data[_clean_key(key)]

    def delete(self, key: str) -> None:
        """Remove ``key``; removing a missing key is not an error."""
        with self._lock:
            self._data.pop(_clean_key(key), None)

    def query(self, prefix: str) -> list[tuple[str, bytes]]:
        """Return the entries whose keys lie below the path ``prefix``, sorted by key."""
        base = _clean_key(prefix)
        if base != "/":
            base += "/"
        with self._lock:
            return sorted(
                (key, value) for key, value in self._data.items() if key.startswith(base)
            )

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        with self._lock:
            return _clean_key(key) in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class MemoryPeerstore:
    """Keeps the known addresses of peers, each with an expiry time.

    ``clock`` returns seconds; TTLs are given in seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._addrs: dict[bytes, dict[Any, float]] = {}

    def add_addrs(self, p: bytes, addrs: Iterable[Any], ttl: float) -> None:
        """Remember ``addrs`` for ``p`` for ``ttl`` seconds; a non-positive TTL is ignored."""
        if ttl <= 0:
            return
        expiry = self._clock() + ttl
        with self._lock:
            book = self._addrs.setdefault(p, {})
            for addr in addrs:
                if book.get(addr, -math.inf) < expiry:
                    book[addr] = expiry

    def peer_info(self, p: bytes) -> AddrInfo:
        """Return ``p`` with its addresses that have not expired yet."""
        now = self._clock()
        with self._lock:
            book = self._addrs.get(p, {})
            for addr in [a for a, expiry in book.items() if expiry <= now]:
                del book[addr]
            live = list(book)
        return AddrInfo(id=p, addrs=live)