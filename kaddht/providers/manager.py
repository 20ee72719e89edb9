"""Storage of provider records: which peers provide which keys."""

from __future__ import annotations

import base64
import contextlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable

from kaddht.pb.message import AddrInfo

log = logging.getLogger("kaddht.providers")

PROVIDERS_KEY_PREFIX = "/providers/"
PROVIDER_ADDR_TTL = 24 * 60 * 60.0  # seconds
PROVIDE_VALIDITY = 48 * 60 * 60.0  # seconds
DEFAULT_CLEANUP_INTERVAL = 60 * 60.0  # seconds
LRU_CACHE_SIZE = 256

_MASK64 = (1 << 64) - 1
_MAX_VARINT_LEN = 10


def _b32encode(data: bytes) -> str:
    return base64.b32encode(bytes(data)).decode("ascii").rstrip("=")


def _b32decode(text: str) -> bytes:
    return base64.b32decode(text + "=" * (-len(text) % 8))


def _put_varint(x: int) -> bytes:
    ux = (x << 1) if x >= 0 else ~(x << 1)
    ux &= _MASK64
    out = bytearray()
    while ux >= 0x80:
        out.append((ux & 0x7F) | 0x80)
        ux >>= 7
    out.append(ux)
    return bytes(out)


def read_time_value(data: bytes) -> int:
    """Decode a zig-zag varint timestamp in nanoseconds; raises ValueError if invalid."""
    ux = 0
    shift = 0
    for i, byte in enumerate(data):
        if i == _MAX_VARINT_LEN:
            raise ValueError("failed to parse time")
        if byte < 0x80:
            if i == _MAX_VARINT_LEN - 1 and byte > 1:
                raise ValueError("failed to parse time")
            ux |= byte << shift
            break
        ux |= (byte & 0x7F) << shift
        shift += 7
    else:
        raise ValueError("failed to parse time")
    x = ux >> 1
    if ux & 1:
        x = ~x
    return x


def mk_prov_key(key: bytes) -> str:
    """Datastore key prefix under which the providers of ``key`` are stored."""
    return PROVIDERS_KEY_PREFIX + _b32encode(key)


def mk_prov_key_for(key: bytes, p: bytes) -> str:
    """Datastore key of the record saying that ``p`` provides ``key``."""
    return mk_prov_key(key) + "/" + _b32encode(p)


def write_provider_entry(dstore: Any, key: bytes, p: bytes, t: int) -> None:
    """Store that ``p`` provides ``key`` as of ``t`` nanoseconds since the epoch."""
    dstore.put(mk_prov_key_for(key, p), _put_varint(t))


@dataclass
class ProviderSet:
    """Providers of one key in the order they were added, with their timestamps (ns)."""

    providers: list[bytes] = field(default_factory=list)
    times: dict[bytes, int] = field(default_factory=dict)

    def add(self, p: bytes) -> None:
        self._set_val(p, time.time_ns())

    def _set_val(self, p: bytes, t: int) -> None:
        if p not in self.times:
            self.providers.append(p)
        self.times[p] = t


def _delete_quietly(dstore: Any, key: str) -> None:
    with contextlib.suppress(KeyError):
        dstore.delete(key)


def _load_provider_set(dstore: Any, key: bytes, now_ns: int, validity_ns: int) -> ProviderSet:
    out = ProviderSet()
    for ds_key, value in dstore.query(mk_prov_key(key)):
        try:
            t = read_time_value(value)
        except ValueError as exc:
            log.error("parsing providers record from disk: %s", exc)
            _delete_quietly(dstore, ds_key)
            continue
        if now_ns - t > validity_ns:
            _delete_quietly(dstore, ds_key)
            continue
        try:
            pid = _b32decode(ds_key.rsplit("/", 1)[-1])
        except ValueError as exc:
            log.error("base32 decoding error: %s", exc)
            _delete_quietly(dstore, ds_key)
            continue
        out._set_val(pid, t)
    return out


def load_provider_set(dstore: Any, key: bytes) -> ProviderSet:
    """Load the unexpired providers of ``key``, deleting expired or corrupt records."""
    return _load_provider_set(dstore, bytes(key), time.time_ns(), int(PROVIDE_VALIDITY * 1e9))


class _LRUCache:
    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("must provide a positive size")
        self._size = size
        self._items: OrderedDict[bytes, ProviderSet] = OrderedDict()

    def get(self, key: bytes) -> ProviderSet | None:
        value = self._items.get(key)
        if value is not None:
            self._items.move_to_end(key)
        return value

    def add(self, key: bytes, value: ProviderSet) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self._size:
            self._items.popitem(last=False)

    def purge(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class ProviderManager:
    """Adds and reads provider records from a datastore, caching them in between.

    ``pstore`` must expose ``add_addrs(p, addrs, ttl)`` and ``peer_info(p)``;
    ``dstore`` must expose ``put``, ``delete`` and ``query(prefix)``.
    ``clock`` returns nanoseconds since the epoch.
    """

    def __init__(
        self,
        local: bytes,
        pstore: Any,
        dstore: Any,
        *,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        cache: Any = None,
        cache_size: int = LRU_CACHE_SIZE,
        provide_validity: float = PROVIDE_VALIDITY,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        if cleanup_interval <= 0:
            raise ValueError("cleanup interval must be positive")
        self.local = local
        self._pstore = pstore
        self._dstore = dstore
        self._cache = cache if cache is not None else _LRUCache(cache_size)
        self.cleanup_interval = cleanup_interval
        self._validity_ns = int(provide_validity * 1e9)
        self._clock = clock
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name="provider-gc", daemon=True)
        self._thread.start()

    def __enter__(self) -> "ProviderManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self) -> None:
        while not self._closed.wait(self.cleanup_interval):
            try:
                self._collect_garbage(self._clock())
            except Exception:
                log.exception("provider record GC failed")

    def _collect_garbage(self, now_ns: int) -> None:
        # The whole round runs under the lock, so no record can be refreshed
        # while it is being judged.
        with self._lock:
            self._cache.purge()
            for ds_key, value in self._dstore.query(PROVIDERS_KEY_PREFIX):
                try:
                    t = read_time_value(value)
                except ValueError as exc:
                    log.error("parsing providers record from disk: %s", exc)
                    _delete_quietly(self._dstore, ds_key)
                    continue
                if now_ns - t > self._validity_ns:
                    _delete_quietly(self._dstore, ds_key)

    def close(self) -> None:
        """Stop the background cleanup; further additions raise RuntimeError."""
        self._closed.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()

    def _ensure_open(self) -> None:
        if self._closed.is_set():
            raise RuntimeError("provider manager is closed")

    def add_provider(self, key: bytes, prov: AddrInfo) -> None:
        """Record that ``prov`` provides ``key`` and remember its addresses."""
        self._ensure_open()
        key = bytes(key)
        if prov.id != self.local:
            self._pstore.add_addrs(prov.id, prov.addrs, PROVIDER_ADDR_TTL)
        with self._lock:
            now = self._clock()
            cached = self._cache.get(key)
            if cached is not None:
                cached._set_val(prov.id, now)
            try:
                write_provider_entry(self._dstore, key, prov.id, now)
            except Exception as exc:
                log.error("error adding new providers: %s", exc)

    def get_providers(self, key: bytes) -> list[AddrInfo]:
        """Return the providers of ``key`` with the addresses known for them."""
        self._ensure_open()
        key = bytes(key)
        with self._lock:
            try:
                providers = list(self._provider_set_for_key(key).providers)
            except Exception as exc:
                log.error("error reading providers: %s", exc)
                providers = []
        return [self._pstore.peer_info(p) for p in providers]

    def _provider_set_for_key(self, key: bytes) -> ProviderSet:
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        pset = _load_provider_set(self._dstore, key, self._clock(), self._validity_ns)
        if pset.providers:
            self._cache.add(key, pset)
        return pset