"""Periodic and on-demand refreshing of a Kademlia routing table."""

from __future__ import annotations

import base64
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("kaddht.rtrefresh")

PEER_PING_TIMEOUT = 10.0  # seconds

_STOP = object()


class _RefreshFailed(RuntimeError):
    """One or more steps of a routing table refresh failed."""

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = f"1 error occurred:\n\t* {self.errors[0]}"
        else:
            lines = "\n".join(f"\t* {err}" for err in self.errors)
            message = f"{len(self.errors)} errors occurred:\n{lines}"
        super().__init__(message)


def _closed_error() -> RuntimeError:
    return RuntimeError("refresh manager is closed")


def _loggable_key(key: str | bytes) -> str:
    raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if not raw:
        return ""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


@dataclass
class _RefreshRequest:
    future: Future | None = None
    force: bool = False


@dataclass
class _Batch:
    waiting: list[Future] = field(default_factory=list)
    forced: bool = False

    def take(self, req: _RefreshRequest) -> None:
        if req.future is not None:
            self.waiting.append(req.future)
        self.forced = self.forced or req.force


class RtRefreshManager:
    """Keeps a routing table fresh by querying for keys in each tracked bucket.

    ``host`` must expose ``id()`` and ``connect(p, timeout)``. ``rt`` must expose
    ``get_peer_infos()`` (items with ``id`` and ``last_successful_outbound_query_at``),
    ``remove_peer(p)``, ``get_tracked_cpls_for_refresh()`` (one last-refresh time per
    cpl), ``n_peers_for_cpl(cpl)`` and ``size()``.
    ``refresh_key_gen_fnc(cpl)`` returns a key to query for a cpl,
    ``refresh_query_fnc(key, timeout)`` runs a query (raising ``TimeoutError`` when its
    own timeout expires counts as success) and ``refresh_ping_fnc(p, timeout)`` checks
    a peer's liveness. Times are in seconds as given by ``clock``. After each
    successful refresh ``None`` is put on ``refresh_done`` if it is given.
    """

    def __init__(
        self,
        host: Any,
        rt: Any,
        auto_refresh: bool,
        refresh_key_gen_fnc: Callable[[int], str | bytes],
        refresh_query_fnc: Callable[[str | bytes, float], Any],
        refresh_ping_fnc: Callable[[bytes, float], Any],
        refresh_query_timeout: float,
        refresh_interval: float,
        successful_outbound_query_grace_period: float,
        refresh_done: "queue.Queue[Any] | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._host = host
        self.dht_peer_id = host.id()
        self._rt = rt
        self.auto_refresh = auto_refresh
        self._key_gen = refresh_key_gen_fnc
        self._query = refresh_query_fnc
        self._ping = refresh_ping_fnc
        self.refresh_query_timeout = refresh_query_timeout
        self.refresh_interval = refresh_interval
        self.grace_period = successful_outbound_query_grace_period
        self._refresh_done = refresh_done
        self._clock = clock

        self._requests: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> "RtRefreshManager":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        """Start the background refresh loop."""
        with self._lock:
            if self._closed.is_set():
                raise _closed_error()
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._loop, name="rt-refresh", daemon=True
            )
            self._thread.start()

    def close(self) -> None:
        """Stop the loop and fail any refresh requests still pending."""
        with self._lock:
            self._closed.set()
            self._requests.put(_STOP)
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        while True:
            try:
                item = self._requests.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, _RefreshRequest) and item.future is not None:
                if not item.future.done():
                    item.future.set_exception(_closed_error())

    def refresh(self, force: bool) -> Future:
        """Request a refresh; the returned future resolves once it has finished.

        With ``force`` every bucket is refreshed regardless of when it last was.
        """
        future: Future = Future()
        with self._lock:
            if self._closed.is_set():
                future.set_exception(_closed_error())
                return future
            self._requests.put(_RefreshRequest(future=future, force=force))
        return future

    def refresh_no_wait(self) -> None:
        """Request a refresh without waiting for it or its outcome."""
        with self._lock:
            if not self._closed.is_set():
                self._requests.put(_RefreshRequest())

    # ------------------------------------------------------------ loop

    def _loop(self) -> None:
        next_tick: float | None = None
        if self.auto_refresh:
            try:
                self._do_refresh(True)
            except Exception as exc:
                logger.warning("failed when refreshing routing table: %s", exc)
            next_tick = time.monotonic() + self.refresh_interval

        while True:
            batch = _Batch()
            try:
                if next_tick is None:
                    item = self._requests.get()
                else:
                    item = self._requests.get(
                        timeout=max(0.0, next_tick - time.monotonic())
                    )
            except queue.Empty:
                item = None
                next_tick = time.monotonic() + self.refresh_interval

            if item is _STOP:
                return
            if item is not None:
                batch.take(item)

            # Batch every request that is already waiting.
            stop = False
            while True:
                try:
                    item = self._requests.get_nowait()
                except queue.Empty:
                    break
                if item is _STOP:
                    stop = True
                    break
                batch.take(item)
            if stop:
                for waiter in batch.waiting:
                    waiter.set_exception(_closed_error())
                return

            self._ping_and_evict_peers()
            error: BaseException | None = None
            try:
                self._do_refresh(batch.forced)
            except Exception as exc:
                error = exc
                logger.warning("failed when refreshing routing table: %s", exc)
            for waiter in batch.waiting:
                if error is None:
                    waiter.set_result(None)
                else:
                    waiter.set_exception(error)

    def _ping_and_evict_peers(self) -> int:
        """Ping peers not heard from within the grace period; evict the silent ones."""
        now = self._clock()
        stale = [
            info
            for info in self._rt.get_peer_infos()
            if now - info.last_successful_outbound_query_at > self.grace_period
        ]
        if not stale:
            return 0
        with ThreadPoolExecutor(max_workers=len(stale)) as pool:
            alive = sum(pool.map(self._check_peer, (info.id for info in stale)))
        logger.debug(
            "checked %d peers, %d alive, %d skipped",
            len(stale), alive, len(self._rt.get_peer_infos()) - len(stale) + (len(stale) - alive),
        )
        return alive

    def _check_peer(self, p: bytes) -> bool:
        try:
            self._host.connect(p, PEER_PING_TIMEOUT)
        except Exception as exc:
            logger.debug("evicting peer %r after failed connection: %s", p, exc)
            self._rt.remove_peer(p)
            return False
        try:
            self._ping(p, PEER_PING_TIMEOUT)
        except Exception as exc:
            logger.debug("evicting peer %r after failed ping: %s", p, exc)
            self._rt.remove_peer(p)
            return False
        return True

    # ------------------------------------------------------------ refresh

    def _do_refresh(self, force: bool) -> None:
        errors: list[BaseException] = []

        try:
            self._query_for_self()
        except Exception as exc:
            errors.append(exc)

        refresh_cpls = list(self._rt.get_tracked_cpls_for_refresh())

        def refresh_one(cpl: int) -> None:
            if force:
                self._refresh_cpl(cpl)
            else:
                self._refresh_cpl_if_eligible(cpl, refresh_cpls[cpl])

        for cpl in range(len(refresh_cpls)):
            try:
                refresh_one(cpl)
            except Exception as exc:
                errors.append(exc)
                continue
            # On a gap, refresh only up to 2 * (cpl + 1) or the highest tracked cpl,
            # whichever is smaller.
            if self._rt.n_peers_for_cpl(cpl) == 0:
                last_cpl = min(2 * (cpl + 1), len(refresh_cpls) - 1)
                for next_cpl in range(cpl + 1, last_cpl + 1):
                    try:
                        refresh_one(next_cpl)
                    except Exception as exc:
                        errors.append(exc)
                if errors:
                    raise _RefreshFailed(errors)
                return

        if self._closed.is_set():
            raise _closed_error()
        if self._refresh_done is not None:
            self._refresh_done.put(None)
        if errors:
            raise _RefreshFailed(errors)

    def _refresh_cpl_if_eligible(self, cpl: int, last_refreshed_at: float) -> None:
        if self._clock() - last_refreshed_at <= self.refresh_interval:
            logger.debug(
                "not running refresh for cpl %d as time since last refresh not above interval",
                cpl,
            )
            return
        self._refresh_cpl(cpl)

    def _refresh_cpl(self, cpl: int) -> None:
        try:
            key = self._key_gen(cpl)
        except Exception as exc:
            raise RuntimeError(
                f"failed to generated query key for cpl={cpl}, err={exc}"
            ) from exc

        logger.info(
            "starting refreshing cpl %d with key %s (routing table size was %d)",
            cpl, _loggable_key(key), self._rt.size(),
        )
        try:
            self._run_refresh_query(key)
        except Exception as exc:
            raise RuntimeError(f"failed to refresh cpl={cpl}, err={exc}") from exc
        logger.info(
            "finished refreshing cpl %d, routing table size is now %d",
            cpl, self._rt.size(),
        )

    def _query_for_self(self) -> None:
        try:
            self._run_refresh_query(self.dht_peer_id)
        except Exception as exc:
            raise RuntimeError(f"failed to query for self, err={exc}") from exc

    def _run_refresh_query(self, key: str | bytes) -> None:
        if self._closed.is_set():
            raise _closed_error()
        try:
            self._query(key, self.refresh_query_timeout)
        except TimeoutError:
            # The query ran out of its own time budget: that is a finished refresh.
            return