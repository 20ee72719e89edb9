"""Network size estimation from the distances of the closest peers to keys."""

from __future__ import annotations

import bisect
import logging
import math
import threading
import time
from typing import Any, Callable, NamedTuple, Sequence

from kaddht.keyspace import KEY_BITS, common_prefix_len, convert_key, xor_distance

logger = logging.getLogger("kaddht.netsize")

INVALID_ESTIMATE = -1

MAX_MEASUREMENT_AGE = 2 * 60 * 60.0  # seconds
MIN_MEASUREMENTS_THRESHOLD = 5
MAX_MEASUREMENTS_THRESHOLD = 150

_KEYSPACE_MAX = (1 << KEY_BITS) - 1


class NotEnoughDataError(Exception):
    """There are too few measurements to estimate the network size."""

    def __init__(self, message: str = "not enough data") -> None:
        super().__init__(message)


class WrongNumOfPeersError(ValueError):
    """The peer list given to ``Estimator.track`` is not bucket size long."""

    def __init__(self, message: str = "expected bucket size number of peers") -> None:
        super().__init__(message)


def normed_distance(p: bytes, k: bytes) -> float:
    """Return the XOR distance between peer ``p`` and keyspace key ``k`` in [0, 1]."""
    return xor_distance(convert_key(p), bytes(k)) / _KEYSPACE_MAX


class _Measurement(NamedTuple):
    distance: float
    weight: float
    timestamp: float


class Estimator:
    """Estimates the network size from tracked closest-peer lists.

    ``rt`` must expose ``n_peers_for_cpl(cpl)``. ``clock`` returns seconds.
    """

    def __init__(
        self,
        local_id: bytes,
        rt: Any,
        bucket_size: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.local_id = convert_key(local_id)
        self.rt = rt
        self.bucket_size = bucket_size
        self._clock = clock
        self._lock = threading.Lock()
        self._measurements: dict[int, list[_Measurement]] = {
            i: [] for i in range(bucket_size)
        }
        self._cache = INVALID_ESTIMATE

    @property
    def measurements(self) -> dict[int, tuple[_Measurement, ...]]:
        """Snapshot of the stored measurements per closeness rank."""
        with self._lock:
            return {i: tuple(ms) for i, ms in self._measurements.items()}

    @property
    def cached_estimate(self) -> int:
        """The cached estimate, or ``INVALID_ESTIMATE`` if none is cached."""
        return self._cache

    def track(self, key: str | bytes, peers: Sequence[bytes]) -> None:
        """Record the distances of ``peers`` (closest first) to ``key``."""
        with self._lock:
            if len(peers) != self.bucket_size:
                raise WrongNumOfPeersError()
            logger.debug("tracking peers for key %r", key)

            now = self._clock()
            self._cache = INVALID_ESTIMATE
            weight = self._calc_weight(key, peers)
            ks_key = convert_key(key)
            max_age_ts = now - MAX_MEASUREMENT_AGE

            for i, p in enumerate(peers):
                measurements = self._measurements[i]
                measurements.append(_Measurement(normed_distance(p, ks_key), weight, now))
                measurements = self._drop_old(measurements, max_age_ts)
                self._measurements[i] = measurements[-MAX_MEASUREMENTS_THRESHOLD:]

    @staticmethod
    def _drop_old(measurements: list[_Measurement], max_age_ts: float) -> list[_Measurement]:
        idx = bisect.bisect_right([m.timestamp for m in measurements], max_age_ts)
        return measurements[idx:] if idx else measurements

    def network_size(self) -> int:
        """Return the current estimate; raises NotEnoughDataError without enough data."""
        estimate = self._cache
        if estimate != INVALID_ESTIMATE:
            logger.debug("cached network size estimation %d", estimate)
            return estimate

        with self._lock:
            if self._cache != INVALID_ESTIMATE:
                return self._cache

            self._garbage_collect()

            xy_sum = 0.0
            x2_sum = 0.0
            for i in range(self.bucket_size):
                measurements = self._measurements[i]
                count = len(measurements)
                if count < MIN_MEASUREMENTS_THRESHOLD:
                    raise NotEnoughDataError()

                sum_weights = math.fsum(m.weight for m in measurements)
                avg = math.fsum(m.weight * m.distance for m in measurements) / sum_weights
                weighted_diffs = math.fsum(
                    m.weight * (m.distance - avg) ** 2 for m in measurements
                )
                variance = weighted_diffs / ((count - 1) / count * sum_weights)
                std = math.sqrt(variance)

                x = float(i + 1)
                xy_sum += std * x * avg
                x2_sum += std * x * x

            if x2_sum == 0 or xy_sum == 0:
                raise NotEnoughDataError("measurements have no spread")
            slope = xy_sum / x2_sum
            net_size = int(1 / slope - 1)

            self._cache = net_size
            logger.debug("new network size estimation %d", net_size)
            return net_size

    def _calc_weight(self, key: str | bytes, peers: Sequence[bytes]) -> float:
        # Points from non-full buckets weigh exponentially less, unless the
        # tracked peers themselves would fill that bucket further.
        cpl = common_prefix_len(convert_key(key), self.local_id)
        bucket_level = self.rt.n_peers_for_cpl(cpl)

        if bucket_level < self.bucket_size:
            peer_level = sum(
                1 for p in peers if common_prefix_len(convert_key(p), self.local_id) == cpl
            )
            if peer_level > bucket_level:
                return 2.0 ** (peer_level - self.bucket_size)

        return 2.0 ** (bucket_level - self.bucket_size)

    def _garbage_collect(self) -> None:
        logger.debug("running garbage collection")
        max_age_ts = self._clock() - MAX_MEASUREMENT_AGE
        for i in range(self.bucket_size):
            self._measurements[i] = self._drop_old(self._measurements[i], max_age_ts)