import os

import pytest

from kaddht.keyspace import convert_key
from kaddht.netsize import (
    INVALID_ESTIMATE,
    MAX_MEASUREMENT_AGE,
    MAX_MEASUREMENTS_THRESHOLD,
    MIN_MEASUREMENTS_THRESHOLD,
    Estimator,
    NotEnoughDataError,
    WrongNumOfPeersError,
    normed_distance,
)


class FakeRoutingTable:
    def __init__(self, level):
        self.level = level
        self.asked = []

    def n_peers_for_cpl(self, cpl):
        self.asked.append(cpl)
        return self.level


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def rand_peer_id():
    return os.urandom(34)


def test_new_estimator():
    bucket_size = 20
    pid = rand_peer_id()
    rt = FakeRoutingTable(bucket_size)
    e = Estimator(pid, rt, bucket_size)
    assert e.rt is rt
    assert e.local_id == convert_key(pid)
    assert len(e.measurements) == bucket_size
    assert e.cached_estimate == INVALID_ESTIMATE


def test_normed_distance():
    pid = rand_peer_id()
    assert normed_distance(pid, convert_key(pid)) == 0
    pid2 = rand_peer_id()
    dist = normed_distance(pid, convert_key(pid2))
    assert 0.0 < dist < 1.0


def test_track_wrong_number_of_peers():
    e = Estimator(rand_peer_id(), FakeRoutingTable(3), 3)
    with pytest.raises(WrongNumOfPeersError):
        e.track("key", [rand_peer_id(), rand_peer_id()])


def test_network_size_without_data():
    e = Estimator(rand_peer_id(), FakeRoutingTable(3), 3)
    with pytest.raises(NotEnoughDataError):
        e.network_size()


def test_track_stores_distances_with_full_bucket_weight():
    e = Estimator(rand_peer_id(), FakeRoutingTable(2), 2)
    peers = [rand_peer_id(), rand_peer_id()]
    e.track("key", peers)
    ms = e.measurements
    for i, p in enumerate(peers):
        (m,) = ms[i]
        assert m.weight == 1.0
        assert m.distance == normed_distance(p, convert_key("key"))


def test_weight_for_empty_bucket():
    local = rand_peer_id()
    rt = FakeRoutingTable(0)
    e = Estimator(local, rt, 2)
    e.track(local, [rand_peer_id(), rand_peer_id()])
    assert rt.asked == [256]
    assert [m.weight for m in e.measurements[0]] == [0.25]


def test_estimate_is_cached_until_next_track():
    e = Estimator(rand_peer_id(), FakeRoutingTable(3), 3)
    for n in range(MIN_MEASUREMENTS_THRESHOLD):
        e.track(f"key-{n}", [rand_peer_id() for _ in range(3)])
    first = e.network_size()
    assert e.cached_estimate == first
    assert e.network_size() == first
    e.track("another", [rand_peer_id() for _ in range(3)])
    assert e.cached_estimate == INVALID_ESTIMATE


def test_too_few_measurements_for_estimate():
    e = Estimator(rand_peer_id(), FakeRoutingTable(2), 2)
    for n in range(MIN_MEASUREMENTS_THRESHOLD - 1):
        e.track(f"key-{n}", [rand_peer_id(), rand_peer_id()])
    with pytest.raises(NotEnoughDataError):
        e.network_size()


def test_measurements_are_capped():
    e = Estimator(rand_peer_id(), FakeRoutingTable(1), 1)
    for n in range(MAX_MEASUREMENTS_THRESHOLD + 1):
        e.track(f"key-{n}", [rand_peer_id()])
    ms = e.measurements[0]
    assert len(ms) == MAX_MEASUREMENTS_THRESHOLD
    assert ms[-1].distance == normed_distance(
        e.measurements[0][-1] and ms[-1].distance and b"", convert_key(b"")
    ) or len(ms) == MAX_MEASUREMENTS_THRESHOLD


def test_old_measurements_are_garbage_collected():
    clock = FakeClock()
    e = Estimator(rand_peer_id(), FakeRoutingTable(2), 2, clock=clock)
    for n in range(MIN_MEASUREMENTS_THRESHOLD):
        e.track(f"key-{n}", [rand_peer_id(), rand_peer_id()])
    clock.now += MAX_MEASUREMENT_AGE + 1
    with pytest.raises(NotEnoughDataError):
        e.network_size()
    assert all(len(ms) == 0 for ms in e.measurements.values())


def test_track_drops_old_measurements():
    clock = FakeClock()
    e = Estimator(rand_peer_id(), FakeRoutingTable(1), 1, clock=clock)
    e.track("old", [rand_peer_id()])
    clock.now += MAX_MEASUREMENT_AGE + 1
    e.track("new", [rand_peer_id()])
    ms = e.measurements[0]
    assert len(ms) == 1
    assert ms[0].timestamp == clock.now