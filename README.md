# kaddht

Building blocks for a Kademlia distributed hash table, in pure Python with no
third-party dependencies.

## Modules

- `kaddht.keyspace` — the XOR keyspace. `convert_key` maps a key or peer ID
  to its SHA-256 digest; `xor_distance`, `common_prefix_len` and `closer`
  compare keys and peers by distance.
- `kaddht.protocol` — `PROTOCOL_DHT` (`"/ipfs/kad/1.0.0"`),
  `DEFAULT_PROTOCOLS`, `RoutingOptions` with its `apply(*options)` method, and
  the `quorum(n)` option.
- `kaddht.qpeerset` — `QueryPeerset` and `PeerState` (`HEARD`, `WAITING`,
  `QUERIED`, `UNREACHABLE`). A peer set tracks each peer's state during one
  lookup and returns peers ordered by distance to the target with
  `get_closest_n_in_states` and `get_closest_in_states`. Asking about an
  unknown peer raises `KeyError`.
- `kaddht.rt_diversity_filter` — `RTPeerDiversityFilter` and `PeerGroupInfo`.
  The filter caps how many peers of one IP group are allowed per common prefix
  length (`max_per_cpl`) and across the whole table (`max_for_table`).
- `kaddht.pb.message` — the message data types (`Message`, `MessagePeer`,
  `Record`, `AddrInfo`, `PeerRoutingInfo`), the enums `MessageType`,
  `ConnectionType` and `Connectedness`, a binary `Multiaddr` with
  `from_string` and `decode_multiaddr`, and helpers that convert between peer
  records and wire peers. `MessagePeer.addresses()` silently drops addresses
  that do not decode.
- `kaddht.pb.protocol_messenger` — `ProtocolMessenger`, which builds requests
  (`put_value`, `get_value`, `get_closest_peers`, `put_provider`,
  `get_providers`, `ping`), sends them through a `MessageSender` you supply,
  and checks the replies. A record for the wrong key raises
  `IncorrectRecordError`.
- `kaddht.netsize` — `Estimator`, which estimates the network size from
  tracked lists of the closest peers to keys, and `normed_distance`.
  `network_size()` raises `NotEnoughDataError` until enough measurements are
  in; `track` raises `WrongNumOfPeersError` if the list is not bucket size long.
- `kaddht.providers.manager` — `ProviderManager`, which stores provider
  records in a datastore with an LRU cache in front and removes expired
  records in a background thread; also `ProviderSet` and the record helpers
  `write_provider_entry`, `load_provider_set`, `mk_prov_key`,
  `mk_prov_key_for` and `read_time_value`.
- `kaddht.providers.stores` — `MapDatastore`, a thread-safe in-memory
  datastore with path-like keys, and `MemoryPeerstore`, an address book whose
  entries expire after a TTL.
- `kaddht.rtrefresh` — `RtRefreshManager`, which refreshes a routing table on
  a schedule and on request. `refresh(force)` returns a
  `concurrent.futures.Future` that resolves when the refresh has finished;
  `refresh_no_wait()` only queues a request.

## Examples

Tracking peers during a lookup:

```python
from kaddht.qpeerset import PeerState, QueryPeerset

qp = QueryPeerset("target-key")
qp.try_add(b"peer-a", b"seed")
qp.try_add(b"peer-b", b"seed")
qp.set_state(b"peer-a", PeerState.WAITING)

print(qp.get_closest_in_states(PeerState.HEARD))  # [b'peer-b']
print(qp.num_waiting())                           # 1
```

Limiting IP groups in the routing table:

```python
from kaddht.rt_diversity_filter import PeerGroupInfo, RTPeerDiversityFilter

flt = RTPeerDiversityFilter(None, 2, 3)
group = PeerGroupInfo(cpl=1, ip_group_key="key")
if flt.allow(group):
    flt.increment(group)
```

Storing provider records:

```python
from kaddht.pb.message import AddrInfo, Multiaddr
from kaddht.providers.manager import ProviderManager
from kaddht.providers.stores import MapDatastore, MemoryPeerstore

addr = Multiaddr.from_string("/ip4/127.0.0.1/tcp/4001")
with ProviderManager(b"self", MemoryPeerstore(), MapDatastore()) as pm:
    pm.add_provider(b"some-key", AddrInfo(id=b"peer-a", addrs=[addr]))
    for info in pm.get_providers(b"some-key"):
        print(info.id, [str(a) for a in info.addrs])
```

## What the package does not do

This is a set of parts, not a running DHT node. It has no network transport
and does not encode messages into bytes: `Message` is a plain data class and
`ProtocolMessenger` needs a `MessageSender` implementation to deliver it. There
is no routing table and no lookup driver that puts values, finds providers or
finds peers across the network; `Estimator` and `RtRefreshManager` take the
routing table, host and query functions as objects you provide.

## Running the tests

```
pip install -e .[test]
pytest
```