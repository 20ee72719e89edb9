import pytest

from kaddht.pb.message import (
    AddrInfo,
    Connectedness,
    ConnectionType,
    Message,
    MessagePeer,
    MessageType,
    Multiaddr,
    PeerRoutingInfo,
    byte_string_from_json,
    byte_string_to_json,
    connectedness,
    connection_type,
    decode_multiaddr,
    new_message,
    pb_peer_to_peer_info,
    pb_peers_to_peer_infos,
    peer_infos_to_pb_peers,
    peer_routing_infos_to_pb_peers,
    raw_peer_infos_to_pb_peers,
)

LOCAL_TCP = "/ip4/127.0.0.1/tcp/4001"
LOCAL_TCP_BYTES = bytes.fromhex("047f000001060fa1")


def test_bad_addrs_dont_return_nil():
    mp = MessagePeer(addrs=[b"NOT A VALID MULTIADDR"])
    assert mp.addresses() == []


def test_multiaddr_wire_bytes():
    assert bytes(Multiaddr.from_string(LOCAL_TCP)) == LOCAL_TCP_BYTES
    assert str(decode_multiaddr(LOCAL_TCP_BYTES)) == LOCAL_TCP


@pytest.mark.parametrize(
    "text",
    [
        "/ip6/::1/udp/4001/quic-v1",
        "/dns4/example.com/tcp/443/wss",
        "/p2p/QmYyQSo1c1Ym7orWxLYvCrM2EmxFTANf8wXmmE7DWjhx5N",
        "/ip4/10.0.0.1/tcp/80/http/p2p-circuit",
    ],
)
def test_multiaddr_round_trip(text):
    maddr = Multiaddr.from_string(text)
    assert str(maddr) == text
    assert decode_multiaddr(bytes(maddr)) == maddr


@pytest.mark.parametrize("data", [b"", b"\x04\x7f\x00", b"\x06", b"\xff\xff"])
def test_invalid_multiaddr_bytes(data):
    with pytest.raises(ValueError):
        decode_multiaddr(data)


@pytest.mark.parametrize("text", ["ip4/1.2.3.4", "/ip4/300.1.1.1", "/tcp", "/nope/1", "/tcp/70000"])
def test_invalid_multiaddr_strings(text):
    with pytest.raises(ValueError):
        Multiaddr.from_string(text)


def test_addresses_keeps_only_valid():
    mp = MessagePeer(id=b"peer", addrs=[b"garbage", LOCAL_TCP_BYTES])
    assert mp.addresses() == [Multiaddr(LOCAL_TCP_BYTES)]


def test_cluster_level_adjustment():
    m = new_message(MessageType.FIND_NODE, b"key", 0)
    assert m.cluster_level_raw == 1
    assert m.cluster_level == 0
    m.cluster_level = 3
    assert m.cluster_level_raw == 4
    assert m.cluster_level == 3
    assert Message().cluster_level == 0
    assert m.type == MessageType.FIND_NODE
    assert m.key == b"key"


def test_new_message_without_key():
    m = new_message(MessageType.PING, None, 0)
    assert m.key == b""
    assert m.record is None


def test_connection_type_mapping():
    assert connection_type(Connectedness.CONNECTED) == ConnectionType.CONNECTED
    assert connection_type(Connectedness.CAN_CONNECT) == ConnectionType.CAN_CONNECT
    assert connection_type(Connectedness.CANNOT_CONNECT) == ConnectionType.CANNOT_CONNECT
    assert connection_type(99) == ConnectionType.NOT_CONNECTED


def test_connectedness_mapping():
    for c in Connectedness:
        assert connectedness(connection_type(c)) == c
    assert connectedness(42) == Connectedness.NOT_CONNECTED


def test_byte_string_json():
    assert byte_string_to_json(b"hi") == '"aGk="'
    data = b"\x00\xffabc"
    assert byte_string_from_json(byte_string_to_json(data)) == data
    assert byte_string_from_json("null") == b""
    with pytest.raises(ValueError):
        byte_string_from_json('"not base64!"')
    with pytest.raises(ValueError):
        byte_string_from_json("12")


def test_peer_info_conversions():
    info = AddrInfo(id=b"peer-a", addrs=[Multiaddr.from_string(LOCAL_TCP)])
    [pbp] = raw_peer_infos_to_pb_peers([info])
    assert pbp.id == b"peer-a"
    assert pbp.addrs == [LOCAL_TCP_BYTES]
    assert pbp.connection == ConnectionType.NOT_CONNECTED
    assert pb_peer_to_peer_info(pbp) == info
    assert pb_peers_to_peer_infos([pbp]) == [info]


def test_peer_infos_to_pb_peers_uses_network():
    class Network:
        def connectedness(self, p):
            return Connectedness.CONNECTED if p == b"a" else Connectedness.CANNOT_CONNECT

    peers = [AddrInfo(id=b"a"), AddrInfo(id=b"b")]
    result = peer_infos_to_pb_peers(Network(), peers)
    assert [p.connection for p in result] == [
        ConnectionType.CONNECTED,
        ConnectionType.CANNOT_CONNECT,
    ]


def test_peer_routing_infos_to_pb_peers():
    infos = [PeerRoutingInfo(id=b"x", connectedness=Connectedness.CAN_CONNECT)]
    [pbp] = peer_routing_infos_to_pb_peers(infos)
    assert pbp.id == b"x"
    assert pbp.connection == ConnectionType.CAN_CONNECT