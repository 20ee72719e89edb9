import pytest

from kaddht.pb.message import (
    AddrInfo,
    Message,
    MessagePeer,
    MessageType,
    Multiaddr,
    Record,
)
from kaddht.pb.protocol_messenger import (
    IncorrectRecordError,
    MessageSender,
    ProtocolMessenger,
)

ADDR = Multiaddr.from_string("/ip4/127.0.0.1/tcp/4001")


class FakeSender(MessageSender):
    def __init__(self, responder=None):
        self.responder = responder
        self.requests = []
        self.messages = []

    def send_request(self, p, pmes):
        self.requests.append((p, pmes))
        return self.responder(pmes)

    def send_message(self, p, pmes):
        self.messages.append((p, pmes))


class FakeHost:
    def __init__(self, peer_id, addrs):
        self._id = peer_id
        self._addrs = addrs

    def id(self):
        return self._id

    def addrs(self):
        return list(self._addrs)


def test_message_sender_is_abstract():
    with pytest.raises(TypeError):
        MessageSender()


def test_options_are_applied_in_order():
    seen = []
    pm = ProtocolMessenger(FakeSender(), lambda m: seen.append(1), lambda m: seen.append(2))
    assert seen == [1, 2]
    assert isinstance(pm.sender, FakeSender)


def test_failing_option_propagates():
    def bad(_):
        raise RuntimeError("bad option")

    with pytest.raises(RuntimeError):
        ProtocolMessenger(FakeSender(), bad)


def test_put_value_success():
    sender = FakeSender(lambda m: Message(type=m.type, key=m.key, record=m.record))
    pm = ProtocolMessenger(sender)
    rec = Record(key=b"/v/hello", value=b"world")
    pm.put_value(b"peer", rec)
    (p, sent), = sender.requests
    assert p == b"peer"
    assert sent.type == MessageType.PUT_VALUE
    assert sent.key == b"/v/hello"
    assert sent.record is rec
    assert sent.cluster_level_raw == 1


def test_put_value_mismatch_raises():
    sender = FakeSender(lambda m: Message(record=Record(key=m.key, value=b"other")))
    with pytest.raises(ValueError, match="value not put correctly"):
        ProtocolMessenger(sender).put_value(b"peer", Record(key=b"k", value=b"v"))


def test_put_value_without_record_raises():
    sender = FakeSender(lambda m: Message())
    with pytest.raises(ValueError):
        ProtocolMessenger(sender).put_value(b"peer", Record(key=b"k", value=b"v"))


def test_put_value_sender_error_propagates():
    def fail(_):
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        ProtocolMessenger(FakeSender(fail)).put_value(b"p", Record(key=b"k", value=b"v"))


def test_get_value_returns_record_and_peers():
    rec = Record(key=b"/v/key", value=b"val")
    closer = [MessagePeer(id=b"c1", addrs=[bytes(ADDR)])]
    sender = FakeSender(lambda m: Message(record=rec, closer_peers=closer))
    got, peers = ProtocolMessenger(sender).get_value(b"peer", "/v/key")
    assert got is rec
    assert peers == [AddrInfo(id=b"c1", addrs=[ADDR])]
    assert sender.requests[0][1].type == MessageType.GET_VALUE
    assert sender.requests[0][1].key == b"/v/key"


def test_get_value_without_record_returns_peers():
    closer = [MessagePeer(id=b"c1"), MessagePeer(id=b"c2")]
    sender = FakeSender(lambda m: Message(closer_peers=closer))
    got, peers = ProtocolMessenger(sender).get_value(b"peer", b"/v/key")
    assert got is None
    assert [p.id for p in peers] == [b"c1", b"c2"]


def test_get_value_incorrect_record_key():
    sender = FakeSender(lambda m: Message(record=Record(key=b"/v/other", value=b"x")))
    with pytest.raises(IncorrectRecordError):
        ProtocolMessenger(sender).get_value(b"peer", b"/v/key")


def test_get_closest_peers_drops_bad_addresses():
    closer = [MessagePeer(id=b"c1", addrs=[b"NOT A VALID MULTIADDR", bytes(ADDR)])]
    sender = FakeSender(lambda m: Message(closer_peers=closer))
    peers = ProtocolMessenger(sender).get_closest_peers(b"peer", b"target")
    assert peers == [AddrInfo(id=b"c1", addrs=[ADDR])]
    sent = sender.requests[0][1]
    assert sent.type == MessageType.FIND_NODE
    assert sent.key == b"target"


def test_put_provider_without_addresses_raises():
    sender = FakeSender()
    with pytest.raises(ValueError, match="no known addresses"):
        ProtocolMessenger(sender).put_provider(b"peer", b"mh", FakeHost(b"me", []))
    assert sender.messages == []


def test_put_provider_sends_message():
    sender = FakeSender()
    ProtocolMessenger(sender).put_provider(b"peer", b"mh", FakeHost(b"me", [ADDR]))
    (p, sent), = sender.messages
    assert p == b"peer"
    assert sent.type == MessageType.ADD_PROVIDER
    assert sent.key == b"mh"
    assert [(pp.id, pp.addrs) for pp in sent.provider_peers] == [(b"me", [bytes(ADDR)])]
    assert sender.requests == []


def test_get_providers():
    provs = [MessagePeer(id=b"prov", addrs=[bytes(ADDR)])]
    closer = [MessagePeer(id=b"near")]
    sender = FakeSender(lambda m: Message(provider_peers=provs, closer_peers=closer))
    got_provs, got_closer = ProtocolMessenger(sender).get_providers(b"peer", b"mh")
    assert got_provs == [AddrInfo(id=b"prov", addrs=[ADDR])]
    assert got_closer == [AddrInfo(id=b"near", addrs=[])]
    assert sender.requests[0][1].type == MessageType.GET_PROVIDERS


def test_ping_ok():
    sender = FakeSender(lambda m: Message(type=MessageType.PING))
    ProtocolMessenger(sender).ping(b"peer")
    sent = sender.requests[0][1]
    assert sent.type == MessageType.PING
    assert sent.key == b""


def test_ping_wrong_response_type():
    sender = FakeSender(lambda m: Message(type=MessageType.FIND_NODE))
    with pytest.raises(ValueError, match="unexpected response type"):
        ProtocolMessenger(sender).ping(b"peer")


def test_ping_sender_error_propagates():
    def fail(_):
        raise TimeoutError("slow")

    with pytest.raises(TimeoutError):
        ProtocolMessenger(FakeSender(fail)).ping(b"peer")