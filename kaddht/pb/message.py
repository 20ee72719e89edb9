"""DHT wire message types and conversions between peer records and wire peers."""

from __future__ import annotations

import base64
import ipaddress
import json
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable

log = logging.getLogger("kaddht.pb")


class MessageType(IntEnum):
    PUT_VALUE = 0
    GET_VALUE = 1
    ADD_PROVIDER = 2
    GET_PROVIDERS = 3
    FIND_NODE = 4
    PING = 5


class ConnectionType(IntEnum):
    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3


class Connectedness(IntEnum):
    NOT_CONNECTED = 0
    CONNECTED = 1
    CAN_CONNECT = 2
    CANNOT_CONNECT = 3


# ---------------------------------------------------------------- multiaddr

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _b58encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    digits = []
    while n:
        n, rem = divmod(n, 58)
        digits.append(_B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(digits))


def _b58decode(text: str) -> bytes:
    if not text:
        raise ValueError("empty base58 string")
    n = 0
    for ch in text:
        idx = _B58_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"invalid base58 character {ch!r}")
        n = n * 58 + idx
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + n.to_bytes((n.bit_length() + 7) // 8, "big")


def _encode_uvarint(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_uvarint(data: bytes, offset: int) -> tuple[int, int]:
    value = 0
    for shift_index in range(9):
        pos = offset + shift_index
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        value |= (byte & 0x7F) << (7 * shift_index)
        if not byte & 0x80:
            return value, pos + 1
    raise ValueError("varint too long")


@dataclass(frozen=True)
class _Proto:
    code: int
    name: str
    size: int  # bits; 0 = no value, -1 = length-prefixed


_PROTOCOLS = [
    _Proto(4, "ip4", 32),
    _Proto(6, "tcp", 16),
    _Proto(33, "dccp", 16),
    _Proto(41, "ip6", 128),
    _Proto(42, "ip6zone", -1),
    _Proto(53, "dns", -1),
    _Proto(54, "dns4", -1),
    _Proto(55, "dns6", -1),
    _Proto(56, "dnsaddr", -1),
    _Proto(132, "sctp", 16),
    _Proto(273, "udp", 16),
    _Proto(280, "webrtc-direct", 0),
    _Proto(281, "webrtc", 0),
    _Proto(290, "p2p-circuit", 0),
    _Proto(301, "udt", 0),
    _Proto(302, "utp", 0),
    _Proto(421, "p2p", -1),
    _Proto(443, "https", 0),
    _Proto(448, "tls", 0),
    _Proto(460, "quic", 0),
    _Proto(461, "quic-v1", 0),
    _Proto(465, "webtransport", 0),
    _Proto(477, "ws", 0),
    _Proto(478, "wss", 0),
    _Proto(480, "http", 0),
]
_BY_CODE = {p.code: p for p in _PROTOCOLS}
_BY_NAME = {p.name: p for p in _PROTOCOLS}
_BY_NAME["ipfs"] = _BY_NAME["p2p"]
_PORT_PROTOCOLS = {"tcp", "udp", "dccp", "sctp"}


def _value_to_str(proto: _Proto, value: bytes) -> str:
    if proto.name in ("ip4", "ip6"):
        return str(ipaddress.ip_address(value))
    if proto.name in _PORT_PROTOCOLS:
        return str(int.from_bytes(value, "big"))
    if proto.name == "p2p":
        if not value:
            raise ValueError("empty peer id")
        return _b58encode(value)
    text = value.decode("utf-8")
    if not text or "/" in text:
        raise ValueError(f"invalid {proto.name} value")
    return text


def _str_to_value(proto: _Proto, text: str) -> bytes:
    if proto.name == "ip4":
        return ipaddress.IPv4Address(text).packed
    if proto.name == "ip6":
        return ipaddress.IPv6Address(text).packed
    if proto.name in _PORT_PROTOCOLS:
        port = int(text)
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        return port.to_bytes(2, "big")
    if proto.name == "p2p":
        return _b58decode(text)
    if not text:
        raise ValueError(f"empty {proto.name} value")
    return text.encode("utf-8")


def _split(raw: bytes) -> list[tuple[_Proto, bytes]]:
    if not raw:
        raise ValueError("empty multiaddr")
    parts = []
    pos = 0
    while pos < len(raw):
        code, pos = _decode_uvarint(raw, pos)
        proto = _BY_CODE.get(code)
        if proto is None:
            raise ValueError(f"no protocol with code {code}")
        value = b""
        if proto.size:
            if proto.size < 0:
                length, pos = _decode_uvarint(raw, pos)
            else:
                length = proto.size // 8
            if pos + length > len(raw):
                raise ValueError(f"truncated {proto.name} value")
            value = raw[pos:pos + length]
            pos += length
            _value_to_str(proto, value)
        parts.append((proto, value))
    return parts


@dataclass(frozen=True)
class Multiaddr:
    """A binary-encoded multiaddress; construction validates the encoding."""

    raw: bytes

    def __post_init__(self) -> None:
        _split(self.raw)

    @classmethod
    def from_string(cls, text: str) -> "Multiaddr":
        if not text.startswith("/"):
            raise ValueError("multiaddr must begin with /")
        tokens = text[1:].rstrip("/").split("/")
        out = bytearray()
        tokens_iter = iter(tokens)
        for name in tokens_iter:
            proto = _BY_NAME.get(name)
            if proto is None:
                raise ValueError(f"unknown protocol {name!r}")
            out += _encode_uvarint(proto.code)
            if not proto.size:
                continue
            value_text = next(tokens_iter, None)
            if value_text is None:
                raise ValueError(f"missing value for {name}")
            value = _str_to_value(proto, value_text)
            if proto.size < 0:
                out += _encode_uvarint(len(value))
            out += value
        return cls(bytes(out))

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        pieces = []
        for proto, value in _split(self.raw):
            pieces.append("/" + proto.name)
            if proto.size:
                pieces.append("/" + _value_to_str(proto, value))
        return "".join(pieces)


def decode_multiaddr(data: bytes) -> Multiaddr:
    """Decode a binary multiaddress; raises ValueError if it is invalid."""
    return Multiaddr(bytes(data))


# ---------------------------------------------------------------- byte strings

def byte_string_to_json(b: bytes) -> str:
    """Encode raw bytes as a JSON string holding their base64 form."""
    return json.dumps(base64.b64encode(bytes(b)).decode("ascii"))


def byte_string_from_json(data: str | bytes) -> bytes:
    """Decode the JSON form written by ``byte_string_to_json``; null gives b''."""
    value = json.loads(data)
    if value is None:
        return b""
    if not isinstance(value, str):
        raise ValueError("expected a base64 JSON string")
    return base64.b64decode(value, validate=True)


# ---------------------------------------------------------------- messages

@dataclass
class AddrInfo:
    id: bytes
    addrs: list[Multiaddr] = field(default_factory=list)


@dataclass
class PeerRoutingInfo(AddrInfo):
    connectedness: Connectedness = Connectedness.NOT_CONNECTED


@dataclass
class Record:
    key: bytes = b""
    value: bytes = b""
    time_received: str = ""


@dataclass
class MessagePeer:
    id: bytes = b""
    addrs: list[bytes] = field(default_factory=list)
    connection: ConnectionType = ConnectionType.NOT_CONNECTED

    def addresses(self) -> list[Multiaddr]:
        """Return the decodable addresses of this peer, skipping invalid ones."""
        result = []
        for addr in self.addrs:
            try:
                result.append(decode_multiaddr(addr))
            except ValueError as exc:
                log.debug("error decoding multiaddr for peer %r: %s", self.id, exc)
        return result


@dataclass
class Message:
    type: MessageType = MessageType.PUT_VALUE
    key: bytes = b""
    record: Record | None = None
    closer_peers: list[MessagePeer] = field(default_factory=list)
    provider_peers: list[MessagePeer] = field(default_factory=list)
    cluster_level_raw: int = 0

    @property
    def cluster_level(self) -> int:
        """Cluster level, stored shifted by one so that 0 means unset."""
        return max(self.cluster_level_raw - 1, 0)

    @cluster_level.setter
    def cluster_level(self, level: int) -> None:
        self.cluster_level_raw = level + 1


def new_message(typ: MessageType, key: bytes | None, level: int) -> Message:
    """Build a message of the given type, key and cluster level."""
    message = Message(type=typ, key=bytes(key) if key is not None else b"")
    message.cluster_level = level
    return message


def connection_type(c: Any) -> ConnectionType:
    """Map a ``Connectedness`` to its wire ``ConnectionType``."""
    try:
        return ConnectionType[Connectedness(c).name]
    except ValueError:
        return ConnectionType.NOT_CONNECTED


def connectedness(c: Any) -> Connectedness:
    """Map a wire ``ConnectionType`` to a ``Connectedness``."""
    try:
        return Connectedness[ConnectionType(c).name]
    except ValueError:
        return Connectedness.NOT_CONNECTED


def _peer_info_to_pb_peer(p: AddrInfo) -> MessagePeer:
    return MessagePeer(id=p.id, addrs=[bytes(addr) for addr in p.addrs])


def pb_peer_to_peer_info(pbp: MessagePeer) -> AddrInfo:
    return AddrInfo(id=pbp.id, addrs=pbp.addresses())


def raw_peer_infos_to_pb_peers(peers: Iterable[AddrInfo]) -> list[MessagePeer]:
    return [_peer_info_to_pb_peer(p) for p in peers]


def peer_infos_to_pb_peers(network: Any, peers: Iterable[AddrInfo]) -> list[MessagePeer]:
    """Convert peers to wire peers, filling in their connection type from ``network``."""
    result = []
    for p in peers:
        pbp = _peer_info_to_pb_peer(p)
        pbp.connection = connection_type(network.connectedness(p.id))
        result.append(pbp)
    return result


def peer_routing_infos_to_pb_peers(peers: Iterable[PeerRoutingInfo]) -> list[MessagePeer]:
    result = []
    for p in peers:
        pbp = _peer_info_to_pb_peer(p)
        pbp.connection = connection_type(p.connectedness)
        result.append(pbp)
    return result


def pb_peers_to_peer_infos(pbps: Iterable[MessagePeer]) -> list[AddrInfo]:
    """Convert wire peers to peer records; invalid addresses are silently dropped."""
    return [pb_peer_to_peer_info(pbp) for pbp in pbps]