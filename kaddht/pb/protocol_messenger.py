"""Sending DHT requests to peers and interpreting their responses."""

from __future__ import annotations

import abc
import logging
from typing import Any, Callable

from kaddht.pb.message import (
    AddrInfo,
    Message,
    MessageType,
    Record,
    new_message,
    pb_peers_to_peer_infos,
    raw_peer_infos_to_pb_peers,
)

logger = logging.getLogger("kaddht")


class IncorrectRecordError(Exception):
    """A peer answered with a record for a different key than was asked for."""

    def __init__(self, message: str = "received incorrect record") -> None:
        super().__init__(message)


class MessageSender(abc.ABC):
    """Sends wire protocol messages to a given peer."""

    @abc.abstractmethod
    def send_request(self, p: bytes, pmes: Message) -> Message:
        """Send ``pmes`` to ``p`` and return its response."""

    @abc.abstractmethod
    def send_message(self, p: bytes, pmes: Message) -> None:
        """Send ``pmes`` to ``p`` without waiting for a response."""


def _to_bytes(value: str | bytes | bytearray) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


class ProtocolMessenger:
    """Builds DHT requests, sends them through a ``MessageSender`` and checks replies."""

    def __init__(
        self,
        msg_sender: MessageSender,
        *opts: Callable[["ProtocolMessenger"], Any],
    ) -> None:
        self.sender = msg_sender
        for option in opts:
            option(self)

    def put_value(self, p: bytes, rec: Record) -> None:
        """Ask ``p`` to store ``rec``; raises ValueError if it echoes another value."""
        pmes = new_message(MessageType.PUT_VALUE, rec.key, 0)
        pmes.record = rec
        try:
            response = self.sender.send_request(p, pmes)
        except Exception as exc:
            logger.debug("failed to put value to peer %r: %s", p, exc)
            raise
        if response.record is None or response.record.value != rec.value:
            logger.info("value not put correctly: put %r, got %r", pmes, response)
            raise ValueError("value not put correctly")

    def get_value(
        self, p: bytes, key: str | bytes
    ) -> tuple[Record | None, list[AddrInfo]]:
        """Ask ``p`` for the value under ``key``; also return the closer peers it knows."""
        key_bytes = _to_bytes(key)
        response = self.sender.send_request(
            p, new_message(MessageType.GET_VALUE, key_bytes, 0)
        )
        peers = pb_peers_to_peer_infos(response.closer_peers)
        rec = response.record
        if rec is None:
            return None, peers
        logger.debug("got value")
        if rec.key != key_bytes:
            logger.debug("received incorrect record")
            raise IncorrectRecordError()
        return rec, peers

    def get_closest_peers(self, p: bytes, id: bytes) -> list[AddrInfo]:
        """Ask ``p`` for the DHT server peers closest to ``id``."""
        response = self.sender.send_request(
            p, new_message(MessageType.FIND_NODE, _to_bytes(id), 0)
        )
        return pb_peers_to_peer_infos(response.closer_peers)

    def put_provider(self, p: bytes, key: bytes, host: Any) -> None:
        """Tell ``p`` that ``host`` provides ``key``.

        ``host`` must expose ``id()`` and ``addrs()``.
        """
        info = AddrInfo(id=host.id(), addrs=list(host.addrs()))
        if not info.addrs:
            raise ValueError("no known addresses for self, cannot put provider")
        pmes = new_message(MessageType.ADD_PROVIDER, _to_bytes(key), 0)
        pmes.provider_peers = raw_peer_infos_to_pb_peers([info])
        self.sender.send_message(p, pmes)

    def get_providers(
        self, p: bytes, key: bytes
    ) -> tuple[list[AddrInfo], list[AddrInfo]]:
        """Ask ``p`` for the providers of ``key``; return them and the closer peers."""
        response = self.sender.send_request(
            p, new_message(MessageType.GET_PROVIDERS, _to_bytes(key), 0)
        )
        providers = pb_peers_to_peer_infos(response.provider_peers)
        closer = pb_peers_to_peer_infos(response.closer_peers)
        return providers, closer

    def ping(self, p: bytes) -> None:
        """Ping ``p``; raises ValueError if the answer is not a ping."""
        response = self.sender.send_request(p, new_message(MessageType.PING, None, 0))
        if response.type != MessageType.PING:
            raise ValueError(f"got unexpected response type: {response.type!r}")