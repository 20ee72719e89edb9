"""XOR keyspace helpers used to order peers by their distance to a key."""

from __future__ import annotations

import hashlib

KEY_BITS = 256


def _as_bytes(value: str | bytes | bytearray) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def convert_key(key: str | bytes | bytearray) -> bytes:
    """Map an arbitrary key or peer ID into the Kademlia keyspace (SHA-256)."""
    return hashlib.sha256(_as_bytes(key)).digest()


def xor_distance(a: bytes, b: bytes) -> int:
    """Return the XOR distance between two keyspace keys as an integer."""
    if len(a) != len(b):
        raise ValueError("keys must have the same length")
    return int.from_bytes(a, "big") ^ int.from_bytes(b, "big")


def common_prefix_len(a: bytes, b: bytes) -> int:
    """Return the number of leading bits that two keyspace keys share."""
    return len(a) * 8 - xor_distance(a, b).bit_length()


def closer(a: str | bytes, b: str | bytes, key: str | bytes) -> bool:
    """Return True if peer ``a`` is strictly closer to ``key`` than peer ``b``."""
    target = convert_key(key)
    return xor_distance(convert_key(a), target) < xor_distance(convert_key(b), target)