"""Kademlia DHT building blocks: keyspace, lookup peer sets, messages, providers, refresh."""

__version__ = "0.1.0"