"""Protocol identifiers and routing options of the DHT."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

PROTOCOL_DHT = "/ipfs/kad/1.0.0"
DEFAULT_PROTOCOLS: tuple[str, ...] = (PROTOCOL_DHT,)


@dataclass(frozen=True)
class QuorumOptionKey:
    """Key under which the quorum option is stored in ``RoutingOptions.other``."""


@dataclass
class RoutingOptions:
    """Options that tune a single routing call."""

    offline: bool = False
    other: dict[Any, Any] | None = field(default_factory=dict)

    def apply(self, *args: Callable[["RoutingOptions"], None]) -> "RoutingOptions":
        """Apply each option in order; an option signals failure by raising."""
        for option in args:
            option(self)
        return self


def quorum(n: int) -> Callable[[RoutingOptions], None]:
    """Option telling the DHT how many peers to get values from before returning.

    Zero means the query should complete instead of returning early.
    """

    def option(opts: RoutingOptions) -> None:
        if opts.other is None:
            opts.other = {}
        opts.other[QuorumOptionKey()] = n

    return option