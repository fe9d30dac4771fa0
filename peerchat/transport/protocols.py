"""Peer transport capability protocol and the events it emits."""
from __future__ import annotations

import dataclasses
from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import TYPE_CHECKING
from typing import Union

if TYPE_CHECKING:
    from peerchat.config import PeerChatConfig


@dataclasses.dataclass(frozen=True)
class LocalCandidate:
    """The transport gathered a local ICE candidate to relay to the peer."""

    candidate: dict[str, Any]


@dataclasses.dataclass(frozen=True)
class LinkStateChanged:
    """The underlying link changed state.

    Attributes:
        state: One of `new`, `connecting`, `connected`, `disconnected`,
            `failed`, or `closed`.
    """

    state: str


@dataclasses.dataclass(frozen=True)
class DataPathOpened:
    """The message data path to the peer is open for sending."""

    pass


@dataclasses.dataclass(frozen=True)
class DataPathClosed:
    """The message data path to the peer closed."""

    pass


@dataclasses.dataclass(frozen=True)
class DataReceived:
    """A payload arrived on the data path."""

    data: str


TransportEvent = Union[
    LocalCandidate,
    LinkStateChanged,
    DataPathOpened,
    DataPathClosed,
    DataReceived,
]

TransportSink = Callable[[TransportEvent], None]
"""Callable the transport invokes, without awaiting, for every event."""


@runtime_checkable
class PeerTransport(Protocol):
    """Transport handle for one peer.

    The handle performs the offer/answer/candidate negotiation and carries
    text payloads once the data path is open. It holds no semantic session
    state; events are reported through the sink it was created with.
    """

    async def create_offer(self) -> dict[str, Any]:
        """Open the local data path and produce an offer.

        Returns:
            Session description with `type` and `sdp` keys.
        """
        ...

    async def accept_offer(self, offer: dict[str, Any]) -> dict[str, Any]:
        """Apply a remote offer and produce an answer.

        Returns:
            Session description with `type` and `sdp` keys.
        """
        ...

    async def apply_answer(self, answer: dict[str, Any]) -> None:
        """Apply the remote answer to a previously created offer."""
        ...

    async def add_candidate(self, candidate: dict[str, Any]) -> None:
        """Add a remote ICE candidate."""
        ...

    async def send(self, data: str) -> None:
        """Send a payload on the open data path."""
        ...

    async def close(self) -> None:
        """Close the data path and the link."""
        ...


class TransportFactory(Protocol):
    """Creates a transport handle for a peer."""

    def __call__(
        self,
        peer_id: str,
        config: PeerChatConfig,
        sink: TransportSink,
    ) -> PeerTransport:
        """Create a transport.

        Args:
            peer_id: Relay id of the remote peer.
            config: Configuration given to the orchestrator.
            sink: Callable receiving the transport's events.
        """
        ...
