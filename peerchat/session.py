"""Per-peer session state."""
from __future__ import annotations

import asyncio
import collections
import dataclasses
import enum
import itertools
from typing import Any

from peerchat.transport.protocols import PeerTransport

_session_ids = itertools.count(1)


class Role(enum.Enum):
    """Side of the handshake a session plays."""

    INITIATOR = 'initiator'
    """Opens the data path and sends the first offer."""
    RESPONDER = 'responder'
    """Waits for an offer and answers it."""


class ConnectionState(enum.Enum):
    """Connection state of a peer session."""

    NEW = 'new'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    DISCONNECTED = 'disconnected'
    FAILED = 'failed'


@dataclasses.dataclass(eq=False)
class PeerSession:
    """Record of one remote participant.

    Sessions are owned and mutated exclusively by the
    [`PeerSessionOrchestrator`][peerchat.orchestrator.PeerSessionOrchestrator].

    Attributes:
        peer_id: Relay-assigned id of the peer.
        display_name: Human readable name of the peer.
        role: Side of the handshake played locally.
        session_id: Process-unique id distinguishing this session from any
            earlier or later session with the same `peer_id`.
        state: Connection state.
        data_path_open: If the message data path is open. Independent of
            `state`.
        outbound_queue: Payloads waiting for the data path to open.
        pending_candidates: Remote candidates waiting for the remote
            description to be applied.
        remote_description_set: If the remote offer or answer was applied.
        answer_pending: An answer is being produced for the current
            transport.
        retries: Number of handshake retries used.
        transport: Transport handle, if one is open.
        link_id: Id of the current transport handle. Events carrying any
            other id come from a replaced transport and are ignored.
        handshake_timer: Pending handshake timeout, if armed.
    """

    peer_id: str
    display_name: str
    role: Role
    session_id: int = dataclasses.field(
        default_factory=lambda: next(_session_ids),
    )
    state: ConnectionState = ConnectionState.NEW
    data_path_open: bool = False
    outbound_queue: collections.deque[str] = dataclasses.field(
        default_factory=collections.deque,
    )
    pending_candidates: list[dict[str, Any]] = dataclasses.field(
        default_factory=list,
    )
    remote_description_set: bool = False
    answer_pending: bool = False
    retries: int = 0
    transport: PeerTransport | None = None
    link_id: int | None = None
    handshake_timer: asyncio.TimerHandle | None = None

    def __repr__(self) -> str:
        peer = log_name(self.peer_id, self.display_name)
        return (
            f'{self.__class__.__name__}(peer={peer}, '
            f'role={self.role.value}, state={self.state.value}, '
            f'data_path_open={self.data_path_open}, '
            f'queued={len(self.outbound_queue)})'
        )

    def cancel_handshake_timer(self) -> None:
        """Cancel the pending handshake timeout, if any."""
        if self.handshake_timer is not None:
            self.handshake_timer.cancel()
            self.handshake_timer = None


def log_name(peer_id: str, name: str) -> str:
    """Return string formatted as `#!python 'name(id-prefix)'`."""
    return f'{name}({peer_id[:min(8, len(peer_id))]})'
