"""In-memory transport used in place of WebRTC in unit tests."""
from __future__ import annotations

import asyncio
import itertools
from typing import Any

from peerchat.config import PeerChatConfig
from peerchat.exceptions import TransportError
from peerchat.transport.protocols import DataPathClosed
from peerchat.transport.protocols import DataPathOpened
from peerchat.transport.protocols import DataReceived
from peerchat.transport.protocols import LinkStateChanged
from peerchat.transport.protocols import LocalCandidate
from peerchat.transport.protocols import TransportSink


class LoopbackNetwork:
    """Pairs loopback transports created by any number of orchestrators.

    Offers and answers carry an opaque token identifying the transport
    which produced them so the answering and offering transports can find
    each other without any real negotiation.

    Args:
        auto_open: Open the link and data path on both sides as soon as the
            answer is applied. If `False`, call
            [`open()`][testing.transport.LoopbackTransport.open] manually.
        fail_negotiation: Raise from `create_offer()` and `accept_offer()`.
        answer_gate: If set, `accept_offer()` waits for the event before
            producing the answer.
    """

    def __init__(
        self,
        *,
        auto_open: bool = True,
        fail_negotiation: bool = False,
        answer_gate: asyncio.Event | None = None,
    ) -> None:
        self.auto_open = auto_open
        self.fail_negotiation = fail_negotiation
        self.answer_gate = answer_gate
        self.transports: list[LoopbackTransport] = []
        self._tokens: dict[str, LoopbackTransport] = {}
        self._counter = itertools.count()

    def factory(
        self,
        peer_id: str,
        config: PeerChatConfig,
        sink: TransportSink,
    ) -> LoopbackTransport:
        """Transport factory to pass to the orchestrator."""
        token = f'loopback-{next(self._counter)}'
        transport = LoopbackTransport(self, token, peer_id, sink)
        self.transports.append(transport)
        self._tokens[token] = transport
        return transport

    def lookup(self, token: str) -> LoopbackTransport:
        """Find the transport which produced a description."""
        return self._tokens[token]

    def to_peer(self, peer_id: str) -> list[LoopbackTransport]:
        """Transports created for talking to `peer_id`."""
        return [t for t in self.transports if t.peer_id == peer_id]


class LoopbackTransport:
    """Transport handle connected to its remote half in memory.

    Attributes:
        sent: Payloads successfully sent.
        candidates: Remote candidates added.
        close_count: Number of calls to `close()`.
        offers: Number of offers created.
        answers: Number of answers created.
        fail_sends: Raise from `send()` even when open.
    """

    def __init__(
        self,
        network: LoopbackNetwork,
        token: str,
        peer_id: str,
        sink: TransportSink,
    ) -> None:
        self.network = network
        self.token = token
        self.peer_id = peer_id
        self.sink = sink
        self.remote: LoopbackTransport | None = None
        self.is_open = False
        self.closed = False
        self.sent: list[str] = []
        self.candidates: list[dict[str, Any]] = []
        self.close_count = 0
        self.offers = 0
        self.answers = 0
        self.fail_sends = False

    def __repr__(self) -> str:
        return f'LoopbackTransport({self.token}, peer={self.peer_id[:8]})'

    async def create_offer(self) -> dict[str, Any]:
        if self.network.fail_negotiation:
            raise TransportError('Negotiation disabled.')
        self.offers += 1
        return {'type': 'offer', 'sdp': self.token}

    async def accept_offer(self, offer: dict[str, Any]) -> dict[str, Any]:
        if self.network.fail_negotiation:
            raise TransportError('Negotiation disabled.')
        self.remote = self.network.lookup(offer['sdp'])
        if self.network.answer_gate is not None:
            await self.network.answer_gate.wait()
        self.answers += 1
        return {'type': 'answer', 'sdp': self.token}

    async def apply_answer(self, answer: dict[str, Any]) -> None:
        self.remote = self.network.lookup(answer['sdp'])
        if self.network.auto_open:
            self.open()

    async def add_candidate(self, candidate: dict[str, Any]) -> None:
        self.candidates.append(candidate)

    def open(self) -> None:
        """Open the link and data path on both halves."""
        assert self.remote is not None
        for transport in (self, self.remote):
            if transport.closed or transport.is_open:
                continue
            transport.is_open = True
            transport.sink(LinkStateChanged('connected'))
            transport.sink(DataPathOpened())

    def emit_candidate(self, candidate: dict[str, Any]) -> None:
        """Report a locally gathered candidate to the orchestrator."""
        self.sink(LocalCandidate(candidate))

    def drop(self, state: str = 'disconnected') -> None:
        """Simulate a network failure seen by this half only."""
        self.is_open = False
        self.sink(DataPathClosed())
        self.sink(LinkStateChanged(state))

    async def send(self, data: str) -> None:
        if not self.is_open or self.remote is None:
            raise TransportError(f'{self!r} is not open.')
        if self.fail_sends:
            raise TransportError(f'{self!r} failed to send.')
        self.sent.append(data)
        if not self.remote.closed:
            self.remote.sink(DataReceived(data))

    async def close(self) -> None:
        self.close_count += 1
        if self.closed:
            return
        self.closed = True
        self.is_open = False
        remote = self.remote
        if remote is not None and remote.is_open and not remote.closed:
            remote.drop('closed')
