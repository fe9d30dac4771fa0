"""Coordinator of the relay link and all peer sessions in a room."""
from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import sys
from types import TracebackType
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Union

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from peerchat.config import PeerChatConfig
from peerchat.exceptions import HandshakeFailedError
from peerchat.exceptions import RelayLinkLostError
from peerchat.payloads import classify_payload
from peerchat.payloads import encode_message
from peerchat.payloads import encode_typing
from peerchat.payloads import now_ms
from peerchat.payloads import TypingPayload
from peerchat.session import ConnectionState
from peerchat.session import log_name
from peerchat.session import PeerSession
from peerchat.session import Role
from peerchat.signaling.client import SignalingClient
from peerchat.signaling.exceptions import NotConnectedError
from peerchat.signaling.exceptions import RelayUnreachableError
from peerchat.signaling.messages import Identified
from peerchat.signaling.messages import PeerInfo
from peerchat.signaling.messages import PeerJoined
from peerchat.signaling.messages import PeerLeft
from peerchat.signaling.messages import RelayClosed
from peerchat.signaling.messages import RelayError
from peerchat.signaling.messages import RelayEvent
from peerchat.signaling.messages import Signal
from peerchat.signaling.messages import SignalKind
from peerchat.streams import Broadcast
from peerchat.streams import ChatMessage
from peerchat.streams import ConnectionSnapshot
from peerchat.streams import reconnecting_status
from peerchat.streams import STATUS_CONNECTED
from peerchat.streams import STATUS_CONNECTING
from peerchat.streams import STATUS_DISCONNECTED
from peerchat.streams import STATUS_FAILED
from peerchat.streams import STATUS_INITIALIZING
from peerchat.streams import TypingIndicator
from peerchat.supervisor import ReconnectionSupervisor
from peerchat.transport.protocols import DataPathClosed
from peerchat.transport.protocols import DataPathOpened
from peerchat.transport.protocols import DataReceived
from peerchat.transport.protocols import LinkStateChanged
from peerchat.transport.protocols import LocalCandidate
from peerchat.transport.protocols import PeerTransport
from peerchat.transport.protocols import TransportEvent
from peerchat.transport.protocols import TransportFactory
from peerchat.transport.protocols import TransportSink
from peerchat.transport.rtc import RTCTransport
from peerchat.utils.tasks import cancel_and_wait
from peerchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

SignalingFactory = Callable[[PeerChatConfig], SignalingClient]

_LINK_LOST_STATES = frozenset({'disconnected', 'failed', 'closed'})


def default_signaling_factory(config: PeerChatConfig) -> SignalingClient:
    """Create a relay client for the address and timeout in `config`."""
    return SignalingClient(
        config.relay_address,
        timeout=config.relay_timeout,
    )


# Commands submitted by the public API.


@dataclasses.dataclass
class _Initialize:
    name: str
    room: str
    config: PeerChatConfig
    explicit: bool = True


@dataclasses.dataclass
class _SendMessage:
    text: str


@dataclasses.dataclass
class _SetTyping:
    is_typing: bool


@dataclasses.dataclass
class _LeaveRoom:
    pass


# Events posted by the relay pump, transports, background tasks and timers.


@dataclasses.dataclass
class _FromRelay:
    event: RelayEvent
    generation: int


@dataclasses.dataclass
class _FromTransport:
    peer_id: str
    link_id: int
    event: TransportEvent


@dataclasses.dataclass
class _DescriptionReady:
    peer_id: str
    link_id: int
    kind: SignalKind
    description: dict[str, Any]


@dataclasses.dataclass
class _DescriptionFailed:
    peer_id: str
    link_id: int
    error: Exception


@dataclasses.dataclass
class _HandshakeTimeout:
    peer_id: str
    link_id: int


@dataclasses.dataclass
class _CandidateBufferExpired:
    peer_id: str


@dataclasses.dataclass
class _RetryDue:
    pass


_Event = Union[
    _Initialize,
    _SendMessage,
    _SetTyping,
    _LeaveRoom,
    _FromRelay,
    _FromTransport,
    _DescriptionReady,
    _DescriptionFailed,
    _HandshakeTimeout,
    _CandidateBufferExpired,
    _RetryDue,
]


class PeerSessionOrchestrator:
    """Peer-to-peer chat session orchestrator.

    Joins a room through a relay server, negotiates a direct transport to
    every other member, and exposes the room as four subscriber streams:

    * [`status`][peerchat.orchestrator.PeerSessionOrchestrator.status]:
      aggregate connection status strings.
    * [`peers`][peerchat.orchestrator.PeerSessionOrchestrator.peers]:
      tuples of [`PeerInfo`][peerchat.signaling.messages.PeerInfo] in the
      order peers were first seen.
    * [`messages`][peerchat.orchestrator.PeerSessionOrchestrator.messages]:
      [`ChatMessage`][peerchat.streams.ChatMessage] items, including an
      echo of every message sent locally.
    * [`typing`][peerchat.orchestrator.PeerSessionOrchestrator.typing]:
      [`TypingIndicator`][peerchat.streams.TypingIndicator] items.

    The peer already in the room initiates the handshake with a peer that
    joins later. If both sides offer at once, the side with the larger
    relay id yields and answers the other's offer.

    All state is mutated by a single event loop task which processes
    relay events, transport events, timer expirations and public commands
    strictly in arrival order. Public methods enqueue a command and wait
    for it to be processed; they never raise for network failures, which
    are reported through the status stream and the log instead.

    Example:
        ```python
        from peerchat.orchestrator import PeerSessionOrchestrator

        async with PeerSessionOrchestrator() as chat:
            messages = chat.messages.subscribe()
            await chat.initialize('alice', 'ABC123')
            await chat.send_message('hello!')
            async for message in messages:
                print(f'{message.user}: {message.text}')
        ```

    Args:
        transport_factory: Creates the transport handle for each peer.
            Defaults to the aiortc data channel transport.
        signaling_factory: Creates the relay client on each initialization.
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory = RTCTransport,
        signaling_factory: SignalingFactory = default_signaling_factory,
    ) -> None:
        self._transport_factory = transport_factory
        self._signaling_factory = signaling_factory

        self._config: PeerChatConfig | None = None
        self._name: str | None = None
        self._room: str | None = None
        self._local_id: str | None = None
        self._identified = False

        self._signaling: SignalingClient | None = None
        self._relay_task: asyncio.Task[Any] | None = None
        self._relay_generation = 0

        self._roster: dict[str, str] = {}
        self._sessions: dict[str, PeerSession] = {}
        self._orphan_candidates: dict[str, list[dict[str, Any]]] = {}
        self._orphan_timers: dict[str, asyncio.TimerHandle] = {}
        self._link_ids = itertools.count(1)
        self._handshake_tasks: set[asyncio.Task[Any]] = set()

        self._queue: asyncio.Queue[Any] | None = None
        self._loop_task: asyncio.Task[Any] | None = None
        self._disposed = False

        self._supervisor = ReconnectionSupervisor(
            lambda: self._post(_RetryDue()),
        )

        self.status: Broadcast[str] = Broadcast('status', replay_latest=True)
        self.peers: Broadcast[tuple[PeerInfo, ...]] = Broadcast(
            'peers',
            replay_latest=True,
        )
        self.messages: Broadcast[ChatMessage] = Broadcast('messages')
        self.typing: Broadcast[TypingIndicator] = Broadcast('typing')

        self._snapshot = ConnectionSnapshot()
        self.status.publish(STATUS_DISCONNECTED)
        self.peers.publish(())

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.dispose()

    @property
    def _log_prefix(self) -> str:
        local = log_name(self._local_id or 'unassigned', self._name or '?')
        return f'{self.__class__.__name__}[{local}]'

    @property
    def snapshot(self) -> ConnectionSnapshot:
        """Current room, identity, peers and status."""
        return self._snapshot

    @property
    def sessions(self) -> dict[str, PeerSession]:
        """Live sessions keyed by peer id.

        Warning:
            Sessions are owned by the orchestrator and must not be mutated.
        """
        return dict(self._sessions)

    @property
    def disposed(self) -> bool:
        """[`dispose()`][peerchat.orchestrator.PeerSessionOrchestrator.dispose]
        was called.
        """
        return self._disposed

    @property
    def last_error(self) -> Exception | None:
        """Most recent relay-level failure, if any."""
        return self._supervisor.last_error

    # Public API

    async def initialize(
        self,
        name: str,
        room: str,
        config: PeerChatConfig | None = None,
    ) -> None:
        """Join a room, replacing any previous room session.

        Existing sessions are discarded and the relay connection is
        reopened, so calling this again acts as a cold restart. Any pending
        reconnection attempt is cancelled and the attempt counter reset.

        Args:
            name: Display name of the local user.
            room: Room code to join.
            config: Configuration. Defaults to
                [`PeerChatConfig()`][peerchat.config.PeerChatConfig].
        """
        config = PeerChatConfig() if config is None else config
        await self._call(_Initialize(name, room, config))

    async def send_message(self, text: str) -> None:
        """Send a chat message to every peer in the room.

        The message is echoed on the
        [`messages`][peerchat.orchestrator.PeerSessionOrchestrator.messages]
        stream exactly once, even if there are no peers. Peers whose data
        path is not open yet receive the message once it opens.
        """
        await self._call(_SendMessage(text))

    async def set_typing(self, is_typing: bool) -> None:
        """Send a typing indicator to every peer with an open data path."""
        await self._call(_SetTyping(is_typing))

    async def leave_room(self) -> None:
        """Leave the current room and close every peer session."""
        await self._call(_LeaveRoom())

    async def dispose(self) -> None:
        """Release every resource held by the orchestrator.

        Closes all transports and the relay connection, cancels pending
        timers and reconnection attempts, and ends every stream. All
        further calls to the public API are no-ops. Safe to call multiple
        times.
        """
        if self._disposed:
            return
        self._disposed = True
        logger.info(f'{self._log_prefix}: disposing')

        self._supervisor.cancel()
        await cancel_and_wait(self._loop_task)
        self._loop_task = None
        await self._teardown()
        self._room = None
        self._name = None
        self._refresh()

        self.status.close()
        self.peers.close()
        self.messages.close()
        self.typing.close()

    # Event loop

    def _ensure_loop(self) -> asyncio.Queue[Any]:
        if self._loop_task is None or self._loop_task.done():
            self._queue = asyncio.Queue()
            self._loop_task = spawn_guarded_background_task(
                self._run,
                self._queue,
            )
            self._loop_task.set_name('peer-orchestrator-events')
        return self._queue

    async def _call(self, command: _Event) -> None:
        if self._disposed:
            logger.debug(
                f'{self._log_prefix}: ignoring {type(command).__name__} '
                'after dispose',
            )
            return
        queue = self._ensure_loop()
        future: asyncio.Future[None] = (
            asyncio.get_running_loop().create_future()
        )
        queue.put_nowait((command, future))
        await future

    def _post(self, event: _Event) -> None:
        if self._disposed or self._queue is None:
            return
        self._queue.put_nowait((event, None))

    async def _run(self, queue: asyncio.Queue[Any]) -> None:
        future: asyncio.Future[None] | None = None
        try:
            while True:
                event, future = await queue.get()
                try:
                    await self._dispatch(event)
                except Exception as e:
                    logger.exception(
                        f'{self._log_prefix}: error handling '
                        f'{type(event).__name__}: {e!r}',
                    )
                self._refresh()
                if future is not None and not future.done():
                    future.set_result(None)
                future = None
        finally:
            # Unblock callers waiting on commands that will never run.
            if future is not None and not future.done():
                future.set_result(None)
            while not queue.empty():
                _, pending = queue.get_nowait()
                if pending is not None and not pending.done():
                    pending.set_result(None)

    async def _dispatch(self, event: _Event) -> None:
        if isinstance(event, _FromTransport):
            await self._on_transport_event(event)
        elif isinstance(event, _FromRelay):
            await self._on_relay_event(event)
        elif isinstance(event, _DescriptionReady):
            await self._on_description_ready(event)
        elif isinstance(event, _DescriptionFailed):
            session = self._current(event.peer_id, event.link_id)
            if session is not None:
                await self._fail_session(
                    session,
                    HandshakeFailedError(
                        f'Negotiation with {session.display_name} failed: '
                        f'{event.error!r}',
                    ),
                )
        elif isinstance(event, _HandshakeTimeout):
            await self._on_handshake_timeout(event)
        elif isinstance(event, _CandidateBufferExpired):
            self._on_orphan_candidates_expired(event.peer_id)
        elif isinstance(event, _SendMessage):
            await self._on_send_message(event.text)
        elif isinstance(event, _SetTyping):
            await self._on_set_typing(event.is_typing)
        elif isinstance(event, _Initialize):
            await self._on_initialize(event)
        elif isinstance(event, _RetryDue):
            if self._room is not None and self._name is not None:
                assert self._config is not None
                await self._on_initialize(
                    _Initialize(
                        self._name,
                        self._room,
                        self._config,
                        explicit=False,
                    ),
                )
        elif isinstance(event, _LeaveRoom):
            self._supervisor.reset()
            await self._teardown()
            logger.info(f'{self._log_prefix}: left room {self._room}')
            self._room = None
            self._name = None
        else:
            raise AssertionError('Unreachable.')

    # Relay link

    async def _on_initialize(self, command: _Initialize) -> None:
        if command.explicit:
            self._supervisor.reset()
        await self._teardown()

        self._config = command.config
        self._name = command.name
        self._room = command.room
        self._supervisor.configure(
            interval=command.config.reconnect_interval,
            max_attempts=command.config.max_reconnect_attempts,
        )
        self._refresh()

        client = self._signaling_factory(command.config)
        try:
            await client.connect(command.config.relay_address)
            await client.join_room(command.room, command.name)
        except (RelayUnreachableError, NotConnectedError) as e:
            logger.error(
                f'{self._log_prefix}: failed to join room {command.room}: '
                f'{e}',
            )
            await client.close()
            self._supervisor.relay_failed(e)
            return

        self._signaling = client
        self._relay_task = spawn_guarded_background_task(
            self._pump_relay,
            client,
            self._relay_generation,
        )
        self._relay_task.set_name(f'relay-pump-{command.room}')

    async def _pump_relay(
        self,
        client: SignalingClient,
        generation: int,
    ) -> None:
        try:
            async for event in client.events():
                self._post(_FromRelay(event, generation))
        except NotConnectedError as e:
            self._post(_FromRelay(RelayClosed(reason=str(e)), generation))
        except Exception as e:
            logger.exception(
                f'{self._log_prefix}: relay event pump stopped: {e!r}',
            )
            await client.close()
            self._post(_FromRelay(RelayClosed(reason=repr(e)), generation))

    async def _on_relay_event(self, wrapped: _FromRelay) -> None:
        if wrapped.generation != self._relay_generation:
            logger.debug(
                f'{self._log_prefix}: ignoring {type(wrapped.event).__name__} '
                'from a previous relay connection',
            )
            return

        event = wrapped.event
        if isinstance(event, Signal):
            await self._on_signal(event)
        elif isinstance(event, Identified):
            self._on_identified(event)
        elif isinstance(event, PeerJoined):
            await self._on_peer_joined(event)
        elif isinstance(event, PeerLeft):
            await self._on_peer_left(event)
        elif isinstance(event, RelayError):
            # Already logged by the signaling client. Not fatal.
            pass
        elif isinstance(event, RelayClosed):
            await self._on_relay_closed(event)
        else:
            raise AssertionError('Unreachable.')

    def _on_identified(self, event: Identified) -> None:
        self._local_id = event.local_id
        self._identified = True
        logger.info(
            f'{self._log_prefix}: identified by relay with '
            f'{len(event.existing_peers)} peer(s) in room {self._room}',
        )
        # Members already in the room send us an offer.
        for peer in event.existing_peers:
            if peer.peer_id != self._local_id:
                self._remember(peer.peer_id, peer.name)

    async def _on_peer_joined(self, event: PeerJoined) -> None:
        if event.peer_id == self._local_id:
            return
        self._remember(event.peer_id, event.name)
        existing = self._sessions.get(event.peer_id)
        if existing is not None:
            name = log_name(event.peer_id, existing.display_name)
            logger.info(
                f'{self._log_prefix}: {name} rejoined so replacing its '
                'session',
            )
            await self._close_session(existing)

        session = self._create_session(event.peer_id, Role.INITIATOR)
        self._open_transport(session)
        self._start_offer(session)

    async def _on_peer_left(self, event: PeerLeft) -> None:
        name = self._roster.pop(event.peer_id, event.name or event.peer_id)
        self._drop_orphan_candidates(event.peer_id)
        logger.info(
            f'{self._log_prefix}: {log_name(event.peer_id, name)} left room '
            f'{self._room}',
        )
        session = self._sessions.get(event.peer_id)
        if session is not None:
            await self._close_session(session)

    async def _on_relay_closed(self, event: RelayClosed) -> None:
        if self._room is None:
            return
        error = RelayLinkLostError(
            f'Lost connection to the relay server: {event.reason}',
        )
        logger.warning(f'{self._log_prefix}: {error}')
        # Relay ids are reassigned on reconnect so sessions cannot resume.
        await self._teardown(notify_relay=False)
        self._supervisor.relay_failed(error)

    async def _send_signal(
        self,
        kind: SignalKind,
        payload: dict[str, Any],
        peer_id: str,
    ) -> None:
        if self._signaling is None:
            logger.warning(
                f'{self._log_prefix}: cannot send {kind} to {peer_id[:8]} '
                'without a relay connection',
            )
            return
        try:
            await self._signaling.send_signal(kind, payload, peer_id)
        except NotConnectedError as e:
            # The relay pump reports the close separately.
            logger.warning(
                f'{self._log_prefix}: failed to send {kind} to '
                f'{peer_id[:8]}: {e}',
            )

    # Handshake

    async def _on_signal(self, signal: Signal) -> None:
        peer_id = signal.from_peer_id
        if peer_id == self._local_id:
            return
        session = self._sessions.get(peer_id)
        if signal.kind == 'offer':
            await self._on_offer(peer_id, signal.payload, session)
        elif signal.kind == 'answer':
            await self._on_answer(peer_id, signal.payload, session)
        else:
            await self._on_candidate(peer_id, signal.payload, session)

    async def _on_offer(
        self,
        peer_id: str,
        offer: dict[str, Any],
        session: PeerSession | None,
    ) -> None:
        if session is None:
            self._remember(peer_id, None)
            session = self._create_session(peer_id, Role.RESPONDER)
        elif (
            session.role is Role.INITIATOR
            and not session.remote_description_set
        ):
            assert self._local_id is not None
            if self._local_id < peer_id:
                logger.info(
                    f'{self._log_prefix}: ignoring offer from '
                    f'{log_name(peer_id, session.display_name)} while our '
                    'own offer is outstanding',
                )
                return
            logger.info(
                f'{self._log_prefix}: simultaneous offers with '
                f'{log_name(peer_id, session.display_name)} so answering '
                'theirs',
            )
            session.role = Role.RESPONDER
            await self._replace_transport(session)
        elif session.remote_description_set:
            # The peer restarted the handshake before we saw the link drop.
            logger.info(
                f'{self._log_prefix}: renegotiating with '
                f'{log_name(peer_id, session.display_name)}',
            )
            session.role = Role.RESPONDER
            await self._replace_transport(session)
        elif session.answer_pending:
            logger.info(
                f'{self._log_prefix}: ignoring offer from '
                f'{log_name(peer_id, session.display_name)} while our '
                'answer to the previous one is in progress',
            )
            return

        if session.transport is None:
            self._open_transport(session)
        self._start_answer(session, offer)

    async def _on_answer(
        self,
        peer_id: str,
        answer: dict[str, Any],
        session: PeerSession | None,
    ) -> None:
        if session is None or session.role is not Role.INITIATOR:
            logger.warning(
                f'{self._log_prefix}: dropping unexpected answer from '
                f'{peer_id[:8]}',
            )
            return
        if session.remote_description_set or session.transport is None:
            logger.warning(
                f'{self._log_prefix}: dropping duplicate answer from '
                f'{log_name(peer_id, session.display_name)}',
            )
            return

        try:
            await session.transport.apply_answer(answer)
        except Exception as e:
            await self._fail_session(
                session,
                HandshakeFailedError(
                    f'Failed to apply answer from {session.display_name}: '
                    f'{e!r}',
                ),
            )
            return
        session.remote_description_set = True
        await self._flush_candidates(session)

    async def _on_candidate(
        self,
        peer_id: str,
        candidate: dict[str, Any],
        session: PeerSession | None,
    ) -> None:
        if session is None:
            self._buffer_orphan_candidate(peer_id, candidate)
        elif session.remote_description_set and session.transport is not None:
            await self._add_candidate(session, candidate)
        else:
            session.pending_candidates.append(candidate)

    async def _add_candidate(
        self,
        session: PeerSession,
        candidate: dict[str, Any],
    ) -> None:
        assert session.transport is not None
        try:
            await session.transport.add_candidate(candidate)
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: failed to add candidate from '
                f'{log_name(session.peer_id, session.display_name)}: {e!r}',
            )

    async def _flush_candidates(self, session: PeerSession) -> None:
        candidates = session.pending_candidates
        session.pending_candidates = []
        if len(candidates) > 0:
            logger.debug(
                f'{self._log_prefix}: applying {len(candidates)} buffered '
                f'candidate(s) from '
                f'{log_name(session.peer_id, session.display_name)}',
            )
        for candidate in candidates:
            await self._add_candidate(session, candidate)

    def _buffer_orphan_candidate(
        self,
        peer_id: str,
        candidate: dict[str, Any],
    ) -> None:
        assert self._config is not None
        self._orphan_candidates.setdefault(peer_id, []).append(candidate)
        if peer_id not in self._orphan_timers:
            loop = asyncio.get_running_loop()
            self._orphan_timers[peer_id] = loop.call_later(
                self._config.candidate_buffer_timeout,
                self._post,
                _CandidateBufferExpired(peer_id),
            )

    def _drop_orphan_candidates(self, peer_id: str) -> list[dict[str, Any]]:
        timer = self._orphan_timers.pop(peer_id, None)
        if timer is not None:
            timer.cancel()
        return self._orphan_candidates.pop(peer_id, [])

    def _on_orphan_candidates_expired(self, peer_id: str) -> None:
        self._orphan_timers.pop(peer_id, None)
        dropped = self._orphan_candidates.pop(peer_id, [])
        if len(dropped) > 0:
            logger.warning(
                f'{self._log_prefix}: discarding {len(dropped)} candidate(s) '
                f'from {peer_id[:8]} that never sent an offer',
            )

    def _start_offer(self, session: PeerSession) -> None:
        assert session.transport is not None
        session.state = ConnectionState.CONNECTING
        self._arm_handshake_timer(session)
        self._spawn_description(
            session,
            'offer',
            session.transport.create_offer,
        )

    def _start_answer(
        self,
        session: PeerSession,
        offer: dict[str, Any],
    ) -> None:
        assert session.transport is not None
        transport = session.transport
        session.state = ConnectionState.CONNECTING
        session.answer_pending = True
        self._arm_handshake_timer(session)
        self._spawn_description(
            session,
            'answer',
            lambda: transport.accept_offer(offer),
        )

    def _spawn_description(
        self,
        session: PeerSession,
        kind: SignalKind,
        produce: Callable[[], Awaitable[dict[str, Any]]],
    ) -> None:
        assert session.link_id is not None
        peer_id, link_id = session.peer_id, session.link_id

        async def _produce() -> None:
            try:
                description = await produce()
            except Exception as e:
                self._post(_DescriptionFailed(peer_id, link_id, e))
            else:
                self._post(
                    _DescriptionReady(peer_id, link_id, kind, description),
                )

        task = spawn_guarded_background_task(_produce)
        task.set_name(f'{kind}-{peer_id[:8]}-{link_id}')
        self._handshake_tasks.add(task)
        task.add_done_callback(self._handshake_tasks.discard)

    async def _on_description_ready(self, event: _DescriptionReady) -> None:
        session = self._current(event.peer_id, event.link_id)
        if session is None:
            logger.debug(
                f'{self._log_prefix}: discarding {event.kind} for a closed '
                'transport',
            )
            return
        if event.kind == 'answer':
            # Producing the answer applied the remote offer.
            session.answer_pending = False
            session.remote_description_set = True
            await self._flush_candidates(session)
        logger.info(
            f'{self._log_prefix}: sending {event.kind} to '
            f'{log_name(session.peer_id, session.display_name)}',
        )
        await self._send_signal(event.kind, event.description, event.peer_id)

    def _arm_handshake_timer(self, session: PeerSession) -> None:
        assert self._config is not None
        assert session.link_id is not None
        session.cancel_handshake_timer()
        session.handshake_timer = asyncio.get_running_loop().call_later(
            self._config.handshake_timeout,
            self._post,
            _HandshakeTimeout(session.peer_id, session.link_id),
        )

    async def _on_handshake_timeout(self, event: _HandshakeTimeout) -> None:
        session = self._current(event.peer_id, event.link_id)
        if session is None:
            return
        session.handshake_timer = None
        if session.state is ConnectionState.CONNECTED:
            return
        assert self._config is not None
        await self._fail_session(
            session,
            HandshakeFailedError(
                f'Handshake with {session.display_name} did not complete '
                f'within {self._config.handshake_timeout} seconds',
            ),
        )

    # Transport events

    async def _on_transport_event(self, wrapped: _FromTransport) -> None:
        session = self._current(wrapped.peer_id, wrapped.link_id)
        if session is None:
            logger.debug(
                f'{self._log_prefix}: ignoring {type(wrapped.event).__name__} '
                f'from a closed transport to {wrapped.peer_id[:8]}',
            )
            return

        event = wrapped.event
        if isinstance(event, DataReceived):
            self._on_data(session, event.data)
        elif isinstance(event, DataPathOpened):
            logger.info(
                f'{self._log_prefix}: data path to '
                f'{log_name(session.peer_id, session.display_name)} open',
            )
            session.data_path_open = True
            await self._flush_queue(session)
        elif isinstance(event, DataPathClosed):
            session.data_path_open = False
        elif isinstance(event, LinkStateChanged):
            await self._on_link_state(session, event.state)
        elif isinstance(event, LocalCandidate):
            await self._send_signal(
                'candidate',
                event.candidate,
                session.peer_id,
            )
        else:
            raise AssertionError('Unreachable.')

    async def _on_link_state(self, session: PeerSession, state: str) -> None:
        name = log_name(session.peer_id, session.display_name)
        if state == 'connected':
            if session.state is not ConnectionState.CONNECTED:
                session.state = ConnectionState.CONNECTED
                session.cancel_handshake_timer()
                logger.info(f'{self._log_prefix}: connected to {name}')
        elif state in _LINK_LOST_STATES and session.state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
        ):
            await self._on_link_lost(session, state)

    async def _on_link_lost(self, session: PeerSession, state: str) -> None:
        assert self._config is not None
        name = log_name(session.peer_id, session.display_name)
        session.state = ConnectionState.DISCONNECTED
        session.data_path_open = False
        session.cancel_handshake_timer()

        if session.retries >= self._config.peer_retry_limit:
            await self._fail_session(
                session,
                HandshakeFailedError(
                    f'Link to {session.display_name} is {state} and '
                    f'{session.retries} retries were used',
                ),
            )
            return

        session.retries += 1
        logger.warning(
            f'{self._log_prefix}: link to {name} is {state}, retrying '
            f'({session.retries}/{self._config.peer_retry_limit})',
        )
        await self._replace_transport(session)
        if session.role is Role.INITIATOR:
            self._start_offer(session)
        else:
            # Wait for the initiator to send a fresh offer.
            self._arm_handshake_timer(session)

    # Payloads

    def _on_data(self, session: PeerSession, data: str) -> None:
        payload = classify_payload(data)
        user = payload.user or session.display_name
        if isinstance(payload, TypingPayload):
            self.typing.publish(TypingIndicator(user, payload.is_typing))
        else:
            self.messages.publish(
                ChatMessage(user, payload.text, now_ms(), is_own=False),
            )

    async def _on_send_message(self, text: str) -> None:
        if self._name is None:
            logger.warning(
                f'{self._log_prefix}: cannot send a message before joining '
                'a room',
            )
            return

        timestamp = now_ms()
        payload = encode_message(self._name, text, timestamp)
        for session in list(self._sessions.values()):
            if (
                session.data_path_open
                and len(session.outbound_queue) == 0
                and session.transport is not None
            ):
                try:
                    await session.transport.send(payload)
                except Exception as e:
                    logger.warning(
                        f'{self._log_prefix}: failed to send to '
                        f'{log_name(session.peer_id, session.display_name)} '
                        f'so queueing message: {e!r}',
                    )
                    session.data_path_open = False
                else:
                    continue
            session.outbound_queue.append(payload)

        self.messages.publish(
            ChatMessage(self._name, text, timestamp, is_own=True),
        )

    async def _flush_queue(self, session: PeerSession) -> None:
        while (
            len(session.outbound_queue) > 0
            and session.data_path_open
            and session.transport is not None
        ):
            try:
                await session.transport.send(session.outbound_queue[0])
            except Exception as e:
                logger.warning(
                    f'{self._log_prefix}: failed to flush queue to '
                    f'{log_name(session.peer_id, session.display_name)}: '
                    f'{e!r}',
                )
                session.data_path_open = False
                return
            session.outbound_queue.popleft()

    async def _on_set_typing(self, is_typing: bool) -> None:
        if self._name is None:
            return
        payload = encode_typing(self._name, is_typing)
        for session in list(self._sessions.values()):
            if not session.data_path_open or session.transport is None:
                continue
            try:
                await session.transport.send(payload)
            except Exception as e:
                logger.debug(
                    f'{self._log_prefix}: failed to send typing indicator '
                    f'to {log_name(session.peer_id, session.display_name)}: '
                    f'{e!r}',
                )

    # Session bookkeeping

    def _remember(self, peer_id: str, name: str | None) -> None:
        if name is not None:
            self._roster[peer_id] = name
            session = self._sessions.get(peer_id)
            if session is not None:
                session.display_name = name
        else:
            self._roster.setdefault(peer_id, peer_id)

    def _current(self, peer_id: str, link_id: int) -> PeerSession | None:
        session = self._sessions.get(peer_id)
        if session is None or session.link_id != link_id:
            return None
        return session

    def _create_session(self, peer_id: str, role: Role) -> PeerSession:
        session = PeerSession(
            peer_id=peer_id,
            display_name=self._roster.get(peer_id, peer_id),
            role=role,
        )
        orphans = self._drop_orphan_candidates(peer_id)
        session.pending_candidates.extend(orphans)
        self._sessions[peer_id] = session
        logger.info(
            f'{self._log_prefix}: created {role.value} session '
            f'{session.session_id} with '
            f'{log_name(peer_id, session.display_name)}',
        )
        return session

    def _make_sink(self, peer_id: str, link_id: int) -> TransportSink:
        def _sink(event: TransportEvent) -> None:
            self._post(_FromTransport(peer_id, link_id, event))

        return _sink

    def _open_transport(self, session: PeerSession) -> None:
        assert self._config is not None
        link_id = next(self._link_ids)
        session.link_id = link_id
        session.remote_description_set = False
        session.answer_pending = False
        session.data_path_open = False
        session.transport = self._transport_factory(
            session.peer_id,
            self._config,
            self._make_sink(session.peer_id, link_id),
        )

    async def _replace_transport(self, session: PeerSession) -> None:
        old = session.transport
        self._open_transport(session)
        await self._close_transport(old)

    async def _close_transport(self, transport: PeerTransport | None) -> None:
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: error closing transport: {e!r}',
            )

    async def _close_session(self, session: PeerSession) -> None:
        session.cancel_handshake_timer()
        session.data_path_open = False
        session.pending_candidates.clear()
        if len(session.outbound_queue) > 0:
            logger.debug(
                f'{self._log_prefix}: dropping {len(session.outbound_queue)} '
                f'queued message(s) for '
                f'{log_name(session.peer_id, session.display_name)}',
            )
            session.outbound_queue.clear()
        if self._sessions.get(session.peer_id) is session:
            del self._sessions[session.peer_id]
        transport = session.transport
        session.transport = None
        session.link_id = None
        await self._close_transport(transport)

    async def _fail_session(
        self,
        session: PeerSession,
        error: HandshakeFailedError,
    ) -> None:
        logger.error(
            f'{self._log_prefix}: session {session.session_id} with '
            f'{log_name(session.peer_id, session.display_name)} failed: '
            f'{error}',
        )
        session.state = ConnectionState.FAILED
        await self._close_session(session)

    async def _teardown(self, notify_relay: bool = True) -> None:
        """Discard every session and the relay connection."""
        self._relay_generation += 1
        client, self._signaling = self._signaling, None
        relay_task, self._relay_task = self._relay_task, None

        if client is not None:
            if notify_relay and self._room is not None:
                await client.leave_room(self._room)
            await client.close()
        await cancel_and_wait(relay_task)

        for session in list(self._sessions.values()):
            await self._close_session(session)
        for peer_id in list(self._orphan_timers):
            self._drop_orphan_candidates(peer_id)
        self._orphan_candidates.clear()
        self._roster.clear()
        for task in list(self._handshake_tasks):
            task.cancel()
        self._handshake_tasks.clear()

        self._identified = False
        self._local_id = None

    # Published state

    def _aggregate_status(self) -> str:
        if self._room is None:
            return STATUS_DISCONNECTED
        if self._supervisor.pending:
            return reconnecting_status(
                self._supervisor.attempts,
                self._supervisor.max_attempts,
            )
        if self._supervisor.exhausted:
            return STATUS_FAILED
        if not self._identified:
            return STATUS_INITIALIZING
        if len(self._sessions) > 0 and not any(
            session.state is ConnectionState.CONNECTED
            for session in self._sessions.values()
        ):
            return STATUS_CONNECTING
        return STATUS_CONNECTED

    def _refresh(self) -> None:
        status = self._aggregate_status()
        peers = tuple(
            PeerInfo(peer_id, name) for peer_id, name in self._roster.items()
        )
        if status != self._snapshot.status:
            logger.info(f'{self._log_prefix}: status is now {status}')
            if status == STATUS_CONNECTED:
                self._supervisor.connected()
            self.status.publish(status)
        if peers != self._snapshot.peers:
            self.peers.publish(peers)
        self._snapshot = ConnectionSnapshot(
            room=self._room,
            local_name=self._name,
            local_id=self._local_id,
            peers=peers,
            status=status,
        )
