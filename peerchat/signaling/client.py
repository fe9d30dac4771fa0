"""Client interface to the signaling relay."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
import uuid
from types import TracebackType
from typing import Any
from typing import AsyncIterator

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.protocol import State

from peerchat.signaling.exceptions import NotConnectedError
from peerchat.signaling.exceptions import ProtocolMalformedError
from peerchat.signaling.exceptions import RelayUnreachableError
from peerchat.signaling.messages import ConnectRequest
from peerchat.signaling.messages import decode_relay_message
from peerchat.signaling.messages import encode_relay_message
from peerchat.signaling.messages import Identified
from peerchat.signaling.messages import JoinRequest
from peerchat.signaling.messages import LeaveRequest
from peerchat.signaling.messages import RelayClosed
from peerchat.signaling.messages import RelayError
from peerchat.signaling.messages import RelayEvent
from peerchat.signaling.messages import RelayRequest
from peerchat.signaling.messages import RoomJoined
from peerchat.signaling.messages import SignalKind
from peerchat.signaling.messages import SignalRequest

logger = logging.getLogger(__name__)


class SignalingClient:
    """Client interface to the signaling relay.

    The client owns the websocket connection to the relay, encodes outbound
    requests, and decodes inbound frames into typed events. It performs
    no automatic reconnection: when the socket closes a single
    [`RelayClosed`][peerchat.signaling.messages.RelayClosed] event is
    returned and retrying is left to the caller.

    Tip:
        This class can be used as an async context manager!
        ```python
        from peerchat.signaling.client import SignalingClient

        async with SignalingClient('ws://localhost:8765') as client:
            await client.join_room('ABC123', 'alice')
            async for event in client.events():
                ...
        ```

    Args:
        address: Default address of the relay server used by
            [`connect()`][peerchat.signaling.client.SignalingClient.connect]
            when no URL is passed.
        client_id: Identity announced in the `connect` message. If `None`,
            a random UUID is used. The relay may assign a different id
            which replaces this one once received.
        ssl_context: Custom SSL context for `wss://` addresses. A default
            context is created if not provided.
        timeout: Time to wait in seconds on opening the relay connection.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.
    """

    def __init__(
        self,
        address: str | None = None,
        *,
        client_id: str | None = None,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        self._address = address
        self._local_id = str(uuid.uuid4()) if client_id is None else client_id
        self._ssl_context = ssl_context
        self._verify_certificate = verify_certificate
        self._timeout = timeout

        self._room: str | None = None
        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None
        self._closing = False
        self._closed_reported = False

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._local_id[:8]}]'

    @property
    def local_id(self) -> str:
        """Local identity, replaced by the relay-assigned id once known."""
        return self._local_id

    @property
    def room(self) -> str | None:
        """Room joined with this client, if any."""
        return self._room

    @property
    def connected(self) -> bool:
        """The websocket connection to the relay is open."""
        return (
            self._websocket is not None
            and self._websocket.state is State.OPEN
        )

    @property
    def websocket(self) -> ClientConnection:
        """Websocket connection to the relay server.

        Raises:
            NotConnectedError: if the websocket connection to the relay
                server is not open.
        """
        if self._websocket is not None and self.connected:
            return self._websocket
        raise NotConnectedError(
            'Websocket connection to the relay server is not open. '
            'Try calling connect() first.',
        )

    def _ssl_for(self, url: str) -> ssl.SSLContext | None:
        if not url.startswith('wss://'):
            return None
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context()
            if not self._verify_certificate:
                self._ssl_context.check_hostname = False
                self._ssl_context.verify_mode = ssl.CERT_NONE
        return self._ssl_context

    async def connect(self, url: str | None = None) -> None:
        """Open the relay connection and announce the local identity.

        Note:
            This method is a no-op if a connection is already established.

        Args:
            url: Address of the relay server. Should start with `ws://` or
                `wss://`. Defaults to the address given at construction.

        Raises:
            RelayUnreachableError: If the socket cannot be opened.
            ValueError: If no address is known or the address does not
                start with `ws://` or `wss://`.
        """
        url = self._address if url is None else url
        if url is None:
            raise ValueError('No relay server address was provided.')
        if not (url.startswith('ws://') or url.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {url}.',
            )

        async with self._connect_lock:
            if self.connected:
                return

            try:
                self._websocket = await connect(
                    url,
                    open_timeout=self._timeout,
                    ssl=self._ssl_for(url),
                )
            except (
                OSError,
                asyncio.TimeoutError,
                TimeoutError,
                websockets.exceptions.InvalidHandshake,
                websockets.exceptions.InvalidURI,
            ) as e:
                raise RelayUnreachableError(
                    f'Unable to open connection to relay server at {url}: '
                    f'{e!r}',
                ) from e

            self._address = url
            self._closing = False
            self._closed_reported = False
            await self._send(ConnectRequest(self._local_id))
            logger.info(
                f'{self._log_prefix}: established connection to relay '
                f'server at {url}',
            )

    async def close(self) -> None:
        """Close the connection to the relay server.

        Safe to call multiple times.
        """
        if self._closing or self._websocket is None:
            return
        self._closing = True
        await self._websocket.close()
        logger.info(f'{self._log_prefix}: closed relay connection')

    async def _send(self, message: RelayRequest) -> None:
        websocket = self.websocket
        try:
            await websocket.send(encode_relay_message(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise NotConnectedError(
                f'Relay connection closed while sending: {e}',
            ) from e
        logger.debug(
            f'{self._log_prefix}: sent {type(message).__name__} to relay',
        )

    async def join_room(self, code: str, name: str) -> None:
        """Join a room.

        Args:
            code: Room code.
            name: Display name of the local user.

        Raises:
            NotConnectedError: If the relay connection is not open.
        """
        await self._send(JoinRequest(room=code, name=name))
        self._room = code
        logger.info(f'{self._log_prefix}: joining room {code} as {name}')

    async def leave_room(self, code: str) -> None:
        """Notify the relay that we are leaving a room.

        This is best-effort and does nothing if the connection is already
        closed.
        """
        self._room = None
        try:
            await self._send(LeaveRequest(room=code, user_id=self._local_id))
        except NotConnectedError:
            logger.debug(
                f'{self._log_prefix}: not connected so skipping leave '
                f'notification for room {code}',
            )
            return
        logger.info(f'{self._log_prefix}: left room {code}')

    async def send_signal(
        self,
        kind: SignalKind,
        payload: dict[str, Any],
        to_peer_id: str,
    ) -> None:
        """Send a handshake payload to a peer via the relay.

        Args:
            kind: One of `offer`, `answer`, or `candidate`.
            payload: Session description or candidate.
            to_peer_id: Relay id of the destination peer.

        Raises:
            NotConnectedError: If the relay connection is not open.
        """
        await self._send(
            SignalRequest(
                kind=kind,
                payload=payload,
                to_peer_id=to_peer_id,
                from_peer_id=self._local_id,
            ),
        )

    async def recv(self) -> RelayEvent:
        """Receive the next event from the relay.

        Malformed frames are logged and skipped. Acknowledgements of room
        joins are logged and never returned. When the connection closes,
        a single [`RelayClosed`][peerchat.signaling.messages.RelayClosed]
        event is returned.

        Returns:
            The next event.

        Raises:
            NotConnectedError: If the connection was never opened or the
                close has already been reported.
        """
        if self._websocket is None or self._closed_reported:
            raise NotConnectedError('Relay connection is not open.')

        while True:
            try:
                message_str = await self._websocket.recv()
            except websockets.exceptions.ConnectionClosed as e:
                self._closed_reported = True
                expected = self._closing or isinstance(
                    e,
                    websockets.exceptions.ConnectionClosedOK,
                )
                log = logger.info if expected else logger.warning
                log(f'{self._log_prefix}: relay connection closed ({e})')
                return RelayClosed(reason=str(e), expected=expected)

            if not isinstance(message_str, str):
                logger.error(
                    f'{self._log_prefix}: received non-string frame from '
                    'relay server ...skipping message',
                )
                continue

            try:
                event = decode_relay_message(message_str)
            except ProtocolMalformedError as e:
                logger.error(
                    f'{self._log_prefix}: error decoding message from relay '
                    f'server: {e} ...skipping message',
                )
                continue

            if isinstance(event, Identified):
                self._local_id = event.local_id
                logger.info(
                    f'{self._log_prefix}: relay assigned local id with '
                    f'{len(event.existing_peers)} existing peer(s)',
                )
            elif isinstance(event, RoomJoined):
                logger.info(
                    f'{self._log_prefix}: successfully joined room '
                    f'{event.room}',
                )
                continue
            elif isinstance(event, RelayError):
                logger.error(
                    f'{self._log_prefix}: relay server reported error: '
                    f'{event.message}',
                )
            return event

    async def events(self) -> AsyncIterator[RelayEvent]:
        """Iterate over relay events until the connection closes.

        The final event yielded is always a
        [`RelayClosed`][peerchat.signaling.messages.RelayClosed].
        """
        while True:
            event = await self.recv()
            yield event
            if isinstance(event, RelayClosed):
                return
