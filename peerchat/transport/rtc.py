"""WebRTC transport built on aiortc."""
from __future__ import annotations

import logging
from typing import Any

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from peerchat.config import PeerChatConfig
from peerchat.exceptions import TransportError
from peerchat.transport.protocols import DataPathClosed
from peerchat.transport.protocols import DataPathOpened
from peerchat.transport.protocols import DataReceived
from peerchat.transport.protocols import LinkStateChanged
from peerchat.transport.protocols import TransportSink

logger = logging.getLogger(__name__)

CHANNEL_LABEL = 'messages'


def rtc_configuration(config: PeerChatConfig) -> RTCConfiguration:
    """Build the aiortc configuration from the ICE servers in `config`."""
    servers = [
        RTCIceServer(
            urls=server.urls,
            username=server.username,
            credential=server.credential,
        )
        for server in config.ice_servers
    ]
    return RTCConfiguration(iceServers=servers)


class RTCTransport:
    """Peer transport over an aiortc data channel.

    Interface for negotiating a WebRTC connection with one peer and
    exchanging text payloads over a single ordered data channel. The
    offerer creates the channel; the answerer receives it through the
    `datachannel` event once the connection is established.

    Note:
        aiortc gathers all local candidates before producing a session
        description, so descriptions produced by this transport already
        embed them and no
        [`LocalCandidate`][peerchat.transport.protocols.LocalCandidate]
        events are emitted. Remote trickled candidates are still accepted.

    Args:
        peer_id: Relay id of the remote peer, used for logging.
        config: Configuration providing the ICE servers.
        sink: Callable receiving the transport events.
    """

    def __init__(
        self,
        peer_id: str,
        config: PeerChatConfig,
        sink: TransportSink,
    ) -> None:
        self._peer_id = peer_id
        self._sink = sink
        self._pc = RTCPeerConnection(rtc_configuration(config))
        self._channel: RTCDataChannel | None = None
        self._closed = False

        self._pc.on('connectionstatechange', self._on_connection_state_change)

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._peer_id[:8]}]'

    @property
    def state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    async def _on_connection_state_change(self) -> None:
        logger.debug(
            f'{self._log_prefix}: connection state is now {self.state}',
        )
        self._sink(LinkStateChanged(self.state))

    def _setup_channel(self, channel: RTCDataChannel) -> None:
        self._channel = channel

        def _on_open() -> None:
            logger.info(f'{self._log_prefix}: data channel open')
            self._sink(DataPathOpened())

        def _on_close() -> None:
            logger.info(f'{self._log_prefix}: data channel closed')
            self._sink(DataPathClosed())

        def _on_message(message: bytes | str) -> None:
            if isinstance(message, bytes):
                message = message.decode('utf-8', errors='replace')
            self._sink(DataReceived(message))

        channel.on('open', _on_open)
        channel.on('close', _on_close)
        channel.on('message', _on_message)

        # The answerer is handed the channel after it has already opened
        # so the open event will never fire for it.
        if channel.readyState == 'open':
            _on_open()

    async def create_offer(self) -> dict[str, Any]:
        """Open the local data channel and produce an offer."""
        channel = self._pc.createDataChannel(CHANNEL_LABEL, ordered=True)
        self._setup_channel(channel)
        await self._pc.setLocalDescription(await self._pc.createOffer())
        logger.info(f'{self._log_prefix}: created offer')
        return _description_to_dict(self._pc.localDescription)

    async def accept_offer(self, offer: dict[str, Any]) -> dict[str, Any]:
        """Apply the remote offer and produce an answer."""

        @self._pc.on('datachannel')
        def on_datachannel(channel: RTCDataChannel) -> None:
            logger.info(
                f'{self._log_prefix}: peer channel {channel.label} '
                'established',
            )
            self._setup_channel(channel)

        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=offer['sdp'], type='offer'),
        )
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        logger.info(f'{self._log_prefix}: created answer')
        return _description_to_dict(self._pc.localDescription)

    async def apply_answer(self, answer: dict[str, Any]) -> None:
        """Apply the remote answer."""
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=answer['sdp'], type='answer'),
        )
        logger.info(f'{self._log_prefix}: applied answer')

    async def add_candidate(self, candidate: dict[str, Any]) -> None:
        """Add a remote ICE candidate.

        Empty candidate strings signal the end of candidates and are
        ignored.
        """
        sdp = candidate.get('candidate') or ''
        if sdp.startswith('candidate:'):
            sdp = sdp[len('candidate:') :]
        if len(sdp) == 0:
            return

        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.get('sdpMid')
        ice_candidate.sdpMLineIndex = candidate.get('sdpMLineIndex')
        await self._pc.addIceCandidate(ice_candidate)

    async def send(self, data: str) -> None:
        """Send a payload on the data channel.

        Raises:
            TransportError: If the data channel is not open.
        """
        if self._channel is None or self._channel.readyState != 'open':
            raise TransportError(
                f'{self._log_prefix}: data channel is not open.',
            )
        self._channel.send(data)

    async def close(self) -> None:
        """Terminate the peer connection.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        logger.info(f'{self._log_prefix}: closing connection')
        if self._channel is not None:
            self._channel.close()
        await self._pc.close()


def _description_to_dict(
    description: RTCSessionDescription,
) -> dict[str, Any]:
    return {'type': description.type, 'sdp': description.sdp}
