"""Relay wire protocol and the typed events decoded from it.

The relay speaks small JSON objects discriminated by a `type` key. Outbound
requests are modeled as dataclasses encoded with
[`encode_relay_message()`][peerchat.signaling.messages.encode_relay_message]
and inbound frames are decoded into event dataclasses with
[`decode_relay_message()`][peerchat.signaling.messages.decode_relay_message].

Signal frames carry handshake payloads in two shapes at once for
compatibility with heterogeneous peers: a nested `signal` object and the
same values flattened at the top level of the frame.

```json
{
  "type": "signal", "to": "<peer>", "from": "<me>",
  "signal": {"type": "offer", "sdp": "v=0...", "sdpType": "offer"},
  "signalType": "offer", "sdp": "v=0...", "sdpType": "offer"
}
```

Receivers resolve each value from the nested object first and fall back to
the flattened fields, always producing exactly one
[`Signal`][peerchat.signaling.messages.Signal] event per frame.
"""
from __future__ import annotations

import dataclasses
import json
from typing import Any
from typing import Literal
from typing import Union

from peerchat.signaling.exceptions import ProtocolMalformedError

SignalKind = Literal['offer', 'answer', 'candidate']

_SIGNAL_KIND_ALIASES: dict[str, SignalKind] = {
    'offer': 'offer',
    'answer': 'answer',
    'candidate': 'candidate',
    'ice-candidate': 'candidate',
}


@dataclasses.dataclass(frozen=True)
class PeerInfo:
    """Identity of a room member as reported by the relay.

    Attributes:
        peer_id: Relay-assigned identifier of the member.
        name: Display name of the member.
    """

    peer_id: str
    name: str


# Outbound requests


@dataclasses.dataclass
class RelayRequest:
    """Base outbound message."""

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON-compatible wire representation."""
        raise NotImplementedError


@dataclasses.dataclass
class ConnectRequest(RelayRequest):
    """Announce the local identity after opening the relay connection."""

    user_id: str

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON-compatible wire representation."""
        return {'type': 'connect', 'userId': self.user_id}


@dataclasses.dataclass
class JoinRequest(RelayRequest):
    """Join a room under a display name."""

    room: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON-compatible wire representation."""
        return {'type': 'join', 'room': self.room, 'name': self.name}


@dataclasses.dataclass
class LeaveRequest(RelayRequest):
    """Leave a room."""

    room: str
    user_id: str

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON-compatible wire representation."""
        return {
            'type': 'leave-room',
            'room': self.room,
            'userId': self.user_id,
        }


@dataclasses.dataclass
class SignalRequest(RelayRequest):
    """Handshake payload addressed to a single peer.

    Attributes:
        kind: One of `offer`, `answer`, or `candidate`.
        payload: Session description (`{'type', 'sdp'}`) for offers and
            answers, or a candidate (`{'candidate', 'sdpMid',
            'sdpMLineIndex'}`).
        to_peer_id: Destination peer.
        from_peer_id: Local relay id.
    """

    kind: SignalKind
    payload: dict[str, Any]
    to_peer_id: str
    from_peer_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Get the wire representation with nested and flattened shapes."""
        if self.kind == 'candidate':
            candidate = {
                'candidate': self.payload.get('candidate'),
                'sdpMid': self.payload.get('sdpMid'),
                'sdpMLineIndex': self.payload.get('sdpMLineIndex'),
            }
            nested: dict[str, Any] = {
                'type': 'candidate',
                'candidate': candidate,
            }
            flat: dict[str, Any] = {'candidate': candidate}
        else:
            sdp = self.payload.get('sdp')
            nested = {'type': self.kind, 'sdp': sdp, 'sdpType': self.kind}
            flat = {'sdp': sdp, 'sdpType': self.kind}

        message: dict[str, Any] = {'type': 'signal', 'to': self.to_peer_id}
        if self.from_peer_id is not None:
            message['from'] = self.from_peer_id
        message['signal'] = nested
        message['signalType'] = self.kind
        message.update(flat)
        return message


# Inbound events


@dataclasses.dataclass(frozen=True)
class Identified:
    """The relay assigned the local id and listed the current members."""

    local_id: str
    existing_peers: tuple[PeerInfo, ...] = ()


@dataclasses.dataclass(frozen=True)
class PeerJoined:
    """A member joined the room after us."""

    peer_id: str
    name: str | None = None


@dataclasses.dataclass(frozen=True)
class PeerLeft:
    """A member left the room."""

    peer_id: str
    name: str | None = None


@dataclasses.dataclass(frozen=True)
class Signal:
    """Canonical handshake payload received from a peer."""

    kind: SignalKind
    payload: dict[str, Any]
    from_peer_id: str


@dataclasses.dataclass(frozen=True)
class RoomJoined:
    """The relay acknowledged our join request."""

    room: str | None = None


@dataclasses.dataclass(frozen=True)
class RelayError:
    """The relay reported an error."""

    message: str


@dataclasses.dataclass(frozen=True)
class RelayClosed:
    """The relay connection closed.

    Attributes:
        reason: Close reason reported by the socket, if any.
        expected: If the close was initiated locally or completed cleanly.
    """

    reason: str | None = None
    expected: bool = False


RelayEvent = Union[
    Identified,
    PeerJoined,
    PeerLeft,
    Signal,
    RoomJoined,
    RelayError,
    RelayClosed,
]


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or len(value) == 0:
        raise ProtocolMalformedError(
            f'Message of type {data.get("type")!r} is missing string field '
            f'{key!r}.',
        )
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and len(value) > 0 else None


def _signal_kind(nested: dict[str, Any], frame: dict[str, Any]) -> SignalKind:
    raw = nested.get('type')
    if raw is None:
        raw = frame.get('signalType')
    if raw is None:
        if 'candidate' in nested or 'candidate' in frame:
            raw = 'candidate'
        else:
            raw = nested.get('sdpType', frame.get('sdpType'))

    try:
        return _SIGNAL_KIND_ALIASES[raw]
    except (KeyError, TypeError):
        raise ProtocolMalformedError(
            f'Signal message has unknown signal type: {raw!r}.',
        ) from None


def _extract_sdp(
    kind: SignalKind,
    nested: dict[str, Any],
    frame: dict[str, Any],
) -> str:
    # Some peers nest the description one level deeper under its kind,
    # e.g. {"signal": {"type": "offer", "offer": {"sdp": ...}}}.
    described = nested.get(kind)
    sources = (
        nested,
        described if isinstance(described, dict) else {},
        frame,
    )
    for source in sources:
        sdp = source.get('sdp')
        if isinstance(sdp, str) and len(sdp) > 0:
            return sdp
    raise ProtocolMalformedError(f'Signal message of type {kind} has no SDP.')


def _extract_candidate(
    nested: dict[str, Any],
    frame: dict[str, Any],
) -> dict[str, Any]:
    for source in (nested, frame):
        value = source.get('candidate')
        if isinstance(value, dict) and isinstance(value.get('candidate'), str):
            return {
                'candidate': value['candidate'],
                'sdpMid': value.get('sdpMid'),
                'sdpMLineIndex': value.get('sdpMLineIndex'),
            }
        if isinstance(value, str):
            return {
                'candidate': value,
                'sdpMid': source.get('sdpMid'),
                'sdpMLineIndex': source.get('sdpMLineIndex'),
            }
    raise ProtocolMalformedError('Signal message has no ICE candidate.')


def normalize_signal(frame: dict[str, Any]) -> Signal:
    """Extract the canonical handshake signal from a `signal` frame.

    Values are resolved from the nested `signal` object first and from the
    flattened top-level fields second, so a frame carrying both shapes
    produces a single event built from the nested values.

    Args:
        frame: Decoded JSON object with `type` equal to `signal`.

    Returns:
        The canonical signal.

    Raises:
        ProtocolMalformedError: If the sender, signal type, or payload
            cannot be determined.
    """
    from_peer_id = _require_str(frame, 'from')

    nested = frame.get('signal')
    if nested is None:
        nested = {}
    elif not isinstance(nested, dict):
        raise ProtocolMalformedError(
            'Signal message field "signal" must be an object.',
        )

    kind = _signal_kind(nested, frame)
    if kind == 'candidate':
        payload = _extract_candidate(nested, frame)
    else:
        payload = {'type': kind, 'sdp': _extract_sdp(kind, nested, frame)}

    return Signal(kind=kind, payload=payload, from_peer_id=from_peer_id)


def _decode_peers(raw: Any) -> tuple[PeerInfo, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ProtocolMalformedError('Field "peers" must be a list.')
    peers = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        peer_id = _optional_str(entry, 'id')
        if peer_id is None:
            continue
        name = _optional_str(entry, 'name')
        peers.append(PeerInfo(peer_id, peer_id if name is None else name))
    return tuple(peers)


def decode_relay_message(message: str) -> RelayEvent:
    """Decode a JSON frame from the relay into an event.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed event.

    Raises:
        ProtocolMalformedError: If the message is not JSON, is not an object,
            is of an unknown type, or is missing required fields.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, RecursionError) as e:
        raise ProtocolMalformedError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise ProtocolMalformedError('Message is not a JSON object.')

    message_type = data.get('type')
    if message_type == 'id':
        return Identified(
            local_id=_require_str(data, 'id'),
            existing_peers=_decode_peers(data.get('peers')),
        )
    elif message_type == 'peer-connected':
        return PeerJoined(
            _require_str(data, 'id'),
            _optional_str(data, 'name'),
        )
    elif message_type == 'peer-disconnected':
        return PeerLeft(
            _require_str(data, 'id'),
            _optional_str(data, 'name'),
        )
    elif message_type == 'signal':
        return normalize_signal(data)
    elif message_type == 'room-joined':
        return RoomJoined(_optional_str(data, 'room'))
    elif message_type == 'error':
        return RelayError(str(data.get('message', '')))
    else:
        raise ProtocolMalformedError(
            f'The message is of an unknown message type: {message_type!r}.',
        )


def encode_relay_message(message: RelayRequest) -> str:
    """Encode an outbound request as a JSON string."""
    return json.dumps(message.to_dict())
