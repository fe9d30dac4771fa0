"""Encoding and classification of payloads sent over peer data paths.

Peers exchange either raw text, which is treated as a chat message
verbatim, or JSON objects discriminated by a `type` key:

```json
{"type": "message", "user": "alice", "text": "hi", "timestamp": 0}
{"type": "typing", "user": "alice", "isTyping": true, "timestamp": 0}
```

Anything that does not decode into one of these two shapes exactly is
treated as raw text rather than dropped.
"""
from __future__ import annotations

import dataclasses
import json
import time
from typing import Any
from typing import Union


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclasses.dataclass(frozen=True)
class TextPayload:
    """Chat message received from a peer.

    Attributes:
        text: Message text.
        user: Sender name claimed by the peer, if the payload was structured.
        timestamp: Sender timestamp in milliseconds, if provided.
    """

    text: str
    user: str | None = None
    timestamp: int | None = None


@dataclasses.dataclass(frozen=True)
class TypingPayload:
    """Typing indicator received from a peer."""

    is_typing: bool
    user: str | None = None
    timestamp: int | None = None


Payload = Union[TextPayload, TypingPayload]


def encode_message(user: str, text: str, timestamp: int | None = None) -> str:
    """Encode a structured chat message."""
    return json.dumps(
        {
            'type': 'message',
            'user': user,
            'text': text,
            'timestamp': now_ms() if timestamp is None else timestamp,
        },
    )


def encode_typing(
    user: str,
    is_typing: bool,
    timestamp: int | None = None,
) -> str:
    """Encode a structured typing indicator."""
    return json.dumps(
        {
            'type': 'typing',
            'user': user,
            'isTyping': is_typing,
            'timestamp': now_ms() if timestamp is None else timestamp,
        },
    )


def _optional_user(data: dict[str, Any]) -> str | None:
    user = data.get('user')
    return user if isinstance(user, str) and len(user) > 0 else None


def _optional_timestamp(data: dict[str, Any]) -> int | None:
    timestamp = data.get('timestamp')
    # bool is a subclass of int but is never a valid timestamp
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return None
    return int(timestamp)


def classify_payload(data: str) -> Payload:
    """Classify a payload received on a data path.

    Args:
        data: Raw payload text.

    Returns:
        A [`TypingPayload`][peerchat.payloads.TypingPayload] for well-formed
        typing indicators, otherwise a
        [`TextPayload`][peerchat.payloads.TextPayload]. Structured messages
        yield their `text` field; everything else yields `data` verbatim.
    """
    try:
        decoded = json.loads(data)
    except (json.JSONDecodeError, RecursionError):
        return TextPayload(text=data)

    if not isinstance(decoded, dict):
        return TextPayload(text=data)

    kind = decoded.get('type')
    if kind == 'message' and isinstance(decoded.get('text'), str):
        return TextPayload(
            text=decoded['text'],
            user=_optional_user(decoded),
            timestamp=_optional_timestamp(decoded),
        )
    elif kind == 'typing' and isinstance(decoded.get('isTyping', False), bool):
        # A missing flag means the peer stopped typing
        return TypingPayload(
            is_typing=decoded.get('isTyping', False),
            user=_optional_user(decoded),
            timestamp=_optional_timestamp(decoded),
        )
    return TextPayload(text=data)
