"""Subscriber streams consumed by user interfaces.

The orchestrator publishes four streams: connection status strings, the
ordered peer list, chat messages, and typing indicators. Each stream is a
[`Broadcast`][peerchat.streams.Broadcast] that any number of consumers can
subscribe to independently.

Example:
    ```python
    subscription = orchestrator.messages.subscribe()
    async for message in subscription:
        print(f'{message.user}: {message.text}')
    ```
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any
from typing import Generic
from typing import TypeVar

from peerchat.signaling.messages import PeerInfo

logger = logging.getLogger(__name__)

T = TypeVar('T')

STATUS_INITIALIZING = 'Initializing…'
STATUS_CONNECTING = 'Connecting…'
STATUS_CONNECTED = 'Connected'
STATUS_DISCONNECTED = 'Disconnected'
STATUS_FAILED = 'Connection failed'


def reconnecting_status(attempt: int, max_attempts: int) -> str:
    """Status published while a relay reconnection is pending."""
    return f'Reconnecting… ({attempt}/{max_attempts})'


@dataclasses.dataclass(frozen=True)
class ChatMessage:
    """Chat message surfaced to subscribers.

    Attributes:
        user: Display name of the sender.
        text: Message text.
        timestamp: Milliseconds since the epoch.
        is_own: If the message was sent by the local user.
    """

    user: str
    text: str
    timestamp: int
    is_own: bool


@dataclasses.dataclass(frozen=True)
class TypingIndicator:
    """Typing state of a remote user."""

    user: str
    is_typing: bool


@dataclasses.dataclass(frozen=True)
class ConnectionSnapshot:
    """Read-only view of the current room session.

    Attributes:
        room: Current room code.
        local_name: Display name of the local user.
        local_id: Relay-assigned id of the local user, once known.
        peers: Known peers in the order they were first seen.
        status: Aggregate status string.
    """

    room: str | None = None
    local_name: str | None = None
    local_id: str | None = None
    peers: tuple[PeerInfo, ...] = ()
    status: str = STATUS_DISCONNECTED

    @property
    def peer_names(self) -> list[str]:
        """Display names of the known peers."""
        return [peer.name for peer in self.peers]


_CLOSED: Any = object()
_UNSET: Any = object()


class Subscription(Generic[T]):
    """Asynchronous iterator over the items of a
    [`Broadcast`][peerchat.streams.Broadcast].

    Items published after the subscription was created are delivered in
    publish order. Iteration ends when the broadcast or the subscription is
    closed.
    """

    def __init__(self, broadcast: Broadcast[T]) -> None:
        self._broadcast = broadcast
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> Subscription[T]:
        return self

    async def __anext__(self) -> T:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    def _put(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> T:
        """Wait for the next item.

        Raises:
            asyncio.TimeoutError: If no item arrives within `timeout` seconds.
            StopAsyncIteration: If the subscription is closed.
        """
        return await asyncio.wait_for(self.__anext__(), timeout)

    def pending(self) -> list[T]:
        """Remove and return all items received but not yet consumed."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._closed = True
                break
            items.append(item)
        return items

    def close(self) -> None:
        """Stop receiving items."""
        self._broadcast._unsubscribe(self)
        if not self._closed:
            self._put(_CLOSED)


class Broadcast(Generic[T]):
    """Fan-out of published items to all current subscribers.

    Publishing never blocks: each subscription buffers its own items.

    Args:
        name: Name used in logs.
        replay_latest: Deliver the most recently published item to new
            subscribers before any later item. Useful for state streams
            such as the connection status.
    """

    def __init__(self, name: str, *, replay_latest: bool = False) -> None:
        self._name = name
        self._replay_latest = replay_latest
        self._subscriptions: list[Subscription[T]] = []
        self._latest: Any = _UNSET
        self._closed = False

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(name={self._name!r}, '
            f'subscribers={len(self._subscriptions)})'
        )

    @property
    def closed(self) -> bool:
        """The broadcast was closed and will not publish more items."""
        return self._closed

    @property
    def latest(self) -> T | None:
        """Most recently published item, if any."""
        return None if self._latest is _UNSET else self._latest

    def subscribe(self) -> Subscription[T]:
        """Create a new subscription."""
        subscription: Subscription[T] = Subscription(self)
        if self._closed:
            subscription._put(_CLOSED)
            return subscription
        if self._replay_latest and self._latest is not _UNSET:
            subscription._put(self._latest)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def publish(self, item: T) -> None:
        """Deliver an item to every subscriber."""
        if self._closed:
            logger.debug(f'Dropping item published to closed {self!r}')
            return
        self._latest = item
        for subscription in self._subscriptions:
            subscription._put(item)

    def close(self) -> None:
        """End every subscription. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription._put(_CLOSED)
        self._subscriptions.clear()
