"""Exception types for peer session errors."""
from __future__ import annotations


class PeerChatError(Exception):
    """Base exception type for peer session errors."""

    pass


class HandshakeFailedError(PeerChatError):
    """Negotiation with a single peer failed or timed out.

    Only the session with that peer is torn down.
    """

    pass


class RelayLinkLostError(PeerChatError):
    """The connection to the relay server closed unexpectedly."""

    pass


class MaxRetriesExceededError(PeerChatError):
    """All reconnection attempts to the relay server have been used."""

    pass


class TransportError(PeerChatError):
    """A transport operation was attempted in an invalid state."""

    pass
