"""Exception types raised by the signaling client."""
from __future__ import annotations


class SignalingError(Exception):
    """Base exception type for exceptions raised by the signaling client."""

    pass


class RelayUnreachableError(SignalingError):
    """Exception raised if the relay server socket cannot be opened."""

    pass


class NotConnectedError(SignalingError):
    """Exception raised if an operation requires an open relay connection."""

    pass


class ProtocolMalformedError(SignalingError):
    """Exception raised when a relay frame cannot be decoded."""

    pass
