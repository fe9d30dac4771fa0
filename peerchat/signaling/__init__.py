"""Signaling relay client and wire protocol.

The relay is a lightweight, publicly reachable websocket server that
forwards small JSON control messages between room members so they can
bootstrap direct peer connections. It never sees chat content.
"""
from __future__ import annotations

from peerchat.signaling.client import SignalingClient
from peerchat.signaling.messages import PeerInfo
