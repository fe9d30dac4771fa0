"""PeerChat is a library for relay-bootstrapped peer-to-peer text chat.

Participants discover each other through a lightweight signaling relay and
then exchange messages over direct
[aiortc](https://aiortc.readthedocs.io/){target=_blank} data channels. The
[`PeerSessionOrchestrator`][peerchat.orchestrator.PeerSessionOrchestrator]
is the main entry point.
"""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peerchat')
