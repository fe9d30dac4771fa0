"""Transport capability used to reach peers directly.

The orchestrator only depends on the
[`PeerTransport`][peerchat.transport.protocols.PeerTransport] protocol. The
default implementation,
[`RTCTransport`][peerchat.transport.rtc.RTCTransport], establishes WebRTC
data channels using [aiortc](https://aiortc.readthedocs.io/){target=_blank}.
"""
from __future__ import annotations
