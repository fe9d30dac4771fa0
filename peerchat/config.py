"""Peer chat configuration models and file parsing."""

from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from peerchat.utils.config import read_file
from peerchat.utils.config import write_file

DEFAULT_STUN_SERVERS = (
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
    'stun:stun2.l.google.com:19302',
    'stun:stun3.l.google.com:19302',
    'stun:stun4.l.google.com:19302',
)


class IceServerConfig(BaseModel):
    """STUN or TURN server used by the transport for NAT traversal.

    Attributes:
        urls: One or more `stun:` or `turn:` URLs.
        username: Username for TURN servers.
        credential: Credential for TURN servers. Excluded from the
            [`repr()`][repr] of this class.
    """

    model_config = ConfigDict(extra='forbid')

    urls: str | list[str]
    username: str | None = None
    credential: str | None = Field(default=None, repr=False)


def _default_ice_servers() -> list[IceServerConfig]:
    return [IceServerConfig(urls=url) for url in DEFAULT_STUN_SERVERS]


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets`, `aiortc`, and
            `aioice` loggers. These log with much higher frequency so it is
            suggested to set this to `WARNING` or higher.
        log_dir: Optional directory to write rotating log files to.
    """

    level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    log_dir: str | None = None


class PeerChatConfig(BaseModel):
    """Configuration supplied to
    [`PeerSessionOrchestrator.initialize()`][peerchat.orchestrator.PeerSessionOrchestrator.initialize].

    The configuration is owned by the caller and is never mutated by the
    orchestrator.

    Attributes:
        relay_address: Address of the signaling relay server. Must start
            with `ws://` or `wss://`.
        ice_servers: STUN/TURN servers for the transport.
        relay_timeout: Seconds to wait on opening the relay connection.
        handshake_timeout: Seconds a peer session may take to reach the
            connected state before it is failed.
        candidate_buffer_timeout: Seconds to hold candidates received for a
            peer that has no session yet.
        reconnect_interval: Base interval in seconds of the linear relay
            reconnection backoff.
        max_reconnect_attempts: Number of relay reconnection attempts before
            giving up.
        peer_retry_limit: Number of handshake retries per peer session after
            the link to that peer is lost.
        logging: Logging configuration.
    """  # noqa: E501

    model_config = ConfigDict(extra='forbid')

    relay_address: str = 'ws://localhost:8765'
    ice_servers: list[IceServerConfig] = Field(
        default_factory=_default_ice_servers,
    )
    relay_timeout: float = Field(default=10, gt=0)
    handshake_timeout: float = Field(default=30, gt=0)
    candidate_buffer_timeout: float = Field(default=10, gt=0)
    reconnect_interval: float = Field(default=2, ge=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    peer_retry_limit: int = Field(default=2, ge=0)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('relay_address')
    @classmethod
    def _check_relay_address(cls, value: str) -> str:
        if not (value.startswith('ws://') or value.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {value}.',
            )
        return value

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="peerchat.toml"
            relay_address = "wss://relay.example.com:8765"
            handshake_timeout = 20

            [[ice_servers]]
            urls = "stun:stun.l.google.com:19302"

            [[ice_servers]]
            urls = ["turn:turn.example.com:3478"]
            username = "user"
            credential = "secret"

            [logging]
            level = "DEBUG"
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        return read_file(cls, filepath)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file."""
        write_file(self, filepath)
