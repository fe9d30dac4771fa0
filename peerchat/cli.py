"""Terminal chat client."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import sys
from typing import AsyncIterator

import click
import pydantic

from peerchat.config import LoggingConfig
from peerchat.config import PeerChatConfig
from peerchat.orchestrator import PeerSessionOrchestrator
from peerchat.streams import ChatMessage
from peerchat.utils.tasks import cancel_and_wait
from peerchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

QUIT_COMMAND = '/quit'


async def _stdin_lines() -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if line == '':
            return
        yield line.rstrip('\n')


def format_message(message: ChatMessage) -> str:
    """Format a chat message as a single terminal line."""
    time = datetime.datetime.fromtimestamp(message.timestamp / 1000)
    return f'[{time:%H:%M:%S}] {message.user}: {message.text}'


async def _echo_events(orchestrator: PeerSessionOrchestrator) -> None:
    async def _status() -> None:
        async for status in orchestrator.status.subscribe():
            click.echo(f'* {status}')

    async def _peers() -> None:
        async for peers in orchestrator.peers.subscribe():
            names = ', '.join(peer.name for peer in peers)
            click.echo(f'* peers: {names if names else "(none)"}')

    async def _messages() -> None:
        async for message in orchestrator.messages.subscribe():
            click.echo(format_message(message))

    async def _typing() -> None:
        async for indicator in orchestrator.typing.subscribe():
            if indicator.is_typing:
                click.echo(f'* {indicator.user} is typing…')

    await asyncio.gather(_status(), _peers(), _messages(), _typing())


async def run_chat(
    orchestrator: PeerSessionOrchestrator,
    name: str,
    room: str,
    config: PeerChatConfig,
    lines: AsyncIterator[str] | None = None,
) -> None:
    """Join a room and relay lines of input as chat messages.

    Events from the orchestrator are printed as they arrive. Input ends
    at end of file or when a line equal to `/quit` is read, after which
    the room is left and the orchestrator disposed.

    Args:
        orchestrator: Orchestrator to drive.
        name: Display name of the local user.
        room: Room code to join.
        config: Configuration passed to
            [`initialize()`][peerchat.orchestrator.PeerSessionOrchestrator.initialize].
        lines: Input lines. Defaults to lines read from stdin.
    """  # noqa: E501
    lines = _stdin_lines() if lines is None else lines
    printer = spawn_guarded_background_task(_echo_events, orchestrator)
    printer.set_name('peerchat-cli-printer')

    try:
        await orchestrator.initialize(name, room, config)
        async for line in lines:
            text = line.strip()
            if text == QUIT_COMMAND:
                break
            elif len(text) > 0:
                await orchestrator.send_message(text)
        await orchestrator.leave_room()
    finally:
        await orchestrator.dispose()
        # Streams are closed on dispose so the printer drains and exits.
        try:
            await asyncio.wait_for(asyncio.shield(printer), timeout=1)
        except asyncio.TimeoutError:
            await cancel_and_wait(printer)


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root logger according to `config`."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'peerchat.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.level,
        handlers=handlers,
    )

    for noisy in ('websockets', 'aiortc', 'aioice'):
        logging.getLogger(noisy).setLevel(config.websockets_level)


@click.command()
@click.option('--name', '-n', required=True, help='Display name.')
@click.option('--room', '-r', required=True, help='Room code to join.')
@click.option('--relay', metavar='URL', help='Relay server address.')
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    name: str,
    room: str,
    relay: str | None,
    config_path: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Chat with everyone in a room over peer-to-peer connections.

    Each line read from stdin is sent as a message. Enter `/quit` to leave
    the room. If no configuration file is provided, a default configuration
    is created from
    [`PeerChatConfig()`][peerchat.config.PeerChatConfig]. The remaining CLI
    options override the options in the configuration.
    """
    config = (
        PeerChatConfig()
        if config_path is None
        else PeerChatConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if relay is not None:
        try:
            config = PeerChatConfig.model_validate(
                {**config.model_dump(), 'relay_address': relay},
            )
        except pydantic.ValidationError as e:
            raise click.BadParameter(str(e), param_hint='--relay') from e
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.level = logging.getLevelName(log_level.upper())

    configure_logging(config.logging)
    logger.info(f'Joining room {room} as {name} via {config.relay_address}')

    asyncio.run(run_chat(PeerSessionOrchestrator(), name, room, config))
