from __future__ import annotations

import logging
import pathlib
from typing import AsyncIterator
from typing import Generator
from unittest import mock
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner

from peerchat.cli import cli
from peerchat.cli import configure_logging
from peerchat.cli import format_message
from peerchat.cli import run_chat
from peerchat.config import LoggingConfig
from peerchat.config import PeerChatConfig
from peerchat.orchestrator import PeerSessionOrchestrator
from peerchat.streams import ChatMessage
from peerchat.streams import STATUS_INITIALIZING
from testing.transport import LoopbackNetwork


@pytest.fixture()
def mock_run_chat() -> Generator[AsyncMock, None, None]:
    with mock.patch(
        'peerchat.cli.run_chat',
        AsyncMock(),
    ) as mocked, mock.patch('peerchat.cli.configure_logging'):
        yield mocked


def _config_arg(mocked: AsyncMock) -> PeerChatConfig:
    mocked.assert_awaited_once()
    _, name, room, config = mocked.await_args.args
    assert name == 'alice'
    assert room == 'ABC123'
    return config


def test_requires_name_and_room() -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ['--name', 'alice'])
    assert result.exit_code != 0
    assert '--room' in result.output


def test_default_config(mock_run_chat) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ['--name', 'alice', '--room', 'ABC123'])
    assert result.exit_code == 0, result.output
    assert _config_arg(mock_run_chat) == PeerChatConfig()


def test_overrides(mock_run_chat, tmp_path: pathlib.Path) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli,
        [
            '-n',
            'alice',
            '-r',
            'ABC123',
            '--relay',
            'wss://relay.example.com',
            '--log-dir',
            str(tmp_path),
            '--log-level',
            'debug',
        ],
    )
    assert result.exit_code == 0, result.output
    config = _config_arg(mock_run_chat)
    assert config.relay_address == 'wss://relay.example.com'
    assert config.logging.log_dir == str(tmp_path)
    assert config.logging.level == logging.DEBUG


def test_config_file(mock_run_chat, tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'peerchat.toml'
    PeerChatConfig(
        relay_address='ws://relay.example.com:9000',
        handshake_timeout=5,
    ).write_toml(filepath)

    runner = CliRunner()
    result = runner.invoke(
        cli,
        ['-n', 'alice', '-r', 'ABC123', '--config', str(filepath)],
    )
    assert result.exit_code == 0, result.output
    config = _config_arg(mock_run_chat)
    assert config.relay_address == 'ws://relay.example.com:9000'
    assert config.handshake_timeout == 5


def test_bad_relay_address(mock_run_chat) -> None:
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ['-n', 'alice', '-r', 'ABC123', '--relay', 'http://example.com'],
    )
    assert result.exit_code == 2
    assert '--relay' in result.output
    mock_run_chat.assert_not_awaited()


def test_format_message() -> None:
    message = ChatMessage('alice', 'hello', 0, is_own=True)
    line = format_message(message)
    assert line.endswith('] alice: hello')
    assert line.startswith('[')


def test_configure_logging(tmp_path: pathlib.Path) -> None:
    log_dir = tmp_path / 'logs'
    with mock.patch('logging.basicConfig') as basic_config:
        configure_logging(
            LoggingConfig(
                level=logging.DEBUG,
                websockets_level=logging.ERROR,
                log_dir=str(log_dir),
            ),
        )

    assert log_dir.is_dir()
    kwargs = basic_config.call_args.kwargs
    assert kwargs['level'] == logging.DEBUG
    assert len(kwargs['handlers']) == 2
    assert logging.getLogger('websockets').level == logging.ERROR
    assert logging.getLogger('aiortc').level == logging.ERROR
    for handler in kwargs['handlers']:
        handler.close()
    for name in ('websockets', 'aiortc', 'aioice'):
        logging.getLogger(name).setLevel(logging.NOTSET)


async def _lines(*lines: str) -> AsyncIterator[str]:
    for line in lines:
        yield line


@pytest.mark.asyncio()
async def test_run_chat(relay_server, capsys) -> None:
    config = PeerChatConfig(
        relay_address=relay_server.address,
        ice_servers=[],
    )
    orchestrator = PeerSessionOrchestrator(
        transport_factory=LoopbackNetwork().factory,
    )
    messages = orchestrator.messages.subscribe()

    await run_chat(
        orchestrator,
        'alice',
        'ABC123',
        config,
        lines=_lines('hello', '   ', 'world', '/quit', 'never sent'),
    )

    assert orchestrator.disposed
    assert [message.text for message in messages.pending()] == [
        'hello',
        'world',
    ]
    output = capsys.readouterr().out
    assert f'* {STATUS_INITIALIZING}' in output
    assert 'alice: hello' in output
    assert 'alice: world' in output
    assert 'never sent' not in output
