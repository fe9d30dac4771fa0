"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_for(
    predicate: Callable[[], bool],
    timeout: float = 5,
    interval: float = 0.01,
) -> None:
    """Wait until `predicate()` is true.

    Raises:
        asyncio.TimeoutError: If `predicate()` is still false after
            `timeout` seconds.
    """

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout)
