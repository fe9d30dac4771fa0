"""Relay reconnection supervision with bounded linear backoff."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from peerchat.exceptions import MaxRetriesExceededError
from peerchat.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class ReconnectionSupervisor:
    """Schedules cold restarts after relay-level failures.

    After the `n`-th consecutive failure the supervisor waits
    `n * interval` seconds and then invokes `restart`. Once
    `max_attempts` retries have been used, the next failure is terminal:
    no timer is scheduled and
    [`exhausted`][peerchat.supervisor.ReconnectionSupervisor.exhausted]
    stays set until
    [`reset()`][peerchat.supervisor.ReconnectionSupervisor.reset].

    Note:
        The supervisor never touches sessions itself. `restart` is expected
        to hand control back to the owner's event loop.

    Args:
        restart: Callable invoked, without awaiting, when a retry is due.
        interval: Base interval in seconds of the backoff.
        max_attempts: Number of retries before giving up.
    """

    def __init__(
        self,
        restart: Callable[[], None],
        *,
        interval: float = 2,
        max_attempts: int = 5,
    ) -> None:
        self._restart = restart
        self._interval = interval
        self._max_attempts = max_attempts

        self._attempts = 0
        self._exhausted = False
        self._last_error: Exception | None = None
        self._timer: asyncio.Task[None] | None = None

    @property
    def attempts(self) -> int:
        """Retries scheduled since the last success or reset."""
        return self._attempts

    @property
    def max_attempts(self) -> int:
        """Maximum number of retries."""
        return self._max_attempts

    @property
    def pending(self) -> bool:
        """A retry is scheduled but has not fired yet."""
        return self._timer is not None and not self._timer.done()

    @property
    def exhausted(self) -> bool:
        """All retries were used and the last one failed."""
        return self._exhausted

    @property
    def last_error(self) -> Exception | None:
        """Most recent failure reported to the supervisor."""
        return self._last_error

    def configure(self, *, interval: float, max_attempts: int) -> None:
        """Update the backoff parameters used for future retries."""
        self._interval = interval
        self._max_attempts = max_attempts

    def relay_failed(self, error: Exception) -> bool:
        """Report a relay-level failure.

        Args:
            error: The failure that occurred.

        Returns:
            `True` if a retry is scheduled, `False` if the retries are
            exhausted.
        """
        self._last_error = error
        if self.pending:
            return True

        if self._attempts >= self._max_attempts:
            self._exhausted = True
            self._last_error = MaxRetriesExceededError(
                f'Giving up on the relay server after {self._attempts} '
                f'reconnection attempt(s). Last error: {error}',
            )
            logger.error(str(self._last_error))
            return False

        self._attempts += 1
        delay = self._attempts * self._interval
        logger.warning(
            f'Relay failure ({error}). Retrying connection in {delay} '
            f'seconds (attempt {self._attempts}/{self._max_attempts})',
        )
        self._timer = spawn_guarded_background_task(self._wait, delay)
        self._timer.set_name('relay-reconnect-timer')
        return True

    async def _wait(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        self._restart()

    def connected(self) -> None:
        """Report a successful connection, resetting the attempt counter."""
        if self._attempts > 0:
            logger.info(
                f'Connection restored after {self._attempts} attempt(s)',
            )
        self._attempts = 0
        self._exhausted = False
        self._last_error = None

    def cancel(self) -> None:
        """Cancel a pending retry immediately."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        """Cancel any pending retry and forget previous failures."""
        self.cancel()
        self._attempts = 0
        self._exhausted = False
        self._last_error = None
