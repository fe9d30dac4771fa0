"""Spawn and cancel asyncio background tasks with error logging."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    """Execute a coroutine and log any tracebacks.

    Catches any exceptions raised by the coroutine, logs the traceback,
    and re-raises the exception.
    """
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def log_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that logs and retrieves the task exception.

    Retrieving the exception prevents asyncio from later reporting
    "Task exception was never retrieved" for tasks nobody awaits.
    """
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Launches the coroutine as an asyncio task and sets the done
    callback to [`log_on_error()`][peerchat.utils.tasks.log_on_error].
    This ensures exceptions inside background tasks that are never awaited
    are still logged rather than silently lost.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
    )
    task.add_done_callback(log_on_error)
    return task


async def cancel_and_wait(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    No-op if `task` is `None` or already done. Exceptions raised by the
    task while it unwinds are not propagated because they were already
    logged by [`log_on_error()`][peerchat.utils.tasks.log_on_error].
    """
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:  # pragma: no cover
        logger.debug(f'Task {task.get_name()} exited with {e!r}')
