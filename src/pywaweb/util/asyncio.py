from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def cancel_suppress(task: asyncio.Task[Any] | None) -> None:
    if not task:
        return
    # A task cannot await itself; callers running inside `task` just return.
    if task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def _log_task_error(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background task %s failed", task.get_name(), exc_info=exc)


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    """Schedule `coro`; an exception it raises is logged instead of lost."""

    t: asyncio.Task[T] = asyncio.create_task(coro, name=name)
    t.add_done_callback(_log_task_error)
    return t
