from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

Listener = Callable[..., Awaitable[None]] | Callable[..., None]

logger = logging.getLogger(__name__)


class AsyncEventEmitter:
    """
    Small event emitter for the session's observable events.

    - `on(event, fn)` registers a listener (sync or async).
    - `emit(event, *args)` calls listeners in registration order and awaits
      async ones. A failing listener is logged and does not stop the others.
    - `wait_for(event, predicate, timeout_s)` resolves on the next matching emit.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._waiters: dict[str, list[tuple[Callable[..., bool] | None, asyncio.Future[Any]]]] = (
            defaultdict(list)
        )

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        with contextlib.suppress(ValueError):
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
            self._waiters.clear()
            return
        self._listeners.pop(event, None)
        self._waiters.pop(event, None)

    def wait_for_future(
        self, event: str, *, predicate: Callable[..., bool] | None = None
    ) -> asyncio.Future[Any]:
        """
        Register a waiter synchronously and return its Future.

        Registering before awaiting closes the window in which the event could
        fire between creating the awaitable and awaiting it.
        """

        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters[event].append((predicate, fut))
        return fut

    def _drop_waiter(self, event: str, fut: asyncio.Future[Any]) -> None:
        waiters = self._waiters.get(event)
        if not waiters:
            return
        kept = [(p, f) for (p, f) in waiters if f is not fut and not f.done()]
        if kept:
            self._waiters[event] = kept
        else:
            self._waiters.pop(event, None)

    def _wake_waiters(self, event: str, args: tuple[Any, ...]) -> bool:
        waiters = self._waiters.pop(event, None)
        if not waiters:
            return False
        woke = False
        remaining = []
        for predicate, fut in waiters:
            if fut.done():
                continue
            if predicate is None or predicate(*args):
                fut.set_result(args[0] if len(args) == 1 else args)
                woke = True
            else:
                remaining.append((predicate, fut))
        if remaining:
            self._waiters[event] = remaining
        return woke

    async def emit(self, event: str, *args: Any) -> bool:
        triggered = self._wake_waiters(event, args)

        for listener in list(self._listeners.get(event, ())):
            triggered = True
            try:
                res = listener(*args)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                logger.exception("listener for %r failed", event)

        return triggered

    async def wait_for(
        self,
        event: str,
        *,
        predicate: Callable[..., bool] | None = None,
        timeout_s: float | None = None,
    ) -> Any:
        fut = self.wait_for_future(event, predicate=predicate)
        try:
            if timeout_s is None:
                return await fut
            return await asyncio.wait_for(fut, timeout=timeout_s)
        finally:
            self._drop_waiter(event, fut)
