"""
Task scopes — cancellable background work owned by one session.

Every long-lived loop (polling, location sampling, reconnect backoff) and
every delayed callback started on behalf of a live view is registered on a
TaskScope. Closing the scope:

    1. flips its CancelToken synchronously, so any callback already past
       its await point sees ``token.cancelled`` before touching state;
    2. cancels every tracked asyncio.Task and awaits them.

Usage:
    scope = TaskScope("sender-session")
    scope.spawn(poll_loop(), name="poll")
    scope.call_later(2.0, reload_locations, name="reload@2s")
    ...
    await scope.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional

logger = logging.getLogger(__name__)


class CancelToken:
    """Cheap flag checked before each state mutation."""

    __slots__ = ("_cancelled", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> None:
        self._cancelled = True
        self.reason = reason or self.reason


class TaskScope:
    """
    Owns the asyncio tasks of one session.

    Tasks that finish are dropped from the registry automatically; tasks
    that fail are logged, never re-raised into the event loop.
    """

    def __init__(self, name: str = "scope", token: Optional[CancelToken] = None):
        self.name = name
        self.token = token or CancelToken()
        self._tasks: Dict[int, asyncio.Task] = {}
        self._counter = 0

    @property
    def closed(self) -> bool:
        return self.token.cancelled

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str = "") -> Optional[asyncio.Task]:
        """Run a coroutine as a tracked task. Returns None once closed."""
        if self.closed:
            coro.close()
            return None

        self._counter += 1
        key = self._counter
        task = asyncio.create_task(coro, name=f"{self.name}:{name or key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        return task

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        name: str = "",
    ) -> Optional[asyncio.Task]:
        """Schedule ``callback()`` after ``delay`` seconds on this scope."""

        async def _delayed() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            if self.closed:
                return
            await callback()

        return self.spawn(_delayed(), name=name or f"later:{delay:g}s")

    def _on_done(self, key: int, task: asyncio.Task) -> None:
        self._tasks.pop(key, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Task %s failed: %s", task.get_name(), exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def close(self, reason: str = "closed") -> None:
        """Cancel the token, then cancel and await every tracked task."""
        if self.closed and not self._tasks:
            return
        self.token.cancel(reason)

        current = asyncio.current_task()
        pending = [t for t in self._tasks.values() if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.debug("Task scope %s closed (%s)", self.name, reason)
