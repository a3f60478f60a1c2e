"""Scoped background work for a single chat session.

A ``TaskScope`` owns the timers, polling loops and change-feed subscriptions
acquired while a session is live. ``close()`` releases all of them together
and may be called any number of times from any exit path.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


class Closable(Protocol):
    def close(self) -> None: ...


class TaskScope:
    def __init__(self, name: str):
        self.name = name
        self._tasks: set[asyncio.Task] = set()
        self._resources: list[Closable] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_tasks(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        if self._closed:
            # Never start work for a session that is already torn down
            if asyncio.iscoroutine(coro):
                coro.close()
            raise RuntimeError(f"task scope {self.name} is closed")
        task = asyncio.create_task(coro, name=f"{self.name}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def every(self, interval: float, tick: Callable[[], Awaitable[None]], name: str) -> asyncio.Task:
        """
        Run ``tick`` every ``interval`` seconds until the scope closes. A tick
        that raises is logged and the next one still runs.
        """

        async def _loop() -> None:
            while not self._closed:
                await asyncio.sleep(interval)
                if self._closed:
                    return
                try:
                    await tick()
                except Exception:
                    logger.exception("Periodic task %s:%s failed", self.name, name)

        return self.spawn(_loop(), name)

    def after(self, delay: float, callback: Callable[[], Awaitable[None]], name: str) -> asyncio.Task:
        """Run ``callback`` once after ``delay`` seconds unless the scope closes first."""

        async def _timer() -> None:
            await asyncio.sleep(delay)
            if not self._closed:
                await callback()

        return self.spawn(_timer(), name)

    def attach(self, resource: Closable) -> None:
        if self._closed:
            resource.close()
            return
        self._resources.append(resource)

    def close(self) -> None:
        """Cancel every task and close every resource. Idempotent."""
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task() if _loop_running() else None
        for task in list(self._tasks):
            # The task running close() finishes on its own; every loop checks `closed`
            if task is not current:
                task.cancel()
        for resource in self._resources:
            resource.close()
        self._resources.clear()
        logger.debug("Task scope %s closed", self.name)

    async def wait_closed(self) -> None:
        """Wait until cancelled tasks have actually finished."""
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


async def invoke_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Call a sync or async listener; a failing listener must not kill the session."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Session listener %r failed", callback)
