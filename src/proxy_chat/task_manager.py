"""Named lifecycle tracking for in-flight stream tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)


class TaskManager:
    """Track named asyncio tasks so they can be cancelled by key."""

    def __init__(self) -> None:
        self._named: dict[str, asyncio.Task[Any]] = {}

    def add(self, name: str, task: asyncio.Task[Any]) -> None:
        """Register ``task`` under ``name``; it is forgotten once it finishes.

        A prior task with the same name is replaced, not cancelled.
        """
        self._named[name] = task
        task.add_done_callback(lambda done: self._forget(name, done))

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._named.get(name) is task:
            del self._named[name]

    def get(self, name: str) -> asyncio.Task[Any] | None:
        """Return the named task or ``None`` if not registered."""
        return self._named.get(name)

    def is_running(self, name: str) -> bool:
        task = self._named.get(name)
        return task is not None and not task.done()

    async def cancel(self, name: str) -> bool:
        """Cancel a named task and wait for it; False when nothing was running."""
        task = self._named.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:  # noqa: BLE001 - the owner reports task failures.
            LOGGER.debug(
                "task.cancel.exception",
                extra={
                    "event": "task.cancel.exception",
                    "task": name,
                    "error_type": type(exc).__name__,
                },
            )
        return True

    async def cancel_all(self) -> None:
        """Cancel every tracked task and await them all."""
        tasks = [task for task in self._named.values() if not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._named.clear()
