"""Tests for the TaskManager lifecycle helper."""

from __future__ import annotations

import asyncio
import unittest

from proxy_chat.task_manager import TaskManager


async def _sleeper(cancelled: list[bool]) -> None:
    try:
        await asyncio.sleep(9999)
    except asyncio.CancelledError:
        cancelled.append(True)
        raise


class TaskManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate named task lifecycle management."""

    async def test_add_named_and_cancel_by_name(self) -> None:
        tm = TaskManager()
        cancelled: list[bool] = []
        task = asyncio.create_task(_sleeper(cancelled))
        tm.add("stream:a", task)
        await asyncio.sleep(0)  # Let the task start.
        self.assertIs(tm.get("stream:a"), task)
        self.assertTrue(tm.is_running("stream:a"))

        self.assertTrue(await tm.cancel("stream:a"))
        self.assertTrue(task.done())
        self.assertTrue(cancelled)
        self.assertIsNone(tm.get("stream:a"))

    async def test_cancel_unknown_or_finished_returns_false(self) -> None:
        tm = TaskManager()
        self.assertFalse(await tm.cancel("missing"))

        async def _quick() -> int:
            return 1

        task = asyncio.create_task(_quick())
        tm.add("quick", task)
        await task
        self.assertFalse(await tm.cancel("quick"))

    async def test_finished_task_is_forgotten(self) -> None:
        tm = TaskManager()

        async def _quick() -> None:
            return None

        task = asyncio.create_task(_quick())
        tm.add("quick", task)
        await task
        await asyncio.sleep(0)  # Done callbacks run on the next loop turn.
        self.assertIsNone(tm.get("quick"))
        self.assertFalse(tm.is_running("quick"))

    async def test_replaced_name_keeps_newer_task(self) -> None:
        tm = TaskManager()

        async def _quick() -> None:
            return None

        first = asyncio.create_task(_quick())
        tm.add("name", first)
        second = asyncio.create_task(_sleeper([]))
        tm.add("name", second)
        await first
        await asyncio.sleep(0)
        self.assertIs(tm.get("name"), second)
        await tm.cancel_all()
        self.assertTrue(second.done())

    async def test_cancel_all(self) -> None:
        tm = TaskManager()
        cancelled: list[bool] = []
        tasks = [asyncio.create_task(_sleeper(cancelled)) for _ in range(3)]
        for index, task in enumerate(tasks):
            tm.add(f"t{index}", task)
        await asyncio.sleep(0)
        await tm.cancel_all()
        self.assertTrue(all(task.done() for task in tasks))
        self.assertEqual(len(cancelled), 3)
        self.assertIsNone(tm.get("t0"))


if __name__ == "__main__":
    unittest.main()
