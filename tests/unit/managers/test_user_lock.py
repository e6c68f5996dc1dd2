"""Unit tests for per-user admission locks."""

from __future__ import annotations

import asyncio

from pitcrew.concurrency import user_lock
from pitcrew.concurrency.locks import held_user_locks


async def test_same_user_serialized():
    order: list[str] = []

    async def hold(tag: str) -> None:
        async with user_lock("user-a"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(hold("one"), hold("two"))

    assert order == ["one-in", "one-out", "two-in", "two-out"]


async def test_different_users_overlap():
    inside = asyncio.Event()
    released = asyncio.Event()

    async def first() -> None:
        async with user_lock("user-a"):
            inside.set()
            await released.wait()

    task = asyncio.create_task(first())
    await inside.wait()

    async with user_lock("user-b"):
        released.set()

    await task


async def test_registry_emptied_after_release():
    async with user_lock("user-a"):
        assert held_user_locks() == 1

    assert held_user_locks() == 0


async def test_registry_emptied_after_error():
    try:
        async with user_lock("user-a"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert held_user_locks() == 0
