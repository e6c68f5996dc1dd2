"""Per-user admission locks.

Serializes the check-then-create admission sequence for one user inside a
single process. Across processes the unique ``active_user_id`` column on the
sessions table is the guard; this lock only keeps the common single-instance
case from hitting that constraint at all.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


# No await between lookup and insert, so the registry itself needs no lock
_user_locks: dict[str, _LockEntry] = {}


@asynccontextmanager
async def user_lock(user_id: str) -> AsyncIterator[None]:
    """Hold the admission lock for ``user_id``.

    The entry is dropped once the last holder or waiter leaves, so the
    registry only ever contains users with admission in flight.
    """
    entry = _user_locks.get(user_id)
    if entry is None:
        entry = _LockEntry()
        _user_locks[user_id] = entry
    entry.holders += 1
    try:
        async with entry.lock:
            yield
    finally:
        entry.holders -= 1
        if entry.holders == 0 and _user_locks.get(user_id) is entry:
            del _user_locks[user_id]


def held_user_locks() -> int:
    """Number of users with admission in flight."""
    return len(_user_locks)
