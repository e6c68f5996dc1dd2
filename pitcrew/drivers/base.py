"""Compute backend base class - infrastructure abstraction.

A compute backend is responsible ONLY for task (container) lifecycle:
launch, describe, stop, list. It does NOT handle:
- Routing
- Health checks beyond reporting task state
- Retry/backoff (the creation pipeline owns polling)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pitcrew.config import ResourceProfile


class TaskState(str, Enum):
    """Task state from the backend's perspective."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class TaskDescription:
    """Point-in-time view of a compute task."""

    handle: str
    state: TaskState
    address: str | None = None  # Private network address, once running
    stop_reason: str | None = None


@dataclass(frozen=True)
class TaskRef:
    """A task owned by this orchestrator, as tagged at launch."""

    handle: str
    session_id: str | None


class ComputeBackend(ABC):
    """Abstract interface for sandbox compute tasks.

    All tasks launched MUST be labeled with:
    - user_id
    - session_id
    - profile
    """

    @abstractmethod
    async def launch(
        self,
        profile: "ResourceProfile",
        env: dict[str, str],
        *,
        labels: dict[str, str],
    ) -> str:
        """Launch a task sized per ``profile``.

        Returns:
            Opaque compute handle
        """
        ...

    @abstractmethod
    async def describe(self, handle: str) -> TaskDescription:
        """Report task state. A task the backend no longer knows is STOPPED."""
        ...

    @abstractmethod
    async def stop(self, handle: str) -> None:
        """Stop a task. Idempotent: an unknown task is not an error."""
        ...

    @abstractmethod
    async def list_tasks(self) -> list[TaskRef]:
        """List every task this orchestrator launched and that is not stopped."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None
