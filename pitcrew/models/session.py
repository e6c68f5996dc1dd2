"""Session data model.

Session is the durable record of one learner sandbox.
- 1 Session = 1 compute task + 1 route per sandbox service
- At most one non-terminal Session per user
- Never deleted: terminal sessions are kept for history
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from pitcrew.models.types import UTCDateTime
from pitcrew.utils.datetime import utcnow


class SessionStatus(str, Enum):
    """Session lifecycle status."""

    STARTING = "starting"  # Creation pipeline in flight
    RUNNING = "running"  # Sandbox addressable and healthy
    LOADING_CHALLENGE = "loading_challenge"  # Pushing a challenge into an idle sandbox
    SWITCHING_CHALLENGE = "switching_challenge"  # Replacing the loaded challenge
    FAILED = "failed"  # Provisioning failed (terminal)
    STOPPING = "stopping"  # Termination in progress
    STOPPED = "stopped"  # Terminated (terminal)


ACTIVE_STATUSES: frozenset[SessionStatus] = frozenset(
    {
        SessionStatus.STARTING,
        SessionStatus.RUNNING,
        SessionStatus.LOADING_CHALLENGE,
        SessionStatus.SWITCHING_CHALLENGE,
    }
)

TERMINAL_STATUSES: frozenset[SessionStatus] = frozenset(
    {SessionStatus.FAILED, SessionStatus.STOPPED}
)

# Every legal edge of the lifecycle state machine.
# RUNNING -> RUNNING is the exit-challenge edge (challenge cleared, sandbox kept).
TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.STARTING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.STOPPING}
    ),
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.RUNNING,
            SessionStatus.LOADING_CHALLENGE,
            SessionStatus.SWITCHING_CHALLENGE,
            SessionStatus.STOPPING,
        }
    ),
    SessionStatus.LOADING_CHALLENGE: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPING}
    ),
    SessionStatus.SWITCHING_CHALLENGE: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPING}
    ),
    SessionStatus.STOPPING: frozenset({SessionStatus.STOPPED}),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.STOPPED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the state machine."""
    return target in TRANSITIONS[current]


class TerminationReason(str, Enum):
    USER_REQUESTED = "user_requested"
    EXPIRED = "expired"
    IDLE = "idle"
    PROVISIONING_FAILED = "provisioning_failed"
    TASK_STOPPED = "task_stopped"  # Compute task died under a running session


class Session(SQLModel, table=True):
    """Session - one learner sandbox and its routing."""

    __tablename__ = "sessions"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)

    # Equals user_id while the session is starting/running, NULL from
    # stopping on. The unique constraint makes per-user admission race-free.
    active_user_id: str | None = Field(default=None, unique=True, nullable=True)

    current_challenge_id: str | None = Field(default=None)
    status: SessionStatus = Field(default=SessionStatus.STARTING, index=True)
    resource_profile: str = Field(default="basic")

    # Compute info (internal, never exposed)
    compute_handle: str | None = Field(default=None)
    private_address: str | None = Field(default=None)

    # One descriptor per sandbox service:
    # {"service", "port", "rule_ref", "target_ref", "url"}
    routes: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, default=list),
    )

    failure_reason: str | None = Field(default=None)
    termination_reason: str | None = Field(default=None)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_activity: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    expires_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    terminated_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_active(self) -> bool:
        """Non-terminal and not being torn down."""
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_idle(self) -> bool:
        """Running with no challenge loaded, ready for instant reuse."""
        return self.status == SessionStatus.RUNNING and not self.current_challenge_id

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def route_for(self, service: str) -> dict[str, Any] | None:
        for route in self.routes or []:
            if route.get("service") == service:
                return route
        return None
