"""SQLModel data models."""

from pitcrew.models.route import RouteRule
from pitcrew.models.session import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    Session,
    SessionStatus,
    TerminationReason,
    can_transition,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "RouteRule",
    "Session",
    "SessionStatus",
    "TerminationReason",
    "can_transition",
]
