"""Datetime helpers.

All timestamps are timezone-aware UTC. Columns persist them through
``pitcrew.models.types.UTCDateTime``.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as aware UTC."""
    return datetime.now(timezone.utc)
