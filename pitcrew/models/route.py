"""Route rule data model.

Persisted by the self-hosted proxy routing backend. One row per
(session, service): a public path prefix plus the private target it
forwards to once the sandbox address is known.
"""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from pitcrew.models.types import UTCDateTime
from pitcrew.utils.datetime import utcnow


class RouteRule(SQLModel, table=True):
    """Route rule + its target registration."""

    __tablename__ = "route_rules"

    id: str = Field(primary_key=True)  # rule ref
    target_ref: str = Field(index=True, unique=True)

    session_id: str = Field(index=True)
    service: str
    path_prefix: str = Field(index=True, unique=True)

    port: int
    health_check_path: str = Field(default="/")
    deregistration_delay_seconds: int = Field(default=5)
    stickiness_enabled: bool = Field(default=False)

    # Target registration (unset until the sandbox address is known)
    target_address: str | None = Field(default=None)
    target_port: int | None = Field(default=None)
    registered_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def is_registered(self) -> bool:
        return self.target_address is not None and self.target_port is not None
