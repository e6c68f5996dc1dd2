"""Database infrastructure."""

from pitcrew.db.session import (
    SessionFactory,
    close_db,
    get_async_session,
    get_session_dependency,
    init_db,
    make_session_factory,
)

__all__ = [
    "SessionFactory",
    "close_db",
    "get_async_session",
    "get_session_dependency",
    "init_db",
    "make_session_factory",
]
