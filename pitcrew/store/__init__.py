"""Session Store access layer."""

from pitcrew.store.sessions import SessionStore

__all__ = ["SessionStore"]
