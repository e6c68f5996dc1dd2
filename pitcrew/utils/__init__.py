"""Shared helpers."""

from pitcrew.utils.datetime import utcnow

__all__ = ["utcnow"]
