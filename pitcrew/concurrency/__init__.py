"""In-process concurrency primitives."""

from pitcrew.concurrency.locks import user_lock

__all__ = ["user_lock"]
