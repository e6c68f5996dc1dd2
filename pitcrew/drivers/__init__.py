"""Compute backends."""

from pitcrew.drivers.base import ComputeBackend, TaskDescription, TaskRef, TaskState

__all__ = ["ComputeBackend", "TaskDescription", "TaskRef", "TaskState"]
