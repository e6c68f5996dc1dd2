"""Cleanup sweeper."""

from pitcrew.services.cleanup.sweeper import CleanupSweeper, SweepReport

__all__ = ["CleanupSweeper", "SweepReport"]
