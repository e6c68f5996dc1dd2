"""Pitcrew - session orchestrator for ephemeral challenge sandboxes."""

__version__ = "0.1.0"
