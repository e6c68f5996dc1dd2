"""Session lifecycle controller."""

from pitcrew.managers.session.session import (
    AdmissionOutcome,
    AdmissionResult,
    SessionController,
)

__all__ = ["AdmissionOutcome", "AdmissionResult", "SessionController"]
