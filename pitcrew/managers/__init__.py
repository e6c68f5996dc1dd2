"""Business logic managers."""

from pitcrew.managers.session import AdmissionOutcome, AdmissionResult, SessionController

__all__ = ["AdmissionOutcome", "AdmissionResult", "SessionController"]
