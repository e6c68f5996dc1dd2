"""Challenge workspace loading."""

from pitcrew.challenges.loader import (
    ChallengeFile,
    ChallengeLoader,
    ChallengePayload,
    FilesystemChallengeLoader,
)

__all__ = [
    "ChallengeFile",
    "ChallengeLoader",
    "ChallengePayload",
    "FilesystemChallengeLoader",
]
