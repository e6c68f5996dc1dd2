"""Challenge loaders.

A loader turns a challenge ID into the set of workspace files pushed into a
running sandbox. Only robot source files are shipped: starter code under
``starter-code/robot/`` replaces ``src/main/java/frc/robot/`` in the sandbox
project, build configuration is left alone.
"""

from __future__ import annotations

import asyncio
import base64
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from pitcrew.errors import NotFoundError, ValidationError

logger = structlog.get_logger()

STARTER_ROBOT_DIR = Path("starter-code") / "robot"
SANDBOX_ROBOT_DIR = "src/main/java/frc/robot"
METADATA_FILE = "challenge.yaml"

_CHALLENGE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@dataclass(frozen=True)
class ChallengeFile:
    path: str  # Relative to the sandbox project root
    content: str
    executable: bool = False
    encoding: str = "utf-8"  # "base64" for files that are not UTF-8 text


@dataclass
class ChallengePayload:
    """Workspace content for one challenge."""

    challenge_id: str
    files: list[ChallengeFile] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_request(self) -> dict[str, Any]:
        """Body of the sandbox ``/api/load-challenge`` call."""
        return {
            "challengeId": self.challenge_id,
            "files": [
                {
                    "path": f.path,
                    "content": f.content,
                    "encoding": f.encoding,
                    "executable": f.executable,
                }
                for f in self.files
            ],
            "metadata": self.metadata,
        }


def validate_challenge_id(challenge_id: str) -> str:
    if not _CHALLENGE_ID_RE.match(challenge_id or ""):
        raise ValidationError(
            f"Invalid challenge id: {challenge_id!r}",
            details={"challenge_id": challenge_id},
        )
    return challenge_id


def _read_file(source: Path, path: str) -> ChallengeFile:
    """Read a starter file, base64-encoding anything that is not UTF-8."""
    raw = source.read_bytes()
    executable = os.access(source, os.X_OK)
    try:
        return ChallengeFile(path=path, content=raw.decode("utf-8"), executable=executable)
    except UnicodeDecodeError:
        return ChallengeFile(
            path=path,
            content=base64.b64encode(raw).decode("ascii"),
            executable=executable,
            encoding="base64",
        )


class ChallengeLoader(ABC):
    """Resolves challenge IDs to workspace payloads."""

    @abstractmethod
    async def load(self, challenge_id: str) -> ChallengePayload:
        """Load a challenge.

        Raises:
            NotFoundError: Unknown challenge.
        """
        ...


class FilesystemChallengeLoader(ChallengeLoader):
    """Reads challenges from ``<root>/<challenge_id>/``.

    Layout::

        <challenge_id>/
            challenge.yaml            optional metadata
            starter-code/robot/...    robot sources
    """

    def __init__(self, root_path: str | Path) -> None:
        self._root = Path(root_path)
        self._log = logger.bind(loader="filesystem", root=str(self._root))

    async def load(self, challenge_id: str) -> ChallengePayload:
        validate_challenge_id(challenge_id)
        return await asyncio.to_thread(self._load_sync, challenge_id)

    def _load_sync(self, challenge_id: str) -> ChallengePayload:
        challenge_dir = self._root / challenge_id
        if not challenge_dir.is_dir():
            raise NotFoundError(
                f"Challenge not found: {challenge_id}",
                details={"challenge_id": challenge_id},
            )

        metadata: dict[str, Any] = {}
        metadata_path = challenge_dir / METADATA_FILE
        if metadata_path.is_file():
            with open(metadata_path) as f:
                metadata = yaml.safe_load(f) or {}

        files: list[ChallengeFile] = []
        robot_dir = challenge_dir / STARTER_ROBOT_DIR
        if robot_dir.is_dir():
            for source in sorted(robot_dir.rglob("*")):
                if not source.is_file():
                    continue
                relative = source.relative_to(robot_dir).as_posix()
                files.append(_read_file(source, f"{SANDBOX_ROBOT_DIR}/{relative}"))

        self._log.debug("challenge.loaded", challenge_id=challenge_id, files=len(files))
        return ChallengePayload(challenge_id=challenge_id, files=files, metadata=metadata)
