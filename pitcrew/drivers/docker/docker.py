"""Docker compute backend using aiodocker.

One container per session. Sandbox services listen on fixed ports inside the
container and are reached over the shared docker network, so no host ports
are published.

Supports:
- Running Pitcrew inside a container with mounted docker.sock
- Running Pitcrew on host with direct docker.sock access
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from pitcrew.drivers.base import ComputeBackend, TaskDescription, TaskRef, TaskState

if TYPE_CHECKING:
    from pitcrew.config import DockerConfig, ResourceProfile

logger = structlog.get_logger()

LABEL_MANAGED = "pitcrew.managed"
LABEL_SESSION_ID = "pitcrew.session_id"


class DockerComputeBackend(ComputeBackend):
    """Compute backend implementation using aiodocker."""

    def __init__(self, config: "DockerConfig") -> None:
        socket_url = config.socket
        if socket_url.startswith("unix://"):
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        self._network = config.network
        self._image = config.image
        self._stop_timeout = config.stop_timeout
        self._log = logger.bind(driver="docker")
        self._client: aiodocker.Docker | None = None

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def launch(
        self,
        profile: "ResourceProfile",
        env: dict[str, str],
        *,
        labels: dict[str, str],
    ) -> str:
        """Create and start a sandbox container."""
        client = await self._get_client()

        container_labels = {f"pitcrew.{k}": v for k, v in labels.items()}
        container_labels[LABEL_MANAGED] = "true"
        container_labels["pitcrew.profile"] = profile.id

        session_id = labels.get("session_id", "unknown")
        config = {
            "Image": self._image,
            "Env": [f"{k}={v}" for k, v in env.items()],
            "Labels": container_labels,
            "HostConfig": {
                "Memory": profile.memory_mb * 1024 * 1024,
                "NanoCpus": int(profile.cpus * 1e9),
                "NetworkMode": self._network,
                "PidsLimit": 512,
            },
        }

        self._log.info(
            "docker.launch",
            session_id=session_id,
            image=self._image,
            profile=profile.id,
        )

        try:
            container = await client.containers.create(
                config=config,
                name=f"pitcrew-session-{session_id}",
            )
            await container.start()
        except DockerError as e:
            self._log.error("docker.launch.failed", session_id=session_id, error=str(e))
            raise

        self._log.info("docker.launched", session_id=session_id, container_id=container.id)
        return container.id

    async def describe(self, handle: str) -> TaskDescription:
        """Map docker container state onto a task description."""
        client = await self._get_client()

        try:
            container = client.containers.container(handle)
            info = await container.show()
        except DockerError as e:
            if e.status == 404:
                return TaskDescription(
                    handle=handle,
                    state=TaskState.STOPPED,
                    stop_reason="container not found",
                )
            raise

        state_info = info.get("State", {})
        docker_status = state_info.get("Status", "unknown")

        if docker_status in ("created", "restarting"):
            return TaskDescription(handle=handle, state=TaskState.PENDING)

        if docker_status == "running":
            networks = info.get("NetworkSettings", {}).get("Networks", {})
            address = None
            if self._network in networks:
                address = networks[self._network].get("IPAddress") or None
            # Running but not yet attached to the network is still coming up
            state = TaskState.RUNNING if address else TaskState.PENDING
            return TaskDescription(handle=handle, state=state, address=address)

        # exited, dead, removing, paused and anything unknown
        exit_code = state_info.get("ExitCode")
        reason = state_info.get("Error") or f"container {docker_status}"
        if exit_code is not None and docker_status in ("exited", "dead"):
            reason = f"{reason} (exit code {exit_code})"
        return TaskDescription(handle=handle, state=TaskState.STOPPED, stop_reason=reason)

    async def stop(self, handle: str) -> None:
        """Stop and remove a container."""
        client = await self._get_client()
        self._log.info("docker.stop", container_id=handle)

        try:
            container = client.containers.container(handle)
            await container.stop(timeout=self._stop_timeout)
        except DockerError as e:
            if e.status == 404:
                self._log.warning("docker.stop.not_found", container_id=handle)
                return
            raise

        try:
            await container.delete(force=True)
        except DockerError as e:
            if e.status == 404:
                self._log.warning("docker.destroy.not_found", container_id=handle)
            else:
                raise

    async def list_tasks(self) -> list[TaskRef]:
        """List managed containers that are still alive."""
        client = await self._get_client()
        containers = await client.containers.list(
            filters=json.dumps({"label": [f"{LABEL_MANAGED}=true"]}),
        )

        refs = []
        for container in containers:
            container_labels = container["Labels"] or {}
            refs.append(
                TaskRef(
                    handle=container.id,
                    session_id=container_labels.get(LABEL_SESSION_ID),
                )
            )
        return refs
