"""Docker compute backend."""

from pitcrew.drivers.docker.docker import DockerComputeBackend

__all__ = ["DockerComputeBackend"]
