"""HTTP clients for sandbox-side endpoints."""

from pitcrew.clients.sandbox import SandboxClient

__all__ = ["SandboxClient"]
