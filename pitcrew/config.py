"""Pitcrew configuration management.

Configuration sources (in priority order):
1. Config file (config.yaml)
2. Environment variables (PITCREW_ prefix)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    json_logs: bool = False


class DatabaseConfig(BaseModel):
    """Database configuration."""

    # SQLite by default; postgresql+asyncpg:// works unchanged
    url: str = "sqlite+aiosqlite:///./pitcrew.db"
    echo: bool = False


class DockerConfig(BaseModel):
    """Docker compute backend configuration."""

    socket: str = "unix:///var/run/docker.sock"
    network: str = "pitcrew-network"
    image: str = "pitcrew-sandbox:latest"
    stop_timeout: int = 10


class ComputeConfig(BaseModel):
    """Compute backend configuration."""

    type: Literal["docker"] = "docker"
    docker: DockerConfig = Field(default_factory=DockerConfig)


class RoutingConfig(BaseModel):
    """Routing backend configuration."""

    type: Literal["proxy"] = "proxy"
    # Externally reachable base URL that route paths hang off
    public_base_url: str = "http://localhost:8000"
    deregistration_delay_seconds: int = 5
    # Target address is unknown at route creation, affinity would pin requests
    stickiness_enabled: bool = False
    proxy_timeout_seconds: float = 60.0


class SessionConfig(BaseModel):
    """Session lifecycle timing."""

    timeout_minutes: int = 240
    idle_timeout_minutes: int = 30
    estimated_startup_seconds: int = 240
    default_profile: str = "basic"


class ProvisioningConfig(BaseModel):
    """Creation pipeline dispatch and polling budgets."""

    queue_workers: int = 4
    queue_max_size: int = 256

    task_poll_attempts: int = 60
    task_poll_interval_seconds: float = 10.0

    registration_attempts: int = 3
    registration_backoff_seconds: float = 5.0

    health_poll_attempts: int = 20
    health_poll_interval_seconds: float = 30.0

    sandbox_request_timeout_seconds: float = 30.0


class SweeperConfig(BaseModel):
    """Cleanup sweeper schedule."""

    enabled: bool = True
    interval_seconds: int = 300
    run_on_startup: bool = False


class ChallengesConfig(BaseModel):
    """On-disk challenge catalog."""

    root_path: str = "/var/lib/pitcrew/challenges"


class ResourceProfile(BaseModel):
    """Compute tier for a sandbox."""

    id: str
    cpus: float = 1.0
    memory_mb: int = 2048
    java_heap_mb: int = 1536


class ServiceConfig(BaseModel):
    """An internal network service exposed by every sandbox."""

    name: str
    port: int
    health_check_path: str = "/"


class Settings(BaseSettings):
    """Pitcrew application settings."""

    model_config = SettingsConfigDict(
        env_prefix="PITCREW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    compute: ComputeConfig = Field(default_factory=ComputeConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    challenges: ChallengesConfig = Field(default_factory=ChallengesConfig)

    profiles: list[ResourceProfile] = Field(
        default_factory=lambda: [
            ResourceProfile(id="development", cpus=0.5, memory_mb=1024, java_heap_mb=768),
            ResourceProfile(id="basic", cpus=1.0, memory_mb=2048, java_heap_mb=1536),
            ResourceProfile(id="advanced", cpus=2.0, memory_mb=4096, java_heap_mb=3072),
            ResourceProfile(id="competition", cpus=4.0, memory_mb=8192, java_heap_mb=6144),
        ]
    )

    # "api" carries the sandbox control endpoints and the public health check
    services: list[ServiceConfig] = Field(
        default_factory=lambda: [
            ServiceConfig(name="api", port=30003, health_check_path="/health"),
            ServiceConfig(name="nt4", port=30004, health_check_path="/nt/health"),
            ServiceConfig(name="halsim", port=30005, health_check_path="/"),
            ServiceConfig(name="jdtls", port=30006, health_check_path="/"),
        ]
    )

    def get_profile(self, profile_id: str) -> ResourceProfile | None:
        """Get resource profile by ID."""
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        return None

    def get_service(self, name: str) -> ServiceConfig | None:
        """Get sandbox service by name."""
        for service in self.services:
            if service.name == name:
                return service
        return None


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. PITCREW_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/pitcrew/config.yaml
    """
    config_paths = [
        os.environ.get("PITCREW_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/pitcrew/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Keys present in the YAML file win over environment variables.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
