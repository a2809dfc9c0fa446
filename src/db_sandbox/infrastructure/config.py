"""Configuration management for the database sandbox."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_home() -> Path:
    return Path.home() / ".db-sandbox"


class PathsConfig(BaseModel):
    """On-disk locations."""

    home: Path = Field(default_factory=_default_home, description="Sandbox root directory")

    @property
    def bin_dir(self) -> Path:
        return self.home / "bin"

    @property
    def containers_dir(self) -> Path:
        return self.home / "containers"


class PortConfig(BaseModel):
    """Port allocation configuration."""

    host: str = Field(default="127.0.0.1", description="Loopback address probed for availability")
    default_port: int = Field(default=5432, ge=1, le=65535, description="Fallback preferred port")
    scan_limit: int = Field(default=100, ge=1, description="Ports scanned when no range is given")


class SupervisorConfig(BaseModel):
    """Process supervision timeouts, in seconds."""

    start_timeout_seconds: float = Field(default=30.0, gt=0, description="Readiness ceiling")
    poll_interval_seconds: float = Field(default=0.5, gt=0, description="Readiness poll interval")
    stop_grace_seconds: float = Field(default=10.0, ge=0, description="Grace before force kill")
    kill_timeout_seconds: float = Field(default=5.0, ge=0, description="Wait after force kill")
    port_wait_seconds: float = Field(default=0.0, ge=0, description="Port wait before start")
    lingering_port_wait_seconds: float = Field(
        default=60.0, ge=0, description="Port wait before start where sockets linger"
    )
    port_release_seconds: float = Field(
        default=30.0, ge=0, description="Post-stop port release wait where sockets linger"
    )
    health_probe_timeout_seconds: float = Field(default=1.0, gt=0, description="Single probe timeout")
    log_tail_bytes: int = Field(default=2000, ge=0, description="Log bytes kept for diagnostics")
    start_retries: int = Field(default=3, ge=1, description="Attempts on port conflicts")


class BinaryConfig(BaseModel):
    """Binary provisioning configuration."""

    registry_url: str = Field(
        default="https://registry.layerbase.host", description="Primary binary repository"
    )
    mirror_url: str | None = Field(
        default="https://github.com/robertjbass/hostdb/releases/download",
        description="Fallback repository tried on 404/5xx/network errors",
    )
    local_mirror_dir: Path | None = Field(
        default=None, description="Serve archives from a local directory instead of HTTP"
    )
    download_timeout_seconds: float = Field(default=300.0, gt=0, description="Total download ceiling")
    connect_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP connect timeout")
    verify_timeout_seconds: float = Field(default=30.0, gt=0, description="--version timeout")
    chunk_size: int = Field(default=1 << 16, gt=0, description="Streaming chunk size")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")
    metrics_port: int | None = Field(default=None, ge=1, le=65535)
    otel_endpoint: str | None = Field(default=None)
    otel_service_name: str = Field(default="db_sandbox")


class Config(BaseSettings):
    """Main configuration for the database sandbox."""

    model_config = SettingsConfigDict(
        env_prefix="DB_SANDBOX_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    paths: PathsConfig = Field(default_factory=PathsConfig)
    ports: PortConfig = Field(default_factory=PortConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    binaries: BinaryConfig = Field(default_factory=BinaryConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def _check_timeouts(self) -> "Config":
        if self.supervisor.poll_interval_seconds > self.supervisor.start_timeout_seconds:
            raise ValueError("poll_interval_seconds must not exceed start_timeout_seconds")
        return self

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.paths.bin_dir.mkdir(parents=True, exist_ok=True)
        self.paths.containers_dir.mkdir(parents=True, exist_ok=True)


def load_config(**overrides) -> Config:
    """Build the configuration for one invocation."""
    config = Config(**overrides)
    config.ensure_directories()
    return config
