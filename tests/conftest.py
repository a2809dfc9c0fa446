"""Pytest configuration and fixtures for db_sandbox tests."""

from __future__ import annotations

import tarfile
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from prometheus_client import CollectorRegistry

from db_sandbox.adapters.outbound.platform import PosixPlatform, detect_platform
from db_sandbox.domain.entities.container import ContainerRecord
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.services.container_registry import ContainerRegistry
from db_sandbox.domain.services.port_allocator import PortAllocator
from db_sandbox.domain.value_objects.paths import SandboxPaths
from db_sandbox.infrastructure.config import Config, PathsConfig, SupervisorConfig
from db_sandbox.infrastructure.metrics import MetricsRegistry


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Provide a test configuration with short timeouts."""
    return Config(
        paths=PathsConfig(home=temp_dir / "home"),
        supervisor=SupervisorConfig(
            start_timeout_seconds=10.0,
            poll_interval_seconds=0.1,
            stop_grace_seconds=5.0,
            kill_timeout_seconds=2.0,
            port_release_seconds=1.0,
            lingering_port_wait_seconds=1.0,
            health_probe_timeout_seconds=0.5,
        ),
    )


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry."""
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def sandbox_paths(temp_dir: Path) -> SandboxPaths:
    """Provide a sandbox layout rooted in the temp directory."""
    paths = SandboxPaths(home=temp_dir / "home")
    paths.containers_dir.mkdir(parents=True)
    paths.bin_dir.mkdir(parents=True)
    return paths


@pytest.fixture
def platform() -> PosixPlatform:
    """Provide the host platform seam."""
    return detect_platform()


@pytest.fixture
def port_allocator(platform: PosixPlatform, metrics_registry: MetricsRegistry) -> PortAllocator:
    """Provide a port allocator."""
    return PortAllocator(platform, metrics=metrics_registry)


@pytest.fixture
def registry(sandbox_paths: SandboxPaths, platform: PosixPlatform, port_allocator: PortAllocator) -> ContainerRegistry:
    """Provide a container registry with no liveness probe."""
    return ContainerRegistry(sandbox_paths, platform, port_allocator)


@pytest.fixture
def record() -> ContainerRecord:
    """Provide a plain PostgreSQL record."""
    return ContainerRecord(
        name="db1",
        engine=Engine.POSTGRESQL,
        version="17.7.0",
        port=5432,
        database="postgres",
    )


def make_fake_archive(
    directory: Path,
    executable: str,
    script: str,
    archive_name: str,
    prefix: str = "",
) -> Path:
    """Build a tar.gz holding one shell-script executable.

    Args:
        directory: Where to write the archive.
        executable: Executable file name inside the archive.
        script: Shell script body.
        archive_name: Archive file name.
        prefix: Directory inside the archive the executable sits in.

    Returns:
        Archive path.
    """
    staging = directory / f"staging-{archive_name}"
    target_dir = staging / prefix if prefix else staging
    target_dir.mkdir(parents=True, exist_ok=True)
    exe = target_dir / executable
    exe.write_text(f"#!/bin/sh\n{script}\n")
    exe.chmod(0o755)

    archive = directory / archive_name
    with tarfile.open(archive, "w:gz") as tf:
        for entry in sorted(staging.rglob("*")):
            tf.add(entry, arcname=str(entry.relative_to(staging)), recursive=False)
    return archive


@pytest.fixture
def fake_archive():
    """Provide the fake archive builder."""
    return make_fake_archive


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "posix: Requires a POSIX shell")
