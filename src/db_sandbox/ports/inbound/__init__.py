"""Inbound ports - API contracts for the sandbox lifecycle core.

Inbound ports define the interfaces that a CLI, an interactive menu or
any other upper layer uses to manage container records, ports, engine
processes and engine binaries.
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from db_sandbox.domain.entities.binary import Arch, HostPlatform, InstalledBinary
from db_sandbox.domain.entities.container import ContainerRecord, ContainerStatus, StartResult
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.services.port_allocator import PortResult


# =============================================================================
# Container Registry Port
# =============================================================================


class ContainerRegistryPort(Protocol):
    """Protocol for durable container record management.

    Records are the only persisted state; process liveness is never
    stored here beyond the declared ``status`` field.

    Example:
        registry.create("db1", engine=Engine.POSTGRESQL, version="17.7.0", port=5432)
        registry.clone("db1", "db1-copy")
        registry.delete("db1")
    """

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Check whether a container record exists."""
        ...

    @abstractmethod
    def get_config(self, name: str) -> ContainerRecord:
        """Get a container record.

        Raises:
            ContainerNotFoundError: If no record exists.
        """
        ...

    @abstractmethod
    def list(self) -> list[ContainerRecord]:
        """All readable records, oldest first."""
        ...

    @abstractmethod
    def create(
        self,
        name: str,
        *,
        engine: Engine | str,
        version: str,
        port: int,
        database: str | None = None,
        databases: Iterable[str] = (),
        binary_path: str | Path | None = None,
        cloned_from: str | None = None,
    ) -> ContainerRecord:
        """Create a record and its data directory.

        Raises:
            InvalidContainerNameError: If the name is not a safe identifier.
            ContainerAlreadyExistsError: If the name is taken.
        """
        ...

    @abstractmethod
    def update_config(self, name: str, /, **changes: Any) -> ContainerRecord:
        """Merge fields into a record and persist it atomically."""
        ...

    @abstractmethod
    def rename(self, old_name: str, new_name: str) -> ContainerRecord:
        """Rename a stopped container.

        Raises:
            ContainerRunningError: If the container is running.
            ContainerAlreadyExistsError: If ``new_name`` is taken.
        """
        ...

    @abstractmethod
    def clone(self, source_name: str, target_name: str) -> ContainerRecord:
        """Copy a stopped container into a new one on a fresh port."""
        ...

    @abstractmethod
    def delete(self, name: str, force: bool = False) -> None:
        """Remove a record and its data.

        Raises:
            ContainerRunningError: If running and not forced.
        """
        ...

    @abstractmethod
    def add_database(self, name: str, database: str) -> ContainerRecord:
        """Track an additional database."""
        ...

    @abstractmethod
    def remove_database(self, name: str, database: str) -> ContainerRecord:
        """Stop tracking a database.

        Raises:
            PrimaryDatabaseError: If ``database`` is the primary.
        """
        ...

    @abstractmethod
    def sync_databases(
        self,
        name: str,
        lister: Callable[[ContainerRecord], Iterable[str]],
    ) -> list[str]:
        """Replace the tracked databases with a live listing."""
        ...


# =============================================================================
# Port Allocator Port
# =============================================================================


class PortAllocatorPort(Protocol):
    """Protocol for TCP port availability checks.

    Stateless: every answer re-probes the OS, so a returned port is
    only free at the moment it was checked.
    """

    @abstractmethod
    def is_port_available(self, port: int) -> bool:
        """Check whether a port can be bound on loopback."""
        ...

    @abstractmethod
    def find_available_port(
        self,
        start_from: int | None = None,
        port_range: tuple[int, int] | None = None,
        exclude: Iterable[int] = (),
    ) -> PortResult:
        """Find a bindable port.

        Raises:
            PortRangeExhaustedError: If nothing in the range is free.
        """
        ...

    @abstractmethod
    def describe_port_owner(self, port: int) -> str | None:
        """Describe the process holding a port, if known."""
        ...


# =============================================================================
# Process Supervisor Port
# =============================================================================


class ProcessSupervisorPort(Protocol):
    """Protocol for engine process control.

    Example:
        result = supervisor.start(record)
        try:
            connect(result.connection_string)
        finally:
            supervisor.stop(record)
    """

    @abstractmethod
    def start(self, record: ContainerRecord) -> StartResult:
        """Start a container's engine and wait until it is ready.

        Raises:
            BinaryNotFoundError: If the server executable is missing.
            PortInUseError: If a required port stays bound.
            ProcessStartFailedError: If the process dies or never becomes ready.
        """
        ...

    @abstractmethod
    def stop(self, record: ContainerRecord) -> bool:
        """Stop a container's engine.

        Returns:
            True if a process was stopped.

        Raises:
            ProcessStopTimeoutError: If a process survives a forced kill.
        """
        ...

    @abstractmethod
    def is_running(self, record: ContainerRecord) -> bool:
        """Check whether a container's engine is alive."""
        ...

    @abstractmethod
    def get_pid(self, record: ContainerRecord, require_live: bool = False) -> int | None:
        """Read a container's PID marker."""
        ...

    @abstractmethod
    def reconcile(self, record: ContainerRecord) -> ContainerStatus:
        """Derive a container's actual status from the OS."""
        ...


# =============================================================================
# Binary Manager Port
# =============================================================================


class BinaryManagerPort(Protocol):
    """Protocol for engine binary provisioning.

    Platform and architecture default to the host's everywhere.
    """

    @abstractmethod
    def resolve_full_version(self, alias: str) -> str:
        """Map a version alias to a pinned full version."""
        ...

    @abstractmethod
    def get_download_url(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> str:
        """Archive location for a version."""
        ...

    @abstractmethod
    def is_installed(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> bool:
        """Check whether the server executable is present."""
        ...

    @abstractmethod
    def list_installed(self) -> list[InstalledBinary]:
        """Installed versions, newest first."""
        ...

    @abstractmethod
    def ensure_installed(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> Path:
        """Return the install path, downloading it first when absent.

        Raises:
            BinaryNotFoundError: If the version does not exist remotely.
            BinaryDownloadTimeoutError: If the download deadline passes.
            BinaryVersionMismatchError: If verification fails.
        """
        ...

    @abstractmethod
    def verify(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> bool:
        """Check the installed executable reports a compatible version."""
        ...

    @abstractmethod
    def delete(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> bool:
        """Remove an installation."""
        ...


__all__ = [
    "ContainerRegistryPort",
    "PortAllocatorPort",
    "ProcessSupervisorPort",
    "BinaryManagerPort",
]
