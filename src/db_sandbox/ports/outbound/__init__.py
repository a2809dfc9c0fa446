"""Outbound ports - External dependency interfaces for the sandbox core.

Outbound ports define what the lifecycle core needs from the operating
system, from remote binary repositories, and from the per-engine
adapters that know how to launch a specific database.
"""

from __future__ import annotations

import subprocess
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from db_sandbox.domain.entities.binary import Arch, HostPlatform
    from db_sandbox.domain.entities.container import ContainerRecord
    from db_sandbox.domain.entities.engine import Engine


# =============================================================================
# Platform Port
# =============================================================================


@dataclass
class ProcessInfo:
    """A process observed in the OS process table."""
    pid: int
    name: str = ""
    cmdline: list[str] = field(default_factory=list)
    cwd: str | None = None  # None when the OS refuses to tell


class PlatformPort(Protocol):
    """Protocol for platform-sensitive operations.

    Every operation whose behaviour differs between POSIX and Windows
    goes through this seam so the lifecycle logic stays neutral.
    """

    @property
    @abstractmethod
    def lingering_sockets(self) -> bool:
        """True where closed sockets hold their port for a long time."""
        ...

    @property
    @abstractmethod
    def executable_suffix(self) -> str:
        """Suffix appended to executable names (".exe" or "")."""
        ...

    @abstractmethod
    def move(self, source: Path, destination: Path) -> None:
        """Move a file or directory, falling back to copy-then-remove.

        Args:
            source: Existing path.
            destination: Target path (must not exist).

        Raises:
            FilesystemMoveError: If both rename and copy fallback fail.
        """
        ...

    @abstractmethod
    def remove_tree(self, path: Path) -> None:
        """Remove a directory tree, fixing permissions if needed.

        Raises:
            FilesystemMoveError: If the tree cannot be removed.
        """
        ...

    @abstractmethod
    def make_executable(self, path: Path) -> None:
        """Mark a file as runnable (no-op where not required)."""
        ...

    @abstractmethod
    def is_process_running(self, pid: int) -> bool:
        """Check the OS process table for a live pid."""
        ...

    @abstractmethod
    def terminate(self, pid: int, force: bool = False) -> bool:
        """Signal a process.

        Args:
            pid: Process ID.
            force: Kill instead of asking politely.

        Returns:
            True if a signal was delivered, False if the process was gone.
        """
        ...

    @abstractmethod
    def find_processes_by_port(self, port: int) -> list[ProcessInfo]:
        """Find processes listening on a TCP port."""
        ...

    @abstractmethod
    def spawn_detached(
        self,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
        log_path: Path,
    ) -> subprocess.Popen:
        """Spawn a process that survives the caller's exit.

        stdout and stderr are appended to ``log_path``.

        Raises:
            OSError: If the executable cannot be launched.
        """
        ...


# =============================================================================
# Engine Adapter Port
# =============================================================================


class HealthCheckKind(Enum):
    """How readiness of an engine process is detected."""
    TCP = "tcp"
    HTTP = "http"
    LOG_PATTERN = "log_pattern"


@dataclass
class HealthCheck:
    """Readiness strategy for an engine."""
    kind: HealthCheckKind = HealthCheckKind.TCP
    path: str = "/"  # HTTP only
    pattern: str = ""  # LOG_PATTERN only


@dataclass
class LaunchContext:
    """Filesystem context handed to an adapter when building a launch."""
    container_dir: Path
    data_dir: Path
    log_path: Path
    pid_path: Path
    bin_dir: Path
    executable_suffix: str = ""


@dataclass
class LaunchSpec:
    """Concrete command an engine process is started with."""
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    init: list[list[str]] = field(default_factory=list)  # run while the data dir is empty


class EngineAdapterPort(Protocol):
    """Protocol for the per-engine launch contract.

    The supervisor is generic over this interface and never hardcodes an
    engine's command line.
    """

    @property
    @abstractmethod
    def engine(self) -> Engine:
        """Engine this adapter serves."""
        ...

    @property
    @abstractmethod
    def executable(self) -> str:
        """Server executable name, without platform suffix."""
        ...

    @abstractmethod
    def launch(self, record: ContainerRecord, ctx: LaunchContext) -> LaunchSpec:
        """Build the command line for a container.

        Args:
            record: Container record.
            ctx: Paths for the container and its binary.

        Returns:
            Command, environment and init steps.
        """
        ...

    @abstractmethod
    def health_check(self, record: ContainerRecord) -> HealthCheck:
        """Readiness strategy for a container."""
        ...

    @abstractmethod
    def ports(self, record: ContainerRecord) -> list[int]:
        """All ports a container binds, primary first."""
        ...

    @abstractmethod
    def connection_string(self, record: ContainerRecord, database: str | None = None) -> str:
        """Format a client connection string."""
        ...


class EngineAdapterLookup(Protocol):
    """Resolves the adapter registered for an engine."""

    @abstractmethod
    def get(self, engine: Engine | str) -> EngineAdapterPort:
        """Get an adapter.

        Raises:
            EngineNotSupportedError: If no adapter is registered.
        """
        ...


# =============================================================================
# Binary Repository Port
# =============================================================================


class BinaryRepositoryPort(Protocol):
    """Protocol for a source of engine binary archives."""

    @abstractmethod
    def get_download_url(
        self,
        engine: Engine,
        version: str,
        platform: HostPlatform,
        arch: Arch,
    ) -> str:
        """Location of the archive for a version."""
        ...

    @abstractmethod
    def fetch(
        self,
        engine: Engine,
        version: str,
        platform: HostPlatform,
        arch: Arch,
        destination: Path,
        deadline: float,
    ) -> Path:
        """Write the archive to ``destination``.

        Args:
            engine: Engine.
            version: Full version.
            platform: Target platform.
            arch: Target architecture.
            destination: Archive file path to write.
            deadline: ``time.monotonic()`` value past which to abort.

        Returns:
            The written archive path.

        Raises:
            BinaryNotFoundError: If the version does not exist (404).
            BinaryDownloadTimeoutError: If the deadline passes.
            BinaryDownloadError: On other HTTP or network failures.
        """
        ...


__all__ = [
    "ProcessInfo",
    "PlatformPort",
    "HealthCheckKind",
    "HealthCheck",
    "LaunchContext",
    "LaunchSpec",
    "EngineAdapterPort",
    "EngineAdapterLookup",
    "BinaryRepositoryPort",
]
