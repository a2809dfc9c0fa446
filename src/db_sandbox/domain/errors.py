"""Error taxonomy shared by every sandbox component.

Each error carries the context a caller needs to choose between
reporting, retrying with different parameters, or recovering (for
example re-downloading after a version mismatch). Nothing here is ever
printed by the core itself.
"""

from __future__ import annotations

from pathlib import Path


class SandboxError(Exception):
    """Base class for all sandbox failures."""

    pass


# =============================================================================
# Registry
# =============================================================================


class RegistryError(SandboxError):
    """Raised when a registry record cannot be read or written."""

    pass


class ContainerNotFoundError(RegistryError):
    """Raised when no record exists for a container name."""

    def __init__(self, name: str) -> None:
        super().__init__(f'Container "{name}" not found')
        self.name = name


class ContainerAlreadyExistsError(RegistryError):
    """Raised when a container name is already taken."""

    def __init__(self, name: str) -> None:
        super().__init__(f'Container "{name}" already exists')
        self.name = name


class ContainerRunningError(RegistryError):
    """Raised when an operation requires a stopped container."""

    def __init__(self, name: str, operation: str) -> None:
        super().__init__(f'Container "{name}" is running. Stop it before {operation}')
        self.name = name
        self.operation = operation


class InvalidContainerNameError(RegistryError, ValueError):
    """Raised when a name does not match the safe-identifier pattern."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f'Invalid container name "{name}": must start with a letter and contain '
            "only letters, digits, hyphens and underscores"
        )
        self.name = name


class PrimaryDatabaseError(RegistryError, ValueError):
    """Raised when removing the primary database from tracking."""

    def __init__(self, name: str, database: str) -> None:
        super().__init__(f'Cannot remove primary database "{database}" from container "{name}"')
        self.name = name
        self.database = database


class EngineNotSupportedError(SandboxError, ValueError):
    """Raised for an engine with no defaults or adapter."""

    def __init__(self, engine: str) -> None:
        super().__init__(f"Unsupported engine: {engine}")
        self.engine = engine


# =============================================================================
# Ports
# =============================================================================


class PortInUseError(SandboxError):
    """Raised when a required port stays bound."""

    def __init__(self, port: int, owner: str | None = None) -> None:
        message = f"Port {port} is already in use"
        if owner:
            message += f" ({owner})"
        super().__init__(message)
        self.port = port
        self.owner = owner


class PortRangeExhaustedError(SandboxError):
    """Raised when a bounded port search finds nothing bindable."""

    def __init__(self, start: int, end: int) -> None:
        super().__init__(f"No available ports found in range {start}-{end}")
        self.start = start
        self.end = end


# =============================================================================
# Processes
# =============================================================================


class ProcessStartFailedError(SandboxError):
    """Raised when an engine process does not become ready."""

    def __init__(
        self,
        name: str,
        reason: str,
        *,
        port: int | None = None,
        binary: Path | None = None,
        log_path: Path | None = None,
        log_tail: str = "",
        port_conflict: bool = False,
    ) -> None:
        details = [reason]
        if binary is not None:
            details.append(f"Binary: {binary}")
        if log_path is not None:
            details.append(f"Log file: {log_path}")
        if log_tail:
            details.append(f"Log tail:\n{log_tail}")
        super().__init__("\n".join(details))
        self.name = name
        self.reason = reason
        self.port = port
        self.binary = binary
        self.log_path = log_path
        self.log_tail = log_tail
        self.port_conflict = port_conflict


class ProcessStopTimeoutError(SandboxError):
    """Raised when a process survives forced termination."""

    def __init__(self, name: str, pid: int, timeout: float) -> None:
        super().__init__(f'Process {pid} for container "{name}" still alive after {timeout:.1f}s')
        self.name = name
        self.pid = pid
        self.timeout = timeout


class PidStaleError(SandboxError):
    """Raised when a PID marker points at a process that no longer exists."""

    def __init__(self, name: str, pid: int, pid_path: Path) -> None:
        super().__init__(f'PID marker for container "{name}" is stale (pid {pid}, {pid_path})')
        self.name = name
        self.pid = pid
        self.pid_path = pid_path


# =============================================================================
# Binaries
# =============================================================================


class BinaryError(SandboxError):
    """Base class for binary provisioning failures."""

    pass


class BinaryNotFoundError(BinaryError):
    """Raised when a binary is absent locally or remotely (404)."""

    def __init__(self, engine: str, version: str, location: str) -> None:
        super().__init__(f"{engine} {version} binary not found at {location}")
        self.engine = engine
        self.version = version
        self.location = location


class BinaryDownloadTimeoutError(BinaryError):
    """Raised when a download exceeds its ceiling."""

    def __init__(self, url: str, timeout: float) -> None:
        super().__init__(f"Download of {url} timed out after {timeout:.0f}s")
        self.url = url
        self.timeout = timeout


class BinaryDownloadError(BinaryError):
    """Raised for network or non-404 HTTP download failures."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(f"Failed to download {url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class BinaryVersionMismatchError(BinaryError):
    """Raised when an installed binary reports an unacceptable version."""

    def __init__(self, engine: str, expected: str, reported: str | None, output: str = "") -> None:
        if reported is None:
            message = f"Could not parse {engine} version from: {output.strip()!r}"
        else:
            message = f"{engine} version mismatch: expected {expected}, got {reported}"
        super().__init__(message)
        self.engine = engine
        self.expected = expected
        self.reported = reported
        self.output = output


# =============================================================================
# Filesystem
# =============================================================================


class FilesystemMoveError(SandboxError):
    """Raised when a move or removal fails even after the copy fallback."""

    def __init__(self, source: Path, destination: Path | None, reason: str) -> None:
        target = f" -> {destination}" if destination is not None else ""
        super().__init__(f"Filesystem operation failed for {source}{target}: {reason}")
        self.source = source
        self.destination = destination
        self.reason = reason


__all__ = [
    "SandboxError",
    "RegistryError",
    "ContainerNotFoundError",
    "ContainerAlreadyExistsError",
    "ContainerRunningError",
    "InvalidContainerNameError",
    "PrimaryDatabaseError",
    "EngineNotSupportedError",
    "PortInUseError",
    "PortRangeExhaustedError",
    "ProcessStartFailedError",
    "ProcessStopTimeoutError",
    "PidStaleError",
    "BinaryError",
    "BinaryNotFoundError",
    "BinaryDownloadTimeoutError",
    "BinaryDownloadError",
    "BinaryVersionMismatchError",
    "FilesystemMoveError",
]
