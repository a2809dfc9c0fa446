"""Port allocator service."""

from __future__ import annotations

import socket
import sys
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

import structlog

from db_sandbox.domain.errors import PortInUseError, PortRangeExhaustedError
from db_sandbox.ports.outbound import PlatformPort

if TYPE_CHECKING:
    from db_sandbox.infrastructure.metrics import MetricsRegistry

logger = structlog.get_logger(__name__)


@dataclass
class PortResult:
    """A port handed out by the allocator."""
    port: int
    is_default: bool  # the preferred port was free


class PortAllocator:
    """Answers "is this port free" and "give me a free port".

    Holds no state between calls; every answer re-probes the OS by
    binding on loopback. A connect probe is never used because it
    reports ports nobody is accepting on as free.
    """

    def __init__(
        self,
        platform: PlatformPort,
        host: str = "127.0.0.1",
        default_port: int = 5432,
        scan_limit: int = 100,
        metrics: MetricsRegistry | None = None,
    ):
        """Initialize port allocator.

        Args:
            platform: Platform seam used to identify port owners.
            host: Loopback address to bind.
            default_port: Preferred port when the caller names none.
            scan_limit: Ports scanned when no range is given.
            metrics: Optional metrics registry.
        """
        self._platform = platform
        self._host = host
        self._default_port = default_port
        self._scan_limit = scan_limit
        self._metrics = metrics

    def is_port_available(self, port: int) -> bool:
        """Check whether a port can be bound on loopback.

        Args:
            port: TCP port.

        Returns:
            True if a bind and immediate release succeeded.
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                if sys.platform != "win32":
                    # Matches how servers bind, so TIME_WAIT leftovers don't count as busy.
                    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                s.bind((self._host, port))
                return True
        except OSError:
            return False

    def find_available_port(
        self,
        start_from: int | None = None,
        port_range: tuple[int, int] | None = None,
        exclude: Iterable[int] = (),
    ) -> PortResult:
        """Find a bindable port.

        The preferred port is tried first, then the range is scanned
        upward. Ports in ``exclude`` (typically those recorded by other
        containers) are skipped even when bindable.

        Args:
            start_from: Preferred port. Defaults to the range start or
                the configured default port.
            port_range: Inclusive (start, end) bounds of the scan.
            exclude: Ports never to hand out.

        Returns:
            Port result.

        Raises:
            PortRangeExhaustedError: If nothing in the range is free.
        """
        excluded = set(exclude)
        preferred = start_from
        if preferred is None:
            preferred = port_range[0] if port_range else self._default_port

        if port_range is None:
            port_range = (preferred, min(preferred + self._scan_limit - 1, 65535))
        start, end = port_range

        if preferred not in excluded and self.is_port_available(preferred):
            self._record_scan("found")
            return PortResult(port=preferred, is_default=True)

        for port in range(max(start, preferred), end + 1):
            if port == preferred or port in excluded:
                continue
            if self.is_port_available(port):
                logger.debug("port_selected", preferred=preferred, port=port)
                self._record_scan("found")
                return PortResult(port=port, is_default=False)

        # Wrap around to the part of the range below the preferred port
        for port in range(start, min(preferred, end + 1)):
            if port in excluded:
                continue
            if self.is_port_available(port):
                self._record_scan("found")
                return PortResult(port=port, is_default=False)

        self._record_scan("exhausted")
        raise PortRangeExhaustedError(start, end)

    def describe_port_owner(self, port: int) -> str | None:
        """Describe which process holds a port.

        Returns:
            e.g. ``"pid 123 (postgres)"``, or None if unknown.
        """
        owners = self._platform.find_processes_by_port(port)
        if not owners:
            return None
        return ", ".join(
            f"pid {p.pid} ({p.name})" if p.name else f"pid {p.pid}" for p in owners
        )

    def wait_for_ports(self, ports: Iterable[int], timeout: float, interval: float = 1.0) -> bool:
        """Wait until every port is bindable.

        Args:
            ports: Ports to wait for.
            timeout: Ceiling in seconds; 0 checks once.
            interval: Poll interval in seconds.

        Returns:
            True if all ports became free before the deadline.
        """
        pending = list(ports)
        deadline = time.monotonic() + timeout
        while True:
            pending = [p for p in pending if not self.is_port_available(p)]
            if not pending:
                return True
            if time.monotonic() >= deadline:
                return False
            logger.debug("waiting_for_ports", ports=pending)
            time.sleep(min(interval, max(deadline - time.monotonic(), 0.0)))

    def ensure_available(self, port: int) -> None:
        """Raise if a port is not bindable right now.

        Raises:
            PortInUseError: With the owning process, when known.
        """
        if not self.is_port_available(port):
            raise PortInUseError(port, self.describe_port_owner(port))

    def _record_scan(self, status: str) -> None:
        if self._metrics is not None:
            self._metrics.port_scans_total.labels(status=status).inc()
