"""Process supervisor service.

Owns the mapping from a container record to a live OS process:

    not-running -> starting -> running -> stopping -> not-running

``starting`` and ``stopping`` exist only for the duration of a call; the
only persisted trace of a process is the PID marker, which is advisory
and always checked against the OS process table before being trusted.
"""

from __future__ import annotations

import os
import re
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import structlog

from db_sandbox.domain.entities.container import ContainerRecord, ContainerStatus, StartResult
from db_sandbox.domain.errors import (
    BinaryNotFoundError,
    EngineNotSupportedError,
    PidStaleError,
    PortInUseError,
    ProcessStartFailedError,
    ProcessStopTimeoutError,
)
from db_sandbox.domain.services.port_allocator import PortAllocator
from db_sandbox.domain.value_objects.paths import SandboxPaths
from db_sandbox.ports.outbound import (
    EngineAdapterLookup,
    EngineAdapterPort,
    HealthCheck,
    HealthCheckKind,
    LaunchContext,
    PlatformPort,
    ProcessInfo,
)

if TYPE_CHECKING:
    from db_sandbox.infrastructure.metrics import MetricsRegistry

logger = structlog.get_logger(__name__)

LOOPBACK = "127.0.0.1"

_PORT_CONFLICT_MARKERS = (
    "address already in use",
    "eaddrinuse",
    "could not bind",
    "socket already in use",
    "failed to bind",
)


def is_port_conflict(text: str) -> bool:
    """Check whether startup output points at a port conflict."""
    lowered = text.lower()
    if any(marker in lowered for marker in _PORT_CONFLICT_MARKERS):
        return True
    return "port" in lowered and "in use" in lowered


def _is_within(path: Path, root: Path) -> bool:
    resolved = path.resolve()
    return resolved == root or root in resolved.parents


@dataclass
class SupervisorTimeouts:
    """Bounded waits used by the supervisor, in seconds."""
    start_timeout: float = 30.0
    poll_interval: float = 0.5
    stop_grace: float = 10.0
    kill_timeout: float = 5.0
    port_wait: float = 0.0
    lingering_port_wait: float = 60.0
    port_release: float = 30.0
    health_probe_timeout: float = 1.0
    log_tail_bytes: int = 2000


class ProcessSupervisor:
    """Starts, stops and observes engine processes.

    Generic over the engine adapter contract: the launch command, the
    readiness strategy and the bound ports all come from the adapter.
    """

    def __init__(
        self,
        paths: SandboxPaths,
        platform: PlatformPort,
        port_allocator: PortAllocator,
        adapters: EngineAdapterLookup,
        timeouts: SupervisorTimeouts | None = None,
        http_client: httpx.Client | None = None,
        metrics: MetricsRegistry | None = None,
    ):
        """Initialize process supervisor.

        Args:
            paths: Sandbox layout.
            platform: Platform seam for spawn, signals and port owners.
            port_allocator: Port allocator used for pre-start and post-stop waits.
            adapters: Engine adapter lookup.
            timeouts: Bounded waits.
            http_client: Client for loopback HTTP health probes.
            metrics: Optional metrics registry.
        """
        self._paths = paths
        self._platform = platform
        self._ports = port_allocator
        self._adapters = adapters
        self._timeouts = timeouts or SupervisorTimeouts()
        self._http = http_client or httpx.Client(trust_env=False)
        self._metrics = metrics

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def get_pid(self, record: ContainerRecord, require_live: bool = False) -> int | None:
        """Read the PID marker.

        Args:
            record: Container record.
            require_live: Raise if the marker points at a dead process.

        Returns:
            PID, or None if there is no readable marker.

        Raises:
            PidStaleError: If ``require_live`` and the process is gone.
        """
        pid_path = self._paths.pid_path(record.name, record.engine)
        pid = self._read_pid(pid_path)
        if pid is not None and require_live and not self._platform.is_process_running(pid):
            raise PidStaleError(record.name, pid, pid_path)
        return pid

    def is_running(self, record: ContainerRecord) -> bool:
        """Check whether the container's engine process is alive.

        The PID marker is checked against the process table first. For
        engines with an HTTP health endpoint a healthy response also
        counts when the port is held by a process running inside this
        container's directory, which covers a lost marker. Another
        container answering on a shared port does not count. A stale
        marker is simply not-running.
        """
        pid = self.get_pid(record)
        if pid is not None and self._platform.is_process_running(pid):
            return True
        try:
            check = self._adapters.get(record.engine).health_check(record)
        except EngineNotSupportedError:
            return False
        if check.kind is not HealthCheckKind.HTTP or not self._probe_http(record.port, check.path):
            return False
        return bool(self._owned_port_owners(record, [record.port]))

    def reconcile(self, record: ContainerRecord) -> ContainerStatus:
        """Derive the actual status of a container from the OS.

        A stale PID marker is removed on the way.

        Returns:
            ``running`` if alive; otherwise ``created`` for a container
            that never ran, else ``stopped``.
        """
        if self.is_running(record):
            return ContainerStatus.RUNNING
        pid_path = self._paths.pid_path(record.name, record.engine)
        if pid_path.exists():
            logger.info("stale_pid_marker_removed", container=record.name, path=str(pid_path))
            pid_path.unlink(missing_ok=True)
        if record.status is ContainerStatus.CREATED:
            return ContainerStatus.CREATED
        return ContainerStatus.STOPPED

    def read_log_tail(self, record: ContainerRecord, max_bytes: int | None = None) -> str:
        """Last bytes of the container's engine log."""
        log_path = self._paths.log_path(record.name, record.engine)
        return self._tail(log_path, 0, max_bytes or self._timeouts.log_tail_bytes)

    def connection_string(self, record: ContainerRecord, database: str | None = None) -> str:
        return self._adapters.get(record.engine).connection_string(record, database)

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start(self, record: ContainerRecord) -> StartResult:
        """Start the engine process for a container.

        Idempotent: an already-running container is reported, not
        spawned again. Start failures are never retried here; a caller
        wanting another port inspects ``ProcessStartFailedError.port_conflict``.

        Returns:
            Port, connection string and pid.

        Raises:
            EngineNotSupportedError: If no adapter is registered.
            BinaryNotFoundError: If the server executable is missing.
            PortInUseError: If a required port stays bound.
            ProcessStartFailedError: If the process dies or never becomes ready.
        """
        adapter = self._adapters.get(record.engine)
        log = logger.bind(container=record.name, engine=record.engine.value, port=record.port)

        if self.is_running(record):
            log.debug("start_skipped_already_running")
            return StartResult(
                port=record.port,
                connection_string=adapter.connection_string(record),
                pid=self.get_pid(record),
                already_running=True,
            )

        ctx = self._launch_context(record)
        executable = ctx.bin_dir / f"{adapter.executable}{ctx.executable_suffix}"
        if not executable.is_file():
            raise BinaryNotFoundError(record.engine.value, record.version, str(ctx.bin_dir))

        self._wait_for_free_ports(adapter.ports(record))

        ctx.data_dir.mkdir(parents=True, exist_ok=True)
        spec = adapter.launch(record, ctx)
        env = {**os.environ, **spec.env}
        if spec.init and not any(ctx.data_dir.iterdir()):
            self._run_init(record, spec.init, ctx, env, executable)

        log_offset = ctx.log_path.stat().st_size if ctx.log_path.exists() else 0
        started = time.monotonic()
        try:
            process = self._platform.spawn_detached(spec.argv, ctx.container_dir, env, ctx.log_path)
        except OSError as e:
            raise ProcessStartFailedError(
                record.name,
                f"Failed to launch {executable}: {e}",
                port=record.port,
                binary=executable,
                log_path=ctx.log_path,
            ) from e

        self._write_pid(ctx.pid_path, process.pid)
        log.info("process_spawned", pid=process.pid)

        self._wait_until_ready(record, adapter.health_check(record), process, ctx, log_offset, executable)

        if self._metrics is not None:
            self._metrics.container_startup_seconds.labels(engine=record.engine.value).observe(
                time.monotonic() - started
            )
        log.info("process_ready", pid=process.pid, seconds=round(time.monotonic() - started, 3))
        return StartResult(
            port=record.port,
            connection_string=adapter.connection_string(record),
            pid=process.pid,
        )

    def _launch_context(self, record: ContainerRecord) -> LaunchContext:
        if not record.binary_path:
            raise BinaryNotFoundError(record.engine.value, record.version, "container record (no binaryPath)")
        return LaunchContext(
            container_dir=self._paths.container_dir(record.name),
            data_dir=self._paths.data_dir(record.name, record.engine),
            log_path=self._paths.log_path(record.name, record.engine),
            pid_path=self._paths.pid_path(record.name, record.engine),
            bin_dir=Path(record.binary_path) / "bin",
            executable_suffix=self._platform.executable_suffix,
        )

    def _wait_for_free_ports(self, ports: list[int]) -> None:
        if self._platform.lingering_sockets:
            timeout = self._timeouts.lingering_port_wait
        else:
            timeout = self._timeouts.port_wait
        if self._ports.wait_for_ports(ports, timeout, interval=self._timeouts.poll_interval):
            return
        for port in ports:
            if not self._ports.is_port_available(port):
                raise PortInUseError(port, self._ports.describe_port_owner(port))

    def _run_init(
        self,
        record: ContainerRecord,
        commands: list[list[str]],
        ctx: LaunchContext,
        env: dict[str, str],
        executable: Path,
    ) -> None:
        for argv in commands:
            logger.info("data_dir_initializing", container=record.name, command=argv[0])
            ctx.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(ctx.log_path, "ab") as log_file:
                try:
                    result = subprocess.run(
                        argv,
                        cwd=ctx.container_dir,
                        env=env,
                        stdin=subprocess.DEVNULL,
                        stdout=log_file,
                        stderr=subprocess.STDOUT,
                        timeout=self._timeouts.start_timeout,
                        check=False,
                    )
                    reason = None if result.returncode == 0 else f"exited with code {result.returncode}"
                except subprocess.TimeoutExpired:
                    reason = f"timed out after {self._timeouts.start_timeout:.0f}s"
                except OSError as e:
                    reason = str(e)
            if reason is not None:
                # Leave an empty data dir so the next start re-initializes
                self._platform.remove_tree(ctx.data_dir)
                ctx.data_dir.mkdir(parents=True, exist_ok=True)
                raise ProcessStartFailedError(
                    record.name,
                    f"Initialization command {argv[0]} {reason}",
                    port=record.port,
                    binary=executable,
                    log_path=ctx.log_path,
                    log_tail=self._tail(ctx.log_path, 0, self._timeouts.log_tail_bytes),
                )

    def _wait_until_ready(
        self,
        record: ContainerRecord,
        check: HealthCheck,
        process: subprocess.Popen,
        ctx: LaunchContext,
        log_offset: int,
        executable: Path,
    ) -> None:
        deadline = time.monotonic() + self._timeouts.start_timeout
        while True:
            exit_code = process.poll()
            if exit_code is not None:
                self._fail_start(
                    record, f"{record.engine.value} exited with code {exit_code} during startup",
                    process, ctx, log_offset, executable,
                )
            if self._is_ready(record, check, ctx.log_path, log_offset):
                return
            if time.monotonic() >= deadline:
                self._fail_start(
                    record,
                    f"{record.engine.value} did not become ready within {self._timeouts.start_timeout:.0f}s",
                    process, ctx, log_offset, executable,
                )
            time.sleep(self._timeouts.poll_interval)

    def _fail_start(
        self,
        record: ContainerRecord,
        reason: str,
        process: subprocess.Popen,
        ctx: LaunchContext,
        log_offset: int,
        executable: Path,
    ) -> None:
        if process.poll() is None:
            process.kill()
            try:
                process.wait(timeout=self._timeouts.kill_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("orphan_kill_timeout", container=record.name, pid=process.pid)
            self._count_kill("forced")
        ctx.pid_path.unlink(missing_ok=True)

        tail = self._tail(ctx.log_path, log_offset, self._timeouts.log_tail_bytes)
        conflict = is_port_conflict(tail)
        if conflict:
            reason = f"{reason}: port {record.port} is already in use"
        logger.warning("process_start_failed", container=record.name, reason=reason, port_conflict=conflict)
        raise ProcessStartFailedError(
            record.name,
            reason,
            port=record.port,
            binary=executable,
            log_path=ctx.log_path,
            log_tail=tail,
            port_conflict=conflict,
        )

    # -------------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------------

    def stop(self, record: ContainerRecord) -> bool:
        """Stop a container's engine process.

        Graceful termination first, forced after the grace period. Any
        process still listening on the container's ports afterwards is
        killed too. Stopping a stopped container is a no-op.

        Returns:
            True if a process was stopped.

        Raises:
            ProcessStopTimeoutError: If a process survives a forced kill.
        """
        ports = self._ports_for(record)
        pid_path = self._paths.pid_path(record.name, record.engine)
        targets = self._resolve_targets(record, ports)
        log = logger.bind(container=record.name, engine=record.engine.value)

        for pid in targets:
            log.info("process_stopping", pid=pid)
            self._terminate_gracefully(record, pid)

        swept = 0
        if targets or record.status is ContainerStatus.RUNNING:
            swept = self._sweep_ports(record, ports)

        pid_path.unlink(missing_ok=True)
        stopped = bool(targets) or swept > 0

        if stopped and self._platform.lingering_sockets:
            if not self._ports.wait_for_ports(
                ports, self._timeouts.port_release, interval=self._timeouts.poll_interval
            ):
                log.warning("ports_not_released", ports=ports)
        if stopped:
            log.info("process_stopped", pids=targets, swept=swept)
        return stopped

    def kill_process(self, record: ContainerRecord) -> bool:
        """Force-kill a container's process without a graceful phase.

        Used when the engine binary is gone but an orphan must still be
        reaped; needs neither the binary nor a graceful shutdown path.

        Returns:
            True if anything was killed.
        """
        killed = 0
        pid = self.get_pid(record)
        if pid is not None and self._platform.is_process_running(pid):
            if self._platform.terminate(pid, force=True):
                killed += 1
                self._count_kill("forced")
            self._wait_for_exit(pid, self._timeouts.kill_timeout)
        killed += self._sweep_ports(record, self._ports_for(record))
        self._paths.pid_path(record.name, record.engine).unlink(missing_ok=True)
        if killed:
            logger.info("process_killed", container=record.name, count=killed)
        return killed > 0

    def _resolve_targets(self, record: ContainerRecord, ports: list[int]) -> list[int]:
        pid = self.get_pid(record)
        if pid is not None and self._platform.is_process_running(pid):
            return [pid]
        if pid is not None:
            logger.debug("stale_pid_marker", container=record.name, pid=pid)
        if record.status is not ContainerStatus.RUNNING:
            return []
        # Declared running but the marker is missing or stale: look up the port owner
        return sorted({p.pid for p in self._owned_port_owners(record, ports)})

    def _terminate_gracefully(self, record: ContainerRecord, pid: int) -> None:
        if not self._platform.terminate(pid, force=False):
            return
        self._count_kill("graceful")
        if self._wait_for_exit(pid, self._timeouts.stop_grace):
            return
        logger.warning("process_force_kill", container=record.name, pid=pid)
        self._platform.terminate(pid, force=True)
        self._count_kill("forced")
        if not self._wait_for_exit(pid, self._timeouts.kill_timeout):
            raise ProcessStopTimeoutError(record.name, pid, self._timeouts.stop_grace + self._timeouts.kill_timeout)

    def _owned_port_owners(self, record: ContainerRecord, ports: list[int]) -> list[ProcessInfo]:
        """Listeners on ``ports`` whose working directory lies in the container directory.

        Engines are spawned with the container directory as cwd (some
        then move into their data directory), so a listener elsewhere
        belongs to something else, typically another container sharing
        the port.
        """
        root = self._paths.container_dir(record.name).resolve()
        owned = []
        for port in ports:
            for owner in self._platform.find_processes_by_port(port):
                if owner.pid == os.getpid():
                    continue
                if owner.cwd is not None and _is_within(Path(owner.cwd), root):
                    owned.append(owner)
                else:
                    logger.debug("port_owner_not_attributed", container=record.name, port=port, pid=owner.pid)
        return owned

    def _sweep_ports(self, record: ContainerRecord, ports: list[int]) -> int:
        swept = 0
        for owner in self._owned_port_owners(record, ports):
            if self._platform.terminate(owner.pid, force=True):
                logger.info("port_owner_killed", container=record.name, pid=owner.pid, name=owner.name)
                swept += 1
                self._count_kill("sweep")
                self._wait_for_exit(owner.pid, self._timeouts.kill_timeout)
        return swept

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        interval = min(self._timeouts.poll_interval, 0.1)
        while self._platform.is_process_running(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)
        return True

    def _ports_for(self, record: ContainerRecord) -> list[int]:
        try:
            return self._adapters.get(record.engine).ports(record)
        except EngineNotSupportedError:
            return [record.port]

    # -------------------------------------------------------------------------
    # Probes
    # -------------------------------------------------------------------------

    def _is_ready(self, record: ContainerRecord, check: HealthCheck, log_path: Path, log_offset: int) -> bool:
        if check.kind is HealthCheckKind.HTTP:
            return self._probe_http(record.port, check.path)
        if check.kind is HealthCheckKind.LOG_PATTERN:
            return self._probe_log(log_path, log_offset, check.pattern)
        return self._probe_tcp(record.port)

    def _probe_tcp(self, port: int) -> bool:
        try:
            with socket.create_connection((LOOPBACK, port), timeout=self._timeouts.health_probe_timeout):
                return True
        except OSError:
            return False

    def _probe_http(self, port: int, path: str) -> bool:
        try:
            response = self._http.get(
                f"http://{LOOPBACK}:{port}{path}", timeout=self._timeouts.health_probe_timeout
            )
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _probe_log(self, log_path: Path, log_offset: int, pattern: str) -> bool:
        text = self._tail(log_path, log_offset, None)
        return bool(pattern) and re.search(pattern, text) is not None

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    @staticmethod
    def _read_pid(pid_path: Path) -> int | None:
        try:
            content = pid_path.read_text().strip()
        except FileNotFoundError:
            return None
        first_line = content.splitlines()[0] if content else ""
        try:
            return int(first_line)
        except ValueError:
            logger.warning("pid_marker_unreadable", path=str(pid_path))
            return None

    @staticmethod
    def _write_pid(pid_path: Path, pid: int) -> None:
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = pid_path.with_name(f".{pid_path.name}.tmp")
        tmp.write_text(f"{pid}\n")
        os.replace(tmp, pid_path)

    @staticmethod
    def _tail(log_path: Path, offset: int, max_bytes: int | None) -> str:
        try:
            size = log_path.stat().st_size
        except FileNotFoundError:
            return ""
        start = offset if offset <= size else 0
        if max_bytes is not None:
            start = max(start, size - max_bytes)
        with open(log_path, "rb") as fh:
            fh.seek(start)
            return fh.read().decode("utf-8", errors="replace")

    def _count_kill(self, mode: str) -> None:
        if self._metrics is not None:
            self._metrics.process_kills_total.labels(mode=mode).inc()
