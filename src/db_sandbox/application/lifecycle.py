"""Lifecycle service.

Drives the four core components through the create/start/stop/delete
control flow a CLI or menu would otherwise perform, including the
caller-side policy the components deliberately leave out: retrying a
start on another port after a port conflict.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator

import structlog

from db_sandbox.domain.entities.container import ContainerRecord, ContainerStatus, StartResult
from db_sandbox.domain.entities.engine import Engine, get_engine_defaults
from db_sandbox.domain.errors import (
    ContainerAlreadyExistsError,
    ContainerRunningError,
    PortInUseError,
    ProcessStartFailedError,
)
from db_sandbox.domain.services.binary_manager import BinaryManager
from db_sandbox.domain.services.container_registry import ContainerRegistry
from db_sandbox.domain.services.port_allocator import PortAllocator
from db_sandbox.domain.services.process_supervisor import ProcessSupervisor
from db_sandbox.domain.value_objects.identifiers import create_container_name
from db_sandbox.infrastructure.logging import container_log_context
from db_sandbox.infrastructure.tracing import trace_span

if TYPE_CHECKING:
    from db_sandbox.infrastructure.metrics import MetricsRegistry

logger = structlog.get_logger(__name__)

BinaryManagerFactory = Callable[[Engine], BinaryManager]


class LifecycleService:
    """Application service over registry, supervisor, allocator and binaries."""

    def __init__(
        self,
        registry: ContainerRegistry,
        supervisor: ProcessSupervisor,
        port_allocator: PortAllocator,
        binary_managers: BinaryManagerFactory,
        start_retries: int = 3,
        metrics: MetricsRegistry | None = None,
    ):
        self._registry = registry
        self._supervisor = supervisor
        self._ports = port_allocator
        self._binary_managers = binary_managers
        self._start_retries = max(1, start_retries)
        self._metrics = metrics

    @property
    def registry(self) -> ContainerRegistry:
        return self._registry

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    def binary_manager(self, engine: Engine | str) -> BinaryManager:
        return self._binary_managers(Engine.parse(engine))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create_container(
        self,
        name: str,
        engine: Engine | str,
        version: str,
        port: int | None = None,
        database: str | None = None,
    ) -> ContainerRecord:
        """Provision a binary, pick a port and create the record.

        Args:
            name: Container name.
            engine: Engine.
            version: Version or alias ("17").
            port: Explicit port; otherwise the first free one from the
                engine's default, skipping ports other containers record.
            database: Primary database name.

        Returns:
            Created record (status ``created``).
        """
        engine = Engine.parse(engine)
        with self._operation("create", container=name, engine=engine.value):
            create_container_name(name)
            if self._registry.exists(name):
                raise ContainerAlreadyExistsError(name)

            manager = self.binary_manager(engine)
            full_version = manager.resolve_full_version(version)
            install_path = manager.ensure_installed(full_version)

            if port is None:
                defaults = get_engine_defaults(engine)
                port = self._ports.find_available_port(
                    start_from=defaults.default_port,
                    port_range=defaults.port_range,
                    exclude=self._registry.ports_in_use(),
                ).port

            return self._registry.create(
                name,
                engine=engine,
                version=full_version,
                port=port,
                database=database,
                binary_path=install_path,
            )

    def start_container(self, name: str) -> StartResult:
        """Start a container, moving to a free port on a port conflict.

        Up to ``start_retries`` attempts are made; each conflict picks
        the next free port and persists it before retrying.

        Raises:
            ContainerNotFoundError: If no record exists.
            ProcessStartFailedError: If the last attempt fails.
            PortInUseError: If the last attempt found its port taken.
        """
        with self._operation("start", container=name):
            record = self._registry.get_config(name)
            for attempt in range(1, self._start_retries):
                try:
                    result = self._supervisor.start(record)
                except (ProcessStartFailedError, PortInUseError) as e:
                    if not (isinstance(e, PortInUseError) or e.port_conflict):
                        raise
                    record = self._move_to_free_port(record)
                    logger.info("start_retry_new_port", container=name, attempt=attempt, port=record.port)
                    continue
                break
            else:
                # Last attempt: any failure propagates
                result = self._supervisor.start(record)
            self._registry.update_config(name, status=ContainerStatus.RUNNING)
            return result

    def stop_container(self, name: str) -> bool:
        """Stop a container.

        Falls back to a forced kill when the container's binary is gone.

        Returns:
            True if a process was stopped.
        """
        with self._operation("stop", container=name):
            record = self._registry.get_config(name)
            if self._binary_missing(record):
                logger.warning("binary_missing_force_kill", container=name, binary_path=record.binary_path)
                stopped = self._supervisor.kill_process(record)
            else:
                stopped = self._supervisor.stop(record)
            if record.status is ContainerStatus.RUNNING or stopped:
                self._registry.update_config(name, status=ContainerStatus.STOPPED)
            return stopped

    def delete_container(self, name: str, force: bool = False) -> None:
        """Delete a container, stopping it first when forced.

        Raises:
            ContainerRunningError: If running and not forced.
        """
        with self._operation("delete", container=name):
            record = self._registry.get_config(name)
            if self._supervisor.is_running(record):
                if not force:
                    raise ContainerRunningError(name, "deleting")
                self.stop_container(name)
            self._registry.delete(name, force=force)

    def clone_container(self, source: str, target: str) -> ContainerRecord:
        with self._operation("clone", container=target, source=source):
            return self._registry.clone(source, target)

    def rename_container(self, old_name: str, new_name: str) -> ContainerRecord:
        with self._operation("rename", container=old_name, new_name=new_name):
            return self._registry.rename(old_name, new_name)

    def reconcile(self, name: str) -> ContainerStatus:
        """Persist the actual status of a container when it drifted."""
        record = self._registry.get_config(name)
        actual = self._supervisor.reconcile(record)
        if actual is not record.status:
            logger.info("status_drift_corrected", container=name, declared=record.status.value, actual=actual.value)
            self._registry.update_config(name, status=actual)
        return actual

    def list_containers(self, reconcile: bool = True) -> list[ContainerRecord]:
        """List containers, optionally reconciling each status first."""
        records = self._registry.list()
        if not reconcile:
            return records
        result = []
        for record in records:
            actual = self.reconcile(record.name)
            record.status = actual
            result.append(record)
        if self._metrics is not None:
            self._metrics.containers_running.set(sum(1 for r in result if r.is_running()))
        return result

    def stop_all(self) -> list[str]:
        """Stop every running container, one at a time.

        Returns:
            Names of containers that were stopped.
        """
        stopped = []
        for record in self.list_containers():
            if record.is_running() and self.stop_container(record.name):
                stopped.append(record.name)
        return stopped

    def connection_string(self, name: str, database: str | None = None) -> str:
        return self._supervisor.connection_string(self._registry.get_config(name), database)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _move_to_free_port(self, record: ContainerRecord) -> ContainerRecord:
        defaults = get_engine_defaults(record.engine)
        result = self._ports.find_available_port(
            start_from=record.port + 1,
            port_range=defaults.port_range,
            exclude={record.port, *self._registry.ports_in_use(exclude=record.name)},
        )
        return self._registry.update_config(record.name, port=result.port)

    def _binary_missing(self, record: ContainerRecord) -> bool:
        if not record.binary_path:
            return True
        install = Path(record.binary_path)
        return not (install / "bin").is_dir()

    @contextmanager
    def _operation(self, operation: str, **attributes) -> Iterator[None]:
        span_attributes = {f"sandbox.{k}": v for k, v in attributes.items()}
        with container_log_context(operation=operation, **attributes):
            with trace_span(f"sandbox.{operation}", span_attributes):
                try:
                    yield
                except Exception:
                    self._count(operation, "error")
                    raise
                self._count(operation, "success")

    def _count(self, operation: str, status: str) -> None:
        if self._metrics is not None:
            self._metrics.container_operations_total.labels(operation=operation, status=status).inc()
