"""Unit tests for the lifecycle service's start policy."""

from __future__ import annotations

import pytest

from db_sandbox.application.lifecycle import LifecycleService
from db_sandbox.domain.entities.container import ContainerRecord, ContainerStatus, StartResult
from db_sandbox.domain.errors import PortInUseError, ProcessStartFailedError
from db_sandbox.domain.services.container_registry import ContainerRegistry
from db_sandbox.domain.services.port_allocator import PortAllocator
from db_sandbox.infrastructure.metrics import MetricsRegistry


class ScriptedSupervisor:
    """Supervisor stand-in that replays a list of outcomes."""

    def __init__(self, outcomes: list):
        self.outcomes = list(outcomes)
        self.ports: list[int] = []

    def start(self, record: ContainerRecord) -> StartResult:
        self.ports.append(record.port)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return StartResult(port=record.port, connection_string="", pid=1)


def _failure(conflict: bool) -> ProcessStartFailedError:
    return ProcessStartFailedError("db1", "exited with code 1", port=0, port_conflict=conflict)


@pytest.fixture
def created(registry: ContainerRegistry) -> ContainerRecord:
    return registry.create("db1", engine="postgresql", version="17.7.0", port=5440, binary_path="/nowhere")


def _service(
    registry: ContainerRegistry,
    port_allocator: PortAllocator,
    supervisor: ScriptedSupervisor,
    metrics: MetricsRegistry | None = None,
) -> LifecycleService:
    return LifecycleService(
        registry,
        supervisor,
        port_allocator,
        binary_managers=lambda engine: pytest.fail("no binaries needed"),
        start_retries=3,
        metrics=metrics,
    )


@pytest.mark.unit
class TestStartPolicy:
    """Tests for port-conflict retries."""

    def test_success_marks_running(
        self, registry: ContainerRegistry, port_allocator: PortAllocator, created: ContainerRecord
    ):
        """Test a clean start persists running."""
        supervisor = ScriptedSupervisor([None])
        _service(registry, port_allocator, supervisor).start_container("db1")
        assert registry.get_config("db1").status is ContainerStatus.RUNNING
        assert supervisor.ports == [5440]

    def test_conflict_moves_port(
        self, registry: ContainerRegistry, port_allocator: PortAllocator, created: ContainerRecord
    ):
        """Test a port conflict retries on a new, persisted port."""
        supervisor = ScriptedSupervisor([_failure(conflict=True), None])
        result = _service(registry, port_allocator, supervisor).start_container("db1")

        assert len(supervisor.ports) == 2
        assert supervisor.ports[1] != 5440
        assert registry.get_config("db1").port == result.port == supervisor.ports[1]

    def test_port_in_use_moves_port(
        self, registry: ContainerRegistry, port_allocator: PortAllocator, created: ContainerRecord
    ):
        """Test a pre-start port check failure is retried too."""
        supervisor = ScriptedSupervisor([PortInUseError(5440), None])
        _service(registry, port_allocator, supervisor).start_container("db1")
        assert registry.get_config("db1").port != 5440

    def test_other_failures_are_final(
        self, registry: ContainerRegistry, port_allocator: PortAllocator, created: ContainerRecord
    ):
        """Test failures unrelated to ports are not retried."""
        supervisor = ScriptedSupervisor([_failure(conflict=False), None])
        with pytest.raises(ProcessStartFailedError):
            _service(registry, port_allocator, supervisor).start_container("db1")
        assert supervisor.ports == [5440]
        assert registry.get_config("db1").status is ContainerStatus.CREATED

    def test_retries_exhausted(
        self,
        registry: ContainerRegistry,
        port_allocator: PortAllocator,
        created: ContainerRecord,
        metrics_registry: MetricsRegistry,
    ):
        """Test the last conflict is raised after every attempt."""
        supervisor = ScriptedSupervisor([_failure(conflict=True)] * 3)
        with pytest.raises(ProcessStartFailedError) as exc_info:
            _service(registry, port_allocator, supervisor, metrics_registry).start_container("db1")
        assert exc_info.value.port_conflict
        assert len(supervisor.ports) == 3
        value = metrics_registry.registry.get_sample_value(
            "sandbox_container_operations_total", {"operation": "start", "status": "error"}
        )
        assert value == 1.0

    def test_single_attempt(
        self, registry: ContainerRegistry, port_allocator: PortAllocator, created: ContainerRecord
    ):
        """Test one allowed attempt raises the first conflict without moving the port."""
        supervisor = ScriptedSupervisor([PortInUseError(5440)])
        service = LifecycleService(
            registry,
            supervisor,
            port_allocator,
            binary_managers=lambda engine: pytest.fail("no binaries needed"),
            start_retries=1,
        )
        with pytest.raises(PortInUseError):
            service.start_container("db1")
        assert supervisor.ports == [5440]
        assert registry.get_config("db1").port == 5440
