"""Dependency injection container.

Built once per invocation from a ``Config`` and passed explicitly; there
is no module-level instance.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

import httpx

from db_sandbox.adapters.outbound.engine_adapters import EngineAdapterRegistry, default_adapter_registry
from db_sandbox.adapters.outbound.http_binary_repository import HttpBinaryRepository
from db_sandbox.adapters.outbound.local_binary_repository import LocalArchiveRepository
from db_sandbox.adapters.outbound.platform import PosixPlatform, detect_platform
from db_sandbox.application.lifecycle import LifecycleService
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.services.binary_manager import BinaryManager
from db_sandbox.domain.services.container_registry import ContainerRegistry
from db_sandbox.domain.services.port_allocator import PortAllocator
from db_sandbox.domain.services.process_supervisor import ProcessSupervisor, SupervisorTimeouts
from db_sandbox.domain.value_objects.paths import SandboxPaths
from db_sandbox.infrastructure.config import Config, load_config
from db_sandbox.infrastructure.logging import get_logger, setup_logging
from db_sandbox.infrastructure.metrics import MetricsRegistry, setup_metrics
from db_sandbox.infrastructure.tracing import setup_tracing
from db_sandbox.ports.outbound import BinaryRepositoryPort

T = TypeVar("T")

logger = get_logger(__name__)


class Container:
    """Simple dependency injection container."""

    def __init__(self) -> None:
        self._factories: dict[type, Callable[[Container], Any]] = {}
        self._instances: dict[type, Any] = {}

    def register_singleton(self, interface: type[T], instance: T) -> None:
        """Register an instance."""
        self._instances[interface] = instance

    def register_factory(self, interface: type[T], factory: Callable[[Container], T]) -> None:
        """Register a factory, called once on first resolve."""
        self._factories[interface] = factory

    def resolve(self, interface: type[T]) -> T:
        """Resolve a dependency."""
        if interface in self._instances:
            return self._instances[interface]
        if interface in self._factories:
            instance = self._factories[interface](self)
            self._instances[interface] = instance
            return instance
        raise KeyError(f"No registration found for {interface}")

    def has(self, interface: type) -> bool:
        """Check if an interface is registered."""
        return interface in self._factories or interface in self._instances

    def clear(self) -> None:
        """Clear all registrations."""
        self._factories.clear()
        self._instances.clear()


def setup_observability(config: Config) -> MetricsRegistry:
    """Configure logging and tracing, and create the metrics registry.

    Process-wide; call once per invocation before ``build_container``.
    """
    obs = config.observability
    setup_logging(obs.log_level, obs.log_format)
    if obs.otel_endpoint:
        setup_tracing(obs.otel_service_name, obs.otel_endpoint)
    metrics = setup_metrics(obs.metrics_port)
    logger.debug("observability_configured", level=obs.log_level, metrics_port=obs.metrics_port)
    return metrics


def timeouts_from_config(config: Config) -> SupervisorTimeouts:
    s = config.supervisor
    return SupervisorTimeouts(
        start_timeout=s.start_timeout_seconds,
        poll_interval=s.poll_interval_seconds,
        stop_grace=s.stop_grace_seconds,
        kill_timeout=s.kill_timeout_seconds,
        port_wait=s.port_wait_seconds,
        lingering_port_wait=s.lingering_port_wait_seconds,
        port_release=s.port_release_seconds,
        health_probe_timeout=s.health_probe_timeout_seconds,
        log_tail_bytes=s.log_tail_bytes,
    )


def _repository_from_config(config: Config, http_client: httpx.Client) -> BinaryRepositoryPort:
    b = config.binaries
    if b.local_mirror_dir is not None:
        return LocalArchiveRepository(b.local_mirror_dir)
    return HttpBinaryRepository(
        registry_url=b.registry_url,
        mirror_url=b.mirror_url,
        client=http_client,
        download_timeout=b.download_timeout_seconds,
        connect_timeout=b.connect_timeout_seconds,
        chunk_size=b.chunk_size,
    )


def build_container(
    config: Config | None = None,
    *,
    platform: PosixPlatform | None = None,
    repository: BinaryRepositoryPort | None = None,
    adapters: EngineAdapterRegistry | None = None,
    metrics: MetricsRegistry | None = None,
    http_client: httpx.Client | None = None,
) -> Container:
    """Wire every component from one configuration.

    Args:
        config: Configuration; loaded from the environment when omitted.
        platform: Platform seam override.
        repository: Binary repository override.
        adapters: Engine adapter registry override.
        metrics: Metrics registry; a private one when omitted.
        http_client: HTTP client for archive downloads.

    Returns:
        Container with ``LifecycleService`` and every component registered.
    """
    config = config or load_config()
    config.ensure_directories()
    c = Container()

    c.register_singleton(Config, config)
    c.register_singleton(SandboxPaths, SandboxPaths(home=config.paths.home))
    c.register_singleton(PosixPlatform, platform or detect_platform())
    c.register_singleton(MetricsRegistry, metrics or MetricsRegistry())
    c.register_singleton(httpx.Client, http_client or httpx.Client(follow_redirects=True))
    c.register_singleton(EngineAdapterRegistry, adapters or default_adapter_registry())

    if repository is not None:
        c.register_singleton(BinaryRepositoryPort, repository)
    else:
        c.register_factory(
            BinaryRepositoryPort, lambda c: _repository_from_config(c.resolve(Config), c.resolve(httpx.Client))
        )

    c.register_factory(
        PortAllocator,
        lambda c: PortAllocator(
            c.resolve(PosixPlatform),
            host=config.ports.host,
            default_port=config.ports.default_port,
            scan_limit=config.ports.scan_limit,
            metrics=c.resolve(MetricsRegistry),
        ),
    )
    c.register_factory(
        ProcessSupervisor,
        lambda c: ProcessSupervisor(
            c.resolve(SandboxPaths),
            c.resolve(PosixPlatform),
            c.resolve(PortAllocator),
            c.resolve(EngineAdapterRegistry),
            timeouts=timeouts_from_config(config),
            metrics=c.resolve(MetricsRegistry),
        ),
    )
    c.register_factory(
        ContainerRegistry,
        lambda c: ContainerRegistry(
            c.resolve(SandboxPaths),
            c.resolve(PosixPlatform),
            c.resolve(PortAllocator),
            liveness_probe=c.resolve(ProcessSupervisor).is_running,
        ),
    )

    managers: dict[Engine, BinaryManager] = {}

    def binary_manager(engine: Engine) -> BinaryManager:
        if engine not in managers:
            managers[engine] = BinaryManager(
                engine,
                c.resolve(SandboxPaths),
                c.resolve(PosixPlatform),
                c.resolve(BinaryRepositoryPort),
                download_timeout=config.binaries.download_timeout_seconds,
                verify_timeout=config.binaries.verify_timeout_seconds,
                metrics=c.resolve(MetricsRegistry),
            )
        return managers[engine]

    c.register_factory(
        LifecycleService,
        lambda c: LifecycleService(
            c.resolve(ContainerRegistry),
            c.resolve(ProcessSupervisor),
            c.resolve(PortAllocator),
            binary_manager,
            start_retries=config.supervisor.start_retries,
            metrics=c.resolve(MetricsRegistry),
        ),
    )
    logger.debug("container_wired", home=str(config.paths.home))
    return c
