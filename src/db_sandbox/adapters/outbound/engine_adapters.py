"""Built-in engine launch profiles.

Each profile describes how to start one engine's server binary against
a container directory. The supervisor only ever sees the
``EngineAdapterPort`` surface, so callers can register their own
adapters for engines without a built-in profile.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Iterator

from db_sandbox.domain.entities.container import ContainerRecord
from db_sandbox.domain.entities.engine import Engine, get_engine_defaults
from db_sandbox.domain.errors import EngineNotSupportedError
from db_sandbox.ports.outbound import (
    EngineAdapterPort,
    HealthCheck,
    HealthCheckKind,
    LaunchContext,
    LaunchSpec,
)

LOOPBACK = "127.0.0.1"

ArgvBuilder = Callable[[ContainerRecord, LaunchContext, Callable[[str], str]], list[str]]
EnvBuilder = Callable[[ContainerRecord, LaunchContext], dict[str, str]]


@dataclass
class CommandEngineAdapter:
    """Engine adapter driven by argv/env templates."""
    engine: Engine
    argv: ArgvBuilder
    scheme: str
    user: str = ""
    env: EnvBuilder | None = None
    init: ArgvBuilder | None = None  # run once while the data directory is empty
    check: HealthCheck = field(default_factory=HealthCheck)
    database_in_url: bool = True

    @property
    def executable(self) -> str:
        return get_engine_defaults(self.engine).server_executable

    def launch(self, record: ContainerRecord, ctx: LaunchContext) -> LaunchSpec:
        def exe(name: str) -> str:
            return str(ctx.bin_dir / f"{name}{ctx.executable_suffix}")

        init = [self.init(record, ctx, exe)] if self.init is not None else []
        env = self.env(record, ctx) if self.env is not None else {}
        return LaunchSpec(argv=self.argv(record, ctx, exe), env=env, init=init)

    def health_check(self, record: ContainerRecord) -> HealthCheck:
        return self.check

    def ports(self, record: ContainerRecord) -> list[int]:
        offset = get_engine_defaults(self.engine).secondary_port_offset
        if offset is None:
            return [record.port]
        return [record.port, record.port + offset]

    def connection_string(self, record: ContainerRecord, database: str | None = None) -> str:
        auth = f"{self.user}@" if self.user else ""
        url = f"{self.scheme}://{auth}{LOOPBACK}:{record.port}"
        if self.database_in_url:
            url += f"/{database or record.database}"
        return url


class EngineAdapterRegistry:
    """Engine -> adapter lookup."""

    def __init__(self, adapters: list[EngineAdapterPort] | None = None):
        self._adapters: dict[Engine, EngineAdapterPort] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: EngineAdapterPort) -> None:
        """Register or replace the adapter for an engine."""
        self._adapters[adapter.engine] = adapter

    def get(self, engine: Engine | str) -> EngineAdapterPort:
        """Get the adapter for an engine.

        Raises:
            EngineNotSupportedError: If no adapter is registered.
        """
        key = Engine.parse(engine)
        if key not in self._adapters:
            raise EngineNotSupportedError(key.value)
        return self._adapters[key]

    def __contains__(self, engine: object) -> bool:
        return engine in self._adapters

    def __iter__(self) -> Iterator[EngineAdapterPort]:
        return iter(self._adapters.values())


# =============================================================================
# Profiles
# =============================================================================


def _unix_socket_args(flag: str, ctx: LaunchContext) -> list[str]:
    if ctx.executable_suffix:
        return []
    return [flag, str(ctx.container_dir)]


def _postgres(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [
        exe("postgres"), "-D", str(ctx.data_dir),
        "-p", str(record.port), "-h", LOOPBACK,
        *_unix_socket_args("-k", ctx),
    ]


def _initdb(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [exe("initdb"), "-D", str(ctx.data_dir), "-U", "postgres", "--auth=trust", "-E", "UTF8"]


def _mysqld(server: str, *extra: str) -> ArgvBuilder:
    def build(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
        return [
            exe(server),
            f"--datadir={ctx.data_dir}",
            f"--port={record.port}",
            f"--bind-address={LOOPBACK}",
            f"--socket={ctx.container_dir / 'mysql.sock'}",
            f"--pid-file={ctx.data_dir / 'server.pid'}",
            *extra,
        ]
    return build


def _mysqld_init(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [exe("mysqld"), "--initialize-insecure", f"--datadir={ctx.data_dir}"]


def _mariadb_init(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [
        exe("mariadb-install-db"),
        f"--datadir={ctx.data_dir}",
        f"--basedir={ctx.bin_dir.parent}",
        "--auth-root-authentication-method=normal",
    ]


def _mongod(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [exe("mongod"), "--dbpath", str(ctx.data_dir), "--port", str(record.port), "--bind_ip", LOOPBACK]


def _kv_server(server: str) -> ArgvBuilder:
    def build(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
        return [
            exe(server), "--port", str(record.port), "--bind", LOOPBACK,
            "--dir", str(ctx.data_dir), "--daemonize", "no",
        ]
    return build


def _meilisearch(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [
        exe("meilisearch"), "--http-addr", f"{LOOPBACK}:{record.port}",
        "--db-path", str(ctx.data_dir), "--no-analytics",
    ]


def _qdrant(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [exe("qdrant")]


def _qdrant_env(record: ContainerRecord, ctx: LaunchContext) -> dict[str, str]:
    return {
        "QDRANT__SERVICE__HOST": LOOPBACK,
        "QDRANT__SERVICE__HTTP_PORT": str(record.port),
        "QDRANT__SERVICE__GRPC_PORT": str(record.port + 1),
        "QDRANT__STORAGE__STORAGE_PATH": str(ctx.data_dir),
        "QDRANT__TELEMETRY_DISABLED": "true",
    }


def _clickhouse(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [
        exe("clickhouse"), "server", "--",
        f"--tcp_port={record.port}", f"--path={ctx.data_dir}{os.sep}",
        f"--listen_host={LOOPBACK}",
    ]


def _surreal(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [exe("surreal"), "start", "--bind", f"{LOOPBACK}:{record.port}", f"rocksdb://{ctx.data_dir}"]


def _influxdb(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [
        exe("influxdb3"), "serve", "--node-id", record.name,
        "--object-store", "file", "--data-dir", str(ctx.data_dir),
        "--http-bind", f"{LOOPBACK}:{record.port}",
    ]


def _typedb(record: ContainerRecord, ctx: LaunchContext, exe) -> list[str]:
    return [
        exe("typedb"), "server",
        "--server.address", f"{LOOPBACK}:{record.port}",
        "--storage.data", str(ctx.data_dir),
    ]


def builtin_adapters() -> list[CommandEngineAdapter]:
    """Adapters for every engine with a built-in launch profile."""
    ready = HealthCheck(HealthCheckKind.LOG_PATTERN, pattern="Ready to accept connections")
    return [
        CommandEngineAdapter(Engine.POSTGRESQL, _postgres, "postgresql", user="postgres", init=_initdb),
        CommandEngineAdapter(Engine.MYSQL, _mysqld("mysqld", "--mysqlx=OFF"), "mysql", user="root", init=_mysqld_init),
        CommandEngineAdapter(Engine.MARIADB, _mysqld("mariadbd"), "mysql", user="root", init=_mariadb_init),
        CommandEngineAdapter(Engine.MONGODB, _mongod, "mongodb"),
        CommandEngineAdapter(Engine.REDIS, _kv_server("redis-server"), "redis", check=ready),
        CommandEngineAdapter(Engine.VALKEY, _kv_server("valkey-server"), "redis", check=ready),
        CommandEngineAdapter(
            Engine.MEILISEARCH, _meilisearch, "http",
            check=HealthCheck(HealthCheckKind.HTTP, path="/health"), database_in_url=False,
        ),
        CommandEngineAdapter(
            Engine.QDRANT, _qdrant, "http", env=_qdrant_env,
            check=HealthCheck(HealthCheckKind.HTTP, path="/healthz"), database_in_url=False,
        ),
        CommandEngineAdapter(Engine.CLICKHOUSE, _clickhouse, "clickhouse", user="default"),
        CommandEngineAdapter(
            Engine.SURREALDB, _surreal, "ws",
            check=HealthCheck(HealthCheckKind.HTTP, path="/health"), database_in_url=False,
        ),
        CommandEngineAdapter(
            Engine.INFLUXDB, _influxdb, "http",
            check=HealthCheck(HealthCheckKind.HTTP, path="/health"), database_in_url=False,
        ),
        CommandEngineAdapter(Engine.TYPEDB, _typedb, "typedb", database_in_url=False),
    ]


def default_adapter_registry() -> EngineAdapterRegistry:
    return EngineAdapterRegistry(builtin_adapters())
