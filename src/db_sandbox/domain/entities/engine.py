"""Engine entities and static per-engine tables."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum


class Engine(str, Enum):
    """Supported database engines."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    MONGODB = "mongodb"
    REDIS = "redis"
    VALKEY = "valkey"
    MEILISEARCH = "meilisearch"
    QDRANT = "qdrant"
    CLICKHOUSE = "clickhouse"
    COUCHDB = "couchdb"
    INFLUXDB = "influxdb"
    QUESTDB = "questdb"
    SURREALDB = "surrealdb"
    TYPEDB = "typedb"

    @classmethod
    def parse(cls, value: str | Engine) -> Engine:
        """Parse an engine name case-insensitively.

        Raises:
            EngineNotSupportedError: If the name is unknown.
        """
        if isinstance(value, Engine):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            from db_sandbox.domain.errors import EngineNotSupportedError
            raise EngineNotSupportedError(value) from None


DEFAULT_VERSION_PATTERN = re.compile(r"(\d+\.\d+(?:\.\d+)*)")


@dataclass(frozen=True)
class EngineDefaults:
    """Static defaults for one engine."""
    engine: Engine
    default_port: int
    port_range: tuple[int, int]  # inclusive
    server_executable: str  # verified after install
    executables: tuple[str, ...]  # moved into bin/ when an archive has none
    version_map: dict[str, str] = field(default_factory=dict)
    default_database: str = "default"
    data_subdir: str = "data"
    version_args: tuple[str, ...] = ("--version",)
    version_pattern: re.Pattern[str] = DEFAULT_VERSION_PATTERN
    secondary_port_offset: int | None = None  # e.g. gRPC on port+1
    pad_minor_aliases: bool = False  # "17.2" -> "17.2.0" when not in the map

    @property
    def log_file_name(self) -> str:
        return f"{self.engine.value}.log"

    @property
    def pid_file_name(self) -> str:
        return f"{self.engine.value}.pid"


ENGINE_DEFAULTS: dict[Engine, EngineDefaults] = {
    Engine.POSTGRESQL: EngineDefaults(
        engine=Engine.POSTGRESQL,
        default_port=5432,
        port_range=(5432, 5500),
        server_executable="postgres",
        executables=(
            "postgres", "pg_ctl", "initdb", "psql",
            "pg_dump", "pg_restore", "pg_basebackup",
        ),
        version_map={
            "14": "14.20.0",
            "15": "15.15.0",
            "16": "16.11.0",
            "17": "17.7.0",
            "18": "18.1.0",
        },
        default_database="postgres",
        version_pattern=re.compile(r"\(PostgreSQL\)\s+(\d+\.\d+(?:\.\d+)?)"),
        pad_minor_aliases=True,
    ),
    Engine.MYSQL: EngineDefaults(
        engine=Engine.MYSQL,
        default_port=3306,
        port_range=(3306, 3400),
        server_executable="mysqld",
        executables=("mysqld", "mysql", "mysqldump", "mysqladmin"),
        version_map={"8.0": "8.0.40", "8.4": "8.4.3", "9": "9.1.0"},
        default_database="mysql",
        version_pattern=re.compile(r"Ver\s+(\d+\.\d+\.\d+)"),
    ),
    Engine.MARIADB: EngineDefaults(
        engine=Engine.MARIADB,
        default_port=3307,
        port_range=(3307, 3400),
        server_executable="mariadbd",
        executables=("mariadbd", "mariadb", "mariadb-dump", "mariadb-admin", "mariadb-install-db"),
        version_map={"11": "11.8.5", "11.8": "11.8.5"},
        default_database="mysql",
        version_pattern=re.compile(r"Ver\s+(\d+\.\d+\.\d+)"),
    ),
    Engine.MONGODB: EngineDefaults(
        engine=Engine.MONGODB,
        default_port=27017,
        port_range=(27017, 27100),
        server_executable="mongod",
        executables=("mongod",),
        version_map={
            "7": "7.0.28", "7.0": "7.0.28",
            "8": "8.2.3", "8.0": "8.0.17", "8.2": "8.2.3",
        },
        default_database="test",
        version_pattern=re.compile(r"db version v(\d+\.\d+\.\d+)"),
    ),
    Engine.REDIS: EngineDefaults(
        engine=Engine.REDIS,
        default_port=6379,
        port_range=(6379, 6479),
        server_executable="redis-server",
        executables=("redis-server", "redis-cli"),
        version_map={
            "7": "7.4.7", "7.4": "7.4.7", "7.4.7": "7.4.7",
            "8": "8.4.0", "8.4": "8.4.0", "8.4.0": "8.4.0",
        },
        default_database="0",
        version_pattern=re.compile(r"v=(\d+\.\d+\.\d+)"),
    ),
    Engine.VALKEY: EngineDefaults(
        engine=Engine.VALKEY,
        default_port=6379,
        port_range=(6379, 6479),
        server_executable="valkey-server",
        executables=("valkey-server", "valkey-cli"),
        version_map={"8": "8.0.6", "8.0": "8.0.6", "9": "9.0.1", "9.0": "9.0.1"},
        default_database="0",
        version_pattern=re.compile(r"v=(\d+\.\d+\.\d+)"),
    ),
    Engine.MEILISEARCH: EngineDefaults(
        engine=Engine.MEILISEARCH,
        default_port=7700,
        port_range=(7700, 7800),
        server_executable="meilisearch",
        executables=("meilisearch",),
        version_map={"1": "1.33.1", "1.33": "1.33.1"},
    ),
    Engine.QDRANT: EngineDefaults(
        engine=Engine.QDRANT,
        default_port=6333,
        port_range=(6333, 6400),
        server_executable="qdrant",
        executables=("qdrant",),
        version_map={"1": "1.16.3", "1.16": "1.16.3"},
        secondary_port_offset=1,
    ),
    Engine.CLICKHOUSE: EngineDefaults(
        engine=Engine.CLICKHOUSE,
        default_port=9000,
        port_range=(9000, 9100),
        server_executable="clickhouse",
        executables=("clickhouse",),
        version_map={"25": "25.12.3.21"},
        version_args=("server", "--version"),
    ),
    Engine.COUCHDB: EngineDefaults(
        engine=Engine.COUCHDB,
        default_port=5984,
        port_range=(5984, 6084),
        server_executable="couchdb",
        executables=("couchdb",),
        version_map={"3": "3.5.1"},
    ),
    Engine.INFLUXDB: EngineDefaults(
        engine=Engine.INFLUXDB,
        default_port=8086,
        port_range=(8086, 8186),
        server_executable="influxdb3",
        executables=("influxdb3",),
        version_map={"3": "3.8.0"},
    ),
    Engine.QUESTDB: EngineDefaults(
        engine=Engine.QUESTDB,
        default_port=8812,
        port_range=(8812, 8912),
        server_executable="questdb",
        executables=("questdb",),
        version_map={"9": "9.2.3"},
        default_database="qdb",
    ),
    Engine.SURREALDB: EngineDefaults(
        engine=Engine.SURREALDB,
        default_port=8000,
        port_range=(8000, 8100),
        server_executable="surreal",
        executables=("surreal",),
        version_map={"2": "2.3.2"},
        version_args=("version",),
    ),
    Engine.TYPEDB: EngineDefaults(
        engine=Engine.TYPEDB,
        default_port=1729,
        port_range=(1729, 1829),
        server_executable="typedb",
        executables=("typedb",),
        version_map={"3": "3.8.0"},
    ),
}


def get_engine_defaults(engine: str | Engine) -> EngineDefaults:
    """Get static defaults for an engine.

    Args:
        engine: Engine or engine name.

    Returns:
        Engine defaults.

    Raises:
        EngineNotSupportedError: If the engine is unknown.
    """
    return ENGINE_DEFAULTS[Engine.parse(engine)]
