"""Container record entity."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.value_objects.identifiers import utc_timestamp


class ContainerStatus(str, Enum):
    """Last-known container status.

    Only ``created``, ``running`` and ``stopped`` are ever persisted;
    starting and stopping exist solely inside the supervisor call.
    """
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


# Field name -> on-disk JSON key
_JSON_KEYS = {
    "name": "name",
    "engine": "engine",
    "version": "version",
    "port": "port",
    "database": "database",
    "databases": "databases",
    "status": "status",
    "created": "created",
    "cloned_from": "clonedFrom",
    "binary_path": "binaryPath",
}

UPDATABLE_FIELDS = frozenset(_JSON_KEYS) - {"name", "created"}


@dataclass
class ContainerRecord:
    """Persisted configuration of one managed database instance."""
    name: str
    engine: Engine
    version: str
    port: int
    database: str
    databases: list[str] = field(default_factory=list)
    status: ContainerStatus = ContainerStatus.CREATED
    created: str = field(default_factory=utc_timestamp)
    cloned_from: str | None = None
    binary_path: str | None = None

    def tracked_databases(self) -> list[str]:
        """Tracked databases, primary first, without duplicates.

        Returns:
            Database names.
        """
        result = [self.database]
        for db in self.databases:
            if db not in result:
                result.append(db)
        return result

    def is_running(self) -> bool:
        """Check the cached status (not the OS).

        Returns:
            True if the record says running.
        """
        return self.status == ContainerStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON shape."""
        data: dict[str, Any] = {
            "name": self.name,
            "engine": self.engine.value,
            "version": self.version,
            "port": self.port,
            "database": self.database,
            "databases": self.tracked_databases(),
            "status": self.status.value,
            "created": self.created,
        }
        if self.cloned_from is not None:
            data["clonedFrom"] = self.cloned_from
        if self.binary_path is not None:
            data["binaryPath"] = self.binary_path
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerRecord:
        """Deserialize from the on-disk JSON shape.

        Older records without a ``databases`` list are migrated to one
        that holds the primary database.
        """
        database = data["database"]
        databases = list(data.get("databases") or [database])
        if database not in databases:
            databases.insert(0, database)
        return cls(
            name=data["name"],
            engine=Engine.parse(data["engine"]),
            version=str(data["version"]),
            port=int(data["port"]),
            database=database,
            databases=databases,
            status=ContainerStatus(data.get("status", ContainerStatus.CREATED.value)),
            created=data.get("created") or utc_timestamp(),
            cloned_from=data.get("clonedFrom"),
            binary_path=data.get("binaryPath"),
        )

    @staticmethod
    def json_key(field_name: str) -> str:
        return _JSON_KEYS[field_name]


@dataclass
class StartResult:
    """Outcome of a supervisor start."""
    port: int
    connection_string: str
    pid: int | None = None
    already_running: bool = False
