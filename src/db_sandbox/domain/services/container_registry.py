"""Container registry service.

The persisted source of truth for container records. One JSON document
per container lives at ``containers/<name>/container.json`` next to the
container's data. Every write goes through a temp file and an atomic
replace; directory moves go through the platform seam, which falls back
to copy-then-remove when a rename is refused.

Check-then-act pairs (name exists, target exists, container running)
each sit inside a single method. No cross-process lock is taken.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable

import structlog

from db_sandbox.domain.entities.container import UPDATABLE_FIELDS, ContainerRecord, ContainerStatus
from db_sandbox.domain.entities.engine import Engine, get_engine_defaults
from db_sandbox.domain.errors import (
    ContainerAlreadyExistsError,
    ContainerNotFoundError,
    ContainerRunningError,
    PrimaryDatabaseError,
    RegistryError,
)
from db_sandbox.domain.services.port_allocator import PortAllocator
from db_sandbox.domain.value_objects.identifiers import create_container_name, utc_timestamp
from db_sandbox.domain.value_objects.paths import RECORD_FILE_NAME, SandboxPaths
from db_sandbox.ports.outbound import PlatformPort

logger = structlog.get_logger(__name__)

LivenessProbe = Callable[[ContainerRecord], bool]


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ContainerRegistry:
    """Durable CRUD over container records.

    Example:
        registry.create("db1", engine=Engine.POSTGRESQL, version="17.7.0", port=5432)
        registry.add_database("db1", "analytics")
        registry.rename("db1", "db2")
    """

    def __init__(
        self,
        paths: SandboxPaths,
        platform: PlatformPort,
        port_allocator: PortAllocator,
        liveness_probe: LivenessProbe | None = None,
    ):
        """Initialize container registry.

        Args:
            paths: Sandbox layout.
            platform: Platform seam for directory moves and removal.
            port_allocator: Allocator used to pick ports for clones.
            liveness_probe: Returns True for a running container; guards
                delete, rename and clone.
        """
        self._paths = paths
        self._platform = platform
        self._ports = port_allocator
        self._liveness_probe = liveness_probe

    def set_liveness_probe(self, probe: LivenessProbe | None) -> None:
        self._liveness_probe = probe

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def container_dir(self, name: str) -> Path:
        return self._paths.container_dir(name)

    def exists(self, name: str) -> bool:
        """Check whether a record exists for a name."""
        return self._paths.record_path(name).is_file()

    def find(self, name: str) -> ContainerRecord | None:
        """Get a record, or None when absent."""
        if not self.exists(name):
            return None
        return self._read(name)

    def get_config(self, name: str) -> ContainerRecord:
        """Get a record.

        Raises:
            ContainerNotFoundError: If no record exists.
            RegistryError: If the record is unreadable.
        """
        if not self.exists(name):
            raise ContainerNotFoundError(name)
        return self._read(name)

    def list(self) -> list[ContainerRecord]:
        """All readable records, ordered by creation time then name.

        Unreadable records are skipped with a warning.
        """
        root = self._paths.containers_dir
        if not root.is_dir():
            return []
        records = []
        for entry in root.iterdir():
            if entry.name.startswith(".") or not (entry / RECORD_FILE_NAME).is_file():
                continue
            try:
                records.append(self._read(entry.name))
            except RegistryError as e:
                logger.warning("container_record_skipped", container=entry.name, error=str(e))
        records.sort(key=lambda r: (r.created, r.name))
        return records

    def get_databases(self, name: str) -> list[str]:
        return self.get_config(name).tracked_databases()

    def ports_in_use(self, exclude: str | None = None) -> set[int]:
        """Ports recorded by containers other than ``exclude``."""
        return {r.port for r in self.list() if r.name != exclude}

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(
        self,
        name: str,
        *,
        engine: Engine | str,
        version: str,
        port: int,
        database: str | None = None,
        databases: Iterable[str] = (),
        binary_path: str | Path | None = None,
        cloned_from: str | None = None,
    ) -> ContainerRecord:
        """Create a record and its container directory.

        Args:
            name: Container name.
            engine: Engine.
            version: Resolved full version.
            port: Primary port.
            database: Primary database; defaults to the engine's default.
            databases: Additional tracked databases.
            binary_path: Install directory of the binary used.
            cloned_from: Lineage pointer.

        Returns:
            Created record.

        Raises:
            InvalidContainerNameError: If the name is not a safe identifier.
            ContainerAlreadyExistsError: If the name is taken.
        """
        create_container_name(name)
        engine = Engine.parse(engine)
        if self.exists(name):
            raise ContainerAlreadyExistsError(name)

        primary = database or get_engine_defaults(engine).default_database
        record = ContainerRecord(
            name=name,
            engine=engine,
            version=version,
            port=port,
            database=primary,
            databases=[primary, *databases],
            cloned_from=cloned_from,
            binary_path=str(binary_path) if binary_path is not None else None,
        )
        record.databases = record.tracked_databases()

        self._paths.data_dir(name, engine).mkdir(parents=True, exist_ok=True)
        self._write(record)
        logger.info("container_created", container=name, engine=engine.value, port=port)
        return record

    def update_config(self, name: str, /, **changes: Any) -> ContainerRecord:
        """Merge fields into a record.

        The record is re-read from disk immediately before merging, so
        fields not named in ``changes`` keep their latest persisted value.

        Args:
            name: Container name.
            **changes: Field values (``port``, ``status``, ``databases``, ...).

        Returns:
            Updated record.

        Raises:
            ContainerNotFoundError: If no record exists.
            RegistryError: On unknown or immutable fields.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise RegistryError(f"Cannot update fields {sorted(unknown)} of container {name!r}")

        record = self.get_config(name)
        coerced = dict(changes)
        if "engine" in coerced:
            coerced["engine"] = Engine.parse(coerced["engine"])
        if "status" in coerced:
            coerced["status"] = ContainerStatus(coerced["status"])
        if "port" in coerced:
            coerced["port"] = int(coerced["port"])
        if "binary_path" in coerced and coerced["binary_path"] is not None:
            coerced["binary_path"] = str(coerced["binary_path"])
        if "databases" in coerced:
            coerced["databases"] = list(coerced["databases"])

        updated = replace(record, **coerced)
        updated.databases = updated.tracked_databases()
        self._write(updated)
        logger.debug("container_updated", container=name, fields=sorted(changes))
        return updated

    def rename(self, old_name: str, new_name: str) -> ContainerRecord:
        """Rename a stopped container, moving its directory.

        Raises:
            InvalidContainerNameError: If ``new_name`` is not valid.
            ContainerNotFoundError: If ``old_name`` does not exist.
            ContainerAlreadyExistsError: If ``new_name`` is taken.
            ContainerRunningError: If the container is running.
            FilesystemMoveError: If the directory cannot be moved.
        """
        create_container_name(new_name)
        record = self.get_config(old_name)
        if self.exists(new_name) or self.container_dir(new_name).exists():
            raise ContainerAlreadyExistsError(new_name)
        self._ensure_stopped(record, "renaming")

        old_dir = self.container_dir(old_name)
        new_dir = self.container_dir(new_name)
        self._platform.move(old_dir, new_dir)

        renamed = replace(record, name=new_name)
        try:
            self._write(renamed)
        except OSError:
            self._platform.move(new_dir, old_dir)
            raise
        logger.info("container_renamed", old=old_name, new=new_name)
        return renamed

    def clone(self, source_name: str, target_name: str) -> ContainerRecord:
        """Copy a stopped container's data into a new container.

        The copy is built in a hidden staging directory and renamed into
        place, so a failed copy never leaves a partial target. The clone
        gets a fresh port, a fresh creation time and ``cloned_from``.

        Raises:
            InvalidContainerNameError: If ``target_name`` is not valid.
            ContainerNotFoundError: If the source does not exist.
            ContainerAlreadyExistsError: If the target is taken.
            ContainerRunningError: If the source is running.
            PortRangeExhaustedError: If no port is free for the clone.
        """
        create_container_name(target_name)
        source = self.get_config(source_name)
        if self.exists(target_name) or self.container_dir(target_name).exists():
            raise ContainerAlreadyExistsError(target_name)
        self._ensure_stopped(source, "cloning")

        defaults = get_engine_defaults(source.engine)
        port = self._ports.find_available_port(
            start_from=defaults.default_port,
            port_range=defaults.port_range,
            exclude=self.ports_in_use(),
        ).port

        cloned = replace(
            source,
            name=target_name,
            port=port,
            created=utc_timestamp(),
            cloned_from=source_name,
            databases=list(source.databases),
        )

        staging = self._paths.containers_dir / f".clone-{target_name}-{uuid.uuid4().hex[:8]}"
        try:
            shutil.copytree(
                self.container_dir(source_name),
                staging,
                symlinks=True,
                ignore=shutil.ignore_patterns(defaults.pid_file_name, defaults.log_file_name),
            )
            _write_json_atomic(staging / RECORD_FILE_NAME, cloned.to_dict())
            self._platform.move(staging, self.container_dir(target_name))
        except BaseException:
            if staging.exists():
                self._platform.remove_tree(staging)
            raise

        logger.info("container_cloned", source=source_name, target=target_name, port=port)
        return cloned

    def delete(self, name: str, force: bool = False) -> None:
        """Remove a record and its data directory.

        A running container is refused unless ``force`` is set; stopping
        the process is the caller's job.

        Raises:
            ContainerNotFoundError: If no record exists.
            ContainerRunningError: If running and not forced.
            FilesystemMoveError: If the directory cannot be removed.
        """
        record = self.get_config(name)
        if not force:
            self._ensure_stopped(record, "deleting")

        tombstone = self._paths.containers_dir / f".deleted-{name}-{uuid.uuid4().hex[:8]}"
        self._platform.move(self.container_dir(name), tombstone)
        self._platform.remove_tree(tombstone)
        logger.info("container_deleted", container=name, forced=force)

    def add_database(self, name: str, database: str) -> ContainerRecord:
        """Track an additional database."""
        record = self.get_config(name)
        if database in record.tracked_databases():
            return record
        return self.update_config(name, databases=[*record.tracked_databases(), database])

    def remove_database(self, name: str, database: str) -> ContainerRecord:
        """Stop tracking a database.

        Raises:
            PrimaryDatabaseError: If ``database`` is the primary.
        """
        record = self.get_config(name)
        if database == record.database:
            raise PrimaryDatabaseError(name, database)
        remaining = [db for db in record.tracked_databases() if db != database]
        return self.update_config(name, databases=remaining)

    def sync_databases(
        self,
        name: str,
        lister: Callable[[ContainerRecord], Iterable[str]],
    ) -> list[str]:
        """Replace the tracked set with a live listing.

        Args:
            name: Container name.
            lister: Ground-truth source, typically the engine's own
                database listing for a running container.

        Returns:
            New tracked set, primary first.
        """
        record = self.get_config(name)
        live = [record.database]
        for db in lister(record):
            if db not in live:
                live.append(db)

        before = set(record.tracked_databases())
        added = [db for db in live if db not in before]
        removed = sorted(before - set(live))
        if added or removed:
            logger.info("databases_synced", container=name, added=added, removed=removed)
        return self.update_config(name, databases=live).tracked_databases()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _ensure_stopped(self, record: ContainerRecord, operation: str) -> None:
        if self._liveness_probe is not None and self._liveness_probe(record):
            raise ContainerRunningError(record.name, operation)

    def _read(self, name: str) -> ContainerRecord:
        path = self._paths.record_path(name)
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            raise ContainerNotFoundError(name) from None
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"Cannot read record {path}: {e}") from e
        try:
            return ContainerRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryError(f"Malformed record {path}: {e}") from e

    def _write(self, record: ContainerRecord) -> None:
        _write_json_atomic(self._paths.record_path(record.name), record.to_dict())
