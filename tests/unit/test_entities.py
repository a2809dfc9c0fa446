"""Unit tests for sandbox domain entities."""

from pathlib import Path

import pytest

from db_sandbox.domain.entities.binary import (
    Arch,
    HostPlatform,
    InstalledBinary,
    binary_dir_name,
    parse_binary_dir_name,
)
from db_sandbox.domain.entities.container import ContainerRecord, ContainerStatus
from db_sandbox.domain.entities.engine import Engine, get_engine_defaults
from db_sandbox.domain.errors import (
    EngineNotSupportedError,
    InvalidContainerNameError,
    ProcessStartFailedError,
)
from db_sandbox.domain.value_objects.identifiers import create_container_name, is_valid_name, utc_timestamp
from db_sandbox.domain.value_objects.paths import SandboxPaths


class TestIdentifiers:
    """Test container name validation."""

    @pytest.mark.parametrize("name", ["db1", "my-db", "My_DB_2", "a"])
    def test_valid_names(self, name: str):
        """Test safe identifiers are accepted."""
        assert is_valid_name(name)
        assert create_container_name(name) == name

    @pytest.mark.parametrize("name", ["", "1db", "-db", "my db", "../evil", "db.name"])
    def test_invalid_names(self, name: str):
        """Test unsafe names are rejected."""
        assert not is_valid_name(name)
        with pytest.raises(InvalidContainerNameError):
            create_container_name(name)

    def test_timestamp_format(self):
        """Test creation timestamps are UTC ISO-8601 with a Z suffix."""
        ts = utc_timestamp()
        assert ts.endswith("Z")
        assert "T" in ts


class TestEngine:
    """Test engine parsing and defaults."""

    def test_parse_case_insensitive(self):
        """Test engine names parse regardless of case."""
        assert Engine.parse("PostgreSQL") is Engine.POSTGRESQL

    def test_parse_unknown(self):
        """Test unknown engines raise."""
        with pytest.raises(EngineNotSupportedError):
            Engine.parse("oracle")

    def test_every_engine_has_defaults(self):
        """Test the defaults table covers every engine."""
        for engine in Engine:
            defaults = get_engine_defaults(engine)
            start, end = defaults.port_range
            assert start <= defaults.default_port <= end

    def test_postgres_version_pattern(self):
        """Test the PostgreSQL version output is parsed."""
        defaults = get_engine_defaults(Engine.POSTGRESQL)
        match = defaults.version_pattern.search("postgres (PostgreSQL) 17.7")
        assert match is not None
        assert match.group(1) == "17.7"


class TestContainerRecord:
    """Test container record entity."""

    def test_defaults(self, record: ContainerRecord):
        """Test a new record starts created."""
        assert record.status == ContainerStatus.CREATED
        assert not record.is_running()
        assert record.created.endswith("Z")

    def test_tracked_databases_primary_first(self):
        """Test the primary database is always first and unique."""
        rec = ContainerRecord(
            name="db1", engine=Engine.POSTGRESQL, version="17.7.0", port=5432,
            database="app", databases=["other", "app", "other"],
        )
        assert rec.tracked_databases() == ["app", "other"]

    def test_json_shape(self, record: ContainerRecord):
        """Test on-disk keys use camelCase and omit unset optionals."""
        record.binary_path = "/tmp/bin"
        data = record.to_dict()
        assert data["engine"] == "postgresql"
        assert data["binaryPath"] == "/tmp/bin"
        assert "clonedFrom" not in data
        assert data["databases"] == ["postgres"]

    def test_from_dict_migrates_databases(self):
        """Test old records without a databases list gain one."""
        rec = ContainerRecord.from_dict(
            {
                "name": "old",
                "engine": "mysql",
                "version": "8.0.40",
                "port": 3306,
                "database": "app",
                "status": "stopped",
                "created": "2024-01-01T00:00:00.000Z",
            }
        )
        assert rec.databases == ["app"]
        assert rec.status == ContainerStatus.STOPPED
        assert rec.cloned_from is None

    def test_round_trip_keeps_lineage(self, record: ContainerRecord):
        """Test cloned_from survives serialization."""
        record.cloned_from = "source"
        assert ContainerRecord.from_dict(record.to_dict()).cloned_from == "source"


class TestBinaryNames:
    """Test binary cache directory naming."""

    def test_dir_name(self):
        """Test the directory naming convention."""
        name = binary_dir_name(Engine.POSTGRESQL, "17.7.0", HostPlatform.LINUX, Arch.X64)
        assert name == "postgresql-17.7.0-linux-x64"

    def test_parse(self):
        """Test directory names parse back to installed binaries."""
        parsed = parse_binary_dir_name("postgresql-17.7.0-darwin-arm64")
        assert parsed == InstalledBinary(Engine.POSTGRESQL, "17.7.0", HostPlatform.DARWIN, Arch.ARM64)
        assert parsed.major == "17"

    def test_parse_hyphenated_version(self):
        """Test versions with hyphens survive parsing from the end."""
        parsed = parse_binary_dir_name("qdrant-1.0.0-rc1-linux-x64")
        assert parsed is not None
        assert parsed.version == "1.0.0-rc1"

    @pytest.mark.parametrize(
        "name",
        ["temp-postgresql-17.7.0-linux-x64", "postgresql-17.7.0-plan9-x64", "oracle-1-linux-x64", "junk"],
    )
    def test_parse_invalid(self, name: str):
        """Test unrelated directory names are ignored."""
        assert parse_binary_dir_name(name) is None

    def test_platform_properties(self):
        """Test archive extension and executable suffix per platform."""
        assert HostPlatform.WIN32.archive_extension == "zip"
        assert HostPlatform.LINUX.archive_extension == "tar.gz"
        assert HostPlatform.WIN32.executable_suffix == ".exe"


class TestSandboxPaths:
    """Test the sandbox layout."""

    def test_container_layout(self, temp_dir: Path):
        """Test per-container paths."""
        paths = SandboxPaths(home=temp_dir)
        assert paths.record_path("db1") == temp_dir / "containers" / "db1" / "container.json"
        assert paths.log_path("db1", Engine.POSTGRESQL).name == "postgresql.log"
        assert paths.pid_path("db1", Engine.REDIS).name == "redis.pid"

    def test_binary_layout(self, temp_dir: Path):
        """Test binary install and temp directories."""
        paths = SandboxPaths(home=temp_dir)
        install = paths.binary_dir(Engine.MYSQL, "8.0.40", HostPlatform.LINUX, Arch.X64)
        temp = paths.binary_temp_dir(Engine.MYSQL, "8.0.40", HostPlatform.LINUX, Arch.X64)
        assert install == temp_dir / "bin" / "mysql-8.0.40-linux-x64"
        assert temp.name == "temp-mysql-8.0.40-linux-x64"


class TestErrors:
    """Test error context."""

    def test_start_failure_message(self, temp_dir: Path):
        """Test start failures name the binary, log file and log tail."""
        err = ProcessStartFailedError(
            "db1", "postgresql exited with code 1 during startup",
            port=5432, binary=temp_dir / "postgres", log_path=temp_dir / "postgresql.log",
            log_tail="FATAL: boom", port_conflict=False,
        )
        message = str(err)
        assert "exited with code 1" in message
        assert "Binary:" in message
        assert "Log file:" in message
        assert "FATAL: boom" in message
