"""Unit tests for the binary provisioning manager."""

import sys
from pathlib import Path

import pytest

from db_sandbox.adapters.outbound.http_binary_repository import archive_name
from db_sandbox.adapters.outbound.local_binary_repository import LocalArchiveRepository
from db_sandbox.adapters.outbound.platform import PosixPlatform
from db_sandbox.domain.entities.binary import Arch, HostPlatform
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.errors import BinaryDownloadError, BinaryNotFoundError, BinaryVersionMismatchError
from db_sandbox.domain.services.binary_manager import BinaryManager, list_installed_binaries
from db_sandbox.domain.value_objects.paths import SandboxPaths
from db_sandbox.infrastructure.metrics import MetricsRegistry

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="fake binaries are shell scripts")

VERSION = "17.7.0"
GOOD_OUTPUT = 'echo "postgres (PostgreSQL) 17.7"'


@pytest.fixture
def mirror_dir(temp_dir: Path) -> Path:
    path = temp_dir / "mirror"
    path.mkdir()
    return path


@pytest.fixture
def manager(
    sandbox_paths: SandboxPaths,
    platform: PosixPlatform,
    mirror_dir: Path,
    metrics_registry: MetricsRegistry,
) -> BinaryManager:
    return BinaryManager(
        Engine.POSTGRESQL,
        sandbox_paths,
        platform,
        LocalArchiveRepository(mirror_dir),
        verify_timeout=10,
        metrics=metrics_registry,
    )


def _publish(fake_archive, mirror_dir: Path, script: str, prefix: str = "", version: str = VERSION) -> Path:
    name = archive_name(Engine.POSTGRESQL, version, HostPlatform.current(), Arch.current())
    return fake_archive(mirror_dir, "postgres", script, name, prefix=prefix)


def _leftovers(paths: SandboxPaths) -> list[str]:
    return sorted(p.name for p in paths.bin_dir.iterdir())


@pytest.mark.unit
class TestResolution:
    """Tests for version and path resolution."""

    def test_resolve_alias(self, manager: BinaryManager):
        """Test major aliases resolve to pinned versions."""
        assert manager.resolve_full_version("17") == VERSION
        assert manager.resolve_full_version("17.2") == "17.2.0"

    def test_install_path(self, manager: BinaryManager, sandbox_paths: SandboxPaths):
        """Test the install path follows the cache naming convention."""
        path = manager.get_install_path("17", HostPlatform.LINUX, Arch.ARM64)
        assert path == sandbox_paths.bin_dir / "postgresql-17.7.0-linux-arm64"

    def test_executable_suffix(self, manager: BinaryManager):
        """Test Windows executables carry .exe."""
        exe = manager.get_executable("17", "psql", HostPlatform.WIN32, Arch.X64)
        assert exe.name == "psql.exe"
        assert exe.parent.name == "bin"

    def test_not_installed(self, manager: BinaryManager):
        """Test a fresh cache has nothing installed."""
        assert not manager.is_installed("17")
        assert manager.list_installed() == []


@pytest.mark.unit
class TestDownload:
    """Tests for the install pipeline."""

    @pytest.mark.parametrize("prefix", ["", "bin", "postgresql-17.7.0/bin"])
    def test_install_layouts(
        self, manager: BinaryManager, mirror_dir: Path, sandbox_paths: SandboxPaths, fake_archive, prefix: str
    ):
        """Test every archive shape ends up with bin/postgres."""
        _publish(fake_archive, mirror_dir, GOOD_OUTPUT, prefix=prefix)

        install = manager.ensure_installed("17")
        assert (install / "bin" / "postgres").is_file()
        assert manager.is_installed("17")
        assert manager.verify("17")
        assert _leftovers(sandbox_paths) == [install.name]

    def test_root_layout_keeps_other_files(
        self, manager: BinaryManager, mirror_dir: Path, fake_archive
    ):
        """Test non-executables at the archive root stay beside bin/."""
        archive = _publish(fake_archive, mirror_dir, GOOD_OUTPUT)
        staging = mirror_dir / f"staging-{archive.name}"
        (staging / "share").mkdir()
        (staging / "share" / "README").write_text("docs")
        archive.unlink()
        _publish(fake_archive, mirror_dir, GOOD_OUTPUT)

        install = manager.ensure_installed("17")
        assert (install / "share" / "README").read_text() == "docs"

    def test_ensure_installed_is_cached(
        self, manager: BinaryManager, mirror_dir: Path, fake_archive
    ):
        """Test a second ensure_installed needs no archive."""
        archive = _publish(fake_archive, mirror_dir, GOOD_OUTPUT)
        first = manager.ensure_installed("17")
        archive.unlink()
        assert manager.ensure_installed("17.7.0") == first

    def test_not_found_leaves_nothing(self, manager: BinaryManager, sandbox_paths: SandboxPaths):
        """Test a missing archive leaves no partial install."""
        with pytest.raises(BinaryNotFoundError):
            manager.download("17")
        assert _leftovers(sandbox_paths) == []
        assert not manager.is_installed("17")

    def test_version_mismatch_cleans_up(
        self,
        manager: BinaryManager,
        mirror_dir: Path,
        sandbox_paths: SandboxPaths,
        fake_archive,
        metrics_registry: MetricsRegistry,
    ):
        """Test a binary reporting another major is removed again."""
        _publish(fake_archive, mirror_dir, 'echo "postgres (PostgreSQL) 16.4"')
        with pytest.raises(BinaryVersionMismatchError) as exc_info:
            manager.download("17")
        assert exc_info.value.reported == "16.4"
        assert exc_info.value.expected == VERSION
        assert _leftovers(sandbox_paths) == []
        value = metrics_registry.registry.get_sample_value(
            "sandbox_binary_downloads_total", {"engine": "postgresql", "status": "mismatch"}
        )
        assert value == 1.0

    def test_unparseable_version(self, manager: BinaryManager, mirror_dir: Path, fake_archive):
        """Test output without a version is a mismatch with no reported version."""
        _publish(fake_archive, mirror_dir, 'echo "hello"')
        with pytest.raises(BinaryVersionMismatchError) as exc_info:
            manager.download("17")
        assert exc_info.value.reported is None

    def test_corrupt_archive(self, manager: BinaryManager, mirror_dir: Path, sandbox_paths: SandboxPaths):
        """Test an archive that cannot be extracted leaves nothing."""
        name = archive_name(Engine.POSTGRESQL, VERSION, HostPlatform.current(), Arch.current())
        (mirror_dir / name).write_bytes(b"definitely not gzip")
        with pytest.raises(BinaryDownloadError, match="extract"):
            manager.download("17")
        assert _leftovers(sandbox_paths) == []

    def test_success_metrics(
        self, manager: BinaryManager, mirror_dir: Path, fake_archive, metrics_registry: MetricsRegistry
    ):
        """Test successful installs are counted."""
        _publish(fake_archive, mirror_dir, GOOD_OUTPUT)
        manager.download("17")
        value = metrics_registry.registry.get_sample_value(
            "sandbox_binary_downloads_total", {"engine": "postgresql", "status": "success"}
        )
        assert value == 1.0


@pytest.mark.unit
class TestLayout:
    """Tests for normalizing a flat archive into bin/."""

    @pytest.fixture
    def flat_windows_archive(self, temp_dir: Path) -> Path:
        extract_dir = temp_dir / "extract"
        (extract_dir / "share").mkdir(parents=True)
        (extract_dir / "share" / "README").write_text("docs")
        (extract_dir / "postgres.exe").write_bytes(b"MZ")
        (extract_dir / "libpq.DLL").write_bytes(b"MZ")
        return extract_dir

    def test_windows_libraries_beside_executables(
        self, manager: BinaryManager, flat_windows_archive: Path, temp_dir: Path
    ):
        """Test DLLs of a flat Windows archive land in bin/ next to the executable."""
        install = temp_dir / "install"
        install.mkdir()
        manager._normalize_layout(flat_windows_archive, install, HostPlatform.WIN32)

        assert sorted(p.name for p in (install / "bin").iterdir()) == ["libpq.DLL", "postgres.exe"]
        assert (install / "share" / "README").read_text() == "docs"

    def test_libraries_stay_put_elsewhere(
        self, manager: BinaryManager, flat_windows_archive: Path, temp_dir: Path
    ):
        """Test only Windows installs treat DLLs as part of bin/."""
        install = temp_dir / "install"
        install.mkdir()
        manager._normalize_layout(flat_windows_archive, install, HostPlatform.LINUX)

        assert (install / "libpq.DLL").is_file()
        assert not (install / "bin" / "libpq.DLL").exists()


@pytest.mark.unit
class TestInventory:
    """Tests for listing and deleting installs."""

    def test_list_and_find_major(self, manager: BinaryManager, mirror_dir: Path, fake_archive):
        """Test installed versions are listed and found by major."""
        _publish(fake_archive, mirror_dir, GOOD_OUTPUT)
        manager.ensure_installed("17")

        installed = manager.list_installed()
        assert [b.version for b in installed] == [VERSION]
        found = manager.find_installed_for_major("17")
        assert found is not None
        assert found.version == VERSION
        assert manager.find_installed_for_major("16") is None

    def test_list_ordering(self, sandbox_paths: SandboxPaths):
        """Test the cache listing groups by engine, newest first."""
        for name in (
            "postgresql-16.11.0-linux-x64",
            "postgresql-17.7.0-linux-x64",
            "mysql-8.0.40-linux-x64",
            "temp-postgresql-18.1.0-linux-x64",
            "not-a-binary",
        ):
            (sandbox_paths.bin_dir / name).mkdir()
        listed = [(b.engine.value, b.version) for b in list_installed_binaries(sandbox_paths.bin_dir)]
        assert listed == [("mysql", "8.0.40"), ("postgresql", "17.7.0"), ("postgresql", "16.11.0")]

    def test_delete(self, manager: BinaryManager, mirror_dir: Path, fake_archive):
        """Test deleting an install."""
        _publish(fake_archive, mirror_dir, GOOD_OUTPUT)
        manager.ensure_installed("17")
        assert manager.delete("17")
        assert not manager.is_installed("17")
        assert not manager.delete("17")

    def test_verify_missing(self, manager: BinaryManager):
        """Test verifying an absent install."""
        with pytest.raises(BinaryNotFoundError):
            manager.verify("17")
