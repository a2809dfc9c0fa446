"""Binary provisioning manager.

Ensures an (engine, version, platform, arch) tuple has a verified binary
installation in the cache:

- Alias resolution against the pinned per-engine version table
- Download under a hard deadline (via a binary repository port)
- Extraction and layout normalization into ``<install>/bin/``
- Version verification of the server executable
- Cleanup of every partial artifact on failure
"""

from __future__ import annotations

import subprocess
import tarfile
import time
import zipfile
from functools import cmp_to_key
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from db_sandbox.domain.entities.binary import (
    Arch,
    HostPlatform,
    InstalledBinary,
    parse_binary_dir_name,
)
from db_sandbox.domain.entities.engine import Engine, get_engine_defaults
from db_sandbox.domain.errors import (
    BinaryDownloadError,
    BinaryDownloadTimeoutError,
    BinaryNotFoundError,
    BinaryVersionMismatchError,
    SandboxError,
)
from db_sandbox.domain.value_objects.paths import SandboxPaths
from db_sandbox.domain.value_objects.versions import compare_versions, is_compatible, resolve_alias
from db_sandbox.ports.outbound import BinaryRepositoryPort, PlatformPort

if TYPE_CHECKING:
    from db_sandbox.infrastructure.metrics import MetricsRegistry

logger = structlog.get_logger(__name__)


def list_installed_binaries(bin_dir: Path) -> list[InstalledBinary]:
    """Enumerate the binary cache by parsing directory names.

    Args:
        bin_dir: Cache root.

    Returns:
        Installed binaries, ordered by engine then newest version first.
    """
    if not bin_dir.is_dir():
        return []
    found = []
    for entry in bin_dir.iterdir():
        if not entry.is_dir():
            continue
        parsed = parse_binary_dir_name(entry.name)
        if parsed is not None:
            found.append(parsed)
    found.sort(key=lambda b: cmp_to_key(compare_versions)(b.version), reverse=True)
    found.sort(key=lambda b: b.engine.value)
    return found


def _is_windows_library(entry: Path, platform: HostPlatform) -> bool:
    return platform is HostPlatform.WIN32 and entry.suffix.lower() == ".dll"


class BinaryManager:
    """Provisions binaries for a single engine.

    Every operation takes an optional platform and architecture and
    defaults to the host's.
    """

    def __init__(
        self,
        engine: Engine | str,
        paths: SandboxPaths,
        platform: PlatformPort,
        repository: BinaryRepositoryPort,
        download_timeout: float = 300.0,
        verify_timeout: float = 30.0,
        metrics: MetricsRegistry | None = None,
    ):
        """Initialize binary manager.

        Args:
            engine: Engine served by this manager.
            paths: Sandbox layout.
            platform: Platform seam for moves, removal and permissions.
            repository: Source of archives.
            download_timeout: Ceiling on fetching one archive, in seconds.
            verify_timeout: Ceiling on the version-flag invocation.
            metrics: Optional metrics registry.
        """
        self._engine = Engine.parse(engine)
        self._defaults = get_engine_defaults(self._engine)
        self._paths = paths
        self._platform = platform
        self._repository = repository
        self._download_timeout = download_timeout
        self._verify_timeout = verify_timeout
        self._metrics = metrics

    @property
    def engine(self) -> Engine:
        return self._engine

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve_full_version(self, alias: str) -> str:
        """Map a short alias ("17", "8.0") to the pinned full version.

        Unknown aliases pass through unchanged.
        """
        version, resolved = resolve_alias(
            alias, self._defaults.version_map, pad_minor=self._defaults.pad_minor_aliases
        )
        if not resolved:
            logger.debug("version_alias_unresolved", engine=self._engine.value, alias=alias)
        return version

    def get_download_url(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> str:
        platform, arch = self._target(platform, arch)
        return self._repository.get_download_url(
            self._engine, self.resolve_full_version(version), platform, arch
        )

    def get_install_path(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> Path:
        platform, arch = self._target(platform, arch)
        return self._paths.binary_dir(self._engine, self.resolve_full_version(version), platform, arch)

    def get_executable(
        self,
        version: str,
        name: str | None = None,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> Path:
        """Path of an executable inside an installation.

        Args:
            version: Version or alias.
            name: Executable name; defaults to the server executable.
            platform: Target platform.
            arch: Target architecture.

        Returns:
            Executable path (may not exist).
        """
        platform, arch = self._target(platform, arch)
        exe = name or self._defaults.server_executable
        install = self.get_install_path(version, platform, arch)
        return install / "bin" / f"{exe}{platform.executable_suffix}"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_installed(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> bool:
        return self.get_executable(version, platform=platform, arch=arch).is_file()

    def list_installed(self) -> list[InstalledBinary]:
        """Installed versions of this engine, newest first."""
        return [b for b in list_installed_binaries(self._paths.bin_dir) if b.engine == self._engine]

    def find_installed_for_major(
        self,
        major: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> InstalledBinary | None:
        """Newest installed version sharing a major version.

        Used as an offline fallback when the pinned version is absent.
        """
        platform, arch = self._target(platform, arch)
        for binary in self.list_installed():
            if (
                binary.major == major
                and binary.platform == platform
                and binary.arch == arch
                and self.is_installed(binary.version, platform, arch)
            ):
                return binary
        return None

    # -------------------------------------------------------------------------
    # Install pipeline
    # -------------------------------------------------------------------------

    def ensure_installed(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> Path:
        """Return the install path, downloading first when absent."""
        platform, arch = self._target(platform, arch)
        if self.is_installed(version, platform, arch):
            return self.get_install_path(version, platform, arch)
        return self.download(version, platform, arch)

    def download(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> Path:
        """Download, extract, normalize and verify an installation.

        On any failure both the temporary working directory and the
        install directory are removed, so a failed install is never
        reported as installed.

        Returns:
            Install directory (containing ``bin/``).

        Raises:
            BinaryNotFoundError: If the version does not exist remotely.
            BinaryDownloadTimeoutError: If the download deadline passes.
            BinaryDownloadError: On network, HTTP or archive failures.
            BinaryVersionMismatchError: If verification fails.
        """
        platform, arch = self._target(platform, arch)
        full_version = self.resolve_full_version(version)
        install_path = self._paths.binary_dir(self._engine, full_version, platform, arch)
        temp_dir = self._paths.binary_temp_dir(self._engine, full_version, platform, arch)
        archive = temp_dir / f"{self._engine.value}.{platform.archive_extension}"
        log = logger.bind(engine=self._engine.value, version=full_version, platform=platform.value, arch=arch.value)

        self._paths.bin_dir.mkdir(parents=True, exist_ok=True)
        self._platform.remove_tree(temp_dir)
        self._platform.remove_tree(install_path)
        temp_dir.mkdir(parents=True)

        started = time.monotonic()
        success = False
        try:
            self._repository.fetch(
                self._engine, full_version, platform, arch, archive,
                deadline=started + self._download_timeout,
            )
            extract_dir = temp_dir / "extract"
            self._extract(archive, extract_dir, platform)
            install_path.mkdir(parents=True)
            self._normalize_layout(extract_dir, install_path, platform)
            self._mark_executables(install_path, platform)
            self.verify(full_version, platform, arch)
            success = True
        except SandboxError as e:
            self._record_download(self._status_for(e), started)
            log.warning("binary_install_failed", error=str(e))
            raise
        finally:
            self._platform.remove_tree(temp_dir)
            if not success:
                self._platform.remove_tree(install_path)

        self._record_download("success", started)
        log.info("binary_installed", path=str(install_path))
        return install_path

    def verify(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> bool:
        """Run the server executable's version flag and check the result.

        Raises:
            BinaryNotFoundError: If the server executable is missing.
            BinaryVersionMismatchError: If the reported version is
                unparseable or not compatible.
        """
        platform, arch = self._target(platform, arch)
        expected = self.resolve_full_version(version)
        executable = self.get_executable(expected, platform=platform, arch=arch)
        if not executable.is_file():
            raise BinaryNotFoundError(self._engine.value, expected, str(executable.parent))

        try:
            result = subprocess.run(
                [str(executable), *self._defaults.version_args],
                capture_output=True,
                text=True,
                timeout=self._verify_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise BinaryVersionMismatchError(
                self._engine.value, expected, None,
                f"version check timed out after {self._verify_timeout:.0f}s",
            ) from None
        except OSError as e:
            raise BinaryVersionMismatchError(self._engine.value, expected, None, str(e)) from e

        output = f"{result.stdout}\n{result.stderr}"
        match = self._defaults.version_pattern.search(output)
        if match is None:
            raise BinaryVersionMismatchError(self._engine.value, expected, None, output)

        reported = match.group(1)
        if not is_compatible(reported, expected):
            raise BinaryVersionMismatchError(self._engine.value, expected, reported, output)
        return True

    def delete(
        self,
        version: str,
        platform: HostPlatform | None = None,
        arch: Arch | None = None,
    ) -> bool:
        """Remove an installation.

        Returns:
            True if something was removed.
        """
        install_path = self.get_install_path(version, platform, arch)
        if not install_path.exists():
            return False
        self._platform.remove_tree(install_path)
        logger.info("binary_deleted", engine=self._engine.value, path=str(install_path))
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _target(platform: HostPlatform | None, arch: Arch | None) -> tuple[HostPlatform, Arch]:
        return platform or HostPlatform.current(), arch or Arch.current()

    def _extract(self, archive: Path, extract_dir: Path, platform: HostPlatform) -> None:
        extract_dir.mkdir(parents=True, exist_ok=True)
        try:
            if platform is HostPlatform.WIN32:
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(extract_dir)
            else:
                with tarfile.open(archive, "r:gz") as tf:
                    if hasattr(tarfile, "data_filter"):
                        tf.extractall(extract_dir, filter="data")
                    else:
                        tf.extractall(extract_dir)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
            raise BinaryDownloadError(str(archive), f"failed to extract archive: {e}") from e

    def _normalize_layout(self, extract_dir: Path, install_path: Path, platform: HostPlatform) -> None:
        """Converge the three archive shapes onto ``<install>/bin/<exe>``.

        Archives ship executables at the root, inside an engine-named
        directory, or already inside ``bin/``. On Windows the DLLs of a
        flat archive go into ``bin/`` as well, since executables only
        find them in their own directory.
        """
        engine_name = self._engine.value
        entries = sorted(extract_dir.iterdir())
        engine_dir = next(
            (
                e for e in entries
                if e.is_dir() and (e.name == engine_name or e.name.startswith(f"{engine_name}-"))
            ),
            None,
        )
        source = engine_dir or extract_dir

        if (source / "bin").is_dir():
            for entry in sorted(source.iterdir()):
                self._platform.move(entry, install_path / entry.name)
            return

        bin_dir = install_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        executables = {f"{name}{platform.executable_suffix}" for name in self._defaults.executables}
        executables.update(self._defaults.executables)
        for entry in sorted(source.iterdir()):
            if entry.is_file() and (entry.name in executables or _is_windows_library(entry, platform)):
                self._platform.move(entry, bin_dir / entry.name)
            else:
                self._platform.move(entry, install_path / entry.name)

    def _mark_executables(self, install_path: Path, platform: HostPlatform) -> None:
        if platform is HostPlatform.WIN32:
            return
        for entry in (install_path / "bin").iterdir():
            if entry.is_file() and not entry.is_symlink():
                self._platform.make_executable(entry)

    @staticmethod
    def _status_for(error: Exception) -> str:
        if isinstance(error, BinaryNotFoundError):
            return "not_found"
        if isinstance(error, BinaryDownloadTimeoutError):
            return "timeout"
        if isinstance(error, BinaryVersionMismatchError):
            return "mismatch"
        return "failed"

    def _record_download(self, status: str, started: float) -> None:
        if self._metrics is None:
            return
        self._metrics.binary_downloads_total.labels(engine=self._engine.value, status=status).inc()
        self._metrics.binary_download_duration_seconds.labels(engine=self._engine.value).observe(
            time.monotonic() - started
        )
