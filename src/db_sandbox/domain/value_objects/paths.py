"""On-disk layout of a sandbox home directory."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from db_sandbox.domain.entities.binary import Arch, HostPlatform, binary_dir_name
from db_sandbox.domain.entities.engine import Engine, get_engine_defaults

RECORD_FILE_NAME = "container.json"


@dataclass(frozen=True)
class SandboxPaths:
    """Resolves every path the core reads or writes.

    One instance is built per invocation and handed to each component.

    Layout::

        <home>/containers/<name>/container.json
        <home>/containers/<name>/<data_subdir>/
        <home>/containers/<name>/<engine>.log
        <home>/containers/<name>/<engine>.pid
        <home>/bin/<engine>-<version>-<platform>-<arch>/bin/<exe>
    """
    home: Path

    @property
    def bin_dir(self) -> Path:
        return self.home / "bin"

    @property
    def containers_dir(self) -> Path:
        return self.home / "containers"

    def container_dir(self, name: str) -> Path:
        return self.containers_dir / name

    def record_path(self, name: str) -> Path:
        return self.container_dir(name) / RECORD_FILE_NAME

    def data_dir(self, name: str, engine: Engine) -> Path:
        return self.container_dir(name) / get_engine_defaults(engine).data_subdir

    def log_path(self, name: str, engine: Engine) -> Path:
        return self.container_dir(name) / get_engine_defaults(engine).log_file_name

    def pid_path(self, name: str, engine: Engine) -> Path:
        return self.container_dir(name) / get_engine_defaults(engine).pid_file_name

    def binary_dir(self, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> Path:
        return self.bin_dir / binary_dir_name(engine, version, platform, arch)

    def binary_temp_dir(self, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> Path:
        return self.bin_dir / f"temp-{binary_dir_name(engine, version, platform, arch)}"
