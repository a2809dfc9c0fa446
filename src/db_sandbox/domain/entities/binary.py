"""Installed binary entities."""

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import dataclass
from enum import Enum

from db_sandbox.domain.entities.engine import Engine


class HostPlatform(str, Enum):
    """Operating system families binaries are built for."""
    DARWIN = "darwin"
    LINUX = "linux"
    WIN32 = "win32"

    @property
    def archive_extension(self) -> str:
        return "zip" if self is HostPlatform.WIN32 else "tar.gz"

    @property
    def executable_suffix(self) -> str:
        return ".exe" if self is HostPlatform.WIN32 else ""

    @classmethod
    def current(cls) -> HostPlatform:
        if sys.platform.startswith("win"):
            return cls.WIN32
        if sys.platform == "darwin":
            return cls.DARWIN
        return cls.LINUX


class Arch(str, Enum):
    """CPU architectures binaries are built for."""
    X64 = "x64"
    ARM64 = "arm64"

    @classmethod
    def current(cls) -> Arch:
        machine = _platform.machine().lower()
        if machine in ("arm64", "aarch64"):
            return cls.ARM64
        return cls.X64


@dataclass(frozen=True)
class InstalledBinary:
    """An installed binary, derived from its cache directory name."""
    engine: Engine
    version: str
    platform: HostPlatform
    arch: Arch

    @property
    def dir_name(self) -> str:
        return binary_dir_name(self.engine, self.version, self.platform, self.arch)

    @property
    def major(self) -> str:
        return self.version.split(".", 1)[0]


def binary_dir_name(engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> str:
    """Build a cache directory name: ``<engine>-<version>-<platform>-<arch>``."""
    return f"{engine.value}-{version}-{platform.value}-{arch.value}"


def parse_binary_dir_name(dir_name: str) -> InstalledBinary | None:
    """Parse a cache directory name.

    The name is split from the end so that versions containing hyphens
    (e.g. ``1.0.0-rc1``) survive.

    Args:
        dir_name: Directory name.

    Returns:
        Installed binary, or None if the name does not follow the convention.
    """
    parts = dir_name.split("-")
    if len(parts) < 4:
        return None
    arch, plat = parts[-1], parts[-2]
    for engine in Engine:
        prefix = f"{engine.value}-"
        if not dir_name.startswith(prefix):
            continue
        version = "-".join(dir_name[len(prefix):].split("-")[:-2])
        if not version:
            return None
        try:
            return InstalledBinary(engine, version, HostPlatform(plat), Arch(arch))
        except ValueError:
            return None
    return None
