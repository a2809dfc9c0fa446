"""Directory-backed binary repository for offline installs."""

from __future__ import annotations

import shutil
import time
from pathlib import Path

from db_sandbox.adapters.outbound.http_binary_repository import archive_name
from db_sandbox.domain.entities.binary import Arch, HostPlatform
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.errors import BinaryNotFoundError, BinaryDownloadTimeoutError


class LocalArchiveRepository:
    """Serves archives from a local mirror directory.

    Archives are looked up as ``<root>/<engine>-<version>/<archive>``
    first, then directly as ``<root>/<archive>``.
    """

    def __init__(self, root: Path):
        self._root = Path(root)

    def _locate(self, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> Path:
        name = archive_name(engine, version, platform, arch)
        nested = self._root / f"{engine.value}-{version}" / name
        if nested.is_file():
            return nested
        return self._root / name

    def get_download_url(self, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> str:
        return self._locate(engine, version, platform, arch).resolve().as_uri()

    def fetch(
        self,
        engine: Engine,
        version: str,
        platform: HostPlatform,
        arch: Arch,
        destination: Path,
        deadline: float,
    ) -> Path:
        source = self._locate(engine, version, platform, arch)
        if not source.is_file():
            raise BinaryNotFoundError(engine.value, version, str(source))
        if time.monotonic() > deadline:
            raise BinaryDownloadTimeoutError(str(source), 0.0)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        return destination
