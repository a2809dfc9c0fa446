"""HTTP binary repository with mirror fallback."""

from __future__ import annotations

import time
from pathlib import Path

import httpx
import structlog

from db_sandbox.domain.entities.binary import Arch, HostPlatform
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.errors import (
    BinaryDownloadError,
    BinaryDownloadTimeoutError,
    BinaryError,
    BinaryNotFoundError,
)

logger = structlog.get_logger(__name__)


def archive_name(engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> str:
    """``<engine>-<version>-<platform>-<arch>.<ext>``"""
    return f"{engine.value}-{version}-{platform.value}-{arch.value}.{platform.archive_extension}"


def build_archive_url(base_url: str, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> str:
    """``<base>/<engine>-<version>/<archive>``"""
    tag = f"{engine.value}-{version}"
    return f"{base_url.rstrip('/')}/{tag}/{archive_name(engine, version, platform, arch)}"


class HttpBinaryRepository:
    """Streams engine archives from a release registry.

    The primary registry is tried first. A 404, a 5xx or a network error
    moves on to the mirror; a timeout never does, since the overall
    deadline is already spent.
    """

    def __init__(
        self,
        registry_url: str,
        mirror_url: str | None = None,
        client: httpx.Client | None = None,
        download_timeout: float = 300.0,
        connect_timeout: float = 30.0,
        chunk_size: int = 1 << 16,
    ):
        self._registry_url = registry_url
        self._mirror_url = mirror_url
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self._download_timeout = download_timeout
        self._connect_timeout = connect_timeout
        self._chunk_size = chunk_size

    def get_download_url(self, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> str:
        return build_archive_url(self._registry_url, engine, version, platform, arch)

    def mirror_urls(self, engine: Engine, version: str, platform: HostPlatform, arch: Arch) -> list[str]:
        """Every URL tried for an archive, in order."""
        urls = [self.get_download_url(engine, version, platform, arch)]
        if self._mirror_url:
            urls.append(build_archive_url(self._mirror_url, engine, version, platform, arch))
        return urls

    def fetch(
        self,
        engine: Engine,
        version: str,
        platform: HostPlatform,
        arch: Arch,
        destination: Path,
        deadline: float,
    ) -> Path:
        """Download an archive, trying the mirror on retryable failures.

        Raises:
            BinaryNotFoundError: If every source answered 404.
            BinaryDownloadTimeoutError: If the deadline passes.
            BinaryDownloadError: On other HTTP or network failures.
        """
        *fallible, last = self.mirror_urls(engine, version, platform, arch)
        for url in fallible:
            try:
                self._download(url, destination, deadline, engine, version)
                return destination
            except (BinaryNotFoundError, BinaryDownloadError) as e:
                if not self._should_fall_back(e):
                    raise
                logger.warning("binary_registry_fallback", url=url, reason=str(e))
        self._download(last, destination, deadline, engine, version)
        return destination

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpBinaryRepository:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _should_fall_back(error: Exception) -> bool:
        if isinstance(error, BinaryNotFoundError):
            return True
        if isinstance(error, BinaryDownloadError):
            return error.status_code is None or error.status_code >= 500
        return False

    def _download(self, url: str, destination: Path, deadline: float, engine: Engine, version: str) -> None:
        try:
            self._stream(url, destination, deadline, engine, version)
        except BinaryError:
            destination.unlink(missing_ok=True)
            raise

    def _stream(self, url: str, destination: Path, deadline: float, engine: Engine, version: str) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise BinaryDownloadTimeoutError(url, self._download_timeout)

        timeout = httpx.Timeout(remaining, connect=min(self._connect_timeout, remaining))
        logger.info("binary_download_started", url=url)
        try:
            with self._client.stream("GET", url, timeout=timeout) as response:
                if response.status_code == 404:
                    raise BinaryNotFoundError(engine.value, version, url)
                if response.status_code >= 400:
                    raise BinaryDownloadError(
                        url,
                        f"HTTP {response.status_code} {response.reason_phrase}",
                        status_code=response.status_code,
                    )
                destination.parent.mkdir(parents=True, exist_ok=True)
                with open(destination, "wb") as fh:
                    for chunk in response.iter_bytes(self._chunk_size):
                        if time.monotonic() > deadline:
                            raise BinaryDownloadTimeoutError(url, self._download_timeout)
                        fh.write(chunk)
        except httpx.TimeoutException as e:
            raise BinaryDownloadTimeoutError(url, self._download_timeout) from e
        except httpx.HTTPError as e:
            raise BinaryDownloadError(url, str(e) or type(e).__name__) from e

        if destination.stat().st_size == 0:
            raise BinaryDownloadError(url, "response body is empty")
        logger.debug("binary_download_finished", url=url, bytes=destination.stat().st_size)
