"""Unit tests for the HTTP and local binary repositories."""

import time
from pathlib import Path

import httpx
import pytest

from db_sandbox.adapters.outbound.http_binary_repository import (
    HttpBinaryRepository,
    archive_name,
    build_archive_url,
)
from db_sandbox.adapters.outbound.local_binary_repository import LocalArchiveRepository
from db_sandbox.domain.entities.binary import Arch, HostPlatform
from db_sandbox.domain.entities.engine import Engine
from db_sandbox.domain.errors import (
    BinaryDownloadError,
    BinaryDownloadTimeoutError,
    BinaryNotFoundError,
)

PRIMARY = "https://registry.example.test"
MIRROR = "https://mirror.example.test/releases"
TARGET = (Engine.POSTGRESQL, "17.7.0", HostPlatform.LINUX, Arch.X64)


def _repository(handler, mirror: str | None = MIRROR) -> tuple[HttpBinaryRepository, list[str]]:
    seen: list[str] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return handler(request)

    client = httpx.Client(transport=httpx.MockTransport(record))
    return HttpBinaryRepository(PRIMARY, mirror_url=mirror, client=client), seen


def _deadline(seconds: float = 30.0) -> float:
    return time.monotonic() + seconds


@pytest.mark.unit
class TestUrls:
    """Tests for archive naming."""

    def test_archive_name(self):
        """Test the archive naming convention."""
        assert archive_name(*TARGET) == "postgresql-17.7.0-linux-x64.tar.gz"
        assert archive_name(Engine.MYSQL, "8.0.40", HostPlatform.WIN32, Arch.X64).endswith(".zip")

    def test_build_url(self):
        """Test the release URL layout."""
        url = build_archive_url(PRIMARY + "/", *TARGET)
        assert url == f"{PRIMARY}/postgresql-17.7.0/postgresql-17.7.0-linux-x64.tar.gz"

    def test_mirror_urls(self):
        """Test the mirror is tried after the primary."""
        repo = HttpBinaryRepository(PRIMARY, mirror_url=MIRROR)
        try:
            urls = repo.mirror_urls(*TARGET)
        finally:
            repo.close()
        assert [u.split("/postgresql-17.7.0/")[0] for u in urls] == [PRIMARY, MIRROR]


@pytest.mark.unit
class TestHttpFetch:
    """Tests for HttpBinaryRepository.fetch."""

    def test_success(self, temp_dir: Path):
        """Test a successful download writes the archive."""
        repo, seen = _repository(lambda request: httpx.Response(200, content=b"archive-bytes"))
        dest = temp_dir / "pg.tar.gz"
        assert repo.fetch(*TARGET, dest, deadline=_deadline()) == dest
        assert dest.read_bytes() == b"archive-bytes"
        assert len(seen) == 1

    def test_404_falls_back_to_mirror(self, temp_dir: Path):
        """Test a missing primary archive is fetched from the mirror."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "registry.example.test":
                return httpx.Response(404)
            return httpx.Response(200, content=b"from-mirror")

        repo, seen = _repository(handler)
        dest = temp_dir / "pg.tar.gz"
        repo.fetch(*TARGET, dest, deadline=_deadline())
        assert dest.read_bytes() == b"from-mirror"
        assert len(seen) == 2

    def test_5xx_falls_back_to_mirror(self, temp_dir: Path):
        """Test server errors move on to the mirror."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "registry.example.test":
                return httpx.Response(503)
            return httpx.Response(200, content=b"ok")

        repo, _ = _repository(handler)
        repo.fetch(*TARGET, temp_dir / "pg.tar.gz", deadline=_deadline())

    def test_network_error_falls_back(self, temp_dir: Path):
        """Test connection failures move on to the mirror."""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "registry.example.test":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, content=b"ok")

        repo, seen = _repository(handler)
        repo.fetch(*TARGET, temp_dir / "pg.tar.gz", deadline=_deadline())
        assert len(seen) == 2

    def test_404_everywhere(self, temp_dir: Path):
        """Test a version missing from every source is not found."""
        repo, seen = _repository(lambda request: httpx.Response(404))
        dest = temp_dir / "pg.tar.gz"
        with pytest.raises(BinaryNotFoundError):
            repo.fetch(*TARGET, dest, deadline=_deadline())
        assert len(seen) == 2
        assert not dest.exists()

    def test_4xx_does_not_fall_back(self, temp_dir: Path):
        """Test client errors other than 404 are final."""
        repo, seen = _repository(lambda request: httpx.Response(403))
        with pytest.raises(BinaryDownloadError) as exc_info:
            repo.fetch(*TARGET, temp_dir / "pg.tar.gz", deadline=_deadline())
        assert exc_info.value.status_code == 403
        assert len(seen) == 1

    def test_timeout_does_not_fall_back(self, temp_dir: Path):
        """Test a timeout is raised without trying the mirror."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        repo, seen = _repository(handler)
        with pytest.raises(BinaryDownloadTimeoutError):
            repo.fetch(*TARGET, temp_dir / "pg.tar.gz", deadline=_deadline())
        assert len(seen) == 1

    def test_expired_deadline(self, temp_dir: Path):
        """Test an already spent deadline never issues a request."""
        repo, seen = _repository(lambda request: httpx.Response(200, content=b"x"))
        with pytest.raises(BinaryDownloadTimeoutError):
            repo.fetch(*TARGET, temp_dir / "pg.tar.gz", deadline=time.monotonic() - 1)
        assert seen == []

    def test_empty_body(self, temp_dir: Path):
        """Test an empty archive from the only source is an error and leaves no file."""
        repo, _ = _repository(lambda request: httpx.Response(200, content=b""), mirror=None)
        dest = temp_dir / "pg.tar.gz"
        with pytest.raises(BinaryDownloadError):
            repo.fetch(*TARGET, dest, deadline=_deadline())
        assert not dest.exists()


@pytest.mark.unit
class TestLocalArchiveRepository:
    """Tests for the local mirror directory."""

    def test_nested_layout(self, temp_dir: Path):
        """Test archives under a per-release directory."""
        release = temp_dir / "mirror" / "postgresql-17.7.0"
        release.mkdir(parents=True)
        (release / archive_name(*TARGET)).write_bytes(b"nested")

        repo = LocalArchiveRepository(temp_dir / "mirror")
        dest = temp_dir / "out.tar.gz"
        repo.fetch(*TARGET, dest, deadline=_deadline())
        assert dest.read_bytes() == b"nested"
        assert repo.get_download_url(*TARGET).startswith("file://")

    def test_flat_layout(self, temp_dir: Path):
        """Test archives directly under the root."""
        (temp_dir / archive_name(*TARGET)).write_bytes(b"flat")
        dest = temp_dir / "out" / "pg.tar.gz"
        LocalArchiveRepository(temp_dir).fetch(*TARGET, dest, deadline=_deadline())
        assert dest.read_bytes() == b"flat"

    def test_missing(self, temp_dir: Path):
        """Test a missing archive is not found."""
        with pytest.raises(BinaryNotFoundError):
            LocalArchiveRepository(temp_dir).fetch(*TARGET, temp_dir / "x", deadline=_deadline())
