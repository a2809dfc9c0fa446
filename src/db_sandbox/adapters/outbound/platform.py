"""Platform seam backed by psutil and subprocess.

One class per platform family. Only the behaviours that genuinely
differ are overridden in the Windows variant.
"""

from __future__ import annotations

import errno
import os
import shutil
import stat
import subprocess
import sys
from pathlib import Path

import psutil
import structlog

from db_sandbox.domain.errors import FilesystemMoveError
from db_sandbox.ports.outbound import ProcessInfo

logger = structlog.get_logger(__name__)

# Rename failures that a copy can work around
_COPY_FALLBACK_ERRNOS = {errno.EXDEV, errno.EPERM, errno.EACCES, errno.EBUSY}


def _cwd(proc: psutil.Process) -> str | None:
    try:
        return proc.cwd() or None
    except (psutil.AccessDenied, psutil.ZombieProcess):
        return None


def _make_writable_and_retry(func, path, _exc) -> None:
    # Unlinking needs a writable parent, not a writable entry
    os.chmod(os.path.dirname(path), stat.S_IRWXU)
    if not os.path.islink(path):
        os.chmod(path, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
    func(path)


class PosixPlatform:
    """Platform operations for Linux and macOS."""

    lingering_sockets = False
    executable_suffix = ""

    # -------------------------------------------------------------------------
    # Filesystem
    # -------------------------------------------------------------------------

    def move(self, source: Path, destination: Path) -> None:
        """Rename, falling back to copy-then-remove across devices."""
        try:
            os.rename(source, destination)
            return
        except OSError as e:
            if e.errno not in _COPY_FALLBACK_ERRNOS:
                raise FilesystemMoveError(source, destination, str(e)) from e
            logger.debug("rename_fallback_to_copy", source=str(source), errno=e.errno)

        try:
            if source.is_dir():
                shutil.copytree(source, destination, symlinks=True)
            else:
                shutil.copy2(source, destination)
        except OSError as e:
            if destination.is_dir():
                shutil.rmtree(destination, ignore_errors=True)
            elif destination.exists():
                destination.unlink()
            raise FilesystemMoveError(source, destination, f"copy fallback failed: {e}") from e

        if source.is_dir():
            self.remove_tree(source)
        else:
            source.unlink()

    def remove_tree(self, path: Path) -> None:
        """Remove a directory tree, retrying read-only entries writable."""
        if not path.exists():
            return
        try:
            if sys.version_info >= (3, 12):
                shutil.rmtree(path, onexc=_make_writable_and_retry)
            else:
                shutil.rmtree(path, onerror=_make_writable_and_retry)
        except OSError as e:
            raise FilesystemMoveError(path, None, str(e)) from e

    def make_executable(self, path: Path) -> None:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH | stat.S_IRUSR)

    # -------------------------------------------------------------------------
    # Processes
    # -------------------------------------------------------------------------

    def is_process_running(self, pid: int) -> bool:
        """Check the process table; zombies count as dead."""
        if pid <= 0:
            return False
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True

    def terminate(self, pid: int, force: bool = False) -> bool:
        try:
            process = psutil.Process(pid)
            if force:
                process.kill()
            else:
                process.terminate()
            return True
        except psutil.NoSuchProcess:
            return False

    def find_processes_by_port(self, port: int) -> list[ProcessInfo]:
        """Find processes with a listening socket on a port."""
        pids: set[int] = set()
        try:
            for conn in psutil.net_connections(kind="tcp"):
                if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid:
                    pids.add(conn.pid)
        except psutil.AccessDenied:
            # macOS requires root for the system-wide table; walk processes we can see
            for proc in psutil.process_iter(["pid"]):
                try:
                    for conn in proc.net_connections(kind="tcp"):
                        if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                            pids.add(proc.pid)
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue

        result = []
        for pid in sorted(pids):
            try:
                proc = psutil.Process(pid)
                result.append(ProcessInfo(pid=pid, name=proc.name(), cmdline=proc.cmdline(), cwd=_cwd(proc)))
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
            except psutil.AccessDenied:
                result.append(ProcessInfo(pid=pid))
        return result

    def spawn_detached(
        self,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
        log_path: Path,
    ) -> subprocess.Popen:
        """Start a process in its own session with output sent to a log."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log_file:
            return subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                close_fds=True,
                **self._detach_kwargs(),
            )

    def _detach_kwargs(self) -> dict:
        return {"start_new_session": True}


class WindowsPlatform(PosixPlatform):
    """Platform operations for Windows.

    Closed sockets linger for a long time here, executables carry an
    ``.exe`` suffix and there is no executable permission bit.
    """

    lingering_sockets = True
    executable_suffix = ".exe"

    def make_executable(self, path: Path) -> None:
        pass

    def _detach_kwargs(self) -> dict:
        flags = (
            getattr(subprocess, "DETACHED_PROCESS", 0x00000008)
            | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0x00000200)
            | getattr(subprocess, "CREATE_NO_WINDOW", 0x08000000)
        )
        return {"creationflags": flags}


def detect_platform() -> PosixPlatform:
    """Platform implementation for the running interpreter."""
    if sys.platform.startswith("win"):
        return WindowsPlatform()
    return PosixPlatform()
