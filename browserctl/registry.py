"""
Singleton registration for the persistent browser server.

A fixed-path marker file holds the server's pid as plain text. The server is
considered running only while that file exists AND the pid names a live
process; a marker naming a dead process is stale and treated as absent.
Spawning happens under an exclusive flock so two dispatchers cannot both
decide the server is missing and start one each. Stale markers are only
ever removed while holding that lock; lock-free readers never write.
"""
import asyncio
import fcntl
import os
import tempfile
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, AsyncIterator, Iterator, Optional

import psutil

from .logging_config import get_logger

logger = get_logger("browserctl.registry")


class ServerStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STALE = "stale"


@dataclass
class ServerInfo:
    status: ServerStatus
    pid: Optional[int] = None
    marker_file: Optional[str] = None
    socket_path: Optional[str] = None
    uptime_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "running": self.status == ServerStatus.RUNNING,
            "pid": self.pid,
            "marker_file": self.marker_file,
            "socket_path": self.socket_path,
            "uptime_seconds": self.uptime_seconds,
        }


def is_process_alive(pid: int) -> bool:
    """Zero-effect liveness probe. Zombies count as dead."""
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists but belongs to someone else
        return True


class ServerRegistry:
    """Reads and writes the pid marker file."""

    def __init__(self, marker_file_path: str, lock_file_path: Optional[str] = None):
        self.marker_file = Path(marker_file_path)
        self.lock_file = Path(lock_file_path or f"{marker_file_path}.lock")

    def read_pid(self) -> Optional[int]:
        """Pid recorded in the marker file, or None if absent or unreadable."""
        try:
            raw = self.marker_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read marker file {self.marker_file}: {e}")
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Marker file {self.marker_file} holds no pid: {raw[:40]!r}")
            return None

    def live_pid(self) -> Optional[int]:
        """Pid of the running server, or None. Never modifies the marker."""
        pid = self.read_pid()
        if pid is not None and is_process_alive(pid):
            return pid
        return None

    def clear_stale(self) -> bool:
        """
        Remove the marker if it names no live process.

        Call this only while holding ``spawn_lock()``: the marker is re-read
        under the lock, so a server registered by another dispatcher in the
        meantime is left alone.
        """
        if not self.marker_file.exists():
            return False
        pid = self.read_pid()
        if pid is not None and is_process_alive(pid):
            return False
        logger.info_with("Removing stale marker file", marker_file=str(self.marker_file), pid=pid)
        self.clear()
        return True

    def register(self, pid: int):
        """Atomically write ``pid`` to the marker file."""
        self.marker_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.marker_file.name}.", dir=str(self.marker_file.parent)
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{pid}\n")
            os.replace(tmp_path, self.marker_file)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.debug(f"Registered server pid {pid} in {self.marker_file}")

    def unregister(self, pid: int) -> bool:
        """Remove the marker file, but only if it still names ``pid``."""
        if self.read_pid() != pid:
            return False
        self.clear()
        return True

    def clear(self):
        self.marker_file.unlink(missing_ok=True)

    def _acquire_lock(self) -> IO:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        f = open(self.lock_file, "a")
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        except BaseException:
            f.close()
            raise
        return f

    @staticmethod
    def _release_lock(f: IO):
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        finally:
            f.close()

    @contextmanager
    def spawn_lock(self) -> Iterator[None]:
        """Exclusive advisory lock held across check-then-spawn."""
        f = self._acquire_lock()
        try:
            yield
        finally:
            self._release_lock(f)

    @asynccontextmanager
    async def spawn_lock_async(self) -> AsyncIterator[None]:
        """``spawn_lock()`` that waits for the lock in a worker thread."""
        loop = asyncio.get_running_loop()
        f = await loop.run_in_executor(None, self._acquire_lock)
        try:
            yield
        finally:
            self._release_lock(f)

    def info(self, socket_path: Optional[str] = None) -> ServerInfo:
        recorded = self.read_pid()
        if recorded is None and not self.marker_file.exists():
            return ServerInfo(status=ServerStatus.STOPPED, marker_file=str(self.marker_file))
        if recorded is None or not is_process_alive(recorded):
            return ServerInfo(
                status=ServerStatus.STALE,
                pid=recorded,
                marker_file=str(self.marker_file),
            )

        uptime = None
        try:
            uptime = round(time.time() - psutil.Process(recorded).create_time(), 1)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        return ServerInfo(
            status=ServerStatus.RUNNING,
            pid=recorded,
            marker_file=str(self.marker_file),
            socket_path=socket_path,
            uptime_seconds=uptime,
        )
