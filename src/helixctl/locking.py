"""Process-level lock files guarding helixctl operations.

Locks are advisory ``flock`` locks on ``<runtime_dir>/<name>.lock``. The file
records the owning PID as JSON so operators (and a contending process) can see
who holds it. A lock file left behind by a dead process is stale: the kernel
releases the ``flock`` when its owner exits, so the next acquirer simply
overwrites the metadata.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import psutil


class LockHeldError(RuntimeError):
    """Raised when another live process owns the requested lock."""

    def __init__(self, path: Path, owner_pid: int | None) -> None:
        owner = f"PID {owner_pid}" if owner_pid is not None else "an unknown process"
        super().__init__(f"Lock {path} is held by {owner}.")
        self.path = path
        self.owner_pid = owner_pid


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int
    stale_pid: int | None = None


def read_lock_pid(path: Path) -> int | None:
    """Return the PID recorded in *path*, accepting JSON or a bare integer."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not text:
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(payload, dict):
        payload = payload.get("pid")
    if isinstance(payload, bool):
        return None
    if isinstance(payload, int):
        return payload
    if isinstance(payload, str) and payload.isdigit():
        return int(payload)
    return None


def pid_is_running(pid: int) -> bool:
    """Return True when *pid* names a live, non-zombie process."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class LockManager:
    """Acquire named locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 0.0) -> None:
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file used for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def acquire(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the context.

        With a zero timeout the call fails immediately when the lock is held.
        The lock file is removed on release, including on exceptions.
        """
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout

        started = time.monotonic()
        fd = self._lock_current_file(path, started, limit)
        try:
            previous_pid = read_lock_pid(path)
            stale_pid = previous_pid if previous_pid not in (None, os.getpid()) else None
            if stale_pid is not None and pid_is_running(stale_pid):
                # Writers that record a PID without taking the flock still count.
                fcntl.flock(fd, fcntl.LOCK_UN)
                raise LockHeldError(path, stale_pid)

            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            os.fsync(fd)

            wait_ms = int((time.monotonic() - started) * 1000)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, stale_pid=stale_pid)
            finally:
                # Unlink before unlocking so waiters on this inode see it is gone.
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _lock_current_file(path: Path, started: float, limit: float) -> int:
        """Return a descriptor holding the flock on the file currently at *path*.

        A waiter can win the flock on a file its previous holder already
        unlinked; that descriptor is dropped and the new file is tried.
        """
        while True:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() - started >= limit:
                            raise LockHeldError(path, read_lock_pid(path)) from None
                        time.sleep(0.05)
            except BaseException:
                os.close(fd)
                raise
            if _is_same_file(fd, path):
                return fd
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)


def _is_same_file(fd: int, path: Path) -> bool:
    try:
        current = os.stat(path)
    except FileNotFoundError:
        return False
    opened = os.fstat(fd)
    return (opened.st_dev, opened.st_ino) == (current.st_dev, current.st_ino)


__all__ = ["LockHandle", "LockHeldError", "LockManager", "pid_is_running", "read_lock_pid"]
