"""PID-file thread lock so only one process writes to a thread at a time.

Each lock lives at ``<lock_dir>/<thread_id>.lock`` and holds the owning
PID. Locks left behind by dead processes are reclaimed on acquire. The
check and write happen under an OS file lock on ``<thread_id>.lock.guard``
so two processes cannot both claim a free thread.
"""

import os
import re
from pathlib import Path

import structlog
from filelock import FileLock, Timeout

from conductor.exceptions import ThreadLockError

logger = structlog.get_logger()

_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class FileThreadLock:
    def __init__(self, lock_dir: Path, timeout: float = 10) -> None:
        self._lock_dir = lock_dir
        self._timeout = timeout
        self._pid = os.getpid()

    def _path(self, thread_id: str) -> Path:
        return self._lock_dir / f"{_UNSAFE.sub('_', thread_id)}.lock"

    def _guard(self, thread_id: str) -> FileLock:
        path = self._path(thread_id)
        return FileLock(path.with_name(path.name + ".guard"), timeout=self._timeout)

    def _read_owner(self, path: Path) -> int | None:
        try:
            return int(path.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self, thread_id: str) -> None:
        """Take the lock or raise ThreadLockError if a live process owns it."""
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(thread_id)
        try:
            with self._guard(thread_id):
                owner = self._read_owner(path) if path.exists() else None
                if owner is not None and owner != self._pid and _process_alive(owner):
                    raise ThreadLockError(
                        f"Thread {thread_id} is locked by another process (PID {owner})"
                    )
                if owner is not None and owner != self._pid:
                    logger.info(
                        "thread_lock_reclaimed", thread_id=thread_id, stale_pid=owner
                    )
                path.write_text(str(self._pid))
        except Timeout as e:
            raise ThreadLockError(f"Timed out waiting to lock thread {thread_id}") from e
        logger.debug("thread_lock_acquired", thread_id=thread_id)

    def release(self, thread_id: str) -> None:
        path = self._path(thread_id)
        if not path.exists():
            return
        try:
            with self._guard(thread_id):
                if self._read_owner(path) != self._pid:
                    return
                path.unlink()
        except (OSError, Timeout):
            logger.debug("thread_lock_release_failed", thread_id=thread_id)
            return
        logger.debug("thread_lock_released", thread_id=thread_id)

    def owner(self, thread_id: str) -> int | None:
        """PID of another live process holding the lock, else None."""
        path = self._path(thread_id)
        pid = self._read_owner(path)
        if pid is None or pid == self._pid:
            return None
        if not _process_alive(pid):
            try:
                with self._guard(thread_id):
                    if self._read_owner(path) == pid:
                        path.unlink(missing_ok=True)
            except Timeout:
                logger.debug("stale_thread_lock_busy", thread_id=thread_id)
            return None
        return pid

    def release_all(self) -> None:
        if not self._lock_dir.is_dir():
            return
        for path in self._lock_dir.glob("*.lock"):
            if self._read_owner(path) == self._pid:
                path.unlink(missing_ok=True)
