"""Non-blocking advisory directory locks.

Restores take one lock per target environment and one per snapshot; the
retention sweeper probes the snapshot lock before deleting.  Locks are
``flock`` based, so they vanish with the holding process and never need
stale-lock cleanup.  Acquisition never waits: a held lock is reported
immediately as :class:`~vault_engine.errors.ConcurrentOperationError`.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import time
from pathlib import Path
from types import TracebackType

from vault_engine.errors import ConcurrentOperationError

logger = logging.getLogger(__name__)

LOCK_DIR_NAME = ".locks"


class DirectoryLock:
    """Exclusive, non-blocking lock backed by a file under a ``.locks`` directory.

    Parameters
    ----------
    path:
        Lock file path; parent directories are created on acquire.
    owner:
        Free-text description of the holder, recorded in the lock file and
        shown to anyone who fails to acquire it.
    """

    def __init__(self, path: Path, owner: str = "") -> None:
        self.path = path
        self.owner = owner or f"pid {os.getpid()}@{socket.gethostname()}"
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> DirectoryLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise ConcurrentOperationError(self.path, _read_holder(self.path)) from exc

        record = json.dumps({"owner": self.owner, "pid": os.getpid(), "ts": time.time()})
        os.ftruncate(fd, 0)
        os.write(fd, record.encode("utf-8"))
        self._fd = fd
        logger.debug("Acquired lock %s", self.path)
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> DirectoryLock:
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def _read_holder(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError):
        return ""
    return str(data.get("owner", ""))


def snapshot_lock_path(snapshot_path: Path) -> Path:
    """Lock file guarding *snapshot_path*, kept beside it rather than inside it."""
    return snapshot_path.parent / LOCK_DIR_NAME / f"{snapshot_path.name}.lock"


def snapshot_lock(snapshot_path: Path, owner: str = "") -> DirectoryLock:
    return DirectoryLock(snapshot_lock_path(snapshot_path), owner)


def environment_lock(lock_dir: Path, owner: str = "") -> DirectoryLock:
    """Lock that allows a single restore per target environment."""
    return DirectoryLock(lock_dir / "restore.lock", owner)

