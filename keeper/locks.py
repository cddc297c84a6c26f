"""
Dirkeeper - Lock Files
========================
Exclusive file locks in <root>/locks/, one file per lock name:

    server.lock              held while the managed server runs
    backend-<backendId>.lock held while a backend is being bulk-loaded

Locks use fcntl.flock (non-blocking), so a lock held by another process,
or through another LockFileManager in this process, is reported as busy
instead of waited on. The holder's PID is written into the file for
debugging.
"""

import fcntl
import os
from contextlib import contextmanager
from typing import IO, Iterator

from keeper.errors import LockError


SERVER_LOCK = "server.lock"


def backend_lock_name(backend_id: str) -> str:
    return f"backend-{backend_id}.lock"


class LockFileManager:
    """
    Acquires and releases named exclusive locks under one directory.

    Attributes:
        lock_dir: Directory containing the lock files.
    """

    def __init__(self, lock_dir: str):
        self.lock_dir = lock_dir
        self._held: dict[str, IO[str]] = {}

    def lock_path(self, name: str) -> str:
        return os.path.join(self.lock_dir, name)

    def is_held(self, name: str) -> bool:
        return name in self._held

    def acquire_exclusive(self, name: str) -> None:
        """
        Take the named lock.

        Raises:
            LockError: If the lock is busy or the lock file cannot be opened.
        """
        if name in self._held:
            raise LockError(f"Lock {name} is already held by this manager")

        os.makedirs(self.lock_dir, exist_ok=True)
        path = self.lock_path(name)
        try:
            # r+ keeps the previous holder's PID readable if we lose the race
            try:
                f = open(path, "r+")
            except FileNotFoundError:
                f = open(path, "w")
        except OSError as e:
            raise LockError(f"Could not open lock file {path}", e) from e

        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            f.close()
            raise LockError(f"Lock {path} is held by another process", e) from e

        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()))
        f.flush()
        self._held[name] = f

    def release(self, name: str) -> None:
        """
        Drop the named lock.

        Raises:
            LockError: If the lock is not held here or unlocking fails.
        """
        f = self._held.pop(name, None)
        if f is None:
            raise LockError(f"Lock {name} is not held")
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise LockError(f"Could not release lock {self.lock_path(name)}", e) from e
        finally:
            f.close()

    @contextmanager
    def exclusive(self, name: str) -> Iterator[None]:
        """Hold the named lock for the duration of a with-block."""
        self.acquire_exclusive(name)
        try:
            yield
        finally:
            self.release(name)
