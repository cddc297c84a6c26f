"""
Tests for the lock file manager.
"""
import os

import pytest

from keeper.errors import LockError
from keeper.locks import SERVER_LOCK, LockFileManager, backend_lock_name


@pytest.fixture
def lock_dir(tmp_path) -> str:
    return str(tmp_path / "locks")


class TestLockFileManager:

    def test_acquire_writes_pid(self, lock_dir):
        locks = LockFileManager(lock_dir)
        locks.acquire_exclusive(SERVER_LOCK)

        assert locks.is_held(SERVER_LOCK)
        with open(os.path.join(lock_dir, SERVER_LOCK)) as f:
            assert f.read() == str(os.getpid())
        locks.release(SERVER_LOCK)
        assert not locks.is_held(SERVER_LOCK)

    def test_busy_lock_is_not_waited_on(self, lock_dir):
        first = LockFileManager(lock_dir)
        second = LockFileManager(lock_dir)
        first.acquire_exclusive(SERVER_LOCK)

        with pytest.raises(LockError):
            second.acquire_exclusive(SERVER_LOCK)

        first.release(SERVER_LOCK)
        second.acquire_exclusive(SERVER_LOCK)
        second.release(SERVER_LOCK)

    def test_double_acquire(self, lock_dir):
        locks = LockFileManager(lock_dir)
        locks.acquire_exclusive(SERVER_LOCK)
        with pytest.raises(LockError):
            locks.acquire_exclusive(SERVER_LOCK)
        locks.release(SERVER_LOCK)

    def test_release_not_held(self, lock_dir):
        with pytest.raises(LockError):
            LockFileManager(lock_dir).release(SERVER_LOCK)

    def test_locks_are_independent(self, lock_dir):
        locks = LockFileManager(lock_dir)
        locks.acquire_exclusive(SERVER_LOCK)
        locks.acquire_exclusive(backend_lock_name("userRoot"))

        assert sorted(os.listdir(lock_dir)) == ["backend-userRoot.lock", "server.lock"]
        locks.release(backend_lock_name("userRoot"))
        assert locks.is_held(SERVER_LOCK)
        locks.release(SERVER_LOCK)

    def test_context_manager_releases_on_error(self, lock_dir):
        locks = LockFileManager(lock_dir)
        with pytest.raises(RuntimeError):
            with locks.exclusive("x.lock"):
                assert locks.is_held("x.lock")
                raise RuntimeError("boom")
        assert not locks.is_held("x.lock")
