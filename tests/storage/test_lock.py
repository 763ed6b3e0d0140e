"""Tests for the PID-file thread lock."""

import os

import pytest
from filelock import FileLock

from conductor.exceptions import ThreadLockError
from conductor.storage.lock import FileThreadLock

# PIDs above the kernel's pid_max never belong to a live process.
_DEAD_PID = 2**22 + 1


class TestFileThreadLock:
    def test_acquire_writes_pid(self, tmp_path):
        lock = FileThreadLock(tmp_path / "locks")
        lock.acquire("t1")
        assert (tmp_path / "locks" / "t1.lock").read_text() == str(os.getpid())

    def test_guard_is_free_after_acquire(self, tmp_path):
        lock = FileThreadLock(tmp_path)
        lock.acquire("t1")

        guard = FileLock(tmp_path / "t1.lock.guard", timeout=0)
        guard.acquire()
        guard.release()

    def test_second_holder_sees_first_owner(self, tmp_path):
        first = FileThreadLock(tmp_path)
        second = FileThreadLock(tmp_path)
        second._pid = _DEAD_PID
        first.acquire("t1")

        with pytest.raises(ThreadLockError, match=f"PID {os.getpid()}"):
            second.acquire("t1")
        assert (tmp_path / "t1.lock").read_text() == str(os.getpid())

    def test_reacquire_by_owner(self, tmp_path):
        lock = FileThreadLock(tmp_path)
        lock.acquire("t1")
        lock.acquire("t1")
        assert lock.owner("t1") is None

    def test_live_owner_blocks(self, tmp_path):
        (tmp_path / "t1.lock").write_text("1")
        lock = FileThreadLock(tmp_path)
        with pytest.raises(ThreadLockError, match="PID 1"):
            lock.acquire("t1")
        assert lock.owner("t1") == 1

    def test_stale_lock_is_reclaimed(self, tmp_path):
        (tmp_path / "t1.lock").write_text(str(_DEAD_PID))
        lock = FileThreadLock(tmp_path)
        lock.acquire("t1")
        assert (tmp_path / "t1.lock").read_text() == str(os.getpid())

    def test_owner_clears_stale_lock(self, tmp_path):
        path = tmp_path / "t1.lock"
        path.write_text(str(_DEAD_PID))
        assert FileThreadLock(tmp_path).owner("t1") is None
        assert not path.exists()

    def test_garbage_lock_file_is_ignored(self, tmp_path):
        (tmp_path / "t1.lock").write_text("not-a-pid")
        lock = FileThreadLock(tmp_path)
        lock.acquire("t1")
        assert lock.owner("t1") is None

    def test_release_only_own_lock(self, tmp_path):
        (tmp_path / "theirs.lock").write_text("1")
        lock = FileThreadLock(tmp_path)
        lock.acquire("mine")

        lock.release("mine")
        lock.release("theirs")
        lock.release("never-taken")

        assert not (tmp_path / "mine.lock").exists()
        assert (tmp_path / "theirs.lock").exists()

    def test_unsafe_thread_ids_are_sanitised(self, tmp_path):
        lock = FileThreadLock(tmp_path)
        lock.acquire("../escape/me")
        assert (tmp_path / "___escape_me.lock").exists()

    def test_release_all(self, tmp_path):
        (tmp_path / "theirs.lock").write_text("1")
        lock = FileThreadLock(tmp_path)
        lock.acquire("a")
        lock.acquire("b")

        lock.release_all()

        assert sorted(p.name for p in tmp_path.glob("*.lock")) == ["theirs.lock"]

    def test_release_all_without_directory(self, tmp_path):
        FileThreadLock(tmp_path / "never-created").release_all()
