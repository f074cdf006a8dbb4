"""Tests for the queue lock."""

import json
import os
import time
from pathlib import Path

import pytest

from storyrunner.errors import QueueBusyError
from storyrunner.lock import LOCK_FILE, QueueLock


def _age_marker(path: Path, seconds: float) -> None:
    then = time.time() - seconds
    os.utime(path, (then, then))


class TestQueueLock:
    """Tests for QueueLock."""

    def test_acquire_creates_marker(self, tmp_path: Path) -> None:
        """acquire() writes the marker with our PID."""
        lock = QueueLock(tmp_path)

        assert lock.acquire() is True
        assert (tmp_path / LOCK_FILE).exists()
        data = json.loads((tmp_path / LOCK_FILE).read_text())
        assert data["pid"] == os.getpid()
        assert "timestamp" in data

    def test_second_acquire_fails_while_held(self, tmp_path: Path) -> None:
        first = QueueLock(tmp_path)
        second = QueueLock(tmp_path)

        assert first.acquire() is True
        assert second.acquire() is False
        assert second.is_locked() is True

    def test_release_frees_lock(self, tmp_path: Path) -> None:
        lock = QueueLock(tmp_path)
        lock.acquire()

        lock.release()

        assert not (tmp_path / LOCK_FILE).exists()
        assert lock.is_locked() is False
        assert QueueLock(tmp_path).acquire() is True

    def test_release_without_marker_is_safe(self, tmp_path: Path) -> None:
        QueueLock(tmp_path).release()

    def test_stale_marker_is_taken_over(self, tmp_path: Path) -> None:
        """A marker older than the timeout no longer holds the lock."""
        holder = QueueLock(tmp_path, timeout=5.0)
        holder.acquire()
        _age_marker(tmp_path / LOCK_FILE, 10)

        contender = QueueLock(tmp_path, timeout=5.0)

        assert contender.is_locked() is False
        assert contender.acquire() is True

    def test_shrinking_timeout_makes_marker_stale(self, tmp_path: Path) -> None:
        """Timeout is mutable; a short timeout lets a waiter break in."""
        holder = QueueLock(tmp_path)
        holder.acquire()

        contender = QueueLock(tmp_path, timeout=0.05)
        time.sleep(0.1)

        assert contender.acquire() is True

    def test_get_holder_pid(self, tmp_path: Path) -> None:
        lock = QueueLock(tmp_path)
        assert lock.get_holder_pid() is None

        lock.acquire()

        assert lock.get_holder_pid() == os.getpid()

    def test_get_holder_pid_with_garbage_marker(self, tmp_path: Path) -> None:
        (tmp_path / LOCK_FILE).write_text("not json")

        assert QueueLock(tmp_path).get_holder_pid() is None

    def test_wait_gives_up_at_deadline(self, tmp_path: Path) -> None:
        QueueLock(tmp_path).acquire()
        lock = QueueLock(tmp_path, timeout=60)

        started = time.monotonic()
        assert lock.wait(deadline=0.05) is False
        assert time.monotonic() - started < 5

    def test_wait_acquires_after_marker_goes_stale(self, tmp_path: Path) -> None:
        QueueLock(tmp_path).acquire()
        lock = QueueLock(tmp_path, timeout=0.1)

        assert lock.wait(deadline=2.0) is True


class TestQueueLockContextManager:
    """Tests for using QueueLock with `with`."""

    def test_context_manager_acquires_and_releases(self, tmp_path: Path) -> None:
        lock = QueueLock(tmp_path)

        with lock:
            assert (tmp_path / LOCK_FILE).exists()

        assert not (tmp_path / LOCK_FILE).exists()

    def test_context_manager_releases_on_exception(self, tmp_path: Path) -> None:
        lock = QueueLock(tmp_path)

        with pytest.raises(RuntimeError):
            with lock:
                raise RuntimeError("boom")

        assert not (tmp_path / LOCK_FILE).exists()

    def test_busy_lock_raises(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """QueueBusyError names the holder PID when the wait times out."""
        QueueLock(tmp_path).acquire()
        lock = QueueLock(tmp_path, timeout=60)
        monkeypatch.setattr(lock, "wait", lambda: False)

        with pytest.raises(QueueBusyError, match=str(os.getpid())):
            with lock:
                pass
