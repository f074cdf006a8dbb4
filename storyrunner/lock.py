"""Lock manager for queue mutation.

Provides a sentinel-file lock that serializes queue writes across
processes. The lock is held while the marker file exists and is younger
than the configured timeout; older markers are treated as abandoned and
may be taken over.
"""

import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from storyrunner.errors import QueueBusyError

logger = logging.getLogger(__name__)

LOCK_FILE = ".queue.lock"

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


class QueueLock:
    """Sentinel-file lock guarding the queue logs.

    Several processes (the run loop, the `queue add` CLI, a script) can
    share one feature directory. All of them go through this lock before
    touching the queue files.

    Usage:
        lock = QueueLock(feature_dir)
        with lock:
            # Mutate queue files - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock marker file
        timeout: Age in seconds after which a marker is considered stale.
            Mutable at runtime.
    """

    def __init__(
        self, feature_dir: Path, timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    ) -> None:
        """Initialize lock manager.

        Args:
            feature_dir: Directory holding the queue files
            timeout: Staleness timeout in seconds
        """
        self.lock_path = Path(feature_dir) / LOCK_FILE
        self.timeout = timeout

    def acquire(self) -> bool:
        """Try to acquire the lock once.

        Stale markers (older than timeout) are removed before acquiring.

        Returns:
            True if lock acquired, False if held by another holder
        """
        age = self._marker_age()
        if age is not None:
            if age < self.timeout:
                return False
            if not self._break_stale_marker():
                return False

        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w") as f:
            json.dump(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "pid": os.getpid(),
                },
                f,
            )
        return True

    def release(self) -> None:
        """Release the lock.

        Safe to call even if lock doesn't exist.
        """
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def is_locked(self) -> bool:
        """Check whether a live (non-stale) lock marker exists."""
        age = self._marker_age()
        return age is not None and age < self.timeout

    def wait(self, deadline: float | None = None, poll_interval: float = 0.01) -> bool:
        """Poll acquire() until it succeeds or the deadline passes.

        Args:
            deadline: Maximum seconds to wait. Defaults to one timeout plus
                a second, by which point any holder's marker has gone stale.
            poll_interval: Seconds between attempts

        Returns:
            True if lock acquired, False if the deadline passed
        """
        if deadline is None:
            deadline = self.timeout + 1.0
        give_up_at = time.monotonic() + deadline

        while True:
            if self.acquire():
                return True
            if time.monotonic() >= give_up_at:
                return False
            time.sleep(poll_interval)

    def get_holder_pid(self) -> int | None:
        """Get PID recorded in the lock marker.

        Returns:
            PID as int if the marker exists and contains one, None otherwise
        """
        try:
            data = json.loads(self.lock_path.read_text())
            return int(data["pid"])
        except (FileNotFoundError, ValueError, KeyError, TypeError):
            return None

    def _marker_age(self) -> float | None:
        """Seconds since the marker was written, or None if absent."""
        try:
            mtime = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, time.time() - mtime)

    def _break_stale_marker(self) -> bool:
        """Remove a stale marker without clobbering a fresh one.

        The marker is first renamed aside, so only one contender wins. If the
        renamed marker turns out to be fresh (another process replaced the
        stale one in between), it is linked back into place.

        Returns:
            True if the path is now free, False if a live holder exists
        """
        aside = self.lock_path.with_name(f"{self.lock_path.name}.{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True

        try:
            age = time.time() - aside.stat().st_mtime
            if age < self.timeout:
                try:
                    os.link(aside, self.lock_path)
                except FileExistsError:
                    pass
                return False
            logger.warning(
                f"Removed stale queue lock {self.lock_path} (age {age:.1f}s)"
            )
            return True
        finally:
            aside.unlink(missing_ok=True)

    def __enter__(self) -> "QueueLock":
        """Acquire lock on context entry, waiting up to the default deadline.

        Raises:
            QueueBusyError: If the lock could not be acquired in time
        """
        if not self.wait():
            holder_pid = self.get_holder_pid()
            raise QueueBusyError(
                f"Queue is locked by another process (PID: {holder_pid}); "
                f"remove {self.lock_path} if that process is gone"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()
