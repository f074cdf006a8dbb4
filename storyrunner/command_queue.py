"""File-backed command queue.

Humans (or scripts) append guidance and control commands to the pending
log while a run is in progress; the run loop drains the log once per
iteration and archives what it consumed.

Queue file locations:
    Pending:   <feature_dir>/.queue.txt
    Processed: <feature_dir>/.queue.processed.txt
    Lock:      <feature_dir>/.queue.lock
"""

import logging
import os
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from storyrunner.lock import DEFAULT_LOCK_TIMEOUT_SECONDS, QueueLock
from storyrunner.models import QueueCommand, QueueItem, QueueProcessResult, QueueState
from storyrunner.queue_store import (
    build_item,
    format_line,
    format_timestamp,
    parse_lines,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

QUEUE_FILE = ".queue.txt"
QUEUE_PROCESSED_FILE = ".queue.processed.txt"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CommandQueue:
    """Crash-safe queue shared between the run loop and producers.

    Every mutation happens under QueueLock, so separate processes pointed
    at the same feature directory never interleave writes.
    """

    def __init__(
        self,
        feature_dir: Path,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize queue.

        Args:
            feature_dir: Directory holding the queue files
            lock_timeout: Lock staleness timeout in seconds
            clock: Source of the current time (injectable for tests)
        """
        self.feature_dir = Path(feature_dir)
        self.pending_path = self.feature_dir / QUEUE_FILE
        self.processed_path = self.feature_dir / QUEUE_PROCESSED_FILE
        self.lock = QueueLock(self.feature_dir, lock_timeout)
        self._clock = clock

    def add(self, content: str) -> QueueItem:
        """Append one item to the pending log.

        Args:
            content: Free-text prompt or a bracketed command

        Returns:
            The QueueItem that was written

        Raises:
            ValueError: If content is empty, spans several lines, or is a
                SKIP/PRIORITY command without a story id
            QueueBusyError: If the lock could not be acquired in time
        """
        content = content.strip()
        if not content:
            raise ValueError("Queue content must not be empty")
        if "\n" in content or "\r" in content:
            raise ValueError("Queue content must be a single line")

        self.feature_dir.mkdir(parents=True, exist_ok=True)

        with self.lock:
            added_at = self._next_timestamp()
            item = build_item(content, added_at)
            with open(self.pending_path, "a", encoding="utf-8") as f:
                f.write(format_line(item) + "\n")
                f.flush()
                os.fsync(f.fileno())

        logger.debug(f"Queued {item.kind} {item.id}")
        return item

    def load(self) -> QueueState:
        """Read both logs into a snapshot.

        Missing files are treated as empty logs.
        """
        if not self.feature_dir.exists():
            return QueueState()

        with self.lock:
            processed_text = _read_text(self.processed_path)
            pending_text = _read_text(self.pending_path)

        # Processed first, so ids of archived items stay stable as the
        # pending log changes
        sequences: dict[str, int] = defaultdict(int)
        processed, processed_warnings = parse_lines(processed_text, sequences)
        pending, pending_warnings = parse_lines(pending_text, sequences)

        return QueueState(
            pending=pending,
            processed=processed,
            warnings=pending_warnings + processed_warnings,
        )

    def process(self) -> QueueProcessResult:
        """Move every pending item to the processed log.

        Prompts and commands are returned in log order. Racing callers are
        serialized by the lock, so each item is returned by exactly one call.

        Returns:
            QueueProcessResult with prompts, commands, warnings and the
            archived items
        """
        result = QueueProcessResult()
        if not self.pending_path.exists():
            return result

        with self.lock:
            pending_text = _read_text(self.pending_path)
            if not pending_text.strip():
                return result

            items, warnings = parse_lines(pending_text)
            result.warnings.extend(warnings)
            for warning in warnings:
                logger.warning(warning)

            items = self._drop_already_archived(items)
            processed_at = format_timestamp(self._clock())
            for item in items:
                item.processed_at = processed_at

            # Archive before truncating: an interruption in between leaves
            # items in both logs, which _drop_already_archived resolves
            if items:
                with open(self.processed_path, "a", encoding="utf-8") as f:
                    f.write("".join(format_line(item) + "\n" for item in items))
                    f.flush()
                    os.fsync(f.fileno())
            _atomic_write(self.pending_path, "")

        for item in items:
            if item.kind == "command" and item.command is not None:
                result.commands.append(
                    QueueCommand(type=item.command, story_id=item.target_story_id)
                )
            else:
                result.prompts.append(item.content)
        result.processed = items

        if items:
            logger.info(
                f"Processed {len(items)} queue item(s): "
                f"{len(result.prompts)} prompt(s), {len(result.commands)} command(s)"
            )
        return result

    def remove(self, index: int) -> QueueItem | None:
        """Remove a pending item by 1-based position.

        Malformed lines are left untouched and do not count as positions.

        Returns:
            The removed item, or None if index is out of range
        """
        if index < 1 or not self.pending_path.exists():
            return None

        with self.lock:
            text = _read_text(self.pending_path)
            kept: list[str] = []
            removed: QueueItem | None = None
            position = 0
            sequences: dict[str, int] = defaultdict(int)

            for line in text.splitlines():
                if not line.strip():
                    continue
                items, _ = parse_lines(line, sequences)
                if items:
                    position += 1
                    if position == index:
                        removed = items[0]
                        continue
                kept.append(line)

            if removed is None:
                return None
            _atomic_write(self.pending_path, "".join(f"{line}\n" for line in kept))

        return removed

    def clear(self) -> int:
        """Remove all pending items.

        Returns:
            Number of well-formed items that were cleared
        """
        if not self.pending_path.exists():
            return 0

        with self.lock:
            items, _ = parse_lines(_read_text(self.pending_path))
            if self.pending_path.exists():
                _atomic_write(self.pending_path, "")
        return len(items)

    def _next_timestamp(self) -> str:
        """Timestamp for a new item, strictly after every queued or archived one.

        Keeps ids unique when several producers append within the same
        millisecond, and keeps a new item from sharing an (added_at, content)
        key with an archived one. Must be called with the lock held.
        """
        now = self._clock()
        candidates = [
            _last_timestamp(_read_text(self.pending_path)),
            _last_timestamp(_read_text(self.processed_path)),
        ]
        last = max((c for c in candidates if c is not None), default=None)
        if last is not None and last >= now:
            now = last + timedelta(milliseconds=1)
        return format_timestamp(now)

    def _drop_already_archived(self, items: list[QueueItem]) -> list[QueueItem]:
        """Skip pending items already in the processed log.

        Only happens after an interrupted process() call.
        """
        if not items or not self.processed_path.exists():
            return items

        timestamps = {item.added_at for item in items}
        archived, _ = parse_lines(_read_text(self.processed_path))
        seen = {(a.added_at, a.content) for a in archived if a.added_at in timestamps}
        if not seen:
            return items

        fresh = [item for item in items if (item.added_at, item.content) not in seen]
        logger.warning(
            f"Recovered {len(items) - len(fresh)} queue item(s) left pending by an "
            "interrupted run; they were already processed"
        )
        return fresh


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def _last_timestamp(text: str) -> datetime | None:
    for line in reversed(text.splitlines()):
        if "|" not in line:
            continue
        parsed = parse_timestamp(line.split("|", 1)[0].strip())
        if parsed is not None:
            return parsed
    return None


def _atomic_write(path: Path, text: str) -> None:
    """Replace a file's content via temp file + rename."""
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
