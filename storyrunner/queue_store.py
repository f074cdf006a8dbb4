"""Queue line format parsing and formatting.

Queue files are line oriented. Each line is an RFC3339 timestamp, a pipe,
and the content:

    2026-01-13T10:30:00.000Z | Please use the existing date helpers
    2026-01-13T10:31:12.500Z | [SKIP US-003]

Lines in the processed log carry an extra ``| processedAt:<timestamp>``
suffix. This module is pure text <-> QueueItem mapping; file access and
locking live in command_queue.py.
"""

import re
from collections import defaultdict
from datetime import datetime, timezone

from storyrunner.models import QueueCommand, QueueCommandType, QueueItem

VALID_COMMANDS: tuple[QueueCommandType, ...] = ("PAUSE", "ABORT", "SKIP", "PRIORITY")

# Commands that are meaningless without a target story
COMMANDS_WITH_STORY_ID: tuple[QueueCommandType, ...] = ("SKIP", "PRIORITY")

COMMAND_PATTERN = re.compile(r"^\[\s*([A-Za-z]+)(?:\s+([^\]]*?))?\s*\]$")
PROCESSED_AT_PATTERN = re.compile(r"\s*\|\s*processedAt:(\S+)$")


class InvalidCommandError(ValueError):
    """A known command keyword was used without its required argument."""

    pass


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as an RFC3339 UTC timestamp with milliseconds."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime | None:
    """Parse an RFC3339 timestamp.

    Returns:
        Timezone-aware datetime, or None if the text is not a valid
        timestamp with an explicit offset
    """
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def make_item_id(added_at: str, sequence: int = 0) -> str:
    """Derive a queue item id from its timestamp and per-timestamp sequence."""
    return f"{re.sub(r'[:.]', '-', added_at)}-{sequence}"


def parse_command(content: str) -> QueueCommand | None:
    """Parse bracketed command content.

    The keyword is matched case-insensitively; the story id keeps its case
    and has internal whitespace collapsed.

    Args:
        content: Queue content such as "[PAUSE]" or "[skip US-003]"

    Returns:
        QueueCommand if content is a recognized command, None if it is not
        a command at all (plain text or an unknown keyword)

    Raises:
        InvalidCommandError: If SKIP or PRIORITY has no story id
    """
    match = COMMAND_PATTERN.match(content.strip())
    if not match:
        return None

    keyword = match.group(1).upper()
    if keyword not in VALID_COMMANDS:
        return None

    arg = " ".join((match.group(2) or "").split())

    if keyword in COMMANDS_WITH_STORY_ID:
        if not arg:
            raise InvalidCommandError(f"[{keyword}] requires a story id")
        return QueueCommand(type=keyword, story_id=arg)  # type: ignore[arg-type]

    return QueueCommand(type=keyword)  # type: ignore[arg-type]


def build_item(
    content: str,
    added_at: str,
    sequence: int = 0,
    processed_at: str | None = None,
) -> QueueItem:
    """Create a QueueItem, classifying content as prompt or command.

    Raises:
        InvalidCommandError: If content is a command missing its argument
    """
    command = parse_command(content)
    if command is None:
        return QueueItem(
            id=make_item_id(added_at, sequence),
            content=content,
            kind="prompt",
            added_at=added_at,
            processed_at=processed_at,
        )
    return QueueItem(
        id=make_item_id(added_at, sequence),
        content=content,
        kind="command",
        added_at=added_at,
        command=command.type,
        target_story_id=command.story_id,
        processed_at=processed_at,
    )


def parse_line(line: str, sequence: int = 0) -> tuple[QueueItem | None, str | None]:
    """Parse a single queue line.

    Only the first pipe separates the timestamp from the content, so
    content may itself contain pipes.

    Args:
        line: Raw line from a queue file
        sequence: Per-timestamp sequence number used for the item id

    Returns:
        Tuple of (item, warning). Exactly one is set for non-blank lines;
        both are None for blank lines.
    """
    stripped = line.strip()
    if not stripped:
        return None, None

    if "|" not in stripped:
        return None, f"Skipped malformed line (no separator): {stripped}"

    raw_timestamp, raw_content = stripped.split("|", 1)
    added_at = raw_timestamp.strip()
    if parse_timestamp(added_at) is None:
        return None, f"Skipped malformed line (bad timestamp): {stripped}"

    content = raw_content.strip()
    processed_at: str | None = None
    processed_match = PROCESSED_AT_PATTERN.search(content)
    if processed_match and parse_timestamp(processed_match.group(1)) is not None:
        processed_at = processed_match.group(1)
        content = content[: processed_match.start()].strip()

    if not content:
        return None, f"Skipped malformed line (empty content): {stripped}"

    try:
        item = build_item(content, added_at, sequence, processed_at)
    except InvalidCommandError as e:
        return None, f"Skipped invalid command ({e}): {stripped}"

    return item, None


def parse_lines(
    text: str, sequences: dict[str, int] | None = None
) -> tuple[list[QueueItem], list[str]]:
    """Parse a whole queue file.

    Never raises: malformed lines become warnings and parsing continues.

    Args:
        text: File content
        sequences: Per-timestamp counters to continue from, so ids stay
            unique across several files parsed into one snapshot

    Returns:
        Tuple of (items, warnings), both in file order
    """
    items: list[QueueItem] = []
    warnings: list[str] = []
    if sequences is None:
        sequences = defaultdict(int)

    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue

        timestamp = stripped.split("|", 1)[0].strip()
        item, warning = parse_line(stripped, sequences.get(timestamp, 0))
        if item is not None:
            sequences[timestamp] = sequences.get(timestamp, 0) + 1
            items.append(item)
        elif warning is not None:
            warnings.append(warning)

    return items, warnings


def format_line(item: QueueItem) -> str:
    """Format a QueueItem back into its queue line (without newline)."""
    line = f"{item.added_at} | {item.content}"
    if item.processed_at is not None:
        line += f" | processedAt:{item.processed_at}"
    return line
