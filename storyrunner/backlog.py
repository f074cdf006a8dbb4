"""Backlog persistence for prd.json.

The backlog is reloaded at the start of every iteration so edits made by
the agent (or a human) during a run are picked up. Writes go through a temp
file and a rename, and only touch the run-owned fields of the stories that
changed, so concurrent edits to other fields survive.
"""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from storyrunner.errors import BacklogFormatError
from storyrunner.models import Backlog, UserStory

logger = logging.getLogger(__name__)

PRD_FILE = "prd.json"

# Fields the run loop is allowed to change on a story.
RUN_OWNED_FIELDS = ("passes", "skipped", "priority", "notes", "execution")


def load_backlog(path: Path) -> Backlog:
    """Load and parse prd.json.

    Args:
        path: Path to prd.json

    Returns:
        Parsed Backlog

    Raises:
        BacklogFormatError: If the file is missing, not JSON, or does not
            match the expected schema
    """
    data = _read_json(path)
    try:
        backlog = Backlog.from_dict(data)
    except KeyError as e:
        raise BacklogFormatError(f"{path}: missing required field {e}") from e
    except (AttributeError, TypeError, ValueError) as e:
        raise BacklogFormatError(f"{path}: {e}") from e

    seen: set[str] = set()
    for story in backlog.user_stories:
        if story.id in seen:
            raise BacklogFormatError(f"{path}: duplicate story id {story.id}")
        seen.add(story.id)

    return backlog


def save_backlog(backlog: Backlog, path: Path) -> None:
    """Write the whole backlog to prd.json atomically."""
    _write_json(path, backlog.to_dict())


def write_back(path: Path, stories: list[UserStory]) -> None:
    """Persist run-owned fields of the given stories.

    The file is re-read so that fields the run does not own (title,
    description, acceptance criteria, unknown keys) keep whatever value
    is on disk now.

    Args:
        path: Path to prd.json
        stories: Stories whose run-owned fields should be written

    Raises:
        BacklogFormatError: If the current file cannot be read
    """
    if not stories:
        return

    data = _read_json(path)
    raw_stories = data.get("userStories")
    if not isinstance(raw_stories, list):
        raise BacklogFormatError(f"{path}: userStories must be a list")

    by_id = {s.get("id"): s for s in raw_stories if isinstance(s, dict)}
    for story in stories:
        raw = by_id.get(story.id)
        if raw is None:
            logger.warning(f"Story {story.id} disappeared from {path}; not written")
            continue
        fresh = story.to_dict()
        for key in RUN_OWNED_FIELDS:
            if key in fresh:
                raw[key] = fresh[key]
            else:
                raw.pop(key, None)

    _write_json(path, data)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise BacklogFormatError(f"Backlog file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise BacklogFormatError(f"{path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise BacklogFormatError(f"{path}: expected a JSON object at top level")
    return data


def _write_json(path: Path, data: dict[str, Any]) -> None:
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
