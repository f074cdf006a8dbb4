"""Dependency-aware story scheduling.

StoryGraph wraps the stories of a backlog and answers "what runs next",
enforcing that dependencies reference existing stories and form no cycles.
SKIP and PRIORITY queue commands are applied through it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import NamedTuple

from storyrunner.errors import CircularDependencyError, UnknownDependencyError
from storyrunner.models import ExecutionHistory, UserStory

logger = logging.getLogger(__name__)


@dataclass
class CommandOutcome:
    """Result of applying a SKIP or PRIORITY command.

    Attributes:
        applied: True if the command took effect (or was already in effect)
        reason: Why the command was rejected, or an informational note
    """

    applied: bool
    reason: str | None = None


class StoryCounts(NamedTuple):
    total: int
    completed: int
    skipped: int
    pending: int


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _append_note(story: UserStory, note: str) -> None:
    story.notes = f"{story.notes}\n{note}" if story.notes else note


class StoryGraph:
    """Scheduler view over a list of user stories.

    Stories are mutated in place, so callers that hold the Backlog see
    every change made here.
    """

    def __init__(self, stories: list[UserStory]) -> None:
        self.stories = stories

    def get(self, story_id: str) -> UserStory | None:
        """Look up a story by id (exact match)."""
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def validate(self) -> None:
        """Check dependency integrity.

        Raises:
            UnknownDependencyError: If a dependency names a missing story
            CircularDependencyError: If the dependency graph has a cycle
        """
        ids = {story.id for story in self.stories}
        for story in self.stories:
            for dep in story.dependencies or []:
                if dep not in ids:
                    raise UnknownDependencyError(story.id, dep)

        deps = {story.id: list(story.dependencies or []) for story in self.stories}
        visited: set[str] = set()

        for root in deps:
            if root in visited:
                continue

            # Each frame is (story id, index of the next dependency to visit)
            stack: list[tuple[str, int]] = [(root, 0)]
            on_path: dict[str, int] = {root: 0}

            while stack:
                node, next_index = stack[-1]
                if next_index >= len(deps[node]):
                    stack.pop()
                    del on_path[node]
                    visited.add(node)
                    continue

                stack[-1] = (node, next_index + 1)
                dep = deps[node][next_index]

                if dep in on_path:
                    path = [frame[0] for frame in stack[on_path[dep] :]]
                    raise CircularDependencyError(path + [dep])
                if dep in visited:
                    continue

                on_path[dep] = len(stack)
                stack.append((dep, 0))

    def next(self) -> UserStory | None:
        """Pick the next story to work on.

        Eligible stories are neither passing nor skipped and have every
        dependency passing. The lowest priority number wins; ties go to the
        story that appears first in the backlog.

        Raises:
            UnknownDependencyError, CircularDependencyError: From validate()
        """
        self.validate()

        passing = {story.id for story in self.stories if story.passes}
        best: UserStory | None = None
        for story in self.stories:
            if story.passes or story.skipped:
                continue
            if not all(dep in passing for dep in story.dependencies or []):
                continue
            if best is None or story.priority < best.priority:
                best = story
        return best

    def is_complete(self) -> bool:
        """True when every story passes. Skipped stories do not count."""
        return all(story.passes for story in self.stories)

    def counts(self) -> StoryCounts:
        completed = sum(1 for s in self.stories if s.passes)
        skipped = sum(1 for s in self.stories if s.skipped and not s.passes)
        return StoryCounts(
            total=len(self.stories),
            completed=completed,
            skipped=skipped,
            pending=len(self.stories) - completed - skipped,
        )

    def skip(self, story_id: str, current_story_id: str | None = None) -> CommandOutcome:
        """Mark a story as skipped so it is never selected again.

        Args:
            story_id: Story to skip
            current_story_id: Story currently being executed, if any

        Returns:
            CommandOutcome; skipping an already skipped story succeeds
            without changing anything
        """
        story = self.get(story_id)
        if story is None:
            return CommandOutcome(False, f"Story {story_id} not found")
        if story_id == current_story_id:
            return CommandOutcome(
                False, f"Cannot skip {story_id}: story is currently in progress"
            )
        if story.passes:
            return CommandOutcome(False, f"Cannot skip {story_id}: story already passes")
        if story.skipped:
            return CommandOutcome(True, f"Story {story_id} is already skipped")

        story.skipped = True
        _append_note(story, f"Skipped via queue command at {_now_iso()}")
        logger.info(f"Skipped story {story_id}")
        return CommandOutcome(True)

    def prioritize(
        self, story_id: str, current_story_id: str | None = None
    ) -> CommandOutcome:
        """Move a story to the front of the queue (priority 0).

        Other stories already at priority 0 stay ahead of it when they come
        earlier in the backlog.

        Args:
            story_id: Story to prioritize
            current_story_id: Story currently being executed, if any
        """
        story = self.get(story_id)
        if story is None:
            return CommandOutcome(False, f"Story {story_id} not found")
        if story.passes:
            return CommandOutcome(
                False, f"Cannot prioritize {story_id}: story already passes"
            )
        if story.skipped:
            return CommandOutcome(False, f"Cannot prioritize {story_id}: story is skipped")
        if story_id == current_story_id:
            return CommandOutcome(True, f"Story {story_id} is already in progress")

        previous = story.priority
        story.priority = 0
        _append_note(
            story,
            f"Prioritized via queue command at {_now_iso()} (was priority {previous})",
        )
        logger.info(f"Prioritized story {story_id} (was priority {previous})")
        return CommandOutcome(True)

    def mark_passed(
        self, story_id: str, execution: ExecutionHistory | None = None
    ) -> UserStory:
        """Record that a story's completion signal was observed.

        Raises:
            KeyError: If the story does not exist
        """
        story = self.get(story_id)
        if story is None:
            raise KeyError(story_id)
        story.passes = True
        if execution is not None:
            story.execution = execution
        return story
