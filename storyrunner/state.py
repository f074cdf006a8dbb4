"""Run state and progress log persistence.

RunState is a JSON snapshot of the current run, saved after every
iteration so `storyrunner status` (or a human) can see where a run is.
The progress log is an append-only markdown file in the feature
directory that records story completions and queue events.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path


def state_file_name(project: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", project).strip("-") or "project"
    return f"{slug}_state.json"


@dataclass
class RunState:
    """Persistent snapshot of a run.

    Attributes:
        project: Project name from prd.json
        started_at: When the run started
        status: "running" until the run stops, then the RunResult status
        iterations: Iterations started so far
        current_story_id: Story being worked on, if any
        completed_stories: Story ids completed during this run
        skipped_stories: Story ids skipped during this run
        total_cost_usd: Cost of all attempts so far
        last_updated: When the snapshot was written
    """

    project: str
    started_at: datetime
    status: str = "running"
    iterations: int = 0
    current_story_id: str | None = None
    completed_stories: list[str] = field(default_factory=list)
    skipped_stories: list[str] = field(default_factory=list)
    total_cost_usd: float = 0.0
    last_updated: datetime | None = None

    def save(self, state_dir: Path) -> None:
        """Persist state to JSON file.

        Creates state directory if it doesn't exist.

        Args:
            state_dir: Directory to save state file in
        """
        state_dir.mkdir(parents=True, exist_ok=True)
        path = state_dir / state_file_name(self.project)

        self.last_updated = datetime.now(timezone.utc)
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["last_updated"] = self.last_updated.isoformat()

        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, state_dir: Path, project: str) -> "RunState | None":
        """Load state from JSON file if it exists.

        Args:
            state_dir: Directory containing state files
            project: Project name to load state for

        Returns:
            RunState if file exists, None otherwise
        """
        path = state_dir / state_file_name(project)
        if not path.exists():
            return None

        with open(path) as f:
            data = json.load(f)

        data["started_at"] = datetime.fromisoformat(data["started_at"])
        if data.get("last_updated"):
            data["last_updated"] = datetime.fromisoformat(data["last_updated"])
        return cls(**data)

    def mark_story_completed(self, story_id: str) -> None:
        self.completed_stories.append(story_id)
        self.current_story_id = None


def format_entry(title: str, lines: list[str], when: datetime | None = None) -> str:
    """Format a progress log entry.

    Example:
        ## Skip Event - 2026-01-13 10:30:00
        - Story: US-003
    """
    when = when or datetime.now()
    body = "\n".join(f"- {line}" for line in lines)
    return f"## {title} - {when.strftime('%Y-%m-%d %H:%M:%S')}\n{body}\n"


def append_progress(path: Path, entry: str, project: str = "") -> None:
    """Append an entry to the progress log, creating it with a header if needed."""
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        header = (
            f"# Progress Log: {project or path.parent.name}\n"
            f"Started: {datetime.now().isoformat(timespec='seconds')}\n"
        )
        path.write_text(header, encoding="utf-8")

    with open(path, "a", encoding="utf-8") as f:
        f.write(f"\n{entry}")
