"""Tests for prd.json persistence."""

import json
from pathlib import Path
from typing import Any

import pytest

from storyrunner.backlog import PRD_FILE, load_backlog, save_backlog, write_back
from storyrunner.errors import BacklogFormatError
from storyrunner.models import EscalationAttempt, ExecutionHistory


def _prd(stories: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {
        "project": "Task Manager",
        "branchName": "feature/task-manager",
        "description": "Tasks",
        "userStories": stories
        if stories is not None
        else [
            {
                "id": "US-001",
                "title": "Create tasks",
                "description": "As a user...",
                "acceptanceCriteria": ["Task has a title"],
                "priority": 1,
                "passes": False,
                "notes": "",
                "estimate": "S",
            },
            {
                "id": "US-002",
                "title": "Complete tasks",
                "priority": 2,
                "passes": False,
                "dependencies": ["US-001"],
            },
        ],
    }


@pytest.fixture
def prd_path(tmp_path: Path) -> Path:
    path = tmp_path / PRD_FILE
    path.write_text(json.dumps(_prd(), indent=2))
    return path


class TestLoadBacklog:
    """Tests for load_backlog()."""

    def test_load(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)

        assert backlog.project == "Task Manager"
        assert backlog.branch_name == "feature/task-manager"
        assert [s.id for s in backlog.user_stories] == ["US-001", "US-002"]
        assert backlog.user_stories[1].dependencies == ["US-001"]
        assert backlog.user_stories[0].dependencies is None

    def test_unknown_story_keys_are_kept(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)

        assert backlog.user_stories[0].extra == {"estimate": "S"}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(BacklogFormatError, match="not found"):
            load_backlog(tmp_path / PRD_FILE)

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / PRD_FILE
        path.write_text("{not json")

        with pytest.raises(BacklogFormatError, match="not valid JSON"):
            load_backlog(path)

    def test_top_level_must_be_object(self, tmp_path: Path) -> None:
        path = tmp_path / PRD_FILE
        path.write_text("[]")

        with pytest.raises(BacklogFormatError):
            load_backlog(path)

    def test_missing_required_field(self, tmp_path: Path) -> None:
        path = tmp_path / PRD_FILE
        path.write_text(json.dumps(_prd([{"id": "US-001"}])))

        with pytest.raises(BacklogFormatError, match="missing required field"):
            load_backlog(path)

    @pytest.mark.parametrize("priority", [-1, "high", 1.5, True])
    def test_invalid_priority(self, tmp_path: Path, priority: Any) -> None:
        path = tmp_path / PRD_FILE
        path.write_text(
            json.dumps(_prd([{"id": "US-001", "title": "x", "priority": priority}]))
        )

        with pytest.raises(BacklogFormatError, match="invalid priority"):
            load_backlog(path)

    def test_stories_must_be_objects(self, tmp_path: Path) -> None:
        path = tmp_path / PRD_FILE
        path.write_text(json.dumps(_prd(["US-001"])))  # type: ignore[list-item]

        with pytest.raises(BacklogFormatError):
            load_backlog(path)

    def test_duplicate_ids(self, tmp_path: Path) -> None:
        path = tmp_path / PRD_FILE
        path.write_text(
            json.dumps(
                _prd([{"id": "US-001", "title": "a"}, {"id": "US-001", "title": "b"}])
            )
        )

        with pytest.raises(BacklogFormatError, match="duplicate story id US-001"):
            load_backlog(path)


class TestSaveBacklog:
    """Tests for save_backlog()."""

    def test_save_then_load(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)
        backlog.user_stories[0].passes = True

        save_backlog(backlog, prd_path)
        reloaded = load_backlog(prd_path)

        assert reloaded.user_stories[0].passes is True
        assert reloaded.user_stories[0].extra == {"estimate": "S"}
        assert prd_path.read_text().endswith("}\n")

    def test_no_temp_files_left(self, prd_path: Path) -> None:
        save_backlog(load_backlog(prd_path), prd_path)

        assert [p.name for p in prd_path.parent.iterdir()] == [PRD_FILE]


class TestWriteBack:
    """Tests for write_back()."""

    def test_writes_run_owned_fields_only(self, prd_path: Path) -> None:
        """A concurrent title edit on disk survives a write-back."""
        backlog = load_backlog(prd_path)
        story = backlog.user_stories[0]
        story.passes = True
        story.title = "Stale in-memory title"

        raw = json.loads(prd_path.read_text())
        raw["userStories"][0]["title"] = "Edited by a human"
        prd_path.write_text(json.dumps(raw))

        write_back(prd_path, [story])

        saved = json.loads(prd_path.read_text())["userStories"][0]
        assert saved["passes"] is True
        assert saved["title"] == "Edited by a human"
        assert saved["estimate"] == "S"

    def test_untouched_stories_keep_disk_values(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)
        backlog.user_stories[0].passes = True

        raw = json.loads(prd_path.read_text())
        raw["userStories"][1]["notes"] = "human note"
        prd_path.write_text(json.dumps(raw))

        write_back(prd_path, [backlog.user_stories[0]])

        saved = json.loads(prd_path.read_text())["userStories"][1]
        assert saved["notes"] == "human note"

    def test_writes_execution_history(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)
        story = backlog.user_stories[0]
        story.execution = ExecutionHistory(
            attempts=2,
            escalations=[
                EscalationAttempt(1, "claude", "haiku", "failure", 0.1, 1000),
                EscalationAttempt(2, "claude", "sonnet", "success", 0.4, 2000),
            ],
            actual_cost=0.5,
            actual_agent="claude",
            actual_model="sonnet",
        )

        write_back(prd_path, [story])

        execution = json.loads(prd_path.read_text())["userStories"][0]["execution"]
        assert execution["attempts"] == 2
        assert execution["actualCost"] == 0.5
        assert execution["actualHarness"] == "claude"
        assert execution["escalations"][1]["harness"] == "claude"
        assert load_backlog(prd_path).user_stories[0].execution == story.execution

    def test_skipped_flag_is_written(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)
        story = backlog.user_stories[1]
        story.skipped = True

        write_back(prd_path, [story])

        assert load_backlog(prd_path).user_stories[1].skipped is True

    def test_vanished_story_is_ignored(self, prd_path: Path) -> None:
        backlog = load_backlog(prd_path)
        story = backlog.user_stories[1]
        story.passes = True

        raw = json.loads(prd_path.read_text())
        raw["userStories"] = raw["userStories"][:1]
        prd_path.write_text(json.dumps(raw))

        write_back(prd_path, [story])

        assert len(load_backlog(prd_path).user_stories) == 1

    def test_nothing_to_write(self, prd_path: Path) -> None:
        before = prd_path.read_text()

        write_back(prd_path, [])

        assert prd_path.read_text() == before
