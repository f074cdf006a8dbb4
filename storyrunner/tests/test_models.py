"""Tests for storyrunner data models.

These tests verify the prd.json mapping of stories and execution history.
"""

import json
from dataclasses import is_dataclass

import pytest


class TestUserStoryModel:
    """Test the UserStory model."""

    def test_user_story_is_dataclass(self):
        from storyrunner.models import UserStory

        assert is_dataclass(UserStory)

    def test_from_dict_defaults(self):
        """Only id and title are required."""
        from storyrunner.models import UserStory

        story = UserStory.from_dict({"id": "US-001", "title": "Create"})

        assert story.priority == 0
        assert story.passes is False
        assert story.skipped is False
        assert story.dependencies is None
        assert story.acceptance_criteria == []
        assert story.execution is None

    def test_to_dict_uses_camel_case(self):
        from storyrunner.models import UserStory

        story = UserStory(
            id="US-001",
            title="Create",
            acceptance_criteria=["Has a title"],
            dependencies=["US-000"],
        )

        data = story.to_dict()

        assert data["acceptanceCriteria"] == ["Has a title"]
        assert data["dependencies"] == ["US-000"]
        assert "skipped" not in data
        assert "execution" not in data

    def test_unknown_keys_survive(self):
        """Keys this tool does not know about are written back unchanged."""
        from storyrunner.models import UserStory

        raw = {"id": "US-001", "title": "Create", "estimate": "S", "owner": {"name": "kim"}}

        data = UserStory.from_dict(raw).to_dict()

        assert data["estimate"] == "S"
        assert data["owner"] == {"name": "kim"}
        assert json.dumps(data)

    def test_invalid_priority(self):
        from storyrunner.models import UserStory

        with pytest.raises(ValueError, match="invalid priority"):
            UserStory.from_dict({"id": "US-001", "title": "x", "priority": -2})


class TestExecutionHistoryModel:
    """Test ExecutionHistory and EscalationAttempt."""

    def test_to_dict_keys(self):
        from storyrunner.models import EscalationAttempt, ExecutionHistory

        history = ExecutionHistory(
            attempts=1,
            escalations=[
                EscalationAttempt(
                    attempt=1,
                    agent="codex",
                    model="gpt-5",
                    result="failure",
                    cost=0.2,
                    duration_ms=1500,
                    error="tests failed",
                )
            ],
            actual_cost=0.2,
            actual_agent="codex",
            actual_model="gpt-5",
        )

        data = history.to_dict()

        assert data == {
            "attempts": 1,
            "escalations": [
                {
                    "attempt": 1,
                    "harness": "codex",
                    "model": "gpt-5",
                    "result": "failure",
                    "cost": 0.2,
                    "duration": 1500,
                    "error": "tests failed",
                }
            ],
            "actualCost": 0.2,
            "actualHarness": "codex",
            "actualModel": "gpt-5",
        }
        assert ExecutionHistory.from_dict(data) == history

    def test_error_is_optional(self):
        from storyrunner.models import EscalationAttempt

        attempt = EscalationAttempt(1, "claude", "opus", "success")

        assert "error" not in attempt.to_dict()


class TestBacklogModel:
    """Test the Backlog model."""

    def test_from_dict(self):
        from storyrunner.models import Backlog

        backlog = Backlog.from_dict(
            {
                "project": "Tasks",
                "userStories": [{"id": "US-001", "title": "Create"}],
            }
        )

        assert backlog.branch_name == ""
        assert backlog.description == ""
        assert backlog.user_stories[0].id == "US-001"

    def test_missing_stories(self):
        from storyrunner.models import Backlog

        with pytest.raises(KeyError):
            Backlog.from_dict({"project": "Tasks"})
