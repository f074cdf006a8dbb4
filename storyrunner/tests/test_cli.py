"""Tests for CLI module.

These tests verify the run, status, convert and queue commands.
"""

import json
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from storyrunner.backlog import PRD_FILE, load_backlog
from storyrunner.command_queue import CommandQueue
from storyrunner.runner import RunResult


def write_prd(feature_dir: Path, stories: list[dict] | None = None) -> Path:
    feature_dir.mkdir(parents=True, exist_ok=True)
    path = feature_dir / PRD_FILE
    path.write_text(
        json.dumps(
            {
                "project": "Tasks",
                "branchName": "feature/tasks",
                "description": "",
                "userStories": stories
                if stories is not None
                else [
                    {"id": "US-001", "title": "Create", "priority": 1, "passes": True},
                    {"id": "US-002", "title": "Complete", "priority": 2},
                    {"id": "US-003", "title": "Filter", "priority": 3, "skipped": True},
                ],
            }
        )
    )
    return path


def make_run_result(status: str = "completed", **kwargs) -> RunResult:
    values = {
        "status": status,
        "iterations": 2,
        "stories_completed": 2,
        "total_cost_usd": 0.4,
        "duration_seconds": 30.0,
        "summary": "Stories: 2/2 complete\nIterations: 2\nDuration: 30s",
    }
    values.update(kwargs)
    return RunResult(**values)  # type: ignore[arg-type]


class TestRunCommand:
    """Test the run CLI command."""

    def test_run_command_exists(self):
        from storyrunner.cli import cli

        result = CliRunner().invoke(cli, ["run", "--help"])

        assert result.exit_code == 0
        assert "--max-iterations" in result.output

    def test_successful_run(self, tmp_path: Path):
        from storyrunner.cli import cli

        write_prd(tmp_path)

        with patch(
            "storyrunner.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())
        ) as mock_telemetry:
            with patch("storyrunner.cli.create_metrics"):
                with patch(
                    "storyrunner.cli.run_backlog",
                    new=AsyncMock(return_value=make_run_result()),
                ) as mock_run:
                    result = CliRunner().invoke(cli, ["run", str(tmp_path), "--no-notify"])

        assert result.exit_code == 0, result.output
        assert "Run COMPLETED" in result.output
        assert "Stories: 2/2 complete" in result.output
        mock_telemetry.assert_called_once()
        assert mock_run.await_args.kwargs["notify"] is False

    def test_options_override_config(self, tmp_path: Path):
        from storyrunner.cli import cli

        write_prd(tmp_path)

        with patch(
            "storyrunner.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())
        ):
            with patch("storyrunner.cli.create_metrics"):
                with patch(
                    "storyrunner.cli.run_backlog",
                    new=AsyncMock(return_value=make_run_result()),
                ) as mock_run:
                    CliRunner().invoke(
                        cli,
                        [
                            "run",
                            str(tmp_path),
                            "-a",
                            "codex",
                            "-m",
                            "gpt-5",
                            "--max-iterations",
                            "4",
                            "--wait-for-reset",
                        ],
                    )

        config = mock_run.await_args.kwargs["config"]
        assert config.preferred_agent == "codex"
        assert config.initial_model == "gpt-5"
        assert config.max_iterations == 4
        assert config.wait_for_reset is True

    def test_blocked_run_exits_2(self, tmp_path: Path):
        from storyrunner.cli import cli

        write_prd(tmp_path)
        blocked = make_run_result(
            "blocked",
            blocked_story_id="US-002",
            blocked_reason="max attempts (3) reached",
        )

        with patch(
            "storyrunner.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())
        ):
            with patch("storyrunner.cli.create_metrics"):
                with patch("storyrunner.cli.run_backlog", new=AsyncMock(return_value=blocked)):
                    result = CliRunner().invoke(cli, ["run", str(tmp_path)])

        assert result.exit_code == 2
        assert "Blocked story: US-002" in result.output
        assert "max attempts (3) reached" in result.output

    def test_storyrunner_error_is_reported(self, tmp_path: Path):
        """A missing prd.json is a one-line error, not a traceback."""
        from storyrunner.cli import cli

        with patch(
            "storyrunner.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())
        ):
            with patch("storyrunner.cli.create_metrics"):
                result = CliRunner().invoke(
                    cli, ["run", str(tmp_path / "missing"), "--no-notify"]
                )

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "not found" in result.output


class TestStatusCommand:
    """Test the status CLI command."""

    def test_shows_counts_and_next_story(self, tmp_path: Path):
        from storyrunner.cli import cli

        write_prd(tmp_path)
        CommandQueue(tmp_path).add("hello")

        result = CliRunner().invoke(cli, ["status", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert "Stories: 1/3 complete, 1 skipped, 1 pending" in result.output
        assert "next" in result.output
        assert "Queue: 1 pending item(s)" in result.output

    def test_invalid_graph(self, tmp_path: Path):
        from storyrunner.cli import cli

        write_prd(tmp_path, [{"id": "US-001", "title": "a", "dependencies": ["US-404"]}])

        result = CliRunner().invoke(cli, ["status", str(tmp_path)])

        assert result.exit_code == 1
        assert "US-404" in result.output


class TestConvertCommand:
    """Test the convert CLI command."""

    MARKDOWN = textwrap.dedent(
        """\
        # PRD: Tasks

        ### US-001: Create tasks
        **Priority:** 1

        - [ ] Has a title

        ### US-002: Complete tasks
        **Dependencies:** US-001

        - [ ] Can be marked done
        """
    )

    def test_converts_markdown(self, tmp_path: Path):
        from storyrunner.cli import cli

        source = tmp_path / "stories.md"
        source.write_text(self.MARKDOWN)
        feature_dir = tmp_path / "feature"

        result = CliRunner().invoke(cli, ["convert", str(source), str(feature_dir)])

        assert result.exit_code == 0, result.output
        backlog = load_backlog(feature_dir / PRD_FILE)
        assert [s.id for s in backlog.user_stories] == ["US-001", "US-002"]
        assert backlog.user_stories[1].dependencies == ["US-001"]
        assert backlog.branch_name == "feature/tasks"

    def test_refuses_to_overwrite(self, tmp_path: Path):
        from storyrunner.cli import cli

        source = tmp_path / "stories.md"
        source.write_text(self.MARKDOWN)
        prd = write_prd(tmp_path / "feature")
        before = prd.read_text()

        result = CliRunner().invoke(cli, ["convert", str(source), str(tmp_path / "feature")])

        assert result.exit_code == 1
        assert "--force" in result.output
        assert prd.read_text() == before

    def test_force_overwrites(self, tmp_path: Path):
        from storyrunner.cli import cli

        source = tmp_path / "stories.md"
        source.write_text(self.MARKDOWN)
        write_prd(tmp_path / "feature")

        result = CliRunner().invoke(
            cli, ["convert", str(source), str(tmp_path / "feature"), "--force"]
        )

        assert result.exit_code == 0, result.output
        assert load_backlog(tmp_path / "feature" / PRD_FILE).project == "Tasks"


class TestQueueCommands:
    """Test the queue command group."""

    def test_add_and_list(self, tmp_path: Path):
        from storyrunner.cli import cli

        runner = CliRunner()
        added = runner.invoke(cli, ["queue", "add", str(tmp_path), "[SKIP", "US-003]"])
        listed = runner.invoke(cli, ["queue", "list", str(tmp_path)])

        assert added.exit_code == 0, added.output
        assert "Queued command SKIP" in added.output
        assert listed.exit_code == 0
        assert "US-003" in listed.output

    def test_add_invalid_command(self, tmp_path: Path):
        from storyrunner.cli import cli

        result = CliRunner().invoke(cli, ["queue", "add", str(tmp_path), "[PRIORITY]"])

        assert result.exit_code == 2
        assert CommandQueue(tmp_path).load().pending == []

    def test_list_empty(self, tmp_path: Path):
        from storyrunner.cli import cli

        result = CliRunner().invoke(cli, ["queue", "list", str(tmp_path)])

        assert result.exit_code == 0
        assert "Queue is empty" in result.output

    def test_list_shows_warnings(self, tmp_path: Path):
        from storyrunner.cli import cli

        (tmp_path / ".queue.txt").write_text("not a line\n")

        result = CliRunner().invoke(cli, ["queue", "list", str(tmp_path)])

        assert "not a line" in result.output

    def test_remove(self, tmp_path: Path):
        from storyrunner.cli import cli

        queue = CommandQueue(tmp_path)
        queue.add("first")
        queue.add("second")

        result = CliRunner().invoke(cli, ["queue", "remove", str(tmp_path), "1"])

        assert result.exit_code == 0
        assert "Removed: first" in result.output
        assert [i.content for i in queue.load().pending] == ["second"]

    def test_remove_out_of_range(self, tmp_path: Path):
        from storyrunner.cli import cli

        result = CliRunner().invoke(cli, ["queue", "remove", str(tmp_path), "3"])

        assert result.exit_code == 1

    def test_clear(self, tmp_path: Path):
        from storyrunner.cli import cli

        queue = CommandQueue(tmp_path)
        queue.add("first")
        queue.add("[PAUSE]")

        result = CliRunner().invoke(cli, ["queue", "clear", str(tmp_path)])

        assert result.exit_code == 0
        assert "Cleared 2 pending item(s)" in result.output
        assert queue.load().pending == []
