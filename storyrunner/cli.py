"""CLI for storyrunner.

Provides commands to run a backlog, inspect its status, convert a
markdown stories document to prd.json, and manage the command queue.
"""

import asyncio
import functools
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from storyrunner.backlog import PRD_FILE, load_backlog, save_backlog
from storyrunner.backlog_parser import parse_backlog_file
from storyrunner.cascade import CascadeResult
from storyrunner.command_queue import CommandQueue
from storyrunner.config import RunnerConfig
from storyrunner.errors import StoryRunnerError
from storyrunner.models import UserStory
from storyrunner.runner import RunResult, run_backlog
from storyrunner.state import RunState
from storyrunner.story_graph import StoryGraph
from storyrunner.telemetry import create_metrics, setup_telemetry

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "no_eligible": "yellow",
    "aborted": "yellow",
    "blocked": "red",
    "rate_limited": "yellow",
    "max_iterations": "yellow",
}

feature_dir_argument = click.argument(
    "feature_dir", type=click.Path(file_okay=False, path_type=Path)
)


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Report StoryRunnerError as a one-line message and exit 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except StoryRunnerError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            sys.exit(1)

    return wrapper


@click.group()
@click.version_option(package_name="storyrunner")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """storyrunner - Unattended coding-agent runs over a story backlog."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@feature_dir_argument
@click.option("-a", "--agent", default=None, help="Preferred agent (e.g. claude, codex)")
@click.option("-m", "--model", default=None, help="Initial model for each story")
@click.option("--max-iterations", type=int, default=None, help="Iteration limit")
@click.option(
    "--wait-for-reset/--no-wait-for-reset",
    default=None,
    help="Sleep until rate limits reset instead of stopping",
)
@click.option(
    "--workdir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory agents run in (default: current directory)",
)
@click.option("--notify/--no-notify", default=True, help="Send macOS notifications")
@handle_errors
def run(
    feature_dir: Path,
    agent: str | None,
    model: str | None,
    max_iterations: int | None,
    wait_for_reset: bool | None,
    workdir: Path | None,
    notify: bool,
) -> None:
    """Run stories from FEATURE_DIR/prd.json until done or blocked."""
    config = RunnerConfig.load(feature_dir)
    overrides: dict[str, Any] = {}
    if agent:
        overrides["preferred_agent"] = agent
    if model:
        overrides["initial_model"] = model
    if max_iterations is not None:
        overrides["max_iterations"] = max_iterations
    if wait_for_reset is not None:
        overrides["wait_for_reset"] = wait_for_reset
    if overrides:
        config = replace(config, **overrides)

    result = asyncio.run(_run(feature_dir, config, workdir, notify))
    _print_run_summary(result)
    if result.status in ("blocked", "rate_limited"):
        sys.exit(2)


async def _run(
    feature_dir: Path, config: RunnerConfig, workdir: Path | None, notify: bool
) -> RunResult:
    """Internal async implementation of a run."""
    from storyrunner.agents import SubprocessExecutor

    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    def on_story_complete(story: UserStory, cascade: CascadeResult) -> None:
        if cascade.output.strip():
            console.print(f"\n{escape(cascade.output.strip()[-2000:])}\n")

    console.print(f"[bold]Starting run:[/bold] {feature_dir}")
    return await run_backlog(
        feature_dir,
        config=config,
        executor=SubprocessExecutor(workdir or Path.cwd(), config.agent_timeout_seconds),
        tracer=tracer,
        on_story_complete=on_story_complete,
        notify=notify,
    )


def _print_run_summary(result: RunResult) -> None:
    color = STATUS_COLORS.get(result.status, "white")
    console.print(f"\n[bold {color}]Run {result.status.upper()}[/bold {color}]")
    for line in result.summary.splitlines():
        console.print(f"  {line}")
    if result.blocked_story_id:
        console.print(f"  [red]Blocked story: {result.blocked_story_id}[/red]")
    if result.blocked_reason:
        console.print(f"  [red]Reason: {escape(result.blocked_reason)}[/red]")
    if result.earliest_reset:
        console.print(
            f"  [yellow]Earliest reset: {result.earliest_reset.isoformat()}[/yellow]"
        )


@cli.command()
@feature_dir_argument
@handle_errors
def status(feature_dir: Path) -> None:
    """Show story status for FEATURE_DIR."""
    backlog = load_backlog(feature_dir / PRD_FILE)
    graph = StoryGraph(backlog.user_stories)
    graph.validate()
    upcoming = graph.next()

    table = Table(title=escape(f"{backlog.project} ({backlog.branch_name})"))
    table.add_column("Story")
    table.add_column("Title")
    table.add_column("Priority", justify="right")
    table.add_column("Depends on")
    table.add_column("Status")
    table.add_column("Cost", justify="right")

    for story in backlog.user_stories:
        if story.passes:
            label = "[green]done[/green]"
        elif story.skipped:
            label = "[dim]skipped[/dim]"
        elif upcoming is not None and story.id == upcoming.id:
            label = "[cyan]next[/cyan]"
        else:
            label = "pending"
        cost = f"${story.execution.actual_cost:.2f}" if story.execution else "-"
        table.add_row(
            story.id,
            escape(story.title),
            str(story.priority),
            ", ".join(story.dependencies or []) or "-",
            label,
            cost,
        )

    console.print(table)
    counts = graph.counts()
    console.print(
        f"Stories: {counts.completed}/{counts.total} complete, "
        f"{counts.skipped} skipped, {counts.pending} pending"
    )

    pending = CommandQueue(feature_dir).load().pending
    if pending:
        console.print(f"Queue: {len(pending)} pending item(s)")

    config = RunnerConfig.load(feature_dir)
    state = RunState.load(config.resolve_state_dir(feature_dir), backlog.project)
    if state is not None:
        console.print(
            f"Last run: {state.status}, {state.iterations} iteration(s), "
            f"${state.total_cost_usd:.2f} (started {state.started_at:%Y-%m-%d %H:%M})"
        )


@cli.command()
@click.argument(
    "markdown_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@feature_dir_argument
@click.option("--force", is_flag=True, help="Overwrite an existing prd.json")
@handle_errors
def convert(markdown_file: Path, feature_dir: Path, force: bool) -> None:
    """Convert a stories markdown file into FEATURE_DIR/prd.json."""
    target = feature_dir / PRD_FILE
    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists (use --force to overwrite)")

    backlog = parse_backlog_file(markdown_file)
    StoryGraph(backlog.user_stories).validate()

    feature_dir.mkdir(parents=True, exist_ok=True)
    save_backlog(backlog, target)
    console.print(
        f"[green]Wrote {target}[/green] ({len(backlog.user_stories)} stories, "
        f"branch {backlog.branch_name})"
    )


@cli.group()
def queue() -> None:
    """Manage the command queue of a running feature."""
    pass


@queue.command("add")
@feature_dir_argument
@click.argument("content", nargs=-1, required=True)
@handle_errors
def queue_add(feature_dir: Path, content: tuple[str, ...]) -> None:
    """Queue guidance text or a command such as "[SKIP US-003]"."""
    try:
        item = CommandQueue(feature_dir).add(" ".join(content))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="CONTENT") from e
    kind = f"command {item.command}" if item.kind == "command" else "prompt"
    console.print(f"Queued {kind}: {escape(item.content)}")


@queue.command("list")
@feature_dir_argument
@click.option("--processed", is_flag=True, help="Also show processed items")
@handle_errors
def queue_list(feature_dir: Path, processed: bool) -> None:
    """List pending queue items."""
    state = CommandQueue(feature_dir).load()

    for warning in state.warnings:
        console.print(f"[yellow]{escape(warning)}[/yellow]")

    if not state.pending and not (processed and state.processed):
        console.print("[dim]Queue is empty[/dim]")
        return

    table = Table(title="Queue")
    table.add_column("#", justify="right")
    table.add_column("Added")
    table.add_column("Type")
    table.add_column("Content")
    table.add_column("Processed")

    for index, item in enumerate(state.pending, start=1):
        table.add_row(str(index), item.added_at, item.kind, escape(item.content), "-")
    if processed:
        for item in state.processed:
            table.add_row(
                "", item.added_at, item.kind, escape(item.content), item.processed_at or ""
            )

    console.print(table)


@queue.command("remove")
@feature_dir_argument
@click.argument("index", type=int)
@handle_errors
def queue_remove(feature_dir: Path, index: int) -> None:
    """Remove pending item INDEX (as shown by `queue list`)."""
    removed = CommandQueue(feature_dir).remove(index)
    if removed is None:
        console.print(f"[red]No pending item at position {index}[/red]")
        sys.exit(1)
    console.print(f"Removed: {escape(removed.content)}")


@queue.command("clear")
@feature_dir_argument
@handle_errors
def queue_clear(feature_dir: Path) -> None:
    """Remove every pending item."""
    count = CommandQueue(feature_dir).clear()
    console.print(f"Cleared {count} pending item(s)")


def main() -> None:
    """Main entry point for the storyrunner CLI."""
    cli()


if __name__ == "__main__":
    main()
