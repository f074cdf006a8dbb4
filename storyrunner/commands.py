"""Queue control-command handling.

Applies PAUSE, ABORT, SKIP and PRIORITY commands drained from the queue,
in log order, and records each one in the progress log.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from rich.console import Console
from rich.markup import escape

from storyrunner import telemetry
from storyrunner.models import QueueCommand
from storyrunner.state import append_progress, format_entry
from storyrunner.story_graph import CommandOutcome, StoryGraph

logger = logging.getLogger(__name__)

console = Console()

ResumeWaiter = Callable[[], Awaitable[None]]


async def wait_for_enter() -> None:
    """Block until the user presses Enter on the console."""
    await asyncio.to_thread(
        console.input, "[yellow]Paused by user.[/yellow] Press Enter to continue..."
    )


@dataclass
class CommandBatchResult:
    """What applying one batch of queue commands did.

    Attributes:
        abort: An ABORT was seen; commands after it were not applied
        paused: A PAUSE was seen and the run has since been resumed
        graph_changed: A SKIP or PRIORITY changed a story
        changed_story_ids: Stories whose fields were changed
        outcomes: Each SKIP/PRIORITY command with its outcome, in order
    """

    abort: bool = False
    paused: bool = False
    graph_changed: bool = False
    changed_story_ids: list[str] = field(default_factory=list)
    outcomes: list[tuple[QueueCommand, CommandOutcome]] = field(default_factory=list)


async def apply_commands(
    commands: list[QueueCommand],
    graph: StoryGraph,
    current_story_id: str | None,
    progress_path: Path,
    resume_waiter: ResumeWaiter = wait_for_enter,
) -> CommandBatchResult:
    """Apply queue commands in log order.

    Args:
        commands: Commands returned by CommandQueue.process()
        graph: Story graph to apply SKIP/PRIORITY to (mutated)
        current_story_id: Story about to run; SKIP of it is rejected
        progress_path: Progress log to record events in
        resume_waiter: Awaited on PAUSE until the run may continue

    Returns:
        CommandBatchResult
    """
    result = CommandBatchResult()

    for command in commands:
        if command.type == "ABORT":
            telemetry.record_queue_command("ABORT", True)
            append_progress(
                progress_path, format_entry("Abort Event", ["Run aborted via [ABORT] command"])
            )
            result.abort = True
            break

        if command.type == "PAUSE":
            telemetry.record_queue_command("PAUSE", True)
            append_progress(
                progress_path, format_entry("Pause Event", ["Run paused via [PAUSE] command"])
            )
            logger.info("Run paused by queue command")
            await resume_waiter()
            logger.info("Run resumed")
            console.print("[green]Resumed[/green]")
            result.paused = True
            continue

        story_id = command.story_id or ""
        if command.type == "SKIP":
            outcome = graph.skip(story_id, current_story_id)
            _report(command, outcome, "Skip", progress_path)
        else:
            outcome = graph.prioritize(story_id, current_story_id)
            _report(command, outcome, "Priority", progress_path)

        result.outcomes.append((command, outcome))
        if outcome.applied and outcome.reason is None:
            result.graph_changed = True
            result.changed_story_ids.append(story_id)

    return result


def _report(
    command: QueueCommand, outcome: CommandOutcome, label: str, progress_path: Path
) -> None:
    telemetry.record_queue_command(command.type, outcome.applied)
    story_id = command.story_id

    if not outcome.applied:
        logger.warning(outcome.reason)
        console.print(f"[yellow]{escape(outcome.reason or '')}[/yellow]")
        append_progress(
            progress_path,
            format_entry(f"{label} Rejected", [f"Story: {story_id}", f"Reason: {outcome.reason}"]),
        )
        return

    if outcome.reason is not None:
        console.print(f"[dim]{escape(outcome.reason)}[/dim]")
        return

    verb = "Skipped" if command.type == "SKIP" else "Prioritized"
    console.print(f"[cyan]{verb} {escape(story_id or '')}[/cyan]")
    append_progress(
        progress_path,
        format_entry(f"{label} Event", [f"Story: {story_id}", f"{verb} via [{command.type}] command"]),
    )


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, remaining = divmod(seconds, 60)
    return f"{minutes}m {remaining}s" if minutes else f"{seconds}s"


def format_progress_summary(
    completed: int, total: int, iterations: int, duration_seconds: float
) -> str:
    """Partial-progress summary shown when a run stops early.

    Example:
        Stories: 2/5 complete
        Iterations: 3
        Duration: 4m 12s
    """
    return (
        f"Stories: {completed}/{total} complete\n"
        f"Iterations: {iterations}\n"
        f"Duration: {format_duration(duration_seconds)}"
    )
