"""Run loop for backlog execution.

Drives one story at a time through the agent cascade until the backlog is
complete, nothing is eligible, the user aborts, or every agent is blocked.
Each iteration drains the command queue first, so human guidance and
control commands take effect before any work starts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Literal

from opentelemetry import trace
from rich.console import Console
from rich.markup import escape

from storyrunner import telemetry
from storyrunner.agents import COMPLETION_MARKER, SubprocessExecutor
from storyrunner.backlog import PRD_FILE, load_backlog, write_back
from storyrunner.cascade import (
    Blocked,
    CascadeConfig,
    CascadeResult,
    Executor,
    execute_with_cascade,
    select_agent,
)
from storyrunner.command_queue import CommandQueue
from storyrunner.commands import (
    ResumeWaiter,
    apply_commands,
    format_duration,
    format_progress_summary,
    wait_for_enter,
)
from storyrunner.config import RunnerConfig
from storyrunner.models import AgentLimitState, Backlog, UserStory
from storyrunner.notifications import notify_run_finished
from storyrunner.state import RunState, append_progress, format_entry
from storyrunner.story_graph import StoryGraph

logger = logging.getLogger(__name__)

console = Console()

PROMPT_FILE = "prompt.md"

RunStatus = Literal[
    "completed", "no_eligible", "aborted", "blocked", "rate_limited", "max_iterations"
]


@dataclass
class RunResult:
    """Result of a run.

    Status values:
        completed: Every story passes (checked on a fresh reload)
        no_eligible: Stories remain but none can run (skipped or blocked deps)
        aborted: An [ABORT] command stopped the run
        blocked: The cascade exhausted its escalation path for a story
        rate_limited: Every agent is rate-limited; see earliest_reset
        max_iterations: The iteration limit was reached
    """

    status: RunStatus
    iterations: int
    stories_completed: int
    total_cost_usd: float
    duration_seconds: float
    summary: str
    blocked_reason: str | None = None
    blocked_story_id: str | None = None
    earliest_reset: datetime | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cascade_config_from(config: RunnerConfig) -> CascadeConfig:
    return CascadeConfig(
        agent_priority=list(config.agent_priority),
        escalation_path=dict(config.escalation_path),
        model_agents=dict(config.model_agents),
        default_models=dict(config.default_models),
        max_attempts=config.max_attempts,
        enabled=config.escalation_enabled,
    )


def build_prompt(
    story: UserStory,
    backlog: Backlog,
    guidance: list[str],
    feature_dir: Path,
) -> str:
    """Assemble the agent prompt for one story.

    Uses <feature_dir>/prompt.md as a preamble when present, then the story
    details, then any queued guidance.
    """
    parts: list[str] = []

    preamble = feature_dir / PROMPT_FILE
    if preamble.exists():
        parts.append(preamble.read_text(encoding="utf-8").strip())

    criteria = "\n".join(
        f"{i}. {criterion}" for i, criterion in enumerate(story.acceptance_criteria, 1)
    )
    lines = [
        f"## Current Story: {story.id} - {story.title}",
        "",
        f"Project: {backlog.project}",
        f"Branch: {backlog.branch_name}",
        "",
        f"**Description:** {story.description}",
    ]
    if story.dependencies:
        lines.append(f"**Dependencies:** {', '.join(story.dependencies)}")
    if criteria:
        lines += ["", "## Acceptance Criteria", "", criteria]
    if story.notes:
        lines += ["", "## Notes", "", story.notes]
    parts.append("\n".join(lines))

    if guidance:
        parts.append(
            "## Guidance from the user\n\n" + "\n".join(f"- {text}" for text in guidance)
        )

    parts.append(
        f"When every acceptance criterion is met, print {COMPLETION_MARKER} on its own line."
    )
    return "\n\n".join(parts) + "\n"


async def run_backlog(
    feature_dir: Path,
    config: RunnerConfig | None = None,
    executor: Executor | None = None,
    tracer: trace.Tracer | None = None,
    resume_waiter: ResumeWaiter = wait_for_enter,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_story_complete: Callable[[UserStory, CascadeResult], None] | None = None,
    notify: bool = True,
    clock: Callable[[], datetime] = _utc_now,
) -> RunResult:
    """Run stories from <feature_dir>/prd.json until the run stops.

    Args:
        feature_dir: Directory holding prd.json, the queue files and progress log
        config: Runner configuration (uses env-backed defaults if None)
        executor: Agent executor (runs agent CLIs in the current directory
            if None)
        tracer: OpenTelemetry tracer (uses the global one if None)
        resume_waiter: Awaited on [PAUSE] until the run may continue
        sleep: Async sleep used between iterations and while waiting for
            rate limits to reset
        on_story_complete: Optional callback invoked after each completed
            story, for displaying summaries
        notify: Whether to send a desktop notification when the run stops
        clock: Source of the current time (injectable for tests)

    Returns:
        RunResult with final status and aggregated metrics

    Raises:
        BacklogFormatError: If prd.json cannot be read
        UnknownDependencyError, CircularDependencyError: If the dependency
            graph is invalid
        AgentError: If an agent cannot be launched
    """
    feature_dir = Path(feature_dir)
    config = config or RunnerConfig.from_env()
    tracer = tracer or trace.get_tracer("storyrunner")
    executor = executor or SubprocessExecutor(Path.cwd(), config.agent_timeout_seconds)

    prd_path = feature_dir / PRD_FILE
    progress_path = feature_dir / config.progress_file
    state_dir = config.resolve_state_dir(feature_dir)
    queue = CommandQueue(feature_dir, lock_timeout=config.lock_timeout_seconds)
    cascade_config = cascade_config_from(config)

    # Rate limits are tracked for this run only
    limits: dict[str, AgentLimitState] = {}

    backlog = load_backlog(prd_path)
    StoryGraph(backlog.user_stories).validate()
    state = RunState(project=backlog.project, started_at=clock())
    append_progress(
        progress_path,
        format_entry("Run Started", [f"Stories: {len(backlog.user_stories)}"]),
        project=backlog.project,
    )

    started = time.monotonic()
    iterations = 0
    stories_completed = 0
    total_cost = 0.0
    status: RunStatus = "max_iterations"
    blocked_reason: str | None = None
    blocked_story_id: str | None = None
    earliest_reset: datetime | None = None

    with tracer.start_as_current_span("storyrunner.run") as run_span:
        run_span.set_attribute("run.project", backlog.project)
        run_span.set_attribute("run.total_stories", len(backlog.user_stories))

        while iterations < config.max_iterations:
            backlog = load_backlog(prd_path)
            graph = StoryGraph(backlog.user_stories)

            if graph.is_complete():
                status = "completed"
                break

            story = graph.next()
            if story is None:
                status = "no_eligible"
                break

            iterations += 1
            state.iterations = iterations

            with tracer.start_as_current_span("storyrunner.iteration") as span:
                span.set_attribute("iteration.number", iterations)

                drained = queue.process()
                batch = await apply_commands(
                    drained.commands, graph, story.id, progress_path, resume_waiter
                )
                if batch.changed_story_ids:
                    write_back(
                        prd_path,
                        [s for s in backlog.user_stories if s.id in batch.changed_story_ids],
                    )
                    for s in backlog.user_stories:
                        if (
                            s.id in batch.changed_story_ids
                            and s.skipped
                            and s.id not in state.skipped_stories
                        ):
                            state.skipped_stories.append(s.id)
                if batch.abort:
                    status = "aborted"
                    break
                if batch.graph_changed:
                    story = graph.next()
                    if story is None:
                        status = "no_eligible"
                        break

                span.set_attribute("story.id", story.id)
                state.current_story_id = story.id

                selection = select_agent(
                    config.agent_priority, limits, config.preferred_agent, now=clock()
                )
                while isinstance(selection, Blocked):
                    if not config.wait_for_reset or selection.earliest_reset is None:
                        break
                    wait_seconds = max(
                        0.0, (selection.earliest_reset - clock()).total_seconds()
                    )
                    console.print(
                        f"[yellow]All agents rate-limited; waiting "
                        f"{format_duration(wait_seconds)} for reset[/yellow]"
                    )
                    await sleep(wait_seconds + 1.0)
                    selection = select_agent(
                        config.agent_priority, limits, config.preferred_agent, now=clock()
                    )
                if isinstance(selection, Blocked):
                    status = "rate_limited"
                    earliest_reset = selection.earliest_reset
                    blocked_reason = "all agents are rate-limited"
                    break

                agent = selection.agent
                model = config.initial_model or config.default_models.get(agent)
                span.set_attribute("story.agent", agent)

                console.print(
                    f"\n[bold]Iteration {iterations}[/bold] "
                    f"{escape(f'{story.id}: {story.title}')} "
                    f"[dim]({agent}{'/' + model if model else ''})[/dim]"
                )
                for prompt_text in drained.prompts:
                    console.print(f"[dim]Guidance: {escape(prompt_text)}[/dim]")

                prompt = build_prompt(story, backlog, drained.prompts, feature_dir)
                cascade = await execute_with_cascade(
                    agent,
                    model,
                    prompt,
                    cascade_config,
                    executor,
                    limits,
                    tracer=tracer,
                    clock=clock,
                )
                total_cost += cascade.total_cost
                state.total_cost_usd = total_cost
                span.set_attribute("story.cascade_status", cascade.status)
                span.set_attribute("story.cost_usd", cascade.total_cost)

                if cascade.success:
                    graph.mark_passed(story.id, cascade.to_execution())
                    write_back(prd_path, [story])
                    stories_completed += 1
                    state.mark_story_completed(story.id)
                    telemetry.record_story("completed")
                    append_progress(
                        progress_path,
                        format_entry(
                            f"{story.id} Complete",
                            [
                                story.title,
                                f"Agent: {cascade.final_agent}",
                                f"Attempts: {len(cascade.attempts)}",
                                f"Cost: ${cascade.total_cost:.2f}",
                            ],
                        ),
                    )
                    console.print(
                        f"[green]Completed {story.id}[/green] "
                        f"(${cascade.total_cost:.2f}, {len(cascade.attempts)} attempt(s))"
                    )
                    if on_story_complete is not None:
                        on_story_complete(story, cascade)

                    # Re-check on a fresh reload before declaring success
                    if StoryGraph(load_backlog(prd_path).user_stories).is_complete():
                        status = "completed"
                        state.save(state_dir)
                        break

                elif cascade.status == "rate_limited":
                    earliest_reset = cascade.earliest_reset
                    if not config.wait_for_reset:
                        status = "rate_limited"
                        blocked_reason = "all agents are rate-limited"
                        break

                elif cascade.status == "blocked":
                    story.execution = cascade.to_execution()
                    write_back(prd_path, [story])
                    telemetry.record_story("blocked")
                    status = "blocked"
                    blocked_reason = cascade.blocked_reason
                    blocked_story_id = story.id
                    append_progress(
                        progress_path,
                        format_entry(
                            f"{story.id} Blocked",
                            [
                                f"Reason: {cascade.blocked_reason}",
                                f"Attempts: {len(cascade.attempts)}",
                            ],
                        ),
                    )
                    break

                else:
                    console.print(f"[red]{story.id} did not complete; retrying[/red]")

                state.save(state_dir)

            if iterations < config.max_iterations:
                await sleep(config.iteration_delay_seconds)

        duration = time.monotonic() - started
        final_counts = StoryGraph(load_backlog(prd_path).user_stories).counts()
        summary = format_progress_summary(
            final_counts.completed, final_counts.total, iterations, duration
        )
        if total_cost:
            summary += f"\nCost: ${total_cost:.2f}"

        run_span.set_attribute("run.status", status)
        run_span.set_attribute("run.iterations", iterations)
        run_span.set_attribute("run.stories_completed", stories_completed)
        run_span.set_attribute("run.total_cost_usd", total_cost)

    state.status = status
    state.current_story_id = None
    state.save(state_dir)

    details = [f"Status: {status}", *summary.splitlines()]
    if blocked_reason:
        details.append(f"Reason: {blocked_reason}")
    if earliest_reset:
        details.append(f"Earliest reset: {earliest_reset.isoformat()}")
    append_progress(progress_path, format_entry("Run Stopped", details))

    if notify:
        notify_run_finished(backlog.project, status, summary)

    return RunResult(
        status=status,
        iterations=iterations,
        stories_completed=stories_completed,
        total_cost_usd=total_cost,
        duration_seconds=duration,
        summary=summary,
        blocked_reason=blocked_reason,
        blocked_story_id=blocked_story_id,
        earliest_reset=earliest_reset,
    )
