"""Agent selection and model escalation.

Two independent axes:
    - which agent to use when one is rate-limited (select_agent)
    - which model to retry with when an attempt fails (execute_with_cascade)

The rate-limit map is owned by the caller and passed into every call; it
lives only for the duration of one run.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Literal

from opentelemetry import trace

from storyrunner import telemetry
from storyrunner.models import (
    AgentLimitState,
    AgentResult,
    AttemptResult,
    EscalationAttempt,
    ExecutionHistory,
)

logger = logging.getLogger(__name__)

# Limits without a known reset time resolve this long after detection
DEFAULT_LIMIT_DURATION = timedelta(hours=1)

DEFAULT_MODEL_LABEL = "default"

Executor = Callable[[str, str | None, str], Awaitable[AgentResult]]
CascadeStatus = Literal["success", "failed", "blocked", "rate_limited"]


@dataclass(frozen=True)
class Available:
    """An agent that may be used right now."""

    agent: str


@dataclass(frozen=True)
class Blocked:
    """Every candidate agent is rate-limited.

    Attributes:
        earliest_reset: When the first limit resolves (None if there were
            no candidates at all)
        resets: Per-agent time at which its limit resolves
    """

    earliest_reset: datetime | None
    resets: dict[str, datetime] = field(default_factory=dict)


AgentSelection = Available | Blocked


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def limit_resolves_at(state: AgentLimitState) -> datetime:
    """Time at which a rate limit stops applying."""
    if state.reset_time is not None:
        return state.reset_time
    return state.detected_at + DEFAULT_LIMIT_DURATION


def record_rate_limit(
    limits: dict[str, AgentLimitState],
    agent: str,
    reset_time: datetime | None = None,
    now: datetime | None = None,
) -> AgentLimitState:
    """Record that an agent reported a rate limit.

    Args:
        limits: Rate-limit map owned by the run loop (mutated)
        agent: Agent that hit the limit
        reset_time: When the provider said the limit resets, if known
        now: Detection time (defaults to the current time)

    Returns:
        The stored AgentLimitState
    """
    state = AgentLimitState(detected_at=now or _utc_now(), reset_time=reset_time)
    limits[agent] = state
    logger.warning(
        f"Agent {agent} is rate-limited until {limit_resolves_at(state).isoformat()}"
    )
    return state


def select_agent(
    priority: list[str],
    limits: dict[str, AgentLimitState],
    preferred: str | None = None,
    now: datetime | None = None,
) -> AgentSelection:
    """Pick the first agent that is not rate-limited.

    Limits that have resolved are removed from the map. An eligible
    preferred agent wins over the priority list.

    Args:
        priority: Agent names, most preferred first
        limits: Rate-limit map owned by the run loop (mutated)
        preferred: Agent to try before the priority list
        now: Current time (defaults to the current time)

    Returns:
        Available(agent), or Blocked with the earliest reset time
    """
    now = now or _utc_now()
    candidates = list(dict.fromkeys(([preferred] if preferred else []) + priority))

    for agent in candidates:
        state = limits.get(agent)
        if state is not None and now >= limit_resolves_at(state):
            del limits[agent]
            logger.info(f"Rate limit for agent {agent} has resolved")

    for agent in candidates:
        if agent not in limits:
            return Available(agent)

    resets = {agent: limit_resolves_at(limits[agent]) for agent in candidates}
    return Blocked(
        earliest_reset=min(resets.values()) if resets else None,
        resets=resets,
    )


@dataclass
class CascadeConfig:
    """Escalation settings for one cascade.

    Attributes:
        agent_priority: Agents to fall back to on rate limits, in order
        escalation_path: Model -> next (more capable) model
        model_agents: Model -> agent that serves it
        default_models: Agent -> model to use after switching to it
        max_attempts: Upper bound on attempts, rate-limited ones included
        enabled: When False, the first failure ends the cascade
    """

    agent_priority: list[str]
    escalation_path: dict[str, str] = field(default_factory=dict)
    model_agents: dict[str, str] = field(default_factory=dict)
    default_models: dict[str, str] = field(default_factory=dict)
    max_attempts: int = 3
    enabled: bool = True


@dataclass
class CascadeResult:
    """Outcome of running one story through the cascade.

    Status values:
        success: An attempt completed the story
        failed: Escalation disabled and the single attempt failed
        blocked: Escalation exhausted (no next model, or max_attempts)
        rate_limited: Every agent is limited; retry after earliest_reset
    """

    status: CascadeStatus
    final_agent: str
    final_model: str | None
    attempts: list[EscalationAttempt]
    total_cost: float
    output: str = ""
    blocked_reason: str | None = None
    earliest_reset: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_execution(self) -> ExecutionHistory:
        return ExecutionHistory(
            attempts=len(self.attempts),
            escalations=list(self.attempts),
            actual_cost=self.total_cost,
            actual_agent=self.final_agent,
            actual_model=self.final_model or DEFAULT_MODEL_LABEL,
        )


def _classify(result: AgentResult) -> AttemptResult:
    if result.rate_limited:
        return "rate_limited"
    if result.exit_code != 0 or not result.is_complete_signal:
        return "failure"
    return "success"


def _error_message(result: AgentResult, outcome: AttemptResult) -> str | None:
    """Short error description for the attempt record."""
    if outcome == "rate_limited":
        return "Rate limit exceeded"
    if outcome == "success":
        return None
    for line in result.output.splitlines():
        lowered = line.lower()
        if "error" in lowered or "failed" in lowered or "exception" in lowered:
            return line.strip()[:200]
    if result.exit_code != 0:
        return f"Agent exited with code {result.exit_code}"
    return "No completion signal"


async def execute_with_cascade(
    agent: str,
    model: str | None,
    prompt: str,
    config: CascadeConfig,
    executor: Executor,
    limits: dict[str, AgentLimitState],
    tracer: trace.Tracer | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> CascadeResult:
    """Run a prompt through agents/models until it succeeds or gives up.

    Never raises for failure, rate limit or exhaustion; those are reported
    through CascadeResult.status with the full attempt history.

    Args:
        agent: Initial agent
        model: Initial model (None for the agent's own default)
        prompt: Prompt to send
        config: Escalation settings
        executor: Async callable (agent, model, prompt) -> AgentResult
        limits: Rate-limit map owned by the run loop (mutated)
        tracer: OpenTelemetry tracer (uses the global one if None)
        clock: Source of the current time (injectable for tests)

    Returns:
        CascadeResult
    """
    tracer = tracer or trace.get_tracer("storyrunner")
    attempts: list[EscalationAttempt] = []
    total_cost = 0.0
    output = ""

    def finish(
        status: CascadeStatus,
        reason: str | None = None,
        earliest_reset: datetime | None = None,
    ) -> CascadeResult:
        return CascadeResult(
            status=status,
            final_agent=agent,
            final_model=model,
            attempts=attempts,
            total_cost=total_cost,
            output=output,
            blocked_reason=reason,
            earliest_reset=earliest_reset,
        )

    for attempt_number in range(1, config.max_attempts + 1):
        model_label = model or DEFAULT_MODEL_LABEL

        with tracer.start_as_current_span("storyrunner.attempt") as span:
            span.set_attribute("attempt.number", attempt_number)
            span.set_attribute("attempt.agent", agent)
            span.set_attribute("attempt.model", model_label)

            started = time.monotonic()
            result = await executor(agent, model, prompt)
            elapsed = time.monotonic() - started

            outcome = _classify(result)
            span.set_attribute("attempt.result", outcome)
            span.set_attribute("attempt.cost_usd", result.cost_usd)

        output = result.output
        total_cost += result.cost_usd
        attempts.append(
            EscalationAttempt(
                attempt=attempt_number,
                agent=agent,
                model=model_label,
                result=outcome,
                cost=result.cost_usd,
                duration_ms=result.duration_ms or int(elapsed * 1000),
                error=_error_message(result, outcome),
            )
        )
        telemetry.record_attempt(agent, model_label, outcome, result.cost_usd, elapsed)

        if outcome == "success":
            return finish("success")

        if outcome == "rate_limited":
            record_rate_limit(limits, agent, result.reset_time, now=clock())
            selection = select_agent(config.agent_priority, limits, now=clock())
            if isinstance(selection, Blocked):
                return finish(
                    "rate_limited",
                    "all agents are rate-limited",
                    selection.earliest_reset,
                )
            logger.info(f"Switching agent from {agent} to {selection.agent}")
            agent = selection.agent
            model = config.default_models.get(agent)
            continue

        if not config.enabled:
            return finish("failed", "attempt failed and escalation is disabled")

        if model is None:
            # Agent default models have no path entry; retry them in place
            logger.info(f"Retrying {agent} with its default model")
            continue

        next_model = config.escalation_path.get(model)
        if next_model is None:
            if not config.escalation_path:
                reason = "no escalation path configured"
            else:
                reason = f"no next model in escalation path for {model_label}"
            if attempt_number >= config.max_attempts:
                reason = f"max attempts ({config.max_attempts}) reached and {reason}"
            return finish("blocked", reason)

        next_agent = config.model_agents.get(next_model)
        if next_agent is not None and next_agent != agent:
            limit = limits.get(next_agent)
            if limit is not None and clock() < limit_resolves_at(limit):
                logger.info(
                    f"Model {next_model} is served by {next_agent}, which is "
                    "rate-limited; not escalating"
                )
                selection = select_agent(config.agent_priority, limits, now=clock())
                if isinstance(selection, Blocked):
                    return finish(
                        "rate_limited",
                        "all agents are rate-limited",
                        selection.earliest_reset,
                    )
                agent = selection.agent
                model = config.default_models.get(agent)
                continue
            logger.info(f"Model {next_model} is served by {next_agent}; switching agent")
            agent = next_agent

        logger.info(f"Escalating from {model_label} to {next_model}")
        model = next_model

    return finish("blocked", f"max attempts ({config.max_attempts}) reached")
