"""Data models for storyrunner.

Defines dataclasses for queue items, user stories, agent results and
escalation attempts. Queue and backlog models know how to map themselves to
their on-disk representation; everything else is in-memory only.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

QueueCommandType = Literal["PAUSE", "ABORT", "SKIP", "PRIORITY"]
AttemptResult = Literal["success", "failure", "rate_limited"]


@dataclass
class QueueItem:
    """A single line from the pending or processed queue log.

    Items are either free-text prompts that get injected into the next agent
    prompt, or control commands that steer the run loop.
    """

    id: str
    content: str
    kind: Literal["prompt", "command"]
    added_at: str
    command: QueueCommandType | None = None
    target_story_id: str | None = None
    processed_at: str | None = None


@dataclass
class QueueCommand:
    """A recognized control command extracted while processing the queue."""

    type: QueueCommandType
    story_id: str | None = None


@dataclass
class QueueState:
    """Snapshot of both queue logs plus any warnings raised while parsing."""

    pending: list[QueueItem] = field(default_factory=list)
    processed: list[QueueItem] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class QueueProcessResult:
    """Result of draining the pending queue.

    Attributes:
        prompts: Free-text guidance, in log order
        commands: Recognized control commands, in log order
        warnings: Malformed or invalid lines that were dropped
        processed: The items that were moved to the processed log
    """

    prompts: list[str] = field(default_factory=list)
    commands: list[QueueCommand] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    processed: list[QueueItem] = field(default_factory=list)


@dataclass
class EscalationAttempt:
    """One execution attempt inside a cascade."""

    attempt: int
    agent: str
    model: str
    result: AttemptResult
    cost: float = 0.0
    duration_ms: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "attempt": self.attempt,
            "harness": self.agent,
            "model": self.model,
            "result": self.result,
            "cost": self.cost,
            "duration": self.duration_ms,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationAttempt":
        return cls(
            attempt=int(data["attempt"]),
            agent=data["harness"],
            model=data["model"],
            result=data["result"],
            cost=float(data.get("cost", 0.0)),
            duration_ms=int(data.get("duration", 0)),
            error=data.get("error"),
        )


@dataclass
class ExecutionHistory:
    """Terminal execution record persisted onto a story."""

    attempts: int
    escalations: list[EscalationAttempt]
    actual_cost: float
    actual_agent: str
    actual_model: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "escalations": [e.to_dict() for e in self.escalations],
            "actualCost": self.actual_cost,
            "actualHarness": self.actual_agent,
            "actualModel": self.actual_model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionHistory":
        return cls(
            attempts=int(data["attempts"]),
            escalations=[EscalationAttempt.from_dict(e) for e in data["escalations"]],
            actual_cost=float(data["actualCost"]),
            actual_agent=data["actualHarness"],
            actual_model=data["actualModel"],
        )


# Keys owned by UserStory; anything else in prd.json is carried in `extra`.
_STORY_KEYS = {
    "id",
    "title",
    "description",
    "acceptanceCriteria",
    "priority",
    "passes",
    "skipped",
    "dependencies",
    "notes",
    "execution",
}


@dataclass
class UserStory:
    """A unit of work in the backlog.

    Priority 0 is the highest. `skipped` is set by a SKIP command and is
    terminal; a skipped story is never selected again.
    """

    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int = 0
    passes: bool = False
    skipped: bool = False
    dependencies: list[str] | None = None
    notes: str = ""
    execution: ExecutionHistory | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "passes": self.passes,
            "notes": self.notes,
        }
        if self.dependencies is not None:
            data["dependencies"] = list(self.dependencies)
        if self.skipped:
            data["skipped"] = True
        if self.execution is not None:
            data["execution"] = self.execution.to_dict()
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserStory":
        """Build a story from its prd.json form.

        Raises:
            KeyError: If a required field is missing
            ValueError: If priority is not a non-negative integer
        """
        priority = data.get("priority", 0)
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
            raise ValueError(
                f"Story {data.get('id')!r} has invalid priority {priority!r}; "
                "expected a non-negative integer"
            )
        execution = data.get("execution")
        dependencies = data.get("dependencies")
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            acceptance_criteria=list(data.get("acceptanceCriteria", [])),
            priority=priority,
            passes=bool(data.get("passes", False)),
            skipped=bool(data.get("skipped", False)),
            dependencies=list(dependencies) if dependencies is not None else None,
            notes=data.get("notes", ""),
            execution=ExecutionHistory.from_dict(execution) if execution else None,
            extra={k: v for k, v in data.items() if k not in _STORY_KEYS},
        )


@dataclass
class Backlog:
    """The full prd.json document."""

    project: str
    branch_name: str
    description: str
    user_stories: list[UserStory] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "branchName": self.branch_name,
            "description": self.description,
            "userStories": [s.to_dict() for s in self.user_stories],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Backlog":
        return cls(
            project=data["project"],
            branch_name=data.get("branchName", ""),
            description=data.get("description", ""),
            user_stories=[UserStory.from_dict(s) for s in data["userStories"]],
        )


@dataclass
class AgentResult:
    """Result from invoking an agent CLI.

    Rate-limit detection from raw output happens in the agent adapter; the
    rest of the system only consumes `rate_limited` and `reset_time`.
    """

    output: str
    exit_code: int
    is_complete_signal: bool
    duration_ms: int
    rate_limited: bool = False
    reset_time: datetime | None = None
    cost_usd: float = 0.0


@dataclass
class AgentLimitState:
    """Rate-limit bookkeeping for one agent during a single run."""

    detected_at: datetime
    reset_time: datetime | None = None
