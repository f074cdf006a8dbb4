"""Shared error types for the storyrunner package."""


class StoryRunnerError(Exception):
    """Base exception for storyrunner errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(StoryRunnerError):
    """Raised when configuration values are missing or invalid."""

    pass


class BacklogError(StoryRunnerError):
    """Base exception for backlog integrity problems."""

    pass


class BacklogFormatError(BacklogError):
    """Raised when prd.json cannot be read or does not match the schema."""

    pass


class UnknownDependencyError(BacklogError):
    """A story depends on a story id that does not exist in the backlog."""

    def __init__(self, story_id: str, dependency_id: str) -> None:
        self.story_id = story_id
        self.dependency_id = dependency_id
        super().__init__(
            f"Story {story_id} depends on non-existent story {dependency_id}"
        )


class CircularDependencyError(BacklogError):
    """The dependency graph contains a cycle.

    Attributes:
        cycle: Story ids along the cycle, first id repeated at the end
            (e.g. ["US-001", "US-002", "US-001"])
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class QueueBusyError(StoryRunnerError):
    """Raised when the queue lock could not be obtained before a deadline."""

    pass


class AgentError(StoryRunnerError):
    """Raised when an agent executable cannot be launched."""

    pass
