"""Configuration for storyrunner.

Provides centralized configuration with sensible defaults, a JSON config
file, and environment variable overrides for run limits, agent selection,
model escalation and telemetry.
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from storyrunner.errors import ConfigError

CONFIG_FILE = "storyrunner.json"


@dataclass
class RunnerConfig:
    """Configuration for a run.

    All settings have defaults. Use from_file() for a project config and
    from_env() for per-invocation overrides.
    """

    # Loop settings
    max_iterations: int = 20
    iteration_delay_seconds: float = 2.0
    wait_for_reset: bool = False

    # Agent selection
    agent_priority: list[str] = field(
        default_factory=lambda: ["claude", "codex", "gemini"]
    )
    preferred_agent: str | None = None
    agent_timeout_seconds: int = 600
    # Starting model per agent; agents not listed run on their own default
    default_models: dict[str, str] = field(default_factory=lambda: {"claude": "haiku"})

    # Model escalation
    initial_model: str | None = None
    escalation_enabled: bool = True
    max_attempts: int = 3
    escalation_path: dict[str, str] = field(
        default_factory=lambda: {"haiku": "sonnet", "sonnet": "opus"}
    )
    model_agents: dict[str, str] = field(
        default_factory=lambda: {"haiku": "claude", "sonnet": "claude", "opus": "claude"}
    )

    # Queue
    lock_timeout_seconds: float = 5.0

    # Persistence
    progress_file: str = "progress.txt"
    state_dir: Path = field(default_factory=lambda: Path(".storyrunner"))

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "storyrunner"

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.lock_timeout_seconds <= 0:
            raise ConfigError("lock_timeout_seconds must be positive")
        if not self.agent_priority and not self.preferred_agent:
            raise ConfigError("agent_priority must name at least one agent")
        self.state_dir = Path(self.state_dir)

    def resolve_state_dir(self, feature_dir: Path) -> Path:
        """State directory; relative paths are taken from the feature directory."""
        if self.state_dir.is_absolute():
            return self.state_dir
        return Path(feature_dir) / self.state_dir

    @classmethod
    def from_file(cls, path: Path) -> "RunnerConfig":
        """Load config from a JSON file with snake_case keys.

        Raises:
            ConfigError: If the file is not valid JSON or has unknown keys
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a JSON object")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"{path}: unknown config keys: {', '.join(unknown)}")

        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(f"{path}: {e}") from e

    @classmethod
    def load(cls, feature_dir: Path) -> "RunnerConfig":
        """Config for a feature directory: its config file if present, then env."""
        path = Path(feature_dir) / CONFIG_FILE
        base = cls.from_file(path) if path.exists() else cls()
        return cls.from_env(base)

    @classmethod
    def from_env(cls, base: "RunnerConfig | None" = None) -> "RunnerConfig":
        """Load config with environment variable overrides.

        Environment variables:
            STORYRUNNER_MAX_ITERATIONS: Override max_iterations (default: 20)
            STORYRUNNER_ITERATION_DELAY: Override iteration_delay_seconds (default: 2)
            STORYRUNNER_AGENTS: Comma-separated agent_priority
            STORYRUNNER_AGENT: Override preferred_agent
            STORYRUNNER_MODEL: Override initial_model
            STORYRUNNER_AGENT_TIMEOUT: Override agent_timeout_seconds (default: 600)
            STORYRUNNER_MAX_ATTEMPTS: Override max_attempts (default: 3)
            STORYRUNNER_LOCK_TIMEOUT: Override lock_timeout_seconds (default: 5)
            STORYRUNNER_WAIT_FOR_RESET: "true" to sleep until rate limits reset
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        base = base or cls()
        overrides: dict[str, Any] = {}

        if "STORYRUNNER_MAX_ITERATIONS" in os.environ:
            overrides["max_iterations"] = _env_number("STORYRUNNER_MAX_ITERATIONS", int)
        if "STORYRUNNER_ITERATION_DELAY" in os.environ:
            overrides["iteration_delay_seconds"] = _env_number(
                "STORYRUNNER_ITERATION_DELAY", float
            )
        if "STORYRUNNER_AGENTS" in os.environ:
            overrides["agent_priority"] = [
                a.strip() for a in os.environ["STORYRUNNER_AGENTS"].split(",") if a.strip()
            ]
        if os.getenv("STORYRUNNER_AGENT"):
            overrides["preferred_agent"] = os.environ["STORYRUNNER_AGENT"]
        if os.getenv("STORYRUNNER_MODEL"):
            overrides["initial_model"] = os.environ["STORYRUNNER_MODEL"]
        if "STORYRUNNER_AGENT_TIMEOUT" in os.environ:
            overrides["agent_timeout_seconds"] = _env_number("STORYRUNNER_AGENT_TIMEOUT", int)
        if "STORYRUNNER_MAX_ATTEMPTS" in os.environ:
            overrides["max_attempts"] = _env_number("STORYRUNNER_MAX_ATTEMPTS", int)
        if "STORYRUNNER_LOCK_TIMEOUT" in os.environ:
            overrides["lock_timeout_seconds"] = _env_number(
                "STORYRUNNER_LOCK_TIMEOUT", float
            )
        if "STORYRUNNER_WAIT_FOR_RESET" in os.environ:
            overrides["wait_for_reset"] = (
                os.environ["STORYRUNNER_WAIT_FOR_RESET"].lower() == "true"
            )
        if "OTLP_ENDPOINT" in os.environ:
            overrides["otlp_endpoint"] = os.environ["OTLP_ENDPOINT"]

        return replace(base, **overrides)


def _env_number(name: str, kind: type[int] | type[float]) -> int | float:
    raw = os.environ[name]
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
