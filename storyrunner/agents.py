"""Agent executor: runs coding-agent CLIs as subprocesses.

Each supported agent is described by an AgentSpec that knows how to build
its command line. SubprocessExecutor is the executor callable the cascade
consumes: it launches the CLI, then scans the output for the completion
marker and for rate-limit signals.
"""

import json
import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from storyrunner.errors import AgentError
from storyrunner.models import AgentResult

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "<promise>COMPLETE</promise>"

RATE_LIMIT_PATTERNS = [
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"\b429\b"),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"quota (?:exceeded|exhausted)", re.IGNORECASE),
    re.compile(r"resource.?exhausted", re.IGNORECASE),
    re.compile(r"you've hit your limit", re.IGNORECASE),
]

CAPPED_PATTERN = re.compile(r"you've hit your limit", re.IGNORECASE)

# "You've hit your limit · resets 12am (America/Sao_Paulo)"
RESET_HOUR_PATTERN = re.compile(r"resets\s+(\d{1,2})\s*(am|pm)", re.IGNORECASE)


@dataclass(frozen=True)
class AgentSpec:
    """How to invoke one agent CLI.

    Attributes:
        name: Agent name used in config and the rate-limit map
        executable: Binary looked up on PATH
        base_args: Arguments that always follow the executable
        model_flag: Flag that selects a model
        unattended_args: Flags that skip permission prompts
        prompt_via_stdin: Send the prompt on stdin instead of as an argument
        json_output: Output is Claude-style JSON with result and cost
    """

    name: str
    executable: str
    base_args: tuple[str, ...] = ()
    model_flag: str = "--model"
    unattended_args: tuple[str, ...] = ()
    prompt_via_stdin: bool = True
    json_output: bool = False

    def build_command(
        self, prompt: str, model: str | None, unattended: bool = True
    ) -> tuple[list[str], str | None]:
        """Build argv and stdin for one invocation.

        Returns:
            Tuple of (argv, stdin text or None)
        """
        args = [self.executable, *self.base_args]
        if unattended:
            args.extend(self.unattended_args)
        if model:
            args.extend([self.model_flag, model])
        if self.prompt_via_stdin:
            return args, prompt
        return [*args, prompt], None


AGENTS: dict[str, AgentSpec] = {
    "claude": AgentSpec(
        name="claude",
        executable="claude",
        base_args=("-p", "--output-format", "json"),
        unattended_args=("--dangerously-skip-permissions",),
        json_output=True,
    ),
    "codex": AgentSpec(
        name="codex",
        executable="codex",
        base_args=("exec",),
        unattended_args=("--full-auto",),
    ),
    "gemini": AgentSpec(
        name="gemini",
        executable="gemini",
        unattended_args=("--yolo",),
        prompt_via_stdin=False,
    ),
    "amp": AgentSpec(
        name="amp",
        executable="amp",
        base_args=("-x",),
        model_flag="-m",
        unattended_args=("--dangerously-allow-all",),
    ),
    "opencode": AgentSpec(
        name="opencode",
        executable="opencode",
        base_args=("run",),
        prompt_via_stdin=False,
    ),
    "droid": AgentSpec(
        name="droid",
        executable="droid",
        base_args=("exec",),
        model_flag="-m",
        unattended_args=("--auto", "high"),
    ),
}


def detect_completion(output: str) -> bool:
    """True if the agent printed the completion marker."""
    return COMPLETION_MARKER in output


def detect_rate_limit(
    output: str, now: datetime | None = None
) -> tuple[bool, datetime | None]:
    """Scan agent output for a rate-limit signal.

    Args:
        output: Combined stdout/stderr
        now: Reference time for relative reset hints (local time)

    Returns:
        Tuple of (rate_limited, reset_time). reset_time is None when the
        output does not say when the limit resets.
    """
    if not any(pattern.search(output) for pattern in RATE_LIMIT_PATTERNS):
        return False, None
    return True, parse_reset_time(output, now)


def parse_reset_time(output: str, now: datetime | None = None) -> datetime | None:
    """Parse "resets 5pm" style hints into the next matching local hour."""
    match = RESET_HOUR_PATTERN.search(output)
    if not match:
        return None

    hour = int(match.group(1))
    if not 1 <= hour <= 12:
        return None
    is_pm = match.group(2).lower() == "pm"
    hour = hour % 12 + (12 if is_pm else 0)

    now = now or datetime.now().astimezone()
    reset = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if reset <= now:
        reset += timedelta(days=1)
    return reset


def get_agent(name: str) -> AgentSpec:
    """Look up an agent spec by name.

    Raises:
        AgentError: If the agent is not supported
    """
    spec = AGENTS.get(name)
    if spec is None:
        raise AgentError(
            f"Unknown agent: {name} (supported: {', '.join(sorted(AGENTS))})"
        )
    return spec


def installed_agents() -> list[str]:
    """Names of supported agents whose executable is on PATH."""
    return [name for name, spec in AGENTS.items() if shutil.which(spec.executable)]


class SubprocessExecutor:
    """Executor that runs agent CLIs in a working directory.

    Usage:
        executor = SubprocessExecutor(Path("."), timeout_seconds=600)
        result = await executor("claude", "sonnet", prompt)
    """

    def __init__(
        self,
        working_dir: Path,
        timeout_seconds: int = 600,
        unattended: bool = True,
    ) -> None:
        self.working_dir = Path(working_dir)
        self.timeout_seconds = timeout_seconds
        self.unattended = unattended

    async def __call__(self, agent: str, model: str | None, prompt: str) -> AgentResult:
        """Invoke an agent once.

        Timeouts are reported as a failed result, not raised.

        Raises:
            AgentError: If the agent is unknown or not installed
        """
        spec = get_agent(agent)
        if shutil.which(spec.executable) is None:
            raise AgentError(f"Agent {agent} is not installed ({spec.executable} not on PATH)")

        argv, stdin = spec.build_command(prompt, model, self.unattended)
        logger.debug(f"Running {agent} (model={model or 'default'}) in {self.working_dir}")

        started = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                cwd=self.working_dir,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Agent {agent} timed out after {self.timeout_seconds}s")
            return AgentResult(
                output=f"Agent timed out after {self.timeout_seconds}s",
                exit_code=-1,
                is_complete_signal=False,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        duration_ms = int((time.monotonic() - started) * 1000)

        return build_result(spec, proc.stdout, proc.stderr, proc.returncode, duration_ms)


def build_result(
    spec: AgentSpec, stdout: str, stderr: str, exit_code: int, duration_ms: int
) -> AgentResult:
    """Interpret raw process output as an AgentResult."""
    output = stdout
    cost = 0.0

    if spec.json_output:
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            output = str(data.get("result", ""))
            cost = float(data.get("total_cost_usd") or 0.0)
            if data.get("is_error") and exit_code == 0:
                exit_code = 1

    if stderr:
        output = f"{output}\n{stderr}"

    # Only failed or explicitly capped runs count as rate-limited
    rate_limited, reset_time = False, None
    if not detect_completion(output) and (
        exit_code != 0 or CAPPED_PATTERN.search(output)
    ):
        rate_limited, reset_time = detect_rate_limit(output)

    return AgentResult(
        output=output,
        exit_code=exit_code,
        is_complete_signal=detect_completion(output),
        duration_ms=duration_ms,
        rate_limited=rate_limited,
        reset_time=reset_time,
        cost_usd=cost,
    )
