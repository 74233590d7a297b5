"""Provider capability interface.

A provider knows how to turn a Task into a CLI invocation, how to read the
CLI's JSON back into a ProviderResponse, and how to tell whether the CLI is
usable at all. Everything else (deadlines, sessions, fallback, accounting)
lives outside and is shared by every provider.
"""

from __future__ import annotations

import json
import os
import shutil
from abc import ABC, abstractmethod
from typing import Any

from praxio.errors import PraxioError, ProviderError, ProviderUnavailable
from praxio.invoker import Invocation, ProcessInvoker, ProcessResult
from praxio.models import (
    Availability,
    CostSchedule,
    ProviderResponse,
    ProviderVariant,
    Task,
    TokenUsage,
)
from praxio.sessions import ProviderContext

# Capability flags a task can require via Task.required_capabilities
CAP_SESSION_RESUME = "session_resume"
CAP_SYSTEM_PROMPT = "system_prompt"
CAP_MODEL_FALLBACK = "model_fallback"
CAP_COST_REPORTING = "cost_reporting"
CAP_LARGE_CONTEXT = "large_context"
CAP_THINKING_TOKENS = "thinking_tokens"

# Environment variables that must be REMOVED (not just emptied) when
# spawning a coding CLI from inside another agent session. These cause
# silent exit code 1 or switch the CLI to a different billing mode.
_ENV_VARS_TO_REMOVE = {
    "CLAUDECODE",  # Nested execution detection
    "CLAUDE_CODE_ENTRYPOINT",  # SDK entrypoint marker
    "ANTHROPIC_MODEL",  # Forces API billing instead of subscription
    "NODE_OPTIONS",  # VSCode debugger injection
    "VSCODE_INSPECTOR_OPTIONS",  # VSCode inspector
}

_EXIT_COMMAND_NOT_FOUND = 127


class Provider(ABC):
    """Base class for one external model provider."""

    name: str
    variant: ProviderVariant
    capabilities: frozenset[str] = frozenset()
    priority: int = 100  # lower is tried first

    def __init__(
        self,
        binary: str,
        default_timeout: float,
        rates: CostSchedule | None = None,
        probe_timeout: float = 10.0,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self.default_timeout = default_timeout
        self.rates = rates or CostSchedule()
        self.probe_timeout = probe_timeout
        self.env_overrides = env_overrides or {}

    @abstractmethod
    def build_invocation(self, task: Task, context: ProviderContext) -> Invocation:
        """Build the CLI call for ``task`` continuing ``context``."""
        ...

    @abstractmethod
    def parse_output(self, stdout: str) -> ProviderResponse:
        """Parse the CLI's stdout. Raises ProviderError on unusable output."""
        ...

    @abstractmethod
    async def probe_availability(self, invoker: ProcessInvoker) -> Availability:
        ...

    def parse_usage(self, stdout: str) -> TokenUsage:
        return self.parse_output(stdout).usage

    def timeout_for(self, task: Task) -> float:
        return task.timeout_seconds if task.timeout_seconds is not None else self.default_timeout

    def classify_failure(self, result: ProcessResult) -> PraxioError:
        """Map a non-zero exit to a failure kind."""
        stderr = result.stderr.strip()
        if result.returncode == _EXIT_COMMAND_NOT_FOUND or "command not found" in stderr:
            return ProviderUnavailable(f"{self.binary} CLI not found in PATH", self.name)
        return ProviderError(
            f"{self.binary} exited with code {result.returncode}: {stderr[-500:]}",
            self.name,
            exit_code=result.returncode,
            stderr=stderr,
        )

    async def submit(
        self,
        task: Task,
        context: ProviderContext,
        invoker: ProcessInvoker,
    ) -> ProviderResponse:
        """Run one attempt of ``task``. Never touches session or usage state."""
        invocation = self.build_invocation(task, context)
        result = await invoker.run(invocation, self.timeout_for(task), provider=self.name)
        if not result.ok:
            raise self.classify_failure(result)
        return self.parse_output(result.stdout)

    def binary_on_path(self) -> bool:
        return shutil.which(self.binary) is not None

    def clean_env(self) -> dict[str, str]:
        """Build a clean environment for subprocess execution.

        Starts from os.environ, removes problematic vars, applies overrides.
        """
        env = {k: v for k, v in os.environ.items() if k not in _ENV_VARS_TO_REMOVE}
        env.update(self.env_overrides)
        return env

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, binary={self.binary!r})"


def load_json_object(stdout: str, provider: str) -> dict[str, Any]:
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"failed to parse json response: {exc}", provider) from exc
    if not isinstance(data, dict):
        raise ProviderError("json response is not an object", provider)
    return data
