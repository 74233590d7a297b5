"""Claude Code CLI: the fast-reasoning provider.

    claude --print "<prompt>" --output-format json --dangerously-skip-permissions
           [--resume <session>] [--system-prompt ...] [--model ...] [--fallback-model ...]

JSON output is always requested, even for text tasks, because usage and the
resume id are only reported there.
"""

from __future__ import annotations

from typing import Any

import structlog

from praxio.errors import PraxioError, ProviderError, ProviderUnavailable
from praxio.invoker import Invocation, ProcessInvoker, ProcessResult
from praxio.models import (
    Availability,
    ProviderResponse,
    ProviderVariant,
    Task,
    TokenUsage,
)
from praxio.providers.base import (
    CAP_COST_REPORTING,
    CAP_MODEL_FALLBACK,
    CAP_SESSION_RESUME,
    CAP_SYSTEM_PROMPT,
    Provider,
    load_json_object,
)
from praxio.sessions import ProviderContext

logger = structlog.get_logger()

_AUTH_ERROR_PATTERNS = ("Authentication failed", "setup-token", "Invalid API key")


class ClaudeProvider(Provider):
    name = "claude"
    variant = ProviderVariant.FAST_REASONING
    capabilities = frozenset(
        {CAP_SESSION_RESUME, CAP_SYSTEM_PROMPT, CAP_MODEL_FALLBACK, CAP_COST_REPORTING}
    )
    priority = 10

    def build_invocation(self, task: Task, context: ProviderContext) -> Invocation:
        argv = [self.binary, "--print", task.prompt]
        if context.resume_id:
            argv += ["--resume", context.resume_id]
        if task.system_prompt:
            argv += ["--system-prompt", task.system_prompt]
        if task.model:
            argv += ["--model", task.model]
        if task.fallback_model:
            argv += ["--fallback-model", task.fallback_model]
        argv += ["--output-format", "json"]
        # Delegated runs are non-interactive; nobody is there to approve tools.
        argv.append("--dangerously-skip-permissions")
        return Invocation(argv=tuple(argv), cwd=context.workdir, env=self.clean_env())

    def parse_output(self, stdout: str) -> ProviderResponse:
        data = load_json_object(stdout, self.name)
        if data.get("is_error"):
            raise ProviderError(str(data.get("result") or "claude reported an error"), self.name)

        usage: dict[str, Any] = data.get("usage") or {}
        model_usage: dict[str, dict[str, Any]] = data.get("modelUsage") or {}

        # Primary model is the one that produced the most output
        primary_model = "unknown"
        if model_usage:
            primary_model = max(
                model_usage.items(), key=lambda item: int(item[1].get("outputTokens", 0))
            )[0]

        breakdown = [
            {
                "model": model,
                "input_tokens": int(stats.get("inputTokens", 0)),
                "output_tokens": int(stats.get("outputTokens", 0)),
                "cache_read_tokens": int(stats.get("cacheReadInputTokens", 0)),
                "cache_creation_tokens": int(stats.get("cacheCreationInputTokens", 0)),
                "cost_usd": float(stats.get("costUSD", 0.0)),
                "context_window": int(stats.get("contextWindow", 0)),
            }
            for model, stats in model_usage.items()
        ]

        metadata: dict[str, Any] = {
            "uuid": data.get("uuid"),
            "num_turns": data.get("num_turns"),
            "service_tier": usage.get("service_tier"),
        }
        if breakdown:
            metadata["model_breakdown"] = breakdown

        cost = data.get("total_cost_usd")
        return ProviderResponse(
            content=str(data.get("result", "")),
            usage=TokenUsage(
                input=int(usage.get("input_tokens", 0)),
                output=int(usage.get("output_tokens", 0)),
                cache_creation=int(usage.get("cache_creation_input_tokens", 0)),
                cache_read=int(usage.get("cache_read_input_tokens", 0)),
            ),
            primary_model=primary_model,
            all_models_used=tuple(model_usage),
            cost_usd=float(cost) if cost is not None else None,
            api_duration_ms=int(data.get("duration_ms", 0)),
            resume_id=data.get("session_id"),
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    def classify_failure(self, result: ProcessResult) -> PraxioError:
        stderr = result.stderr
        if any(p in stderr for p in _AUTH_ERROR_PATTERNS):
            return ProviderUnavailable(f"authentication failed: {stderr.strip()[:200]}", self.name)
        # A failed --print run may still emit its JSON envelope with the reason
        if result.stdout.strip().startswith("{"):
            try:
                self.parse_output(result.stdout)
            except ProviderError as exc:
                exc.exit_code = result.returncode
                exc.stderr = stderr
                return exc
        return super().classify_failure(result)

    async def probe_availability(self, invoker: ProcessInvoker) -> Availability:
        if not self.binary_on_path():
            return Availability.unavailable(f"{self.binary} CLI not found in PATH")
        try:
            result = await invoker.run(
                Invocation(argv=(self.binary, "--version"), env=self.clean_env()),
                self.probe_timeout,
                provider=self.name,
            )
        except PraxioError as exc:
            return Availability.unavailable(f"{self.binary} --version failed: {exc.message}")
        if not result.ok:
            return Availability.unavailable(
                f"{self.binary} CLI found but not responding correctly (exit {result.returncode})"
            )
        logger.debug("provider_version", provider=self.name, version=result.stdout.strip())
        return Availability.available()

