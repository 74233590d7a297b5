"""Gemini CLI: the large-context provider.

    gemini -p "<prompt>" --output-format json [--resume <session>] [--model ...]

The CLI has no system-prompt flag, so a system prompt is folded into the
prompt body. It reports tokens but not cost; cost comes from the rate
schedule.
"""

from __future__ import annotations

from typing import Any

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
    CAP_LARGE_CONTEXT,
    CAP_SESSION_RESUME,
    CAP_SYSTEM_PROMPT,
    CAP_THINKING_TOKENS,
    Provider,
    load_json_object,
)
from praxio.sessions import ProviderContext

API_KEY_ENV = "GEMINI_API_KEY"

# Noise the CLI prints to stdout ahead of the JSON document
_STDOUT_NOISE_PREFIXES = ("Loaded cached credentials",)


class GeminiProvider(Provider):
    name = "gemini"
    variant = ProviderVariant.LARGE_CONTEXT
    capabilities = frozenset(
        {CAP_SESSION_RESUME, CAP_SYSTEM_PROMPT, CAP_LARGE_CONTEXT, CAP_THINKING_TOKENS}
    )
    priority = 20

    def build_invocation(self, task: Task, context: ProviderContext) -> Invocation:
        prompt = task.prompt
        if task.system_prompt:
            prompt = f"[System Instructions]\n{task.system_prompt}\n\n{task.prompt}"
        argv = [self.binary, "-p", prompt]
        if context.resume_id:
            argv += ["--resume", context.resume_id]
        if task.model:
            argv += ["--model", task.model]
        argv += ["--output-format", "json"]
        return Invocation(argv=tuple(argv), cwd=context.workdir, env=self.clean_env())

    def parse_output(self, stdout: str) -> ProviderResponse:
        data = load_json_object(clean_stdout(stdout), self.name)
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderError(str(message), self.name)

        stats: dict[str, Any] = data.get("stats") or {}
        models: dict[str, dict[str, Any]] = stats.get("models") or {}
        if not models:
            raise ProviderError("no model stats found in gemini response", self.name)

        # One model per request in practice; sum in case the CLI reports more
        input_tokens = output_tokens = cached = thoughts = api_errors = latency = 0
        for model_stats in models.values():
            tokens = model_stats.get("tokens") or {}
            api = model_stats.get("api") or {}
            input_tokens += int(tokens.get("prompt", 0))
            output_tokens += int(tokens.get("candidates", 0))
            cached += int(tokens.get("cached", 0))
            thoughts += int(tokens.get("thoughts", 0))
            api_errors += int(api.get("totalErrors", 0))
            latency += int(api.get("totalLatencyMs", 0))

        tools = stats.get("tools") or {}
        metadata: dict[str, Any] = {
            "uuid": data.get("uuid"),
            "num_turns": data.get("numTurns"),
            "api_errors": api_errors,
            "tool_calls": int(tools.get("totalCalls", 0)),
        }
        return ProviderResponse(
            content=str(data.get("response", "")),
            usage=TokenUsage(
                input=input_tokens,
                output=output_tokens,
                cache_read=cached,
                thinking=thoughts,
            ),
            primary_model=next(iter(models)),
            all_models_used=tuple(models),
            cost_usd=None,
            api_duration_ms=latency,
            resume_id=data.get("sessionId"),
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    def classify_failure(self, result: ProcessResult) -> PraxioError:
        stderr = result.stderr
        if API_KEY_ENV in stderr and "not found" in stderr:
            return ProviderUnavailable(f"{API_KEY_ENV} environment variable not set", self.name)
        if "Error when talking to Gemini API" in stderr:
            return ProviderError(
                f"gemini API error: {stderr.strip()[-500:]}",
                self.name,
                exit_code=result.returncode,
                stderr=stderr,
            )
        return super().classify_failure(result)

    async def probe_availability(self, invoker: ProcessInvoker) -> Availability:
        if not self.clean_env().get(API_KEY_ENV):
            return Availability.unavailable(f"{API_KEY_ENV} environment variable not set")
        if not self.binary_on_path():
            return Availability.unavailable(f"{self.binary} CLI not found in PATH")
        return Availability.available()


def clean_stdout(stdout: str) -> str:
    return "\n".join(
        line for line in stdout.splitlines() if not line.startswith(_STDOUT_NOISE_PREFIXES)
    )
