"""Tests for the Claude and Gemini CLI providers."""

from __future__ import annotations

import json
import os
import stat
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from praxio.errors import FailureKind, ProviderError, ProviderUnavailable
from praxio.invoker import ProcessInvoker, ProcessResult
from praxio.models import Task
from praxio.providers import ClaudeProvider, GeminiProvider
from praxio.providers.base import _ENV_VARS_TO_REMOVE
from praxio.providers.gemini import API_KEY_ENV, clean_stdout
from praxio.sessions import ProviderContext

CLAUDE_OUTPUT = {
    "type": "result",
    "is_error": False,
    "result": "4",
    "session_id": "claude-session-1",
    "total_cost_usd": 0.0123,
    "duration_ms": 1500,
    "num_turns": 1,
    "uuid": "u-1",
    "usage": {
        "input_tokens": 120,
        "output_tokens": 40,
        "cache_creation_input_tokens": 5,
        "cache_read_input_tokens": 7,
        "service_tier": "standard",
    },
    "modelUsage": {
        "claude-haiku": {"inputTokens": 10, "outputTokens": 2, "costUSD": 0.0001},
        "claude-sonnet": {"inputTokens": 110, "outputTokens": 38, "costUSD": 0.0122},
    },
}

GEMINI_OUTPUT = {
    "response": "summary of the repo",
    "sessionId": "gemini-session-1",
    "stats": {
        "models": {
            "gemini-2.5-pro": {
                "api": {"totalRequests": 1, "totalErrors": 0, "totalLatencyMs": 2100},
                "tokens": {"prompt": 5000, "candidates": 300, "cached": 100, "thoughts": 50},
            }
        },
        "tools": {"totalCalls": 2},
    },
}


def result(stdout: str = "", stderr: str = "", returncode: int = 1) -> ProcessResult:
    return ProcessResult(stdout=stdout, stderr=stderr, returncode=returncode, elapsed_ms=5)


@pytest.fixture
def claude() -> ClaudeProvider:
    return ClaudeProvider(binary="claude", default_timeout=30.0)


@pytest.fixture
def gemini() -> GeminiProvider:
    return GeminiProvider(binary="gemini", default_timeout=60.0)


class TestClaudeInvocation:
    def test_fresh_session(self, claude: ClaudeProvider, tmp_path: Path):
        context = ProviderContext(provider="claude", workdir=tmp_path / "claude")
        invocation = claude.build_invocation(Task(prompt="What is 2+2?"), context)
        assert invocation.argv == (
            "claude",
            "--print",
            "What is 2+2?",
            "--output-format",
            "json",
            "--dangerously-skip-permissions",
        )
        assert invocation.cwd == tmp_path / "claude"

    def test_resume_and_options(self, claude: ClaudeProvider, tmp_path: Path):
        context = ProviderContext(provider="claude", workdir=tmp_path, resume_id="abc")
        task = Task(
            prompt="continue",
            system_prompt="be terse",
            model="sonnet",
            fallback_model="haiku",
        )
        argv = claude.build_invocation(task, context).argv
        assert argv[argv.index("--resume") + 1] == "abc"
        assert argv[argv.index("--system-prompt") + 1] == "be terse"
        assert argv[argv.index("--model") + 1] == "sonnet"
        assert argv[argv.index("--fallback-model") + 1] == "haiku"

    def test_clean_env_strips_nesting_markers(self, claude: ClaudeProvider, tmp_path: Path):
        with patch.dict(os.environ, {"CLAUDECODE": "1", "NODE_OPTIONS": "--inspect", "KEEP": "y"}):
            env = claude.build_invocation(
                Task(prompt="x"), ProviderContext(provider="claude", workdir=tmp_path)
            ).env
        assert env is not None
        assert not _ENV_VARS_TO_REMOVE & set(env)
        assert env["KEEP"] == "y"

    def test_timeout_override(self, claude: ClaudeProvider):
        assert claude.timeout_for(Task(prompt="x")) == 30.0
        assert claude.timeout_for(Task(prompt="x", timeout_seconds=2.5)) == 2.5


class TestClaudeParsing:
    def test_parse_output(self, claude: ClaudeProvider):
        response = claude.parse_output(json.dumps(CLAUDE_OUTPUT))
        assert response.content == "4"
        assert response.usage.input == 120
        assert response.usage.output == 40
        assert response.usage.cache_creation == 5
        assert response.usage.cache_read == 7
        assert response.cost_usd == pytest.approx(0.0123)
        assert response.resume_id == "claude-session-1"
        assert response.primary_model == "claude-sonnet"
        assert set(response.all_models_used) == {"claude-haiku", "claude-sonnet"}
        assert response.metadata["service_tier"] == "standard"
        assert len(response.metadata["model_breakdown"]) == 2

    def test_parse_error_envelope(self, claude: ClaudeProvider):
        with pytest.raises(ProviderError, match="overloaded"):
            claude.parse_output(json.dumps({"is_error": True, "result": "overloaded"}))

    def test_parse_garbage(self, claude: ClaudeProvider):
        with pytest.raises(ProviderError, match="failed to parse"):
            claude.parse_output("not json")

    def test_parse_usage(self, claude: ClaudeProvider):
        assert claude.parse_usage(json.dumps(CLAUDE_OUTPUT)).total == 160


class TestClaudeFailures:
    def test_auth_failure_is_unavailable(self, claude: ClaudeProvider):
        error = claude.classify_failure(result(stderr="Invalid API key · Please run /login"))
        assert isinstance(error, ProviderUnavailable)
        assert error.kind is FailureKind.UNAVAILABLE

    def test_command_not_found(self, claude: ClaudeProvider):
        error = claude.classify_failure(result(returncode=127))
        assert error.kind is FailureKind.UNAVAILABLE

    def test_error_envelope_on_failure(self, claude: ClaudeProvider):
        stdout = json.dumps({"is_error": True, "result": "prompt too long"})
        error = claude.classify_failure(result(stdout=stdout, returncode=1))
        assert isinstance(error, ProviderError)
        assert "prompt too long" in error.message
        assert error.exit_code == 1

    def test_other_exit_is_provider_error(self, claude: ClaudeProvider):
        error = claude.classify_failure(result(stderr="something broke", returncode=2))
        assert error.kind is FailureKind.PROVIDER_ERROR
        assert "code 2" in error.message


class TestClaudeProbe:
    @pytest.mark.asyncio
    async def test_missing_binary(self, claude: ClaudeProvider, invoker: ProcessInvoker):
        with patch("praxio.providers.base.shutil.which", return_value=None):
            availability = await claude.probe_availability(invoker)
        assert not availability.is_available
        assert "not found" in availability.reason

    @pytest.mark.asyncio
    async def test_version_ok(self, claude: ClaudeProvider):
        invoker = AsyncMock(spec=ProcessInvoker)
        invoker.run.return_value = result(stdout="1.0.0 (Claude Code)", returncode=0)
        with patch("praxio.providers.base.shutil.which", return_value="/usr/bin/claude"):
            availability = await claude.probe_availability(invoker)
        assert availability.is_available
        assert invoker.run.call_args[0][0].argv == ("claude", "--version")

    @pytest.mark.asyncio
    async def test_version_fails(self, claude: ClaudeProvider):
        invoker = AsyncMock(spec=ProcessInvoker)
        invoker.run.return_value = result(returncode=1)
        with patch("praxio.providers.base.shutil.which", return_value="/usr/bin/claude"):
            availability = await claude.probe_availability(invoker)
        assert not availability.is_available


class TestGemini:
    def test_invocation_folds_system_prompt(self, gemini: GeminiProvider, tmp_path: Path):
        context = ProviderContext(provider="gemini", workdir=tmp_path, resume_id="g1")
        task = Task(prompt="summarize", system_prompt="be brief", model="gemini-2.5-pro")
        argv = gemini.build_invocation(task, context).argv
        assert argv[:2] == ("gemini", "-p")
        assert argv[2].startswith("[System Instructions]\nbe brief")
        assert argv[2].endswith("summarize")
        assert argv[argv.index("--resume") + 1] == "g1"
        assert argv[argv.index("--model") + 1] == "gemini-2.5-pro"
        assert argv[-2:] == ("--output-format", "json")

    def test_parse_output(self, gemini: GeminiProvider):
        stdout = "Loaded cached credentials.\n" + json.dumps(GEMINI_OUTPUT)
        response = gemini.parse_output(stdout)
        assert response.content == "summary of the repo"
        assert response.usage.input == 5000
        assert response.usage.output == 300
        assert response.usage.cache_read == 100
        assert response.usage.thinking == 50
        assert response.cost_usd is None
        assert response.resume_id == "gemini-session-1"
        assert response.primary_model == "gemini-2.5-pro"
        assert response.api_duration_ms == 2100
        assert response.metadata["tool_calls"] == 2

    def test_parse_error_object(self, gemini: GeminiProvider):
        with pytest.raises(ProviderError, match="quota"):
            gemini.parse_output(json.dumps({"error": {"message": "quota exceeded"}}))

    def test_parse_without_stats(self, gemini: GeminiProvider):
        with pytest.raises(ProviderError, match="no model stats"):
            gemini.parse_output(json.dumps({"response": "x"}))

    def test_clean_stdout(self):
        assert clean_stdout("Loaded cached credentials.\n{}") == "{}"

    def test_missing_api_key_is_unavailable(self, gemini: GeminiProvider):
        error = gemini.classify_failure(result(stderr=f"{API_KEY_ENV} not found"))
        assert error.kind is FailureKind.UNAVAILABLE

    def test_api_error_is_provider_error(self, gemini: GeminiProvider):
        error = gemini.classify_failure(result(stderr="Error when talking to Gemini API: 500"))
        assert error.kind is FailureKind.PROVIDER_ERROR

    @pytest.mark.asyncio
    async def test_probe_requires_api_key(self, gemini: GeminiProvider, invoker: ProcessInvoker):
        with patch.dict(os.environ, {}, clear=True):
            availability = await gemini.probe_availability(invoker)
        assert not availability.is_available
        assert API_KEY_ENV in availability.reason

    @pytest.mark.asyncio
    async def test_probe_ok(self, gemini: GeminiProvider, invoker: ProcessInvoker):
        with (
            patch.dict(os.environ, {API_KEY_ENV: "k"}),
            patch("praxio.providers.base.shutil.which", return_value="/usr/bin/gemini"),
        ):
            availability = await gemini.probe_availability(invoker)
        assert availability.is_available


# --------------------------------------------------------------------------- #
# End to end through a stand-in CLI                                            #
# --------------------------------------------------------------------------- #


def fake_cli(tmp_path: Path, body: str) -> str:
    path = tmp_path / "fake-cli"
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.mark.skipif(sys.platform == "win32", reason="needs an executable script")
class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_success(self, tmp_path: Path, invoker: ProcessInvoker):
        body = f"import sys\nsys.stdout.write({json.dumps(json.dumps(CLAUDE_OUTPUT))})\n"
        provider = ClaudeProvider(binary=fake_cli(tmp_path, body), default_timeout=10.0)
        context = ProviderContext(provider="claude", workdir=tmp_path / "ctx")
        response = await provider.submit(Task(prompt="2+2"), context, invoker)
        assert response.content == "4"
        assert response.usage.input == 120
        assert (tmp_path / "ctx").is_dir()

    @pytest.mark.asyncio
    async def test_submit_auth_failure(self, tmp_path: Path, invoker: ProcessInvoker):
        body = "import sys\nsys.stderr.write('Authentication failed')\nsys.exit(1)\n"
        provider = ClaudeProvider(binary=fake_cli(tmp_path, body), default_timeout=10.0)
        context = ProviderContext(provider="claude", workdir=tmp_path / "ctx")
        with pytest.raises(ProviderUnavailable):
            await provider.submit(Task(prompt="x"), context, invoker)
