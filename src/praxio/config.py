"""Runtime configuration via environment variables (``PRAXIO_*``) or ``.env``."""

from __future__ import annotations

import tempfile
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from praxio.models import CostSchedule


def _default_work_root() -> Path:
    return Path(tempfile.gettempdir()) / "praxio"


class Settings(BaseSettings):
    # Provider binaries, resolved through PATH unless absolute
    claude_binary: str = "claude"
    gemini_binary: str = "gemini"

    # Timeouts (seconds)
    fast_timeout_seconds: float = Field(default=30.0, gt=0)
    large_context_timeout_seconds: float = Field(default=60.0, gt=0)
    probe_timeout_seconds: float = Field(default=10.0, gt=0)
    kill_grace_seconds: float = Field(default=0.2, ge=0)

    # Sessions
    session_idle_seconds: float = Field(default=3600.0, gt=0)
    session_sweep_interval_seconds: float = Field(default=60.0, gt=0)
    work_root: Path = Field(default_factory=_default_work_root)

    # Scheduling and availability
    max_concurrent_delegations: int = Field(default=4, ge=1)
    reprobe_after_failures: int = Field(default=2, ge=1)
    probe_ttl_seconds: float = Field(default=300.0, gt=0)

    # Rate schedules, USD per million tokens
    claude_input_cost_per_mtok: float = 3.0
    claude_output_cost_per_mtok: float = 15.0
    gemini_input_cost_per_mtok: float = 1.25
    gemini_output_cost_per_mtok: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    model_config = SettingsConfigDict(
        env_prefix="PRAXIO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def claude_rates(self) -> CostSchedule:
        return CostSchedule(self.claude_input_cost_per_mtok, self.claude_output_cost_per_mtok)

    @property
    def gemini_rates(self) -> CostSchedule:
        return CostSchedule(self.gemini_input_cost_per_mtok, self.gemini_output_cost_per_mtok)
