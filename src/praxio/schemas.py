"""Request models for the tool surface."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from praxio.errors import InvalidRequest
from praxio.models import ANY_PROVIDER, OutputFormat, Task


class DelegateRequest(BaseModel):
    """Arguments accepted by ``invoke_claude`` / ``invoke_gemini`` and batch items."""

    prompt: str
    provider: str = ANY_PROVIDER
    session_id: str | None = None
    timeout_seconds: float | None = Field(default=None, description="Overrides the provider default")
    allow_fallback: bool = True
    output_format: OutputFormat = OutputFormat.TEXT
    system_prompt: str | None = None
    model: str | None = None
    fallback_model: str | None = None
    required_capabilities: list[str] = Field(default_factory=list)
    task_id: str | None = None

    model_config = {"extra": "ignore"}

    def to_task(self) -> Task:
        fields: dict[str, Any] = {
            "prompt": self.prompt,
            "provider": self.provider,
            "allow_fallback": self.allow_fallback,
            "session_id": self.session_id,
            "timeout_seconds": self.timeout_seconds,
            "output_format": self.output_format,
            "system_prompt": self.system_prompt,
            "model": self.model,
            "fallback_model": self.fallback_model,
            "required_capabilities": frozenset(self.required_capabilities),
        }
        if self.task_id:
            fields["task_id"] = self.task_id
        return Task(**fields)


class BatchRequest(BaseModel):
    tasks: list[DelegateRequest] = Field(min_length=1)


class CloseSessionRequest(BaseModel):
    session_id: str = Field(min_length=1)


def parse_task(args: dict[str, Any], provider: str | None = None) -> Task:
    """Validate tool arguments into a Task; ``provider`` overrides any given selector."""
    data = dict(args)
    if provider is not None:
        data["provider"] = provider
    try:
        return DelegateRequest.model_validate(data).to_task()
    except ValidationError as exc:
        raise InvalidRequest(_describe(exc)) from exc


def parse_batch(args: dict[str, Any]) -> list[Task]:
    try:
        request = BatchRequest.model_validate(args)
    except ValidationError as exc:
        raise InvalidRequest(_describe(exc)) from exc
    return [item.to_task() for item in request.tasks]


def parse_session_id(args: dict[str, Any]) -> str:
    try:
        return CloseSessionRequest.model_validate(args).session_id
    except ValidationError as exc:
        raise InvalidRequest(_describe(exc)) from exc


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err["loc"]) or "request"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)
