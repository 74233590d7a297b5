"""MCP server for praxio - exposes provider delegation as MCP tools.

One process holds one PraxioRuntime: the provider registry, the sessions and
the usage ledger live for as long as the server does. Configuration comes
from ``PRAXIO_*`` environment variables (see ``praxio.config.Settings``).

Usage (stdio transport, for Claude Code / Cursor / OpenCode / Codex):
    python -m praxio
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import anyio
import mcp.types as types
import structlog
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.lowlevel.server import NotificationOptions
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server

from praxio import __version__
from praxio.config import Settings
from praxio.errors import InvalidRequest, PraxioError, ProviderError
from praxio.logs import configure_logging
from praxio.models import OutputFormat
from praxio.runtime import PraxioRuntime
from praxio.schemas import parse_batch, parse_session_id, parse_task

logger = structlog.get_logger()

# --------------------------------------------------------------------------- #
# Global state                                                                 #
# --------------------------------------------------------------------------- #

# Set by the server lifespan; tests may install their own runtime.
_runtime: PraxioRuntime | None = None


def _get_runtime() -> PraxioRuntime:
    if _runtime is None:
        raise RuntimeError("praxio runtime is not running")
    return _runtime


def _text(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload, indent=2))]


def _error(exc: PraxioError) -> list[types.TextContent]:
    return _text(
        {
            "success": False,
            "error": {
                "kind": exc.kind.value,
                "message": str(exc),
                "providers": [exc.provider] if exc.provider else [],
            },
        }
    )


# --------------------------------------------------------------------------- #
# Tool definitions                                                             #
# --------------------------------------------------------------------------- #

_COMMON_PROPERTIES: dict[str, Any] = {
    "prompt": {
        "type": "string",
        "description": "The task or question to delegate.",
    },
    "session_id": {
        "type": "string",
        "description": (
            "Continue a conversation. Omit to open a new session; the id is "
            "returned in the result. Sessions expire after an idle period."
        ),
    },
    "timeout_seconds": {
        "type": "number",
        "description": "Deadline for the provider call. Defaults to the provider's own timeout.",
        "exclusiveMinimum": 0,
    },
    "system_prompt": {
        "type": "string",
        "description": "System instructions for this call.",
    },
    "model": {
        "type": "string",
        "description": "Provider-specific model name.",
    },
    "allow_fallback": {
        "type": "boolean",
        "description": (
            "Retry once on the other provider after a timeout or an unavailable "
            "provider. Set false to pin the task to this provider."
        ),
        "default": True,
    },
    "output_format": {
        "type": "string",
        "enum": ["text", "json"],
        "description": "'json' adds provider metadata (models used, turns, model breakdown).",
        "default": "text",
    },
}

TOOLS: list[types.Tool] = [
    types.Tool(
        name="invoke_claude",
        description=(
            "Delegate a task to the fast-reasoning provider (Claude CLI). "
            "Best for reasoning, code generation and focused analysis. "
            "Returns the result with token usage, cost and the session id."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                **_COMMON_PROPERTIES,
                "fallback_model": {
                    "type": "string",
                    "description": "Model the Claude CLI switches to when the primary is overloaded.",
                },
            },
            "required": ["prompt"],
        },
    ),
    types.Tool(
        name="invoke_gemini",
        description=(
            "Delegate a task to the large-context provider (Gemini CLI). "
            "Best for very large inputs such as whole repositories or long documents."
        ),
        inputSchema={
            "type": "object",
            "properties": dict(_COMMON_PROPERTIES),
            "required": ["prompt"],
        },
    ),
    types.Tool(
        name="delegate_batch",
        description=(
            "Run several delegations concurrently. Each task names its provider "
            "('claude', 'gemini' or 'any'). Returns {task_id: outcome} in "
            "submission order; one task failing never affects the others."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "tasks": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            **_COMMON_PROPERTIES,
                            "provider": {
                                "type": "string",
                                "enum": ["claude", "gemini", "any"],
                                "default": "any",
                            },
                            "task_id": {
                                "type": "string",
                                "description": "Caller-chosen id; generated when omitted.",
                            },
                            "fallback_model": {"type": "string"},
                        },
                        "required": ["prompt"],
                    },
                },
            },
            "required": ["tasks"],
        },
    ),
    types.Tool(
        name="close_session",
        description="Close a session and discard its provider contexts.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {"type": "string"},
            },
            "required": ["session_id"],
        },
    ),
    types.Tool(
        name="list_sessions",
        description="List sessions with their idle time and per-provider turn counts.",
        inputSchema={
            "type": "object",
            "properties": {
                "include_closed": {
                    "type": "boolean",
                    "description": "Also list expired and closed sessions.",
                    "default": False,
                },
            },
            "required": [],
        },
    ),
    types.Tool(
        name="get_usage",
        description="Cumulative token, time and cost usage per provider and per session.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="provider_status",
        description="Availability of each provider, optionally re-probing them first.",
        inputSchema={
            "type": "object",
            "properties": {
                "reprobe": {"type": "boolean", "default": False},
            },
            "required": [],
        },
    ),
]


# --------------------------------------------------------------------------- #
# Tool handlers                                                                #
# --------------------------------------------------------------------------- #


async def _delegate(args: dict[str, Any], provider: str) -> list[types.TextContent]:
    try:
        task = parse_task(args, provider=provider)
    except PraxioError as exc:
        return _error(exc)
    outcome = await _get_runtime().delegate(task)
    return _text(outcome.to_dict(include_metadata=task.output_format is OutputFormat.JSON))


async def _handle_invoke_claude(args: dict[str, Any]) -> list[types.TextContent]:
    return await _delegate(args, "claude")


async def _handle_invoke_gemini(args: dict[str, Any]) -> list[types.TextContent]:
    args = {k: v for k, v in args.items() if k != "fallback_model"}
    return await _delegate(args, "gemini")


async def _handle_delegate_batch(args: dict[str, Any]) -> list[types.TextContent]:
    try:
        tasks = parse_batch(args)
        outcomes = await _get_runtime().delegate_batch(tasks)
    except PraxioError as exc:
        return _error(exc)
    formats = {t.task_id: t.output_format for t in tasks}
    return _text(
        {
            task_id: outcome.to_dict(include_metadata=formats[task_id] is OutputFormat.JSON)
            for task_id, outcome in outcomes.items()
        }
    )


async def _handle_close_session(args: dict[str, Any]) -> list[types.TextContent]:
    try:
        session_id = parse_session_id(args)
        closed = await _get_runtime().close_session(session_id)
    except PraxioError as exc:
        return _error(exc)
    return _text(closed)


async def _handle_list_sessions(args: dict[str, Any]) -> list[types.TextContent]:
    include_closed = bool(args.get("include_closed", False))
    sessions = _get_runtime().sessions.describe(include_terminated=include_closed)
    return _text({"sessions": sessions, "count": len(sessions)})


async def _handle_get_usage(args: dict[str, Any]) -> list[types.TextContent]:
    return _text(_get_runtime().usage_snapshot().to_dict())


async def _handle_provider_status(args: dict[str, Any]) -> list[types.TextContent]:
    providers = await _get_runtime().provider_status(reprobe=bool(args.get("reprobe", False)))
    return _text({"providers": providers})


_TOOL_HANDLERS: dict[str, Callable[[dict[str, Any]], Awaitable[list[types.TextContent]]]] = {
    "invoke_claude": _handle_invoke_claude,
    "invoke_gemini": _handle_invoke_gemini,
    "delegate_batch": _handle_delegate_batch,
    "close_session": _handle_close_session,
    "list_sessions": _handle_list_sessions,
    "get_usage": _handle_get_usage,
    "provider_status": _handle_provider_status,
}


# --------------------------------------------------------------------------- #
# Resource helpers                                                             #
# --------------------------------------------------------------------------- #


async def _resource_usage() -> str:
    """Render the usage ledger as JSON."""
    return json.dumps(_get_runtime().usage_snapshot().to_dict(), indent=2)


async def _resource_providers() -> str:
    """Render provider availability and scheduler load as JSON."""
    return json.dumps(_get_runtime().status(), indent=2)


async def _resource_sessions() -> str:
    return json.dumps({"sessions": _get_runtime().sessions.describe()}, indent=2)


_RESOURCES: dict[str, tuple[str, Callable[[], Awaitable[str]]]] = {
    "praxio://usage": ("Cumulative token and cost usage.", _resource_usage),
    "praxio://providers": ("Provider availability and scheduler load.", _resource_providers),
    "praxio://sessions": ("Active delegation sessions.", _resource_sessions),
}


# --------------------------------------------------------------------------- #
# Server factory                                                               #
# --------------------------------------------------------------------------- #


def create_server(settings: Settings | None = None) -> Server:
    """Build and return the configured MCP Server instance."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(server: Server) -> AsyncIterator[None]:
        global _runtime
        configure_logging(settings.log_level, settings.log_format)
        _runtime = PraxioRuntime(settings)
        await _runtime.start()
        logger.info(
            "praxio_mcp_server_start",
            version=__version__,
            max_in_flight=settings.max_concurrent_delegations,
            work_root=str(settings.work_root),
        )
        try:
            yield
        finally:
            await _runtime.close()
            _runtime = None
            logger.info("praxio_mcp_server_stop")

    server = Server("praxio", lifespan=lifespan)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        return await dispatch(name, arguments)

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return [
            types.Resource(
                uri=uri,  # type: ignore[arg-type]
                name=uri,
                description=description,
                mimeType="application/json",
            )
            for uri, (description, _) in _RESOURCES.items()
        ]

    @server.read_resource()
    async def read_resource(uri: Any) -> list[ReadResourceContents]:
        uri_str = str(uri)
        entry = _RESOURCES.get(uri_str)
        if entry is None:
            content = json.dumps({"error": f"Unknown resource URI: {uri_str}"})
        else:
            content = await entry[1]()
        return [ReadResourceContents(content=content, mime_type="application/json")]

    return server


async def dispatch(name: str, arguments: dict[str, Any] | None) -> list[types.TextContent]:
    """Route one tool call. Every error comes back with a stable ``kind``."""
    handler = _TOOL_HANDLERS.get(name)
    if handler is None:
        return _error(InvalidRequest(f"unknown tool: {name}"))
    try:
        return await handler(arguments or {})
    except PraxioError as exc:
        return _error(exc)
    except Exception as exc:
        logger.error("tool_call_error", tool=name, error=str(exc))
        return _error(ProviderError(f"unexpected {type(exc).__name__}: {exc}"))


# --------------------------------------------------------------------------- #
# Stdio entry point                                                            #
# --------------------------------------------------------------------------- #


async def run_stdio() -> None:
    """Run the MCP server over stdin/stdout."""
    server = create_server()
    init_options = InitializationOptions(
        server_name="praxio",
        server_version=__version__,
        capabilities=server.get_capabilities(
            notification_options=NotificationOptions(),
            experimental_capabilities={},
        ),
        instructions=(
            "praxio delegates subtasks to external model CLIs. "
            "invoke_claude for fast reasoning, invoke_gemini for large context, "
            "delegate_batch to run several at once. Pass the returned session_id "
            "to continue a conversation; close_session when done. "
            "get_usage and provider_status report cost and availability."
        ),
    )
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream=read_stream,
            write_stream=write_stream,
            initialization_options=init_options,
        )


def main() -> None:
    anyio.run(run_stdio)


if __name__ == "__main__":
    main()
