"""praxio - delegate subtasks to external model CLIs over MCP."""

__all__ = ["PraxioRuntime", "Settings", "Task"]
__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy imports - keep ``import praxio`` free of the MCP and pydantic stack."""
    if name == "PraxioRuntime":
        from praxio.runtime import PraxioRuntime

        return PraxioRuntime
    if name == "Settings":
        from praxio.config import Settings

        return Settings
    if name == "Task":
        from praxio.models import Task

        return Task
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
