"""Shared types for the tools package."""

from dataclasses import dataclass
from typing import Any, Optional

from backend import Backend, LocalBackend


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    tool_name: str = ""
    skipped: bool = False

    @property
    def text(self) -> str:
        if self.success:
            return self.output
        return self.error or self.output or "unknown error"

    @classmethod
    def ok(cls, output: str, tool_name: str = "") -> "ToolResult":
        return cls(success=True, output=output, tool_name=tool_name)

    @classmethod
    def fail(cls, error: str, tool_name: str = "", output: str = "") -> "ToolResult":
        return cls(success=False, output=output, error=error, tool_name=tool_name)


@dataclass
class ToolContext:
    """What a tool handler may touch: the project root, its backend, and an optional confirmer."""
    working_directory: str
    backend: Optional[Backend] = None
    confirm: Optional[Any] = None
    timeout: float = 60.0

    def __post_init__(self):
        if self.backend is None:
            self.backend = LocalBackend(self.working_directory)


def require_param(params, name: str) -> Optional[ToolResult]:
    """Return an error ToolResult if params[name] is empty/whitespace; else None."""
    if not (params.get(name) or "").strip():
        return ToolResult.fail(f"{name} is required")
    return None


def int_param(params, name: str, default: Optional[int] = None) -> Optional[int]:
    """Coerce a string parameter to int; markup attributes are always strings."""
    raw = (params.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
