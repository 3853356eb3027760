"""
Tool definitions and implementations for the coding engine.
Each tool is a ToolSpec in a ToolRegistry: a handler plus the classification
the dispatcher uses (read-only vs write, destructive, confirmed).
Tools use a Backend abstraction for file/command operations.
"""

from tools._common import ToolResult, ToolContext  # noqa: F401
from tools.registry import ToolSpec, ToolRegistry, READ_ONLY, WRITE  # noqa: F401
from tools.file_ops import (
    read_file,
    read_many_files,
    write_file,
    edit_section,
    delete_file,
    move_file,
    create_directory,
)
from tools.search_ops import list_files, find_files, grep
from tools.external_ops import (  # noqa: F401
    run_command,
    git_status,
    git_diff,
    git_log,
    wait_for_user,
    is_safe_command,
)


def _read_tool(name, handler, description, parameters, truncate=False):
    return ToolSpec(name=name, handler=handler, category=READ_ONLY, description=description,
                    parameters=parameters, cacheable=True, truncate_output=truncate)


def build_default_registry() -> ToolRegistry:
    """Registry with every built-in tool."""
    return ToolRegistry([
        _read_tool("read_file", read_file, "Read a file with line numbers",
                   {"path": "file path", "offset": "first line (optional)", "limit": "line count (optional)"},
                   truncate=True),
        _read_tool("read_many_files", read_many_files, "Read several files at once",
                   {"paths": "comma-separated file paths"}, truncate=True),
        _read_tool("list_files", list_files, "List a directory (respects .gitignore)",
                   {"path": "directory (default .)"}, truncate=True),
        _read_tool("find_files", find_files, "Find files by glob pattern",
                   {"pattern": "glob, e.g. **/*.py"}),
        _read_tool("grep", grep, "Search file contents by regex",
                   {"pattern": "regex", "path": "directory or file (optional)", "include": "file glob (optional)"}),
        _read_tool("git_status", git_status, "Show git status", {}),
        _read_tool("git_diff", git_diff, "Show uncommitted changes",
                   {"path": "limit to path (optional)", "staged": "true for staged changes (optional)"}),
        _read_tool("git_log", git_log, "Show recent commits",
                   {"limit": "number of commits (default 10)", "path": "limit to path (optional)"}),
        ToolSpec(name="write_file", handler=write_file, category=WRITE, destructive=True,
                 description="Create or overwrite a file; the file content goes between the tags",
                 parameters={"path": "file path"}, takes_content=True,
                 mutates_source=True, confirm=True),
        ToolSpec(name="edit_section", handler=edit_section, category=WRITE, destructive=True,
                 description="Replace one exact, unique section of a file",
                 parameters={"path": "file path", "old_text": "text to replace", "new_text": "replacement"},
                 mutates_source=True, confirm=True),
        ToolSpec(name="delete_file", handler=delete_file, category=WRITE, destructive=True,
                 description="Delete a file", parameters={"path": "file path"},
                 mutates_source=True, confirm=True),
        ToolSpec(name="move_file", handler=move_file, category=WRITE, destructive=True,
                 description="Move or rename a file",
                 parameters={"source": "current path", "dest": "new path"},
                 mutates_source=True, confirm=True),
        ToolSpec(name="create_directory", handler=create_directory, category=WRITE, destructive=True,
                 description="Create a directory", parameters={"path": "directory path"}, confirm=True),
        ToolSpec(name="run_command", handler=run_command, category=WRITE, destructive=True,
                 description="Run a shell command in the project root",
                 parameters={"command": "shell command", "timeout": "seconds (default 120, optional)"},
                 confirm=True, safe_when=lambda p: is_safe_command(p.get("command", ""))),
        ToolSpec(name="wait_for_user", handler=wait_for_user, category=WRITE,
                 description="Stop and wait for the user's answer; always use after asking a question",
                 parameters={"reason": "what you need from the user"}, stops_turn=True),
    ])


__all__ = [
    "ToolResult", "ToolContext", "ToolSpec", "ToolRegistry", "READ_ONLY", "WRITE",
    "build_default_registry", "is_safe_command",
]
