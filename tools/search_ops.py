"""Search and navigation tools: list_files, find_files, grep."""

import logging
import subprocess
from typing import Dict

from tools._common import ToolResult, ToolContext, require_param
from tools.gitignore import load_gitignore, is_ignored

logger = logging.getLogger(__name__)

_MAX_GREP_LINES = 100
_MAX_FIND_RESULTS = 200


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


def list_files(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """List files and directories at a path, respecting .gitignore."""
    target = (params.get("path") or ".").strip() or "."
    b = ctx.backend
    if not b.is_dir(target):
        return ToolResult.fail(f"Not a directory: {target}")

    gi = load_gitignore(b.working_directory)
    base = b.relative_path(target)
    lines = []
    for e in b.list_dir(target):
        name = e["name"]
        is_dir = e["type"] == "directory"
        rel = name if base == "." else f"{base}/{name}"
        if is_ignored(rel, is_dir, gi):
            continue
        if is_dir:
            lines.append(f"  {name}/")
        else:
            lines.append(f"  {name} ({_format_size(e.get('size', 0))})")

    if not lines:
        return ToolResult.ok(f"{base}/ (empty)")
    return ToolResult.ok(f"{base}/\n" + "\n".join(lines))


def find_files(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Find files matching a glob pattern, respecting .gitignore."""
    err = require_param(params, "pattern")
    if err:
        return err
    b = ctx.backend
    gi = load_gitignore(b.working_directory)
    matches = [m for m in b.glob_find(params["pattern"].strip()) if not is_ignored(m, False, gi)]

    if not matches:
        return ToolResult.ok("No files found matching pattern.")
    output = f"Found {len(matches)} match(es):\n" + "\n".join(f"  {m}" for m in matches[:_MAX_FIND_RESULTS])
    if len(matches) > _MAX_FIND_RESULTS:
        output += f"\n  ... [{len(matches) - _MAX_FIND_RESULTS} more]"
    return ToolResult.ok(output)


def grep(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Search for a regex pattern using ripgrep (or grep fallback)."""
    err = require_param(params, "pattern")
    if err:
        return err
    try:
        result = ctx.backend.search(params["pattern"], (params.get("path") or ".").strip() or ".",
                                    include=params.get("include") or None)
    except subprocess.TimeoutExpired:
        return ToolResult.fail("Search timed out")

    if not result:
        return ToolResult.ok("No matches found.")
    lines = result.split("\n")
    if len(lines) > _MAX_GREP_LINES:
        result = "\n".join(lines[:_MAX_GREP_LINES]) + f"\n\n... [{len(lines) - _MAX_GREP_LINES} more matches truncated]"
    return ToolResult.ok(result)
