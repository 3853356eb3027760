"""File operation tools: read, read many, write, edit_section, delete, move, mkdir."""

import difflib
import logging
from typing import Dict, List

from tools._common import ToolResult, ToolContext, require_param, int_param

logger = logging.getLogger(__name__)

_MAX_MANY_FILES = 10


def _alias(params: Dict[str, str], *names: str) -> str:
    """First non-empty value among equivalent parameter spellings."""
    for n in names:
        value = params.get(n)
        if value:
            return value
    return ""


def _numbered(lines: List[str], start: int = 1) -> str:
    return "\n".join(f"{start + i:6}|{line.rstrip()}" for i, line in enumerate(lines))


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for the tool feedback."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def read_file(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    err = require_param(params, "path")
    if err:
        return err
    path = params["path"].strip()
    b = ctx.backend
    if not b.file_exists(path) or b.is_dir(path):
        return ToolResult.fail(f"File not found: {path}")

    offset = int_param(params, "offset")
    limit = int_param(params, "limit")
    lines = b.read_file(path).splitlines()
    total = len(lines)

    if offset is not None or limit is not None:
        start = max((offset or 1) - 1, 0)
        end = start + (limit or total)
        selected = lines[start:end]
        header = f"[{total} lines total] (showing lines {start + 1}-{start + len(selected)})"
        return ToolResult.ok(header + "\n" + _numbered(selected, start + 1))

    return ToolResult.ok(f"[{total} lines total]\n" + _numbered(lines))


def read_many_files(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Read several comma-separated paths in one call."""
    err = require_param(params, "paths")
    if err:
        return err
    paths = [p.strip() for p in params["paths"].split(",") if p.strip()]
    if len(paths) > _MAX_MANY_FILES:
        return ToolResult.fail(f"Too many paths ({len(paths)}); read at most {_MAX_MANY_FILES} at once")

    sections = []
    failures = 0
    for path in paths:
        res = read_file({"path": path}, ctx)
        if not res.success:
            failures += 1
        sections.append(f"=== {path} ===\n{res.text}")
    if failures == len(paths):
        return ToolResult.fail("\n\n".join(sections))
    return ToolResult.ok("\n\n".join(sections))


def write_file(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = require_param(params, "path")
    if err:
        return err
    path = params["path"].strip()
    content = params.get("content", "")
    b = ctx.backend
    is_new = not b.file_exists(path)
    if not is_new and b.is_dir(path):
        return ToolResult.fail(f"Is a directory: {path}")
    old_content = "" if is_new else b.read_file(path)
    b.write_file(path, content)

    line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
    summary = f"{'Created' if is_new else 'Wrote'} {line_count} lines to {path}"
    if is_new:
        return ToolResult.ok(summary)
    diff_text = _compact_diff(old_content, content, path)
    return ToolResult.ok(f"{summary}\n{diff_text}" if diff_text else summary)


def edit_section(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    """Replace one exact occurrence of old_text with new_text."""
    err = require_param(params, "path")
    if err:
        return err
    path = params["path"].strip()
    old_text = _alias(params, "old_text", "oldText")
    new_text = _alias(params, "new_text", "newText")
    if not old_text:
        return ToolResult.fail("old_text is required")

    b = ctx.backend
    if not b.file_exists(path):
        return ToolResult.fail(f"File not found: {path}")
    content = b.read_file(path)
    count = content.count(old_text)
    if count == 0:
        return ToolResult.fail(
            f"old_text not found in {path}. Ensure it matches exactly, including whitespace. "
            "Re-read the file to see current content.")
    if count > 1:
        return ToolResult.fail(
            f"Found {count} occurrences of old_text in {path}. Add more surrounding context to make it unique.")

    new_content = content.replace(old_text, new_text, 1)
    b.write_file(path, new_content)
    diff_text = _compact_diff(content, new_content, path)
    summary = f"Applied edit to {path}"
    return ToolResult.ok(f"{summary}\n{diff_text}" if diff_text else summary)


def delete_file(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    err = require_param(params, "path")
    if err:
        return err
    path = params["path"].strip()
    b = ctx.backend
    if not b.file_exists(path) or b.is_dir(path):
        return ToolResult.fail(f"File not found: {path}")
    b.remove_file(path)
    return ToolResult.ok(f"Deleted {path}")


def move_file(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    source = _alias(params, "source", "src").strip()
    dest = _alias(params, "dest", "destination").strip()
    if not source or not dest:
        return ToolResult.fail("source and dest are required")
    b = ctx.backend
    if not b.file_exists(source):
        return ToolResult.fail(f"Source not found: {source}")
    if b.file_exists(dest):
        return ToolResult.fail(f"Destination already exists: {dest}")
    b.move(source, dest)
    return ToolResult.ok(f"Moved {source} -> {dest}")


def create_directory(params: Dict[str, str], ctx: ToolContext) -> ToolResult:
    err = require_param(params, "path")
    if err:
        return err
    path = params["path"].strip()
    b = ctx.backend
    if b.file_exists(path) and not b.is_dir(path):
        return ToolResult.fail(f"A file already exists at {path}")
    b.make_dir(path)
    return ToolResult.ok(f"Created directory {path}")
