"""Built-in tool handlers against a LocalBackend in a temp project."""

import shutil

import pytest

from tools import build_default_registry, is_safe_command
from tools._common import ToolContext, int_param
from tools.external_ops import run_command, wait_for_user
from tools.file_ops import (
    create_directory,
    delete_file,
    edit_section,
    move_file,
    read_file,
    read_many_files,
    write_file,
)
from tools.gitignore import invalidate_gitignore_cache
from tools.search_ops import find_files, grep, list_files


@pytest.fixture
def ctx(project):
    invalidate_gitignore_cache()
    return ToolContext(str(project))


def test_registry_classification():
    registry = build_default_registry()
    assert len(registry) == 15
    read_only = {s.name for s in registry if s.read_only}
    assert read_only == {"read_file", "read_many_files", "list_files", "find_files", "grep",
                         "git_status", "git_diff", "git_log"}
    assert registry.get("write_file").destructive
    assert registry.get("write_file").takes_content
    assert not registry.get("wait_for_user").destructive
    assert registry.get("wait_for_user").stops_turn
    command = registry.get("run_command")
    assert not command.is_destructive({"command": "python -m pytest tests"})
    assert not command.needs_confirmation({"command": "npm test"})
    assert command.is_destructive({"command": "rm -rf build"})
    assert command.needs_confirmation({"command": "rm -rf build"})
    assert '<tool name="write_file" path="...">...</tool>' in registry.catalogue()


def test_registry_rejects_duplicates():
    registry = build_default_registry()
    with pytest.raises(ValueError):
        registry.register(registry.get("grep"))


def test_read_file_numbered(ctx):
    result = read_file({"path": "src/app.py"}, ctx)
    assert result.success
    assert result.output == "[2 lines total]\n     1|def main():\n     2|    return 1"


def test_read_file_range_and_missing(ctx):
    result = read_file({"path": "src/app.py", "offset": "2", "limit": "1"}, ctx)
    assert result.output == "[2 lines total] (showing lines 2-2)\n     2|    return 1"
    assert read_file({"path": "nope.py"}, ctx).error == "File not found: nope.py"
    assert read_file({}, ctx).error == "path is required"


def test_read_file_bad_offset(ctx):
    with pytest.raises(ValueError):
        read_file({"path": "src/app.py", "offset": "two"}, ctx)
    assert int_param({"n": " 3 "}, "n") == 3


def test_read_many_files(ctx):
    result = read_many_files({"paths": "README.md, missing.txt"}, ctx)
    assert result.success
    assert "=== README.md ===\n[1 lines total]" in result.output
    assert "=== missing.txt ===\nFile not found: missing.txt" in result.output


def test_write_then_overwrite_shows_diff(ctx, project):
    created = write_file({"path": "notes/todo.txt", "content": "a\nb\n"}, ctx)
    assert created.output == "Created 2 lines to notes/todo.txt"
    updated = write_file({"path": "notes/todo.txt", "content": "a\nc\n"}, ctx)
    assert updated.output.startswith("Wrote 2 lines to notes/todo.txt\n")
    assert "-b" in updated.output and "+c" in updated.output
    assert (project / "notes" / "todo.txt").read_text() == "a\nc\n"


def test_write_outside_project_is_refused(ctx):
    with pytest.raises(ValueError):
        write_file({"path": "../escape.txt", "content": "x"}, ctx)


def test_edit_section_unique_match(ctx, project):
    result = edit_section({"path": "src/app.py", "oldText": "return 1", "newText": "return 42"}, ctx)
    assert result.success
    assert "return 42" in (project / "src" / "app.py").read_text()
    missing = edit_section({"path": "src/app.py", "old_text": "return 1", "new_text": "x"}, ctx)
    assert "not found" in missing.error


def test_edit_section_ambiguous(ctx, project):
    (project / "dup.txt").write_text("x\nx\n")
    result = edit_section({"path": "dup.txt", "old_text": "x", "new_text": "y"}, ctx)
    assert result.error.startswith("Found 2 occurrences")


def test_delete_move_mkdir(ctx, project):
    assert create_directory({"path": "pkg/sub"}, ctx).success
    assert (project / "pkg" / "sub").is_dir()
    assert move_file({"source": "README.md", "dest": "pkg/README.md"}, ctx).success
    assert (project / "pkg" / "README.md").exists()
    assert move_file({"source": "README.md", "dest": "x"}, ctx).error == "Source not found: README.md"
    assert delete_file({"path": "pkg/README.md"}, ctx).output == "Deleted pkg/README.md"
    assert delete_file({"path": "pkg"}, ctx).error == "File not found: pkg"


def test_list_files_respects_gitignore(ctx, project):
    (project / ".gitignore").write_text("secret.txt\n")
    (project / "secret.txt").write_text("x")
    (project / "__pycache__").mkdir()
    invalidate_gitignore_cache()
    result = list_files({"path": "."}, ctx)
    assert result.output.startswith("./\n")
    assert "  src/" in result.output
    assert "secret.txt" not in result.output
    assert "__pycache__" not in result.output
    assert list_files({"path": "README.md"}, ctx).error == "Not a directory: README.md"


def test_find_files(ctx):
    assert find_files({"pattern": "**/*.py"}, ctx).output == "Found 1 match(es):\n  src/app.py"
    assert find_files({"pattern": "*.rs"}, ctx).output == "No files found matching pattern."


@pytest.mark.skipif(shutil.which("rg") is None and shutil.which("grep") is None, reason="no grep")
def test_grep(ctx):
    result = grep({"pattern": "def main"}, ctx)
    assert "src/app.py:1:def main():" in result.output
    assert grep({"pattern": "zzz_not_here"}, ctx).output == "No matches found."


def test_run_command(ctx):
    ok = run_command({"command": "echo hello"}, ctx)
    assert ok.success and ok.output.strip() == "hello"
    bad = run_command({"command": "echo oops >&2; exit 3"}, ctx)
    assert not bad.success
    assert bad.error.startswith("Command exited with code 3\n[exit code: 3]")
    assert "[stderr]\noops" in bad.output


def test_run_command_timeout(ctx):
    result = run_command({"command": "sleep 5", "timeout": "1"}, ctx)
    assert result.error == "Command timed out after 1s"


def test_safe_commands():
    assert is_safe_command("npm test")
    assert is_safe_command("python -m pytest tests/test_app.py")
    assert is_safe_command("git diff HEAD~1")
    assert not is_safe_command("rm -rf /")
    assert not is_safe_command("git push --force")


def test_wait_for_user_default_reason():
    assert wait_for_user({}).output == "Waiting for user: waiting for user response"
