"""ToolDispatcher: classification, concurrency, confirmation and batch rollback."""

import asyncio
import dataclasses

import pytest

from engine.cache import FileRegistry, ResultCache
from engine.checkpoints import CheckpointStore
from engine.dispatcher import (
    APPLY,
    CANCEL,
    SKIP,
    ToolDispatcher,
    format_feedback,
    truncate_output,
)
from engine.events import EventType
from engine.markup import ToolCall, parse_tool_calls
from tools import build_default_registry
from tools._common import ToolContext, ToolResult
from tools.registry import READ_ONLY, WRITE, ToolRegistry, ToolSpec


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event_type, content="", data=None):
        self.events.append((event_type, content, data or {}))

    def types(self):
        return [e[0] for e in self.events]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_dispatcher(project, test_config, snapshots, recorder):
    def _make(registry=None, confirm=None, config=None, checkpoints="default"):
        return ToolDispatcher(
            registry or build_default_registry(),
            lambda: ToolContext(str(project)),
            checkpoints=CheckpointStore(snapshots) if checkpoints == "default" else checkpoints,
            cache=ResultCache(),
            file_registry=FileRegistry(),
            config=config or test_config,
            confirm=confirm,
            emit=recorder,
        )
    return _make


def test_truncate_output_notes_omission():
    text = "\n".join(f"line {i}" for i in range(300))
    out = truncate_output(text, max_chars=3000, max_lines=100)
    assert out.startswith(f"(truncated - {len(text)} chars, 300 lines)\nline 0\n")
    assert "[... 200 more lines omitted" in out
    assert "Use grep or read specific sections if needed]" in out
    assert truncate_output("short") == "short"


def test_format_feedback():
    text = format_feedback([ToolResult.ok("hi", tool_name="read_file"),
                            ToolResult.fail("boom", tool_name="grep")])
    assert text == "Tool Results:\n\nTool: read_file\nResult:\nhi\n\nTool: grep\nError: boom"


def test_classification(make_dispatcher):
    d = make_dispatcher()
    calls = parse_tool_calls('<tool name="grep" pattern="x"/><tool name="write_file" path="a">b</tool>'
                             '<tool name="mcp.search" q="x"/><tool name="nope"/>')
    parallel, sequential = d.classify(calls)
    assert [c.name for c, _ in parallel] == ["grep"]
    assert [c.name for c, _ in sequential] == ["write_file", "mcp.search", "nope"]


async def test_reads_run_concurrently_and_report_in_completion_order(make_dispatcher):
    started = []

    async def slow(params, ctx):
        started.append("slow")
        await asyncio.sleep(0.2)
        return ToolResult.ok("slow done")

    async def fast(params, ctx):
        started.append("fast")
        await asyncio.sleep(0.01)
        return ToolResult.ok("fast done")

    registry = ToolRegistry([ToolSpec("slow", slow, READ_ONLY), ToolSpec("fast", fast, READ_ONLY)])
    d = make_dispatcher(registry=registry)
    outcome = await d.execute([ToolCall("slow"), ToolCall("fast")])
    assert sorted(started) == ["fast", "slow"]
    assert [r.tool_name for r in outcome.results] == ["fast", "slow"]
    assert outcome.executed == 2


async def test_read_results_cached_and_annotated(make_dispatcher, project):
    d = make_dispatcher()
    call = ToolCall("read_file", {"path": "src/app.py"})
    first = (await d.execute([call])).results[0]
    assert first.success and first.output.startswith("[2 lines total]")
    (project / "src" / "app.py").write_text("changed\n")
    second = (await d.execute([call])).results[0]
    assert "[src/app.py unchanged since last read]" in second.output
    assert "return 1" in second.output


async def test_tool_exception_becomes_failure(make_dispatcher):
    def broken(params, ctx):
        raise RuntimeError("kaput")

    d = make_dispatcher(registry=ToolRegistry([ToolSpec("broken", broken, READ_ONLY)]))
    result = (await d.execute([ToolCall("broken")])).results[0]
    assert not result.success
    assert result.error == "Tool error: kaput"


async def test_unknown_tool_reported(make_dispatcher):
    outcome = await make_dispatcher().execute([ToolCall("frobnicate", {"x": "1"})])
    assert outcome.results[0].error == "Unknown tool: frobnicate"
    assert not outcome.rolled_back


async def test_sequential_batch_commits_checkpoint(make_dispatcher, project, snapshots, recorder):
    d = make_dispatcher()
    calls = parse_tool_calls('<tool name="write_file" path="a.txt">A</tool>'
                             '<tool name="edit_section" path="src/app.py" old_text="return 1" new_text="return 2"/>')
    outcome = await d.execute(calls)
    assert all(r.success for r in outcome.results)
    assert outcome.mutated_paths == ["a.txt", "src/app.py"]
    assert (project / "src" / "app.py").read_text() == "def main():\n    return 2\n"
    assert EventType.CHECKPOINT_CREATED in recorder.types()
    assert EventType.CHECKPOINT_COMMITTED in recorder.types()
    assert snapshots.discarded and not snapshots.restored


async def test_destructive_failure_rolls_back_batch(make_dispatcher, project, recorder):
    d = make_dispatcher()
    calls = parse_tool_calls(
        '<tool name="write_file" path="a.txt">A</tool>'
        '<tool name="edit_section" path="src/app.py" old_text="missing" new_text="x"/>'
        '<tool name="write_file" path="b.txt">B</tool>'
        '<tool name="delete_file" path="README.md"/>')
    outcome = await d.execute(calls)
    assert outcome.rolled_back
    assert outcome.mutated_paths == []
    assert not (project / "a.txt").exists()
    assert not (project / "b.txt").exists()
    assert (project / "README.md").exists()
    assert [r.tool_name for r in outcome.results] == ["write_file", "edit_section", "checkpoint"]
    assert outcome.results[-1].output == "Rolled back 1 change(s) from this batch; skipped: write_file, delete_file"
    assert EventType.CHECKPOINT_ROLLED_BACK in recorder.types()


async def test_failure_without_checkpoint_keeps_earlier_changes(make_dispatcher, project):
    d = make_dispatcher(checkpoints=None)
    calls = parse_tool_calls('<tool name="write_file" path="a.txt">A</tool>'
                             '<tool name="delete_file" path="nope.txt"/>'
                             '<tool name="write_file" path="b.txt">B</tool>')
    outcome = await d.execute(calls)
    assert not outcome.rolled_back
    assert (project / "a.txt").exists()
    assert not (project / "b.txt").exists()
    assert outcome.results[-1].output.startswith("Stopped batch after delete_file failed")


async def test_non_destructive_failure_does_not_abort(make_dispatcher, project):
    def flaky(params, ctx):
        return ToolResult.fail("nope")

    registry = build_default_registry()
    registry.register(ToolSpec("flaky", flaky, WRITE))
    d = make_dispatcher(registry=registry)
    calls = [ToolCall("flaky"), ToolCall("write_file", {"path": "c.txt"}, "C")]
    outcome = await d.execute(calls)
    assert not outcome.rolled_back
    assert (project / "c.txt").read_text() == "C"


async def test_skip_is_recorded_without_rollback(make_dispatcher, project):
    answers = iter([SKIP, APPLY])
    asked = []

    def confirm(message, choices, default):
        asked.append((message, default))
        return next(answers)

    d = make_dispatcher(confirm=confirm)
    calls = parse_tool_calls('<tool name="write_file" path="a.txt">A</tool>'
                             '<tool name="write_file" path="b.txt">B</tool>')
    outcome = await d.execute(calls)
    assert outcome.results[0].skipped and outcome.results[0].error == "Skipped by user"
    assert outcome.results[1].success
    assert not (project / "a.txt").exists()
    assert (project / "b.txt").exists()
    assert not outcome.rolled_back
    assert asked[0][1] == APPLY


async def test_cancel_choice_rolls_back(make_dispatcher, project):
    answers = iter([APPLY, CANCEL])
    d = make_dispatcher(confirm=lambda m, c, default: next(answers))
    calls = parse_tool_calls('<tool name="write_file" path="a.txt">A</tool>'
                             '<tool name="write_file" path="b.txt">B</tool>')
    outcome = await d.execute(calls)
    assert outcome.rolled_back
    assert outcome.results[1].error == "Cancelled by user"
    assert not (project / "a.txt").exists()


async def test_safe_command_skips_confirmation(make_dispatcher, test_config):
    asked = []
    d = make_dispatcher(confirm=lambda m, c, default: asked.append(m) or SKIP)
    assert await d._ask(ToolCall("run_command", {"command": "git status"}),
                        d.registry.get("run_command"), {"command": "git status"}) == APPLY
    assert await d._ask(ToolCall("run_command", {"command": "rm -rf build"}),
                        d.registry.get("run_command"), {"command": "rm -rf build"}) == SKIP
    assert len(asked) == 1


async def test_without_confirmer_defaults_apply_for_edits(make_dispatcher, test_config):
    d = make_dispatcher(config=dataclasses.replace(test_config, auto_approve=False))
    write = d.registry.get("write_file")
    command = d.registry.get("run_command")
    assert await d._ask(ToolCall("write_file"), write, {"path": "x"}) == APPLY
    assert await d._ask(ToolCall("run_command"), command, {"command": "make deploy"}) == SKIP


async def test_successful_write_invalidates_cache(make_dispatcher, project):
    d = make_dispatcher()
    read = ToolCall("read_file", {"path": "README.md"})
    await d.execute([read])
    assert len(d.cache) == 1
    await d.execute([ToolCall("write_file", {"path": "README.md"}, "# new\n")])
    assert len(d.cache) == 0
    result = (await d.execute([read])).results[0]
    assert "# new" in result.output


async def test_wait_for_user_flag(make_dispatcher):
    outcome = await make_dispatcher().execute([ToolCall("wait_for_user", {"reason": "pick a db"})])
    assert outcome.wait_for_user
    assert outcome.results[0].output == "Waiting for user: pick a db"


async def test_cancelled_before_start(make_dispatcher):
    event = asyncio.Event()
    event.set()
    outcome = await make_dispatcher().execute([ToolCall("read_file", {"path": "README.md"})], event)
    assert outcome.cancelled and outcome.results == []


async def test_failing_safe_command_keeps_earlier_write(make_dispatcher, project, recorder):
    d = make_dispatcher()
    calls = parse_tool_calls('<tool name="write_file" path="new.py">x = 1</tool>'
                             '<tool name="run_command" command="pytest no_such_tests_dir"/>')
    outcome = await d.execute(calls)
    assert outcome.results[0].success
    assert not outcome.results[1].success
    assert not outcome.rolled_back
    assert (project / "new.py").read_text() == "x = 1"
    assert [r.tool_name for r in outcome.results] == ["write_file", "run_command"]
    assert EventType.CHECKPOINT_COMMITTED in recorder.types()


async def test_safe_command_alone_opens_no_checkpoint(make_dispatcher, recorder):
    d = make_dispatcher()
    await d.execute([ToolCall("run_command", {"command": "git status"})])
    assert EventType.CHECKPOINT_CREATED not in recorder.types()


def _timed_reads():
    async def slow(params, ctx):
        await asyncio.sleep(0.2)
        return ToolResult.ok("slow done")

    async def fast(params, ctx):
        await asyncio.sleep(0.01)
        return ToolResult.ok("fast done")

    registry = build_default_registry()
    registry.register(ToolSpec("slow", slow, READ_ONLY))
    registry.register(ToolSpec("fast", fast, READ_ONLY))
    return registry


async def test_mixed_batch_reads_first_then_invocation_order(make_dispatcher, project):
    d = make_dispatcher(registry=_timed_reads())
    calls = [ToolCall("write_file", {"path": "a.txt"}, "A"), ToolCall("slow"),
             ToolCall("write_file", {"path": "b.txt"}, "B"), ToolCall("fast")]
    outcome = await d.execute(calls)
    assert [r.tool_name for r in outcome.results] == ["fast", "slow", "write_file", "write_file"]
    assert [r.output for r in outcome.results[:2]] == ["fast done", "slow done"]
    assert "a.txt" in outcome.results[2].output
    assert "b.txt" in outcome.results[3].output


async def test_mixed_batch_rollback_note_follows_reads(make_dispatcher, project):
    d = make_dispatcher(registry=_timed_reads())
    calls = [ToolCall("slow"), ToolCall("write_file", {"path": "a.txt"}, "A"),
             ToolCall("edit_section", {"path": "src/app.py", "old_text": "missing", "new_text": "x"}),
             ToolCall("fast")]
    outcome = await d.execute(calls)
    assert [r.tool_name for r in outcome.results] == ["fast", "slow", "write_file", "edit_section", "checkpoint"]
    assert outcome.rolled_back
    assert not (project / "a.txt").exists()


async def test_empty_batch(make_dispatcher):
    outcome = await make_dispatcher().execute([])
    assert outcome.results == []
    assert not outcome.cancelled and outcome.executed == 0
