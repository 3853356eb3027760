"""
Tool dispatch for one model turn.

Read-only calls run concurrently and report in completion order. Everything
else (writes, commands, unknown names) runs one at a time in invocation order.
A sequential batch containing a destructive call runs under a single
checkpoint: the first destructive failure rolls the batch back and skips the
rest of it.
"""

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from engine.cache import FileRegistry, ResultCache
from engine.checkpoints import CheckpointStore
from engine.events import EventType
from engine.markup import ToolCall
from tools._common import ToolContext, ToolResult
from tools.registry import ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)

APPLY = "apply"
SKIP = "skip"
CANCEL = "cancel"
CONFIRM_CHOICES = [APPLY, SKIP, CANCEL]

DEFAULT_MAX_CHARS = 3000
DEFAULT_MAX_LINES = 100


@dataclass
class DispatchOutcome:
    results: List[ToolResult] = field(default_factory=list)
    rolled_back: bool = False
    wait_for_user: bool = False
    mutated_paths: List[str] = field(default_factory=list)
    checkpoint_id: Optional[str] = None
    executed: int = 0
    cancelled: bool = False


def truncate_output(text: str, max_chars: int = DEFAULT_MAX_CHARS, max_lines: int = DEFAULT_MAX_LINES) -> str:
    """Cap read-style output, noting what was dropped."""
    lines = text.split("\n")
    if len(text) <= max_chars and len(lines) <= max_lines:
        return text
    kept = "\n".join(lines[:max_lines])[:max_chars]
    omitted_lines = max(len(lines) - max_lines, 0)
    omitted_chars = max(len(text) - max_chars, 0)
    return (f"(truncated - {len(text)} chars, {len(lines)} lines)\n{kept}\n\n"
            f"[... {omitted_lines} more lines omitted ({omitted_chars} chars). "
            "Use grep or read specific sections if needed]")


def format_result(result: ToolResult) -> str:
    if result.success:
        return f"Tool: {result.tool_name}\nResult:\n{result.output}"
    return f"Tool: {result.tool_name}\nError: {result.text}"


def format_feedback(results: List[ToolResult]) -> str:
    """The single synthetic user message that carries a batch's results back to the model."""
    return "Tool Results:\n\n" + "\n\n".join(format_result(r) for r in results)


def _preview(text: str, limit: int = 200) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[:limit] + "..."


class ToolDispatcher:
    """Runs a batch of parsed tool calls against the registry."""

    def __init__(self, registry: ToolRegistry, context_factory: Callable[[], ToolContext], *,
                 checkpoints: Optional[CheckpointStore] = None, cache: Optional[ResultCache] = None,
                 file_registry: Optional[FileRegistry] = None, config: Any = None,
                 confirm: Any = None, emit: Optional[Callable[..., Any]] = None):
        self.registry = registry
        self.context_factory = context_factory
        self.checkpoints = checkpoints
        self.cache = cache
        self.file_registry = file_registry
        self.config = config
        self.confirm = confirm
        self.emit = emit

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _setting(self, name: str, default: Any) -> Any:
        return getattr(self.config, name, default) if self.config is not None else default

    async def _emit(self, event_type: str, content: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        if self.emit is not None:
            await self.emit(event_type, content, data)

    def classify(self, calls: List[ToolCall]) -> Tuple[List[Tuple[ToolCall, ToolSpec]],
                                                       List[Tuple[ToolCall, Optional[ToolSpec]]]]:
        """Split into (read_only, sequential). Unknown and dotted external names are sequential."""
        parallel, sequential = [], []
        for call in calls:
            spec = self.registry.get(call.name)
            if spec is not None and spec.read_only:
                parallel.append((call, spec))
            else:
                sequential.append((call, spec))
        return parallel, sequential

    @staticmethod
    def _params(call: ToolCall, spec: ToolSpec) -> Dict[str, str]:
        params = dict(call.parameters)
        if spec.takes_content and call.inline_content and "content" not in params:
            params["content"] = call.inline_content
        return params

    async def _invoke(self, spec: ToolSpec, params: Dict[str, str]) -> ToolResult:
        ctx = self.context_factory()
        if inspect.iscoroutinefunction(spec.handler):
            result = await spec.handler(params, ctx)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, functools.partial(spec.handler, params, ctx))
            if inspect.isawaitable(result):
                result = await result
        if not isinstance(result, ToolResult):
            result = ToolResult.ok("" if result is None else str(result))
        result.tool_name = spec.name
        return result

    async def _run_isolated(self, spec: ToolSpec, params: Dict[str, str],
                            timeout: Optional[float] = None) -> ToolResult:
        """Run one tool; nothing it raises escapes."""
        try:
            if timeout:
                return await asyncio.wait_for(self._invoke(spec, params), timeout=timeout)
            return await self._invoke(spec, params)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {spec.name} timed out after {timeout}s")
            return ToolResult.fail(f"Timed out after {timeout:g}s", tool_name=spec.name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Tool execution error: {spec.name}")
            return ToolResult.fail(f"Tool error: {e}", tool_name=spec.name)

    # ------------------------------------------------------------------
    # read-only group
    # ------------------------------------------------------------------

    def _annotate_read(self, params: Dict[str, str], text: str) -> str:
        if self.file_registry is None or params.get("offset") or params.get("limit"):
            return text
        path = (params.get("path") or "").strip()
        if not path:
            return text
        unchanged = self.file_registry.is_unchanged(path, text)
        self.file_registry.register(path, text)
        if unchanged:
            return f"[{path} unchanged since last read]\n{text}"
        return text

    async def _run_read(self, call: ToolCall, spec: ToolSpec) -> ToolResult:
        params = self._params(call, spec)
        await self._emit(EventType.TOOL_START, call.name, {"tool_name": call.name, "params": params})

        cached = self.cache.get(call.name, params) if self.cache is not None and spec.cacheable else None
        if cached is not None:
            logger.debug(f"Cache hit for {call.name}")
            result = ToolResult.ok(cached, tool_name=call.name)
        else:
            result = await self._run_isolated(spec, params, timeout=self._setting("tool_timeout", None))
            if result.success and spec.truncate_output:
                result.output = truncate_output(
                    result.output,
                    self._setting("truncate_max_chars", DEFAULT_MAX_CHARS),
                    self._setting("truncate_max_lines", DEFAULT_MAX_LINES),
                )
            if result.success and self.cache is not None and spec.cacheable:
                self.cache.put(call.name, params, result.output)

        if result.success and call.name == "read_file":
            result.output = self._annotate_read(params, result.output)

        await self._emit(EventType.TOOL_UPDATE, _preview(result.text),
                         {"tool_name": call.name, "status": "succeeded" if result.success else "failed",
                          "cached": cached is not None})
        await self._emit(EventType.TOOL_END, call.name, {"tool_name": call.name, "success": result.success})
        return result

    async def _run_parallel(self, group: List[Tuple[ToolCall, ToolSpec]]) -> List[ToolResult]:
        tasks = [asyncio.ensure_future(self._run_read(call, spec)) for call, spec in group]
        results = []
        try:
            for next_done in asyncio.as_completed(tasks):
                results.append(await next_done)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise
        return results

    # ------------------------------------------------------------------
    # sequential group
    # ------------------------------------------------------------------

    async def _ask(self, call: ToolCall, spec: ToolSpec, params: Dict[str, str]) -> str:
        if not spec.needs_confirmation(params):
            return APPLY
        default = APPLY if spec.mutates_source else SKIP
        if self.confirm is None:
            if self._setting("auto_approve", False):
                return APPLY
            return default
        message = f"Allow {call.preview(200)}?"
        choice = self.confirm(message, list(CONFIRM_CHOICES), default)
        if inspect.isawaitable(choice):
            choice = await choice
        choice = (choice or default).strip().lower()
        return choice if choice in CONFIRM_CHOICES else default

    async def _in_executor(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    @staticmethod
    def _touched_paths(params: Dict[str, str]) -> List[str]:
        return [params[k].strip() for k in ("path", "source", "dest") if (params.get(k) or "").strip()]

    async def _run_sequential(self, group: List[Tuple[ToolCall, Optional[ToolSpec]]],
                              outcome: DispatchOutcome, cancel_event: Optional[asyncio.Event]) -> None:
        destructive = any(spec is not None and spec.is_destructive(self._params(call, spec))
                          for call, spec in group)
        checkpoint = None
        if destructive and self.checkpoints is not None and self._setting("checkpoints_enabled", True):
            label = "batch-" + "-".join(call.name for call, _ in group)[:60]
            checkpoint = await self._in_executor(self.checkpoints.checkpoint, label)
            if checkpoint is not None:
                outcome.checkpoint_id = checkpoint.id
                await self._emit(EventType.CHECKPOINT_CREATED, checkpoint.id, {"label": label})

        applied = 0
        for i, (call, spec) in enumerate(group):
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                break

            if spec is None:
                await self._emit(EventType.TOOL_START, call.name, {"tool_name": call.name, "params": call.parameters})
                result = ToolResult.fail(f"Unknown tool: {call.name}", tool_name=call.name)
                outcome.results.append(result)
                await self._emit(EventType.TOOL_UPDATE, result.text, {"tool_name": call.name, "status": "failed"})
                await self._emit(EventType.TOOL_END, call.name, {"tool_name": call.name, "success": False})
                continue

            params = self._params(call, spec)
            await self._emit(EventType.TOOL_START, call.name, {"tool_name": call.name, "params": params})
            choice = await self._ask(call, spec, params)
            if choice == SKIP:
                result = ToolResult(success=False, output="", error="Skipped by user",
                                    tool_name=call.name, skipped=True)
            elif choice == CANCEL:
                result = ToolResult.fail("Cancelled by user", tool_name=call.name)
            else:
                result = await self._run_isolated(spec, params)
                outcome.executed += 1

            status = "skipped" if result.skipped else ("succeeded" if result.success else "failed")
            await self._emit(EventType.TOOL_UPDATE, _preview(result.text), {"tool_name": call.name, "status": status})
            await self._emit(EventType.TOOL_END, call.name, {"tool_name": call.name, "success": result.success})
            outcome.results.append(result)

            destructive_call = spec.is_destructive(params)
            if result.success:
                if destructive_call:
                    applied += 1
                    if self.cache is not None:
                        self.cache.invalidate()
                if spec.mutates_source:
                    for p in self._touched_paths(params):
                        if p not in outcome.mutated_paths:
                            outcome.mutated_paths.append(p)
                if spec.stops_turn:
                    outcome.wait_for_user = True
                continue

            if result.skipped or not destructive_call:
                continue

            # destructive failure: undo the batch and stop
            remaining = [c.name for c, _ in group[i + 1:]]
            await self._abort_batch(call, applied, remaining, outcome)
            return

        if self.checkpoints is not None and checkpoint is not None and self.checkpoints.has_open():
            await self._in_executor(self.checkpoints.commit)
            await self._emit(EventType.CHECKPOINT_COMMITTED, checkpoint.id)

    async def _abort_batch(self, failed: ToolCall, applied: int, remaining: List[str],
                           outcome: DispatchOutcome) -> None:
        skipped = ", ".join(remaining) if remaining else "none"
        rolled = False
        if self.checkpoints is not None and self.checkpoints.has_open():
            # CheckpointError propagates: the batch state is unknown
            rolled = await self._in_executor(self.checkpoints.rollback)
        if self.cache is not None:
            self.cache.invalidate()
        if self.file_registry is not None:
            self.file_registry.forget()

        if rolled:
            outcome.rolled_back = True
            outcome.mutated_paths.clear()
            note = f"Rolled back {applied} change(s) from this batch; skipped: {skipped}"
            await self._emit(EventType.CHECKPOINT_ROLLED_BACK, note, {"checkpoint_id": outcome.checkpoint_id})
        else:
            note = (f"Stopped batch after {failed.name} failed; no checkpoint was available so "
                    f"{applied} earlier change(s) were kept; skipped: {skipped}")
        logger.warning(note)
        outcome.results.append(ToolResult.ok(note, tool_name="checkpoint"))

    # ------------------------------------------------------------------

    async def execute(self, calls: List[ToolCall], cancel_event: Optional[asyncio.Event] = None) -> DispatchOutcome:
        """Run a batch. Results: read-only in completion order, then sequential in invocation order."""
        outcome = DispatchOutcome()
        if not calls or (cancel_event is not None and cancel_event.is_set()):
            outcome.cancelled = bool(calls)
            return outcome

        parallel, sequential = self.classify(calls)
        if parallel:
            await self._emit(EventType.STATUS, f"Executing {len(parallel)} read operation(s) in parallel")
            outcome.results.extend(await self._run_parallel(parallel))
            outcome.executed += len(parallel)
        if sequential:
            await self._emit(EventType.STATUS, f"Executing {len(sequential)} operation(s) sequentially")
            await self._run_sequential(sequential, outcome, cancel_event)
        return outcome
