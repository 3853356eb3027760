"""
CodingEngine: the turn loop.

One process_message() call appends the user text, then repeats: prune the
context, check session ceilings, stream a model turn through the tag filter,
stop on a question/completion heuristic, parse tool calls, dispatch them and
feed the results back as one user message. It ends when the model stops
calling tools, a heuristic or wait_for_user fires, the iteration cap is hit,
the caller aborts, or an unrecoverable error is raised.
"""

import asyncio
import logging
import os
from typing import Any, List, Optional, Sequence, Tuple

from backend import Backend, LocalBackend
from config import engine_config, get_chat_timeout, get_pricing, model_config
from engine.budget import ContextBudget
from engine.cache import FileRegistry, ResultCache
from engine.checkpoints import CheckpointStore, GitSnapshots
from engine.dispatcher import ToolDispatcher, format_feedback
from engine.errors import (
    EngineBusyError,
    EngineError,
    ModelError,
    TransientModelError,
    classify_model_error,
)
from engine.events import EngineCallbacks, EventEmitter, EventType
from engine.heuristics import stop_reason
from engine.markup import TagFilter, parse_tool_calls
from engine.messages import ASSISTANT, SYSTEM, USER, ConversationMessage
from engine.metrics import SessionLimits, SessionMetrics, compute_cost
from engine.related_tests import RelatedTestRunner
from engine.tokens import HeuristicTokenEstimator
from tools._common import ToolContext
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """You are a coding assistant working inside a local project at {cwd}.

You act by writing tool calls as markup inside your reply:
  <tool name="read_file" path="src/app.py"/>
  <tool name="write_file" path="notes.txt">file content here</tool>
Attribute values are plain strings. Put whole-file content between the tags.

Rules:
- Read before you edit. Prefer edit_section for small changes.
- You may issue several read-only calls in one reply; they run in parallel.
- Writes and commands run in order. If one fails, the whole batch is rolled back.
- After your tool calls, stop and wait for the results in the next message.
- If you need something from the user, ask it and call wait_for_user. Do not
  call other tools in a reply that asks a question.
- When the task is finished, say so plainly without calling tools.

Available tools:
{catalogue}"""


class CodingEngine:
    """Drives one conversation. Collaborators are injected; nothing here is a singleton."""

    def __init__(self, model_client: Any, registry: ToolRegistry, *, working_directory: str,
                 config: Any = None, backend: Optional[Backend] = None,
                 checkpoints: Optional[CheckpointStore] = None, cache: Optional[ResultCache] = None,
                 file_registry: Optional[FileRegistry] = None, token_estimator: Any = None,
                 confirm: Any = None, fallback_clients: Optional[Sequence[Any]] = None,
                 test_runner: Optional[RelatedTestRunner] = None):
        self.config = config or engine_config
        self.model_client = model_client
        self.registry = registry
        self.working_directory = os.path.abspath(working_directory)
        self.backend = backend or LocalBackend(self.working_directory)
        if checkpoints is None and self.config.checkpoints_enabled:
            checkpoints = CheckpointStore(GitSnapshots(self.working_directory))
        self.checkpoints = checkpoints
        self.cache = cache or ResultCache(ttl=self.config.cache_ttl, max_entries=self.config.cache_max_entries)
        self.file_registry = file_registry or FileRegistry()
        self.estimator = token_estimator or HeuristicTokenEstimator()
        self.confirm = confirm
        self._fallbacks = list(fallback_clients or [])
        if test_runner is None and self.config.run_related_tests:
            test_runner = RelatedTestRunner(self.backend, timeout=self.config.related_test_timeout)
        self.test_runner = test_runner

        self.budget = ContextBudget(
            self.model_id, self.estimator,
            max_messages=self.config.max_messages,
            keep_recent=self.config.keep_recent,
            target_fraction=self.config.prune_target_fraction,
            protect_recent=self.config.protect_recent,
        )
        self.limits = SessionLimits(self.config.max_tokens_per_session, self.config.max_cost_per_session)
        self.metrics = SessionMetrics()

        self._messages: List[ConversationMessage] = []
        self._emitter = EventEmitter()
        self._cancel: Optional[asyncio.Event] = None
        self._busy = False

        self.dispatcher = ToolDispatcher(
            registry, self._tool_context,
            checkpoints=self.checkpoints, cache=self.cache, file_registry=self.file_registry,
            config=self.config, confirm=confirm, emit=self._emit,
        )

    # ------------------------------------------------------------------
    # public surface
    # ------------------------------------------------------------------

    @property
    def model_id(self) -> str:
        return getattr(self.model_client, "model_id", None) or model_config.model_id

    @property
    def messages(self) -> Tuple[ConversationMessage, ...]:
        return tuple(self._messages)

    @property
    def busy(self) -> bool:
        return self._busy

    def initialize(self, system_prompt_extra: Optional[str] = None) -> None:
        """Start the conversation with the system prompt."""
        prompt = BASE_SYSTEM_PROMPT.format(cwd=self.working_directory, catalogue=self.registry.catalogue())
        if system_prompt_extra:
            prompt += "\n\n" + system_prompt_extra.strip()
        self._messages = [ConversationMessage(SYSTEM, prompt)]
        logger.info(f"Engine initialized in {self.working_directory} with {len(self.registry)} tools")

    def abort(self) -> None:
        """Stop the in-flight turn; the loop returns what was narrated so far."""
        if self._cancel is not None:
            self._cancel.set()
        self.backend.cancel_running_command()
        logger.info("Abort requested")

    def get_metrics(self) -> SessionMetrics:
        return self.metrics.snapshot()

    def reset(self) -> None:
        """Drop the conversation. Metrics are process-lifetime and survive."""
        if self._busy:
            raise EngineBusyError("Cannot reset while a turn is running")
        self._messages = []
        self.cache.invalidate()
        self.file_registry.forget()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _tool_context(self) -> ToolContext:
        return ToolContext(working_directory=self.working_directory, backend=self.backend,
                           confirm=self.confirm, timeout=self.config.tool_timeout)

    async def _emit(self, event_type: str, content: str = "", data: Optional[dict] = None) -> None:
        await self._emitter.emit(event_type, content, data)

    def _append(self, role: str, content: str, **metadata) -> None:
        self._messages.append(ConversationMessage(role, content, metadata or None))

    async def _prune(self) -> None:
        self._messages = self.budget.prune(self._messages)
        report = self.budget.last_report
        if report.removed:
            await self._emit(EventType.STATUS,
                             f"Pruned {report.removed} old message(s) "
                             f"({report.tokens_before:,} -> {report.tokens_after:,} tokens)",
                             {"policy": report.policy})
        tokens, _ = self.budget.usage(self._messages)
        for warning in self.budget.check_usage(tokens):
            logger.warning(warning)
            await self._emit(EventType.WARNING, warning, {"kind": "context"})

    async def _check_limits(self) -> None:
        for warning in self.limits.check(self.metrics):
            logger.warning(warning)
            await self._emit(EventType.WARNING, warning, {"kind": "session"})

    def _switch_provider(self) -> bool:
        if not self._fallbacks:
            return False
        previous = self.model_id
        self.model_client = self._fallbacks.pop(0)
        self.budget.set_model(self.model_id)
        logger.warning(f"Switching model client {previous} -> {self.model_id}")
        return True

    async def _call_model(self, coro, timeout: float):
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientModelError(f"Model call timed out after {timeout:g}s")
        except (asyncio.CancelledError, EngineError):
            raise
        except Exception as e:
            raise classify_model_error(e) from e

    async def _model_turn(self) -> Tuple[str, str]:
        """Stream one completion. Returns (raw, visible)."""
        model_id = self.model_id
        payload = [m.to_dict() for m in self._messages]
        prompt_tokens = self.estimator.estimate_messages(model_id, self._messages)
        timeout = get_chat_timeout(model_id, self.config.chat_timeout)
        tag_filter = TagFilter()
        visible: List[str] = []

        async def _show(text: str) -> None:
            if text:
                visible.append(text)
                await self._emit(EventType.CHUNK, text)

        async def _consume() -> None:
            async for chunk in self.model_client.stream(payload, self._cancel):
                await _show(tag_filter.feed(chunk))
                if self._cancel.is_set():
                    break

        await self._call_model(_consume(), timeout)
        await _show(tag_filter.flush())
        raw = tag_filter.raw

        if not raw and not self._cancel.is_set():
            logger.info("Stream produced no output, falling back to non-streaming chat")
            raw = await self._call_model(self.model_client.chat(payload), timeout) or ""
            fallback_filter = TagFilter()
            await _show(fallback_filter.feed(raw) + fallback_filter.flush())

        completion_tokens = self.estimator.estimate(model_id, raw)
        cost = compute_cost(prompt_tokens, completion_tokens, get_pricing(model_id))
        self.metrics.record_call(prompt_tokens, completion_tokens, cost)
        return raw, "".join(visible)

    async def _request_turn(self, iteration: int, recovered: bool) -> Optional[Tuple[str, str]]:
        """Model turn with provider fallback. None means a recovery note was injected; retry."""
        while True:
            try:
                return await self._model_turn()
            except TransientModelError as e:
                if self._switch_provider():
                    await self._emit(EventType.STATUS, f"Provider error ({e}); switched to {self.model_id}")
                    continue
                raise
            except ModelError as e:
                if iteration == 1 and not recovered:
                    logger.warning(f"Model error on first iteration, injecting recovery note: {e}")
                    await self._emit(EventType.ERROR, str(e), {"recoverable": True})
                    self._append(SYSTEM, f"Error occurred: {e}. Please try a different approach.")
                    return None
                raise

    async def process_message(self, text: str, callbacks: Optional[EngineCallbacks] = None) -> str:
        """Run the turn loop for one user message and return the narration."""
        if self._busy:
            raise EngineBusyError("process_message is already running on this engine")
        self._busy = True
        self._emitter = EventEmitter(callbacks)
        self._cancel = asyncio.Event()
        if not self._messages:
            self.initialize()

        narration: List[str] = []
        mutated: List[str] = []
        max_iterations = self.config.max_iterations
        try:
            self._append(USER, text)
            iteration = 0
            recovered = False
            while True:
                if self._cancel.is_set():
                    await self._emit(EventType.STATUS, "Aborted")
                    break
                if iteration >= max_iterations:
                    note = f"[Reached maximum iterations ({max_iterations}). Stopping.]"
                    narration.append(note)
                    await self._emit(EventType.STATUS, note)
                    break

                await self._prune()
                await self._check_limits()
                iteration += 1
                self.metrics.iterations += 1
                await self._emit(EventType.TURN_STARTED, f"Iteration {iteration}", {"iteration": iteration})

                turn = await self._request_turn(iteration, recovered)
                if turn is None:
                    recovered = True
                    continue
                raw, visible = turn
                if visible.strip():
                    narration.append(visible.strip())

                if not raw.strip():
                    await self._emit(EventType.STATUS, "Empty response from model")
                    break
                self._append(ASSISTANT, raw)
                if self._cancel.is_set():
                    await self._emit(EventType.STATUS, "Aborted")
                    break

                reason = stop_reason(raw)
                if reason:
                    logger.info(f"Stopping turn on {reason}")
                    await self._emit(EventType.STATUS, f"Waiting for user ({reason.split(':')[0]})",
                                     {"reason": reason})
                    break

                calls = parse_tool_calls(raw)
                if not calls:
                    break

                outcome = await self.dispatcher.execute(calls, self._cancel)
                self.metrics.tools_executed += outcome.executed
                for p in outcome.mutated_paths:
                    if p not in mutated:
                        mutated.append(p)
                if outcome.results:
                    self._append(USER, format_feedback(outcome.results), tool_results=len(outcome.results))
                if outcome.wait_for_user:
                    await self._emit(EventType.STATUS, "Waiting for user", {"reason": "wait_for_user"})
                    break
                if outcome.cancelled:
                    await self._emit(EventType.STATUS, "Aborted")
                    break
        except EngineError as e:
            logger.error(f"process_message failed: {e}")
            await self._emit(EventType.ERROR, str(e), {"error_type": type(e).__name__})
            raise
        finally:
            self._busy = False

        await self._run_related_tests(mutated)
        await self._emit(EventType.DONE, "", {"metrics": self.metrics.snapshot()})
        return "\n\n".join(narration)

    async def _run_related_tests(self, mutated: List[str]) -> None:
        """Best-effort postscript; only ever reported as a status event."""
        if not mutated or self.test_runner is None or not self.config.run_related_tests:
            return
        if self._cancel is not None and self._cancel.is_set():
            return
        try:
            summary = await self.test_runner.run(mutated)
        except Exception as e:
            logger.warning(f"Related tests failed to run: {e}")
            return
        if summary:
            await self._emit(EventType.STATUS, summary, {"kind": "related_tests"})
