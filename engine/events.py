"""
Engine event data types and the observer plumbing.
"""

import inspect
import logging
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)


class EventType:
    TURN_STARTED = "turn_started"
    CHUNK = "chunk"
    TOOL_START = "tool_start"
    TOOL_UPDATE = "tool_update"
    TOOL_END = "tool_end"
    STATUS = "status"
    WARNING = "warning"
    ERROR = "error"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_COMMITTED = "checkpoint_committed"
    CHECKPOINT_ROLLED_BACK = "checkpoint_rolled_back"
    DONE = "done"


@dataclass
class AgentEvent:
    """Event emitted during engine execution"""
    type: str  # see EventType
    content: str = ""
    data: Optional[Dict[str, Any]] = None


Observer = Callable[[AgentEvent], Union[None, Awaitable[None]]]


@dataclass
class EngineCallbacks:
    """Optional observer hooks. Purely informational: return values are ignored."""
    on_turn_started: Optional[Observer] = None
    on_chunk: Optional[Observer] = None
    on_tool_start: Optional[Observer] = None
    on_tool_update: Optional[Observer] = None
    on_tool_end: Optional[Observer] = None
    on_status: Optional[Observer] = None
    on_error: Optional[Observer] = None
    # Receives every event, including checkpoint and warning events
    on_event: Optional[Observer] = None

    def _hook_for(self, event_type: str) -> Optional[Observer]:
        return {
            EventType.TURN_STARTED: self.on_turn_started,
            EventType.CHUNK: self.on_chunk,
            EventType.TOOL_START: self.on_tool_start,
            EventType.TOOL_UPDATE: self.on_tool_update,
            EventType.TOOL_END: self.on_tool_end,
            EventType.STATUS: self.on_status,
            EventType.WARNING: self.on_status,
            EventType.ERROR: self.on_error,
        }.get(event_type)

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


async def _call(observer: Observer, event: AgentEvent) -> None:
    try:
        result = observer(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception(f"Event observer failed on {event.type}")


class EventEmitter:
    """Fans events out to the callbacks of the running turn."""

    def __init__(self, callbacks: Optional[EngineCallbacks] = None):
        self.callbacks = callbacks or EngineCallbacks()

    async def emit(self, event_type: str, content: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        event = AgentEvent(type=event_type, content=content, data=data)
        hook = self.callbacks._hook_for(event_type)
        if hook is not None:
            await _call(hook, event)
        if self.callbacks.on_event is not None:
            await _call(self.callbacks.on_event, event)

    __call__ = emit
