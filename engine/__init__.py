"""
Engine package - the orchestration core of the coding assistant.

Modules:
- events: AgentEvent, EventType, EngineCallbacks and the emitter
- errors: error taxonomy and model error classification
- messages: ConversationMessage and role constants
- markup: tool-call markup parser and the streaming TagFilter
- heuristics: question / completion stop heuristics
- tokens: heuristic token estimator
- budget: ContextBudget (count and token pruning policies)
- metrics: session counters, ceilings and threshold warnings
- cache: read-only result cache and file-read registry
- checkpoints: git-backed checkpoints around destructive batches
- dispatcher: tool classification, concurrency and rollback
- related_tests: post-edit related test runner
- orchestrator: CodingEngine (the turn loop)
"""

from .errors import (
    CheckpointError,
    EngineBusyError,
    EngineError,
    ModelError,
    SessionLimitExceeded,
    TransientModelError,
)
from .events import AgentEvent, EngineCallbacks, EventType
from .messages import ConversationMessage
from .markup import ToolCall, parse_tool_calls
from .orchestrator import CodingEngine

__all__ = [
    "CodingEngine",
    "AgentEvent",
    "EngineCallbacks",
    "EventType",
    "ConversationMessage",
    "ToolCall",
    "parse_tool_calls",
    "EngineError",
    "ModelError",
    "TransientModelError",
    "SessionLimitExceeded",
    "CheckpointError",
    "EngineBusyError",
]
