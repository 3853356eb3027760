"""Error taxonomy for the engine."""

import asyncio
from typing import Optional


class EngineError(Exception):
    """Base class for engine failures surfaced to the caller."""


class ModelError(EngineError):
    """Model call failed."""


class TransientModelError(ModelError):
    """Timeout, rate limit, quota, auth or connectivity failure. Retry later or switch provider."""

    def __init__(self, message: str, retry_hint: str = "Try again in a moment."):
        super().__init__(message)
        self.retry_hint = retry_hint

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base}. {self.retry_hint}" if self.retry_hint else base


class SessionLimitExceeded(EngineError):
    """A configured token or cost ceiling was reached before a model call."""

    def __init__(self, message: str, kind: str = "tokens"):
        super().__init__(message)
        self.kind = kind


class CheckpointError(EngineError):
    """Restoring a checkpoint failed; the working tree may be inconsistent."""


class EngineBusyError(EngineError):
    """process_message called while another turn is running on the same engine."""


_TRANSIENT_KEYWORDS = (
    "quota", "rate limit", "ratelimit", "too many requests", "429", "resource_exhausted",
    "throttl", "unauthorized", "401", "403", "invalid api key", "authentication",
    "expired", "service unavailable", "502", "503", "504", "connection refused",
    "network error", "econnrefused", "connection reset", "timed out", "timeout",
    "billing", "payment", "subscription", "overloaded",
)


def classify_model_error(exc: BaseException) -> ModelError:
    """Map an arbitrary client exception onto the taxonomy."""
    if isinstance(exc, ModelError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return TransientModelError(f"Model request failed: {exc or type(exc).__name__}")
    text = f"{type(exc).__name__}: {exc}".lower()
    if any(k in text for k in _TRANSIENT_KEYWORDS):
        return TransientModelError(f"Model request failed: {exc}")
    return ModelError(str(exc) or type(exc).__name__)


def describe_limit(kind: str, used: float, limit: float) -> Optional[str]:
    if kind == "tokens":
        return (f"Session token limit exceeded: {int(used):,} / {int(limit):,} tokens used.\n"
                "Consider increasing MAX_TOKENS_PER_SESSION or starting a new session.")
    if kind == "cost":
        return (f"Session cost limit exceeded: ${used:.4f} / ${limit:.2f}.\n"
                "Consider increasing MAX_COST_PER_SESSION or starting a new session.")
    return None
