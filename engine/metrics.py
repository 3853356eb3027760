"""Session accounting: token/cost counters, ceilings and once-per-crossing warnings."""

import logging
from dataclasses import dataclass, replace
from typing import List, Sequence, Tuple

from engine.errors import SessionLimitExceeded, describe_limit

logger = logging.getLogger(__name__)


@dataclass
class SessionMetrics:
    """Monotonic for the process lifetime."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_total: float = 0.0
    iterations: int = 0
    tools_executed: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def record_call(self, prompt_tokens: int, completion_tokens: int, cost: float) -> None:
        self.prompt_tokens += max(0, prompt_tokens)
        self.completion_tokens += max(0, completion_tokens)
        self.cost_total += max(0.0, cost)

    def snapshot(self) -> "SessionMetrics":
        return replace(self)


def compute_cost(prompt_tokens: int, completion_tokens: int, pricing: Tuple[float, float]) -> float:
    """pricing is (input, output) USD per million tokens."""
    input_price, output_price = pricing
    return (prompt_tokens * input_price + completion_tokens * output_price) / 1_000_000


class ThresholdTracker:
    """Reports each threshold once per upward crossing; dropping below re-arms it."""

    def __init__(self, thresholds: Sequence[float]):
        self.thresholds = sorted(thresholds)
        self._fired = set()

    def check(self, fraction: float) -> List[float]:
        crossed = []
        for t in self.thresholds:
            if fraction >= t:
                if t not in self._fired:
                    self._fired.add(t)
                    crossed.append(t)
            else:
                self._fired.discard(t)
        return crossed

    def reset(self) -> None:
        self._fired.clear()


class SessionLimits:
    """Optional hard ceilings on session tokens and cost, checked before each model call."""

    WARN_AT = 0.85

    def __init__(self, max_tokens: int = 0, max_cost: float = 0.0):
        self.max_tokens = max_tokens
        self.max_cost = max_cost
        self._token_warnings = ThresholdTracker([self.WARN_AT])
        self._cost_warnings = ThresholdTracker([self.WARN_AT])

    def check(self, metrics: SessionMetrics) -> List[str]:
        """Raise SessionLimitExceeded at a ceiling; return warnings newly crossed at 85-99%."""
        warnings: List[str] = []
        for kind, used, limit, tracker in (
            ("tokens", metrics.total_tokens, self.max_tokens, self._token_warnings),
            ("cost", metrics.cost_total, self.max_cost, self._cost_warnings),
        ):
            if not limit:
                continue
            fraction = used / limit
            if fraction >= 1.0:
                message = describe_limit(kind, used, limit)
                logger.warning(message)
                raise SessionLimitExceeded(message, kind=kind)
            if tracker.check(fraction):
                warnings.append(self._warning(kind, used, limit, fraction))
        return warnings

    @staticmethod
    def _warning(kind: str, used: float, limit: float, fraction: float) -> str:
        if kind == "tokens":
            return f"Session token usage at {fraction:.0%} ({int(used):,} / {int(limit):,})"
        return f"Session cost at {fraction:.0%} (${used:.4f} / ${limit:.2f})"
