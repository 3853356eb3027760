"""Context budget: keep the conversation inside the model's window.

Two policies run in order on every prune():

- count: above ``max_messages``, keep system messages plus the last
  ``keep_recent`` messages.
- tokens: above ``target_fraction`` of the context window, drop the oldest
  non-system message (never one of the last ``protect_recent``) until it fits.

Both are idempotent, and the leading system message always survives.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from config import get_context_window
from engine.messages import ConversationMessage
from engine.metrics import ThresholdTracker
from engine.tokens import HeuristicTokenEstimator

logger = logging.getLogger(__name__)

CONTEXT_WARNING_THRESHOLDS = (0.7, 0.9)


@dataclass
class PruneReport:
    removed: int = 0
    tokens_before: int = 0
    tokens_after: int = 0
    policy: str = "none"  # none | count | tokens | count+tokens


class ContextBudget:
    def __init__(self, model_id: str, estimator=None, *, max_messages: int = 12, keep_recent: int = 6,
                 target_fraction: float = 0.7, context_limit: Optional[int] = None,
                 protect_recent: int = 2):
        if keep_recent < 1 or max_messages < keep_recent:
            raise ValueError("need 1 <= keep_recent <= max_messages")
        self.model_id = model_id
        self.estimator = estimator or HeuristicTokenEstimator()
        self.max_messages = max_messages
        self.keep_recent = keep_recent
        self.target_fraction = target_fraction
        self.context_limit = context_limit or get_context_window(model_id)
        self.protect_recent = protect_recent
        self.last_report = PruneReport()
        self._warnings = ThresholdTracker(CONTEXT_WARNING_THRESHOLDS)

    def set_model(self, model_id: str, context_limit: Optional[int] = None) -> None:
        """Follow a model switch; the window comes from the model table unless given."""
        self.model_id = model_id
        self.context_limit = context_limit or get_context_window(model_id)

    def _tokens(self, message: ConversationMessage) -> int:
        return self.estimator.estimate_messages(self.model_id, [message])

    def count_tokens(self, messages: List[ConversationMessage]) -> int:
        return self.estimator.estimate_messages(self.model_id, messages)

    @property
    def token_target(self) -> int:
        return int(self.context_limit * self.target_fraction)

    def prune(self, messages: List[ConversationMessage]) -> List[ConversationMessage]:
        """Return a pruned copy and record last_report."""
        before = self.count_tokens(messages)
        result = list(messages)
        policies = []

        if len(result) > self.max_messages:
            head, tail = result[:-self.keep_recent], result[-self.keep_recent:]
            kept_head = [m for m in head if m.is_system]
            if len(kept_head) < len(head):
                result = kept_head + tail
                policies.append("count")

        tokens = self.count_tokens(result)
        if tokens > self.token_target:
            dropped = False
            while tokens > self.token_target:
                idx = self._oldest_removable(result)
                if idx is None:
                    logger.warning(
                        f"Context still over budget after pruning: {tokens:,} > {self.token_target:,} tokens")
                    break
                tokens -= self._tokens(result.pop(idx))
                dropped = True
            if dropped:
                policies.append("tokens")

        self.last_report = PruneReport(
            removed=len(messages) - len(result),
            tokens_before=before,
            tokens_after=self.count_tokens(result) if policies else before,
            policy="+".join(policies) or "none",
        )
        if self.last_report.removed:
            logger.info(
                f"Pruned {self.last_report.removed} message(s) ({self.last_report.policy}): "
                f"{before:,} -> {self.last_report.tokens_after:,} tokens")
        return result

    def _oldest_removable(self, messages: List[ConversationMessage]) -> Optional[int]:
        limit = len(messages) - self.protect_recent
        for i in range(max(0, limit)):
            if not messages[i].is_system:
                return i
        return None

    def usage(self, messages: List[ConversationMessage]) -> Tuple[int, float]:
        tokens = self.count_tokens(messages)
        return tokens, tokens / self.context_limit

    def check_usage(self, tokens: int) -> List[str]:
        """Warnings for context thresholds crossed since the last call."""
        fraction = tokens / self.context_limit
        return [
            f"Context usage at {fraction:.0%} of {self.context_limit:,} tokens (crossed {t:.0%})"
            for t in self._warnings.check(fraction)
        ]
