"""Default token-estimate collaborator."""

from typing import Iterable, Union

from config import get_provider
from engine.messages import ConversationMessage

# Per-message framing overhead (role, separators)
MESSAGE_OVERHEAD = 5


class HeuristicTokenEstimator:
    """Character-ratio estimate: ~3.5 chars per token for mixed English/code on
    Anthropic models, ~4 elsewhere. Swap in a real tokenizer by passing any object
    with the same two methods."""

    def __init__(self, chars_per_token: float = 0.0):
        self.chars_per_token = chars_per_token

    def _ratio(self, model_id: str) -> float:
        if self.chars_per_token:
            return self.chars_per_token
        return 3.5 if get_provider(model_id) == "anthropic" else 4.0

    def estimate(self, model_id: str, text: str) -> int:
        if not text:
            return 0
        return max(1, int(len(text) / self._ratio(model_id)))

    def estimate_messages(self, model_id: str,
                          messages: Iterable[Union[ConversationMessage, dict]]) -> int:
        total = 0
        for m in messages:
            content = m.content if isinstance(m, ConversationMessage) else m.get("content", "")
            total += self.estimate(model_id, content) + MESSAGE_OVERHEAD
        return total
