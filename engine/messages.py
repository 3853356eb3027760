"""Conversation message record."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
ROLES = (SYSTEM, USER, ASSISTANT)


@dataclass
class ConversationMessage:
    role: str
    content: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role}")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM
