"""
Stop heuristics: does a model response ask the user something or announce completion?

Either match ends the turn before any tool call in the same response runs, so the
model cannot ask a question and then act as though it had been answered.
"""

import re
from typing import Optional

QUESTION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"would you like",
        r"do you want",
        r"should i",
        r"can i help",
        r"what would you prefer",
        r"which (?:one|option)",
        r"are you sure",
        r"confirm",
        r"please (?:confirm|let me know|tell me)",
        r"could you clarify",
        r"could you (?:explain|provide|specify)",
    )
]

COMPLETION_PATTERNS = [
    re.compile(p, re.IGNORECASE | re.MULTILINE) for p in (
        r"the (?:app|project|feature|task) is (?:ready|complete|done)",
        r"all (?:files|changes|tasks) (?:are|have been) (?:created|completed)",
        r"you can now",
        r"to get started",
        r"ready to (?:use|test|run)",
        r"^\s*(?:all )?done\b",
    )
]


def find_question(response: str) -> Optional[str]:
    """Return the matching phrase or line if the response asks the user something."""
    for pattern in QUESTION_PATTERNS:
        m = pattern.search(response)
        if m:
            return m.group(0)
    for line in response.split("\n"):
        if line.strip().endswith("?"):
            return line.strip()
    return None


def find_completion(response: str) -> Optional[str]:
    for pattern in COMPLETION_PATTERNS:
        m = pattern.search(response)
        if m:
            return m.group(0).strip()
    return None


def stop_reason(response: str) -> Optional[str]:
    """'question: ...' / 'completion: ...' when the turn must stop, else None."""
    q = find_question(response)
    if q:
        return f"question: {q}"
    c = find_completion(response)
    if c:
        return f"completion: {c}"
    return None
