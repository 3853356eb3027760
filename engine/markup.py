"""
Tool-call markup: the parser and the streaming filter that hides markup from narration.

Wire format::

    <tool name="write_file" path="app.py">...file content...</tool>
    <tool name="list_files" path="src"/>
"""

import html
import re
from dataclasses import dataclass, field
from typing import Dict, List

OPEN_TOKEN = "<tool"
CLOSE_TOKEN = "</tool>"
SELF_CLOSE = "/>"

_TAG_RE = re.compile(
    r'<tool(?=[\s/>])(?P<attrs>(?:[^>"]|"[^"]*")*?)(?:/>|>(?P<body>.*?)</tool>)',
    re.DOTALL,
)
_ATTR_RE = re.compile(r'([\w:-]+)="([^"]*)"')


@dataclass
class ToolCall:
    """One parsed occurrence of tool markup."""
    name: str
    parameters: Dict[str, str] = field(default_factory=dict)
    inline_content: str = ""

    def preview(self, limit: int = 80) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self.parameters.items())
        if len(args) > limit:
            args = args[:limit - 3] + "..."
        return f"{self.name}({args})"


def parse_tool_calls(text: str) -> List[ToolCall]:
    """Extract tool calls in order of appearance. Malformed markup yields no call."""
    calls: List[ToolCall] = []
    for m in _TAG_RE.finditer(text or ""):
        attrs = {k: html.unescape(v) for k, v in _ATTR_RE.findall(m.group("attrs"))}
        name = attrs.pop("name", "").strip()
        if not name:
            continue
        body = m.group("body")
        calls.append(ToolCall(name=name, parameters=attrs,
                              inline_content=body.strip("\r\n") if body else ""))
    return calls


# Decoder states
_OUTSIDE = 0
_IN_OPEN_TAG = 1
_IN_BODY = 2


def _partial_suffix(text: str, token: str) -> str:
    """Longest suffix of text that is a proper prefix of token."""
    for n in range(min(len(token) - 1, len(text)), 0, -1):
        if token.startswith(text[-n:]):
            return text[-n:]
    return ""


class TagFilter:
    """Incremental narration/markup splitter for one model turn.

    feed() returns the visible text for a chunk. Tokens split across chunk
    boundaries stay buffered until they resolve. raw holds every chunk as
    received.
    """

    def __init__(self):
        self._raw: List[str] = []
        self._pending = ""
        self._state = _OUTSIDE
        self._in_quote = False

    @property
    def raw(self) -> str:
        return "".join(self._raw)

    @property
    def inside_markup(self) -> bool:
        return self._state != _OUTSIDE

    def feed(self, chunk: str) -> str:
        if not chunk:
            return ""
        self._raw.append(chunk)
        self._pending += chunk
        out: List[str] = []

        while self._pending:
            if self._state == _OUTSIDE:
                idx = self._pending.find("<")
                if idx < 0:
                    out.append(self._pending)
                    self._pending = ""
                    break
                out.append(self._pending[:idx])
                rest = self._pending[idx:]
                head = rest[:len(OPEN_TOKEN) + 1]
                if len(head) <= len(OPEN_TOKEN) and OPEN_TOKEN.startswith(head):
                    # could still become "<tool ", wait for more input
                    self._pending = rest
                    break
                if head.startswith(OPEN_TOKEN) and (head[-1].isspace() or head[-1] in "/>"):
                    self._state = _IN_OPEN_TAG
                    self._in_quote = False
                    self._pending = rest[len(OPEN_TOKEN):]
                    continue
                out.append("<")
                self._pending = rest[1:]

            elif self._state == _IN_OPEN_TAG:
                consumed = self._scan_open_tag()
                if not consumed:
                    break

            else:
                idx = self._pending.find(CLOSE_TOKEN)
                if idx < 0:
                    self._pending = _partial_suffix(self._pending, CLOSE_TOKEN)
                    break
                self._pending = self._pending[idx + len(CLOSE_TOKEN):]
                self._state = _OUTSIDE

        return "".join(out)

    def _scan_open_tag(self) -> bool:
        """Advance through the opening tag. Returns False when more input is needed."""
        text = self._pending
        i = 0
        while i < len(text):
            ch = text[i]
            if ch == '"':
                self._in_quote = not self._in_quote
            elif not self._in_quote:
                if ch == "/":
                    if i + 1 >= len(text):
                        self._pending = text[i:]
                        return False
                    if text[i + 1] == ">":
                        self._pending = text[i + 2:]
                        self._state = _OUTSIDE
                        return True
                elif ch == ">":
                    self._pending = text[i + 1:]
                    self._state = _IN_BODY
                    return True
            i += 1
        self._pending = ""
        return False

    def flush(self) -> str:
        """End of stream: release narration held back for a token that never completed."""
        leftover = ""
        if self._state == _OUTSIDE:
            leftover = self._pending
        self._pending = ""
        self._state = _OUTSIDE
        self._in_quote = False
        return leftover
