"""Tool registry: name -> handler plus the classification each registration declares."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Tool categories
READ_ONLY = "read_only"
WRITE = "write"

ToolHandler = Callable[..., Any]  # (params, ctx) -> ToolResult | Awaitable[ToolResult]


@dataclass
class ToolSpec:
    """One registered tool and how the dispatcher must treat it."""
    name: str
    handler: ToolHandler
    category: str = WRITE
    destructive: bool = False
    description: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)  # name -> description
    takes_content: bool = False  # inline content carries a payload
    cacheable: bool = False
    truncate_output: bool = False
    mutates_source: bool = False
    confirm: bool = False
    safe_when: Optional[Callable[[Dict[str, str]], bool]] = None  # params that neither mutate nor need a prompt
    stops_turn: bool = False

    def __post_init__(self):
        if self.category not in (READ_ONLY, WRITE):
            raise ValueError(f"Unknown tool category for {self.name}: {self.category}")
        if self.category == READ_ONLY and (self.destructive or self.confirm or self.stops_turn):
            raise ValueError(f"Read-only tool {self.name} cannot be destructive, confirmed or turn-stopping")

    @property
    def read_only(self) -> bool:
        return self.category == READ_ONLY

    def needs_confirmation(self, params: Dict[str, str]) -> bool:
        if not self.confirm:
            return False
        return not self.is_safe(params)

    def is_safe(self, params: Dict[str, str]) -> bool:
        return self.safe_when is not None and bool(self.safe_when(params))

    def is_destructive(self, params: Dict[str, str]) -> bool:
        return self.destructive and not self.is_safe(params)


class ToolRegistry:
    """Explicit map of tool name -> ToolSpec, populated at startup and injected into the engine."""

    def __init__(self, specs: Optional[List[ToolSpec]] = None):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> ToolSpec:
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._specs[spec.name] = spec
        logger.debug(f"Registered tool {spec.name} ({spec.category}, destructive={spec.destructive})")
        return spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> List[str]:
        return list(self._specs)

    def catalogue(self) -> str:
        """Render the tool list for the system prompt."""
        lines = []
        for spec in self._specs.values():
            attrs = " ".join(f'{p}="..."' for p in spec.parameters)
            head = f'<tool name="{spec.name}"' + (f" {attrs}" if attrs else "")
            usage = f"{head}>...</tool>" if spec.takes_content else f"{head}/>"
            lines.append(f"- {spec.name}: {spec.description}")
            lines.append(f"  usage: {usage}")
            for p, desc in spec.parameters.items():
                lines.append(f"    {p}: {desc}")
        return "\n".join(lines)
