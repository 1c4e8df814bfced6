"""Author protocol and shared types.

An Author is the content-authoring capability: given a memory node and the
current session context, it produces the node's new text. The workflow
decides *which* nodes to update and in what order; authors only write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from planact.memory.nodes import MemoryNode

TITLES: dict[str, str] = {
    "product-requirements": "Product Requirements",
    "architecture": "Architecture",
    "technical": "Technical Specifications",
    "tasks-plan": "Tasks Plan",
    "active-context": "Active Context",
    "error-documentation": "Error Documentation",
    "lessons-learned": "Lessons Learned",
}


def title_for(node: MemoryNode) -> str:
    if node.id in TITLES:
        return TITLES[node.id]
    kind, _, name = node.id.partition("/")
    return f"{kind.upper() if kind == 'rfc' else kind.capitalize()}: {name}"


@dataclass
class AuthoredContent:
    """Text produced by an author for one node."""

    text: str
    model: str | None = None
    cost_usd: float | None = None
    error: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


@runtime_checkable
class Author(Protocol):
    """Protocol that all authoring backends must implement."""

    @property
    def name(self) -> str: ...

    async def compose(self, node: MemoryNode, *, context: str, reason: str) -> AuthoredContent:
        """Produce the full new content of `node`."""
        ...
