"""Memory node kinds and the fixed core dependency table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

PRODUCT_REQUIREMENTS = "product-requirements"
ARCHITECTURE = "architecture"
TECHNICAL = "technical"
TASKS_PLAN = "tasks-plan"
ACTIVE_CONTEXT = "active-context"
ERROR_DOCUMENTATION = "error-documentation"
LESSONS_LEARNED = "lessons-learned"

# Declaration order doubles as the tie-break for topological ordering.
CORE_KINDS: tuple[str, ...] = (
    PRODUCT_REQUIREMENTS,
    ARCHITECTURE,
    TECHNICAL,
    TASKS_PLAN,
    ACTIVE_CONTEXT,
    ERROR_DOCUMENTATION,
    LESSONS_LEARNED,
)

# upstream -> downstream
CORE_EDGES: dict[str, tuple[str, ...]] = {
    PRODUCT_REQUIREMENTS: (ARCHITECTURE, TECHNICAL, TASKS_PLAN),
    ARCHITECTURE: (TASKS_PLAN,),
    TECHNICAL: (TASKS_PLAN,),
    TASKS_PLAN: (ACTIVE_CONTEXT,),
    ACTIVE_CONTEXT: (ERROR_DOCUMENTATION, LESSONS_LEARNED),
}

# Rule files: updated in the ACT "UpdateRules" phase rather than with the docs.
RULE_KINDS: tuple[str, ...] = (ERROR_DOCUMENTATION, LESSONS_LEARNED)

# Known optional-context kinds and the core node they hang under by default.
CONTEXT_PARENTS: dict[str, str] = {
    "literature": TECHNICAL,
    "rfc": TASKS_PLAN,
}


def core_upstreams(kind: str) -> frozenset[str]:
    """Return the fixed upstream set of a core kind."""
    return frozenset(src for src, dsts in CORE_EDGES.items() if kind in dsts)


def is_core(node_id: str) -> bool:
    return node_id in CORE_KINDS


def context_id(kind: str, name: str) -> str:
    """Build the stable id of an optional-context node, e.g. ``rfc/login-flow``."""
    return f"{kind}/{name}"


@dataclass(frozen=True)
class MemoryNode:
    """
    One memory file as tracked by the graph.

    ``content`` is ``None`` for a core slot that exists structurally but
    has never been written. Dependents are not stored here; the graph
    derives them from the inverse edge set.
    """

    id: str
    kind: str
    content: str | None = None
    updated_at: datetime | None = None
    depends_on: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_core(self) -> bool:
        return is_core(self.id)

    @property
    def is_present(self) -> bool:
        return self.content is not None
