"""Dependency graph over memory files."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

import networkx as nx

from planact.errors import (
    IncompleteMemoryError,
    InvalidDependencyError,
    UnknownNodeError,
    UnknownParentError,
)

from .nodes import (
    CONTEXT_PARENTS,
    CORE_KINDS,
    MemoryNode,
    context_id,
    core_upstreams,
    is_core,
)

logger = logging.getLogger(__name__)


class MemoryGraph:
    """
    Dependency graph over memory files.

    This class is a *data structure only*: it decides which nodes depend
    on which and which are stale, but never reads or writes files and
    never produces content. Persistence belongs to MemoryStore and content
    to an Author.

    Edges run upstream -> downstream in a ``networkx.DiGraph``; each graph
    node carries its ``MemoryNode`` under the ``node`` attribute. The graph
    is the sole owner of node data. Everything else (sessions, plans)
    refers to nodes by id.
    """

    def __init__(self) -> None:
        self._graph = nx.DiGraph()
        self._stale: set[str] = set()

    # ── Core slots ──────────────────────────────────────────

    def ensure_core(self) -> None:
        """Create empty slots for any missing core kind. Idempotent."""
        missing = [kind for kind in CORE_KINDS if kind not in self._graph]
        for kind in missing:
            node = MemoryNode(id=kind, kind=kind, depends_on=core_upstreams(kind))
            self._graph.add_node(kind, node=node)
        # Second pass: every upstream slot exists before its edges are drawn.
        for kind in missing:
            self._graph.add_edges_from((dep, kind) for dep in core_upstreams(kind))

    def missing_core(self) -> list[str]:
        """Core ids whose memory file has not been written yet."""
        return [
            kind
            for kind in CORE_KINDS
            if kind not in self._graph or not self.get_node(kind).is_present
        ]

    def require_complete(self) -> None:
        missing = self.missing_core()
        if missing:
            raise IncompleteMemoryError(missing)

    # ── Node Operations ─────────────────────────────────────

    def upsert_node(
        self,
        kind: str,
        content: str | None,
        *,
        name: str | None = None,
        depends_on: Iterable[str] | None = None,
        updated_at: datetime | None = None,
    ) -> MemoryNode:
        """Create or replace a node.

        Core kinds are addressed by kind alone and keep their fixed
        upstreams. Any other kind is an optional-context node: it needs a
        ``name`` and attaches under ``depends_on`` (or the kind's default
        parent). The graph is left untouched when validation fails.

        Raises InvalidDependencyError when the edges would form a cycle,
        alter a fixed core edge or attach under another context node, and
        UnknownParentError when a parent is not an existing core node.
        """
        if is_core(kind):
            if name is not None:
                raise ValueError(f"Core node '{kind}' does not take a name")
            self.ensure_core()
            node_id = kind
            fixed = core_upstreams(kind)
            if depends_on is not None and frozenset(depends_on) != fixed:
                raise InvalidDependencyError(
                    f"Edges of core node '{kind}' are fixed: {sorted(fixed)}"
                )
            deps = fixed
        else:
            if not name:
                raise ValueError(f"Context node of kind '{kind}' needs a name")
            node_id = context_id(kind, name)
            if depends_on is None:
                parent = CONTEXT_PARENTS.get(kind)
                if parent is None:
                    raise UnknownParentError(
                        f"Context kind '{kind}' has no default parent; pass depends_on"
                    )
                depends_on = (parent,)
            deps = frozenset(depends_on)
            self._check_attachment(node_id, deps)

        node = MemoryNode(
            id=node_id,
            kind=kind,
            content=content,
            updated_at=updated_at or datetime.now(timezone.utc),
            depends_on=deps,
        )
        self._put(node)
        self._stale.discard(node_id)
        logger.debug("Upserted node %s", node_id)
        return node

    def set_content(self, node_id: str, content: str) -> MemoryNode:
        """Replace the content of an existing node, keeping its edges."""
        node = self.get_node(node_id)
        if node.is_core:
            return self.upsert_node(node.kind, content)
        name = node_id.partition("/")[2]
        return self.upsert_node(node.kind, content, name=name, depends_on=node.depends_on)

    def _put(self, node: MemoryNode) -> None:
        """Store a validated node and rewire its incoming edges."""
        g = self._graph
        g.add_node(node.id, node=node)
        g.remove_edges_from(list(g.in_edges(node.id)))
        g.add_edges_from((dep, node.id) for dep in node.depends_on)

    def _check_attachment(self, node_id: str, deps: frozenset) -> None:
        if not deps:
            raise UnknownParentError(f"Context node '{node_id}' must attach to a core node")
        trial = self._graph.copy()
        if node_id in trial:
            trial.remove_edges_from(list(trial.in_edges(node_id)))
        trial.add_edges_from((dep, node_id) for dep in deps)
        if not nx.is_directed_acyclic_graph(trial):
            raise InvalidDependencyError(f"Attaching '{node_id}' would create a cycle")
        for dep in sorted(deps):
            if dep not in self._graph:
                raise UnknownParentError(f"Unknown parent '{dep}' for '{node_id}'")
            if not is_core(dep):
                raise InvalidDependencyError(
                    f"'{dep}' is a context node and cannot have dependents"
                )

    def get_node(self, node_id: str) -> MemoryNode:
        try:
            return self._graph.nodes[node_id]["node"]
        except KeyError:
            raise UnknownNodeError(f"Unknown memory node '{node_id}'") from None

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._graph

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    def nodes(self) -> Iterable[MemoryNode]:
        return [data["node"] for _, data in self._graph.nodes(data=True)]

    def dependents(self, node_id: str) -> list[str]:
        """Direct downstream ids, in rank order."""
        self.get_node(node_id)
        return sorted(self._graph.successors(node_id), key=self._rank)

    def descendants(self, node_id: str) -> set[str]:
        if node_id not in self._graph:
            return set()
        return nx.descendants(self._graph, node_id)

    def ancestors(self, node_id: str) -> set[str]:
        self.get_node(node_id)
        return nx.ancestors(self._graph, node_id)

    # ── Staleness ───────────────────────────────────────────

    def mark_stale(self, node_id: str) -> list[str]:
        """Mark a node and everything downstream of it stale.

        Returns the ids reached, in breadth-first order over dependents.
        """
        self.get_node(node_id)
        reached = [node_id] + [
            v
            for _, v in nx.bfs_edges(
                self._graph, node_id, sort_neighbors=lambda ids: sorted(ids, key=self._rank)
            )
        ]
        self._stale.update(reached)
        logger.debug("Marked stale from %s: %s", node_id, reached)
        return reached

    def get_stale_nodes(self) -> list[str]:
        """Stale ids, producers before consumers."""
        return [nid for nid in self.topo_order() if nid in self._stale]

    @property
    def stale_ids(self) -> frozenset:
        return frozenset(self._stale)

    def clear_stale(self, node_ids: Iterable[str] | None = None) -> None:
        if node_ids is None:
            self._stale.clear()
        else:
            self._stale.difference_update(node_ids)

    # ── Ordering ────────────────────────────────────────────

    def _rank(self, node_id: str) -> tuple[int, str]:
        if is_core(node_id):
            return (CORE_KINDS.index(node_id), node_id)
        return (len(CORE_KINDS), node_id)

    def topo_order(self) -> list[str]:
        """All node ids in dependency order; ties go to core declaration order, then id."""
        return list(nx.lexicographical_topological_sort(self._graph, key=self._rank))
