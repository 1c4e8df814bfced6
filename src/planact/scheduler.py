"""Update scheduler: which memory files need review, and in what order.

The scheduler never writes content. It marks staleness on the graph and
returns node ids; producing and persisting the new content is left to the
caller (see planact.core.Workflow.apply).
"""

from __future__ import annotations

import logging

from planact.memory.graph import MemoryGraph
from planact.memory.nodes import ACTIVE_CONTEXT, CORE_KINDS, LESSONS_LEARNED, TASKS_PLAN
from planact.triggers import Trigger

logger = logging.getLogger(__name__)

# Nodes a verified plan is committed to.
PLAN_TARGETS = (TASKS_PLAN, ACTIVE_CONTEXT)


class UpdateScheduler:
    """Turns a trigger into an ordered list of node ids to review."""

    def __init__(self, graph: MemoryGraph) -> None:
        self.graph = graph

    def plan(self, trigger: Trigger) -> list[str]:
        if trigger is None:
            raise ValueError("plan() needs a trigger; unclassified events cause no action")

        if trigger is Trigger.EXPLICIT_UPDATE_COMMAND:
            self.graph.ensure_core()
            ids = [nid for nid in self.graph.topo_order() if nid in CORE_KINDS]

        elif trigger is Trigger.SIGNIFICANT_CHANGE_IMPLEMENTED:
            self.graph.ensure_core()
            self.graph.mark_stale(TASKS_PLAN)
            self.graph.mark_stale(ACTIVE_CONTEXT)
            ids = self.graph.get_stale_nodes()

        elif trigger is Trigger.NEW_PATTERN_DISCOVERED:
            # Terminal node: nothing downstream to propagate to.
            ids = [LESSONS_LEARNED]

        elif trigger is Trigger.CONTEXT_CLARIFICATION_NEEDED:
            ids = []

        elif trigger is Trigger.PLAN_VERIFIED:
            self.graph.ensure_core()
            stale = self.graph.stale_ids
            for target in PLAN_TARGETS:
                if self.graph.ancestors(target) & stale:
                    continue  # already stale through its pending upstream
                self.graph.mark_stale(target)
                stale = self.graph.stale_ids
            ids = self.graph.get_stale_nodes()

        else:
            raise ValueError(f"Unhandled trigger: {trigger!r}")

        logger.info("Plan for %s: %s", trigger.value, ids or "(none)")
        return ids
