"""Memory files: dependency graph + on-disk store.

Layout (relative to the project root):
    docs/
    ├── product_requirement_docs.md    # product-requirements
    ├── architecture.md                # architecture
    ├── technical.md                   # technical
    └── literature/                    # optional context: literature/<name>
    tasks/
    ├── tasks_plan.md                  # tasks-plan
    ├── active_context.md              # active-context
    └── rfc/                           # optional context: rfc/<name>
    rules/
    ├── error-documentation.md         # error-documentation
    ├── lessons-learned.md             # lessons-learned
    └── fix-history.md                 # append-only log of failed fixes
    .versions/                         # Timestamped backups (10 per file)
"""

from planact.memory.graph import MemoryGraph
from planact.memory.nodes import CORE_KINDS, MemoryNode
from planact.memory.store import MemoryStore

__all__ = ["CORE_KINDS", "MemoryGraph", "MemoryNode", "MemoryStore"]
