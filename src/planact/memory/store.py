"""Memory file persistence: Markdown + YAML frontmatter on disk.

Markdown files are the source of truth. Every file carries frontmatter with
its node id, kind, last-updated timestamp and upstream ids, so the graph can
be rebuilt from a directory scan at startup.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import frontmatter

from planact.errors import ProtocolError
from planact.memory.graph import MemoryGraph
from planact.memory.nodes import (
    ACTIVE_CONTEXT,
    ARCHITECTURE,
    ERROR_DOCUMENTATION,
    LESSONS_LEARNED,
    PRODUCT_REQUIREMENTS,
    TASKS_PLAN,
    TECHNICAL,
    MemoryNode,
    is_core,
)

if TYPE_CHECKING:
    from planact.debug import FixAttempt

logger = logging.getLogger(__name__)

CORE_PATHS: dict[str, str] = {
    PRODUCT_REQUIREMENTS: "docs/product_requirement_docs.md",
    ARCHITECTURE: "docs/architecture.md",
    TECHNICAL: "docs/technical.md",
    TASKS_PLAN: "tasks/tasks_plan.md",
    ACTIVE_CONTEXT: "tasks/active_context.md",
    ERROR_DOCUMENTATION: "rules/error-documentation.md",
    LESSONS_LEARNED: "rules/lessons-learned.md",
}

CONTEXT_DIRS: dict[str, str] = {
    "literature": "docs/literature",
    "rfc": "tasks/rfc",
}

_GENERIC_CONTEXT_DIR = "context"
_VERSIONS_DIR = ".versions"
FIX_HISTORY_PATH = "rules/fix-history.md"

_FIX_LINE = re.compile(
    r"^- \[(?P<ts>[^\]]*)\] (?P<symptoms>[^|]*) \| diagnosis: (?P<diagnosis>[^|]*)"
    r" \| fix: (?P<fix>[^|]*?)(?: \| failure: (?P<failure>[^|]*))?$"
)


class MemoryStore:
    """Read/write access to memory files under a project root."""

    def __init__(self, root: Path, versions_keep: int = 10) -> None:
        self.root = root
        self.versions_keep = versions_keep

    # ── Paths ─────────────────────────────────────────────────

    def path_for(self, node_id: str) -> Path:
        """Map a node id to its file path."""
        if is_core(node_id):
            return self.root / CORE_PATHS[node_id]
        kind, sep, name = node_id.partition("/")
        if not sep or not name:
            raise ProtocolError(f"Malformed context node id: '{node_id}'")
        base = CONTEXT_DIRS.get(kind, f"{_GENERIC_CONTEXT_DIR}/{kind}")
        return self.root / base / f"{self._slugify(name)}.md"

    def _slugify(self, name: str) -> str:
        """Minimal slug: strip illegal chars, spaces to hyphens."""
        slug = re.sub(r'[<>:"/\\|?*\n\r\t]', "", name)
        slug = slug.strip().replace(" ", "-")
        return slug or "unnamed"

    # ── Read ──────────────────────────────────────────────────

    def read(self, node_id: str) -> str | None:
        """Return the body of a memory file, or None if it does not exist."""
        path = self.path_for(node_id)
        if not path.exists():
            return None
        return frontmatter.load(str(path)).content

    def load_into(self, graph: MemoryGraph) -> int:
        """Scan the root and upsert every memory file found. Returns count loaded.

        Core files load first so context files can attach to them.
        """
        graph.ensure_core()
        loaded = 0
        for kind, rel in CORE_PATHS.items():
            path = self.root / rel
            if not path.exists():
                continue
            post = frontmatter.load(str(path))
            graph.upsert_node(kind, post.content, updated_at=self._parse_ts(post.get("updated")))
            loaded += 1

        for path in sorted(self._context_files()):
            post = frontmatter.load(str(path))
            node_id = post.get("id")
            kind = post.get("kind")
            if not node_id or not kind or "/" not in str(node_id):
                logger.warning("Skipping context file without id/kind: %s", path)
                continue
            name = str(node_id).partition("/")[2]
            try:
                graph.upsert_node(
                    kind,
                    post.content,
                    name=name,
                    depends_on=post.get("depends_on") or None,
                    updated_at=self._parse_ts(post.get("updated")),
                )
            except ProtocolError as e:
                logger.warning("Skipping context file %s: %s", path, e)
                continue
            loaded += 1

        logger.info("Loaded %d memory files from %s", loaded, self.root)
        return loaded

    def _context_files(self) -> list[Path]:
        dirs = [self.root / d for d in CONTEXT_DIRS.values()]
        generic = self.root / _GENERIC_CONTEXT_DIR
        if generic.is_dir():
            dirs.extend(p for p in generic.iterdir() if p.is_dir())
        files: list[Path] = []
        for d in dirs:
            if d.is_dir():
                files.extend(d.glob("*.md"))
        return files

    def _parse_ts(self, value) -> datetime | None:
        if isinstance(value, datetime):
            return value
        if not value:
            return None
        try:
            return datetime.fromisoformat(str(value))
        except ValueError:
            return None

    # ── Write ─────────────────────────────────────────────────

    def write(self, node: MemoryNode) -> Path:
        """Persist a node (auto-backup of the previous version)."""
        if node.content is None:
            raise ProtocolError(f"Refusing to write empty node '{node.id}'")
        path = self.path_for(node.id)
        self._backup(node.id, path)
        updated = node.updated_at or datetime.now(timezone.utc)
        post = frontmatter.Post(
            node.content,
            id=node.id,
            kind=node.kind,
            updated=updated.isoformat(timespec="seconds"),
            depends_on=sorted(node.depends_on),
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        logger.info("Wrote memory file %s (%d chars)", path.relative_to(self.root), len(node.content))
        return path

    def _backup(self, node_id: str, path: Path) -> None:
        """Backup to .versions/, keep at most `versions_keep` versions per node."""
        if not path.exists():
            return
        versions_dir = self.root / _VERSIONS_DIR
        versions_dir.mkdir(exist_ok=True)
        key = node_id.replace("/", "__")
        ts = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        (versions_dir / f"{key}-{ts}.md").write_text(
            path.read_text(encoding="utf-8"), encoding="utf-8"
        )
        own = re.compile(rf"^{re.escape(key)}-\d{{8}}T\d{{12}}\.md$")
        old = sorted(p for p in versions_dir.glob(f"{key}-*.md") if own.match(p.name))
        for f in old[: -self.versions_keep]:
            f.unlink()

    # ── Fix history ───────────────────────────────────────────

    def append_fix_attempt(self, attempt: FixAttempt) -> None:
        """Append a failed fix attempt to the fix history log."""
        path = self.root / FIX_HISTORY_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M")
        entry = (
            f"{'; '.join(sorted(_one_line(s) for s in attempt.symptoms))}"
            f" | diagnosis: {_one_line(attempt.diagnosis)} | fix: {_one_line(attempt.fix)}"
        )
        if attempt.failure:
            entry += f" | failure: {_one_line(attempt.failure)}"
        with path.open("a", encoding="utf-8") as f:
            if path.stat().st_size == 0:
                f.write("# Fix history\n\n")
            f.write(f"- [{timestamp}] {entry}\n")

    def load_fix_history(self) -> list[FixAttempt]:
        """Parse the fix history log, oldest first. Unparseable lines are skipped."""
        from planact.debug import FixAttempt

        path = self.root / FIX_HISTORY_PATH
        if not path.exists():
            return []
        attempts: list[FixAttempt] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            m = _FIX_LINE.match(line.strip())
            if not m:
                continue
            symptoms = frozenset(s.strip() for s in m["symptoms"].split(";") if s.strip())
            if not symptoms:
                continue
            attempts.append(
                FixAttempt(symptoms, m["diagnosis"].strip(), m["fix"].strip(), (m["failure"] or "").strip())
            )
        return attempts


def _one_line(text: str) -> str:
    """Collapse whitespace and drop the field separators used by the fix log."""
    return " ".join(text.split()).replace("|", "/").replace(";", ",")
