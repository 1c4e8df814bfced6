"""Review-stamp author: offline backend that records reviews, no LLM."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from planact.authors.base import AuthoredContent, title_for

if TYPE_CHECKING:
    from planact.memory.nodes import MemoryNode

REVIEW_SECTION = "## Review log"


class StampAuthor:
    """Keeps existing content and appends a dated review entry.

    New files get a title skeleton, so the completeness check passes once a
    human (or an LLM author) has reviewed every core file.
    """

    @property
    def name(self) -> str:
        return "stamp"

    async def compose(self, node: MemoryNode, *, context: str, reason: str) -> AuthoredContent:
        ts = datetime.now().strftime("%Y-%m-%d %H:%M")
        entry = f"- [{ts}] {reason.strip() or 'reviewed'}"

        content = node.content
        if not content or not content.strip():
            content = f"# {title_for(node)}\n"

        if REVIEW_SECTION in content:
            content = content.replace(REVIEW_SECTION, f"{REVIEW_SECTION}\n{entry}", 1)
        else:
            content = content.rstrip() + f"\n\n{REVIEW_SECTION}\n{entry}\n"
        return AuthoredContent(text=content)
