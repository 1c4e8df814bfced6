"""Anthropic API author: rewrites memory files with Claude, no tool use."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from planact.authors.base import AuthoredContent, title_for

if TYPE_CHECKING:
    from planact.memory.nodes import MemoryNode

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You maintain the memory files of a software project. Each memory file is a
Markdown document with one responsibility:

- product-requirements: why the project exists, problems solved, core requirements
- architecture: system components, their relationships and dependencies
- technical: environment, frameworks, key technical decisions and patterns
- tasks-plan: task backlog, progress, known issues
- active-context: current focus, active decisions, recent changes, next steps
- error-documentation: recurring errors and how they were resolved
- lessons-learned: project patterns, preferences and reusable insights

You will receive one file, the reason it needs review, and the session
context. Reply with the complete new content of that file only: Markdown,
no frontmatter, no commentary. Keep everything that is still accurate.
"""


@dataclass
class AnthropicAuthor:
    """Direct Anthropic API via the `anthropic` SDK."""

    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    timeout: int = 120

    def __post_init__(self) -> None:
        try:
            import anthropic

            self._client = anthropic.Anthropic(timeout=self.timeout)
        except ImportError:
            raise ImportError(
                "anthropic package required. Install with: pip install 'planact[api]'"
            )

    @property
    def name(self) -> str:
        return "anthropic_api"

    def _build_prompt(self, node: MemoryNode, context: str, reason: str) -> str:
        current = node.content if node.content else "(file does not exist yet)"
        return (
            f"<file id=\"{node.id}\" title=\"{title_for(node)}\">\n{current}\n</file>\n\n"
            f"<context>\n{context or '(none)'}\n</context>\n\n"
            f"Reason for review: {reason}"
        )

    async def compose(self, node: MemoryNode, *, context: str, reason: str) -> AuthoredContent:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": self._build_prompt(node, context, reason)}],
        }

        try:
            response = await asyncio.to_thread(self._client.messages.create, **kwargs)
        except Exception as e:
            logger.error("Anthropic API error for %s: %s", node.id, e)
            return AuthoredContent(text="", error=f"Anthropic API error: {e}")

        text = response.content[0].text if response.content else ""
        if not text.strip():
            return AuthoredContent(text="", model=response.model, error="Empty response")

        cost = None
        if response.usage:
            # Approximate cost (Sonnet pricing)
            cost = (response.usage.input_tokens * 3 + response.usage.output_tokens * 15) / 1e6

        return AuthoredContent(text=text, model=response.model, cost_usd=cost)

    async def health_check(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return bool(response.content)
        except Exception:
            return False
