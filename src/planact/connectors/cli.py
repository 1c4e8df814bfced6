"""Local CLI REPL connector."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from planact.connectors.base import IncomingMessage

if TYPE_CHECKING:
    from planact.connectors.base import MessageHandler
    from planact.core import Reply

logger = logging.getLogger(__name__)

_CLI_SENDER = "user"


class CLIConnector:
    """Interactive REPL connector reading stdin and writing stdout.

    A line ending in a backslash continues onto the next line, so a mode
    directive and the request can be entered together.
    """

    def __init__(self) -> None:
        self._running = False

    @property
    def name(self) -> str:
        return "cli"

    async def start(self, handler: MessageHandler) -> None:
        self._running = True
        loop = asyncio.get_event_loop()

        print("planact (type /help for commands, 'exit' or Ctrl+C to quit)")
        print("-" * 48)

        while self._running:
            try:
                text = await loop.run_in_executor(None, self._read_message)
            except (EOFError, KeyboardInterrupt):
                print("\nBye!")
                break

            if text is None or text.strip().lower() in ("exit", "quit"):
                print("Bye!")
                break

            text = text.strip()
            if not text:
                continue

            msg = IncomingMessage(text=text, sender=_CLI_SENDER, connector_name=self.name)
            response = await handler(msg)
            await self.reply(response)

    def _read_message(self) -> str | None:
        lines: list[str] = []
        prompt = "\nYou: "
        while True:
            line = self._read_input(prompt)
            if line is None:
                return "\n".join(lines) if lines else None
            if line.endswith("\\"):
                lines.append(line[:-1])
                prompt = "...  "
                continue
            lines.append(line)
            return "\n".join(lines)

    def _read_input(self, prompt: str) -> str | None:
        try:
            sys.stdout.write(prompt)
            sys.stdout.flush()
            raw = sys.stdin.buffer.readline()
            if not raw:
                return None
            return raw.decode("utf-8", errors="replace").rstrip("\n")
        except EOFError:
            return None

    async def stop(self) -> None:
        self._running = False

    async def reply(self, response: Reply) -> None:
        print(f"\n{response.text}")
        if response.phase is not None:
            print(f"  [phase: {response.phase.value}]", file=sys.stderr)
