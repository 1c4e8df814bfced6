"""Entry point: python -m planact [chat|status|review]

- No args / "chat": Interactive REPL driving the PLAN/ACT workflow
- "status":         Show memory file completeness and exit
- "review":         Review every core memory file ("update memory files") and exit
"""

from __future__ import annotations

import asyncio
import logging
import sys

from planact.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _run_chat() -> None:
    """Interactive REPL mode."""
    config = load_config()
    _setup_logging(config.log_level)

    from planact.connectors.cli import CLIConnector
    from planact.core import Workflow

    workflow = Workflow(config)
    cli = CLIConnector()
    try:
        asyncio.run(cli.start(workflow.handle_message))
    except KeyboardInterrupt:
        pass
    finally:
        workflow.close_session()


def _run_status() -> None:
    config = load_config()
    _setup_logging(config.log_level)

    from planact.core import Workflow

    workflow = Workflow(config)
    workflow.open_session()
    print(workflow.status())
    workflow.close_session()


def _run_review() -> None:
    config = load_config()
    _setup_logging(config.log_level)

    from planact.core import Workflow

    workflow = Workflow(config)
    workflow.open_session()
    try:
        reply = asyncio.run(workflow.review_all())
    finally:
        workflow.close_session()
    print(reply.text)
    if reply.failed:
        sys.exit(1)


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "chat"

    if cmd in ("chat", "repl"):
        _run_chat()
    elif cmd == "status":
        _run_status()
    elif cmd == "review":
        _run_review()
    else:
        print("Usage: python -m planact [chat|status|review]")
        print("  chat    — Interactive PLAN/ACT session (default)")
        print("  status  — Show memory file state")
        print("  review  — Review all core memory files")
        sys.exit(1)


if __name__ == "__main__":
    main()
