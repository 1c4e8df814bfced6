"""Trigger classification for incoming session events."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

UPDATE_COMMAND = "update memory files"


class Trigger(str, Enum):
    NEW_PATTERN_DISCOVERED = "new_pattern_discovered"
    SIGNIFICANT_CHANGE_IMPLEMENTED = "significant_change_implemented"
    EXPLICIT_UPDATE_COMMAND = "explicit_update_command"
    CONTEXT_CLARIFICATION_NEEDED = "context_clarification_needed"
    PLAN_VERIFIED = "plan_verified"


@dataclass(frozen=True)
class SessionEvent:
    """Something that happened in the session.

    `kind` is an optional structured hint from the caller (for example
    "plan_accepted"); when absent, the text is classified heuristically.
    """

    text: str = ""
    kind: str | None = None


_KIND_HINTS: dict[str, Trigger] = {
    "pattern_discovered": Trigger.NEW_PATTERN_DISCOVERED,
    "change_implemented": Trigger.SIGNIFICANT_CHANGE_IMPLEMENTED,
    "update_command": Trigger.EXPLICIT_UPDATE_COMMAND,
    "clarification_needed": Trigger.CONTEXT_CLARIFICATION_NEEDED,
    "requirements_ambiguous": Trigger.CONTEXT_CLARIFICATION_NEEDED,
    "plan_accepted": Trigger.PLAN_VERIFIED,
}

# Checked in order; the first match wins.
_TEXT_RULES: list[tuple[re.Pattern[str], Trigger]] = [
    (
        re.compile(r"\b(ambiguous|unclear|clarif(y|ication)|not sure what)\b", re.I),
        Trigger.CONTEXT_CLARIFICATION_NEEDED,
    ),
    (
        re.compile(r"\b(plan (is )?(approved|accepted|verified)|approve the plan|lgtm)\b", re.I),
        Trigger.PLAN_VERIFIED,
    ),
    (
        re.compile(r"\b(implemented|finished|completed|merged|shipped)\b", re.I),
        Trigger.SIGNIFICANT_CHANGE_IMPLEMENTED,
    ),
    (
        re.compile(r"\b(new|reusable|recurring) (pattern|convention|lesson)\b", re.I),
        Trigger.NEW_PATTERN_DISCOVERED,
    ),
]


class TriggerDetector:
    """Maps an event to exactly one Trigger, or None when nothing applies."""

    def classify(self, event: SessionEvent | str) -> Trigger | None:
        if isinstance(event, str):
            event = SessionEvent(text=event)

        if UPDATE_COMMAND in event.text:
            return Trigger.EXPLICIT_UPDATE_COMMAND

        if event.kind:
            trigger = _KIND_HINTS.get(event.kind)
            if trigger is None:
                logger.warning("Unknown event kind: %s", event.kind)
            return trigger

        for pattern, trigger in _TEXT_RULES:
            if pattern.search(event.text):
                logger.debug("Classified %r as %s", event.text[:60], trigger.value)
                return trigger
        return None
