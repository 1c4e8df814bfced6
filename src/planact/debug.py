"""Debug routine: recovery workflow for errors a previous fix did not solve.

First-time errors go through ordinary ACT handling. Only once a fix for
the same symptom set has failed does this routine take over:

    Diagnose → Reason → SearchKnownPatterns → ProposeFix → Validate → Apply
        ↑                                                    │ fail
        └────────────────────────────────────────────────────┘

Failed attempts are appended to a FixHistory that only ever grows, and a
diagnosis already tried for the same symptom set is refused.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from planact.errors import DebugEntryRefused, PhaseOrderError, RepeatedDiagnosisError
from planact.memory.graph import MemoryGraph
from planact.memory.nodes import ACTIVE_CONTEXT, ERROR_DOCUMENTATION, TASKS_PLAN

logger = logging.getLogger(__name__)

DESIGN_FLAW = "design flaw"


def normalize_symptoms(symptoms: Iterable[str]) -> frozenset[str]:
    normalized = frozenset(s.strip().lower() for s in symptoms if s and s.strip())
    if not normalized:
        raise ValueError("At least one symptom is required")
    return normalized


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


class DebugStage(str, Enum):
    DIAGNOSE = "diagnose"
    REASON = "reason"
    SEARCH_KNOWN_PATTERNS = "search_known_patterns"
    PROPOSE_FIX = "propose_fix"
    VALIDATE = "validate"
    APPLY = "apply"
    DONE = "done"


@dataclass(frozen=True)
class FixAttempt:
    symptoms: frozenset[str]
    diagnosis: str
    fix: str
    failure: str = ""


class FixHistory:
    """Append-only record of failed fix attempts.

    `on_record` is called with every new attempt, which is how the
    workflow persists the history through MemoryStore.
    """

    def __init__(
        self,
        attempts: Iterable[FixAttempt] = (),
        on_record: Callable[[FixAttempt], None] | None = None,
    ) -> None:
        self._attempts: list[FixAttempt] = list(attempts)
        self._on_record = on_record

    def record_failure(
        self, symptoms: Iterable[str], diagnosis: str, fix: str, failure: str = ""
    ) -> FixAttempt:
        attempt = FixAttempt(normalize_symptoms(symptoms), diagnosis, fix, failure)
        self._attempts.append(attempt)
        if self._on_record is not None:
            self._on_record(attempt)
        logger.info("Recorded failed fix for %s: %s", sorted(attempt.symptoms), fix[:80])
        return attempt

    def for_symptoms(self, symptoms: Iterable[str]) -> list[FixAttempt]:
        key = normalize_symptoms(symptoms)
        return [a for a in self._attempts if a.symptoms == key]

    def __iter__(self) -> Iterator[FixAttempt]:
        return iter(list(self._attempts))

    def __len__(self) -> int:
        return len(self._attempts)


@dataclass
class Diagnosis:
    """Everything gathered in the Diagnose step."""

    symptoms: frozenset[str]
    active_context: str
    tasks_plan: str
    history: list[FixAttempt] = field(default_factory=list)


class DebugMachine(StateMachine):
    """Stage guard for one DebugRoutine."""

    diagnosing = State(value=DebugStage.DIAGNOSE, initial=True)
    reasoning = State(value=DebugStage.REASON)
    searching = State(value=DebugStage.SEARCH_KNOWN_PATTERNS)
    proposing = State(value=DebugStage.PROPOSE_FIX)
    validating = State(value=DebugStage.VALIDATE)
    applying = State(value=DebugStage.APPLY)
    done = State(value=DebugStage.DONE, final=True)

    diagnosed = diagnosing.to(reasoning)
    reasoned = reasoning.to(searching)
    searched = searching.to(proposing)
    proposed = proposing.to(validating, validators="not_tried_before")
    validated = validating.to(applying, cond="fix_passed") | validating.to(
        diagnosing, unless="fix_passed"
    )
    applied = applying.to(done)

    def __init__(self, routine: DebugRoutine):
        self.routine = routine
        super().__init__()

    def not_tried_before(self, diagnosis: str) -> None:
        routine = self.routine
        tried = {_normalize_text(a.diagnosis) for a in routine.history.for_symptoms(routine.symptoms)}
        if _normalize_text(diagnosis) in tried:
            raise RepeatedDiagnosisError(
                f"Diagnosis already tried for these symptoms: {diagnosis!r}"
            )

    def fix_passed(self, passed: bool) -> bool:
        return passed


class DebugRoutine:
    """One run of the debug routine for a fixed symptom set."""

    def __init__(self, graph: MemoryGraph, history: FixHistory, symptoms: Iterable[str]) -> None:
        self.graph = graph
        self.history = history
        self.symptoms = normalize_symptoms(symptoms)
        if not self.history.for_symptoms(self.symptoms):
            raise DebugEntryRefused(
                "No failed fix recorded for these symptoms; handle as an ordinary error"
            )
        self.candidates: list[str] = []
        self.known_patterns: list[str] = []
        self.proposal: FixAttempt | None = None
        self.applied: FixAttempt | None = None
        self._machine = DebugMachine(self)

    @staticmethod
    def can_enter(history: FixHistory, symptoms: Iterable[str]) -> bool:
        try:
            return bool(history.for_symptoms(symptoms))
        except ValueError:
            return False

    @property
    def stage(self) -> DebugStage:
        return self._machine.current_state.value

    def _send(self, event: str, **kwargs) -> None:
        try:
            self._machine.send(event, **kwargs)
        except TransitionNotAllowed:
            raise PhaseOrderError(f"Debug routine is at {self.stage.value}; '{event}' not allowed") from None

    def _content(self, node_id: str) -> str:
        if node_id not in self.graph:
            return ""
        return self.graph.get_node(node_id).content or ""

    # ── Steps ─────────────────────────────────────────────────

    def diagnose(self) -> Diagnosis:
        self._send("diagnosed")
        return Diagnosis(
            symptoms=self.symptoms,
            active_context=self._content(ACTIVE_CONTEXT),
            tasks_plan=self._content(TASKS_PLAN),
            history=self.history.for_symptoms(self.symptoms),
        )

    def reason(self, candidates: Iterable[str]) -> list[str]:
        """Record candidate causes; a design flaw is always among them."""
        self._send("reasoned")
        self.candidates = [c.strip() for c in candidates if c and c.strip()]
        if not any(_normalize_text(c) == DESIGN_FLAW for c in self.candidates):
            self.candidates.append(DESIGN_FLAW)
        return list(self.candidates)

    def search_known_patterns(self) -> list[str]:
        """Lines of error-documentation that mention any symptom."""
        self._send("searched")
        self.known_patterns = [
            line.strip()
            for line in self._content(ERROR_DOCUMENTATION).splitlines()
            if line.strip() and any(s in line.lower() for s in self.symptoms)
        ]
        return list(self.known_patterns)

    def propose_fix(self, diagnosis: str, fix: str) -> FixAttempt:
        self._send("proposed", diagnosis=diagnosis)
        self.proposal = FixAttempt(self.symptoms, diagnosis, fix)
        return self.proposal

    def validate(self, passed: bool, failure: str = "") -> bool:
        """Record the external verdict. A failure sends the routine back to Diagnose."""
        self._send("validated", passed=passed)
        proposal = self.proposal
        self.proposal = None
        if passed:
            self.applied = proposal
            return True
        self.history.record_failure(proposal.symptoms, proposal.diagnosis, proposal.fix, failure)
        logger.info("Fix failed validation; back to diagnose (%d attempts)", len(self.history))
        return False

    def apply(self) -> list[str]:
        """Finish the routine. Returns the memory files that should record the fix."""
        self._send("applied")
        logger.info("Applied fix: %s", self.applied.fix[:80])
        return [ERROR_DOCUMENTATION]
