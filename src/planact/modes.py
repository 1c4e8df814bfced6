"""Mode controller: PLAN/ACT selection and the phase pipelines.

PLAN:
    ReadMemoryFiles → CheckFilesComplete
        ├─ incomplete → CreatePlan → DocumentInChat                  (nothing persisted)
        └─ complete   → VerifyContext → DevelopStrategy → PresentApproach
                        → VerificationGate ─ reject → DevelopStrategy
                                           └ accept → DocumentInMemoryFiles

ACT:
    CheckMemoryFiles → UpdateDocumentation → UpdateRules → Execute → DocumentChanges

Any phase may be suspended into CLARIFICATION; resolving it resumes the
suspended phase. Transitions are guarded by PhaseMachine; the controller
only decides *what* to read or update and when, and callers apply the
returned update lists.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from planact.errors import (
    AmbiguousModeError,
    IncompleteMemoryError,
    PhaseOrderError,
    SessionActiveError,
)
from planact.memory.graph import MemoryGraph
from planact.memory.nodes import ACTIVE_CONTEXT, CORE_KINDS, RULE_KINDS, TASKS_PLAN
from planact.scheduler import UpdateScheduler
from planact.triggers import Trigger

logger = logging.getLogger(__name__)

PLAN_DIRECTIVE = "MODE = PLAN MODE"
ACT_DIRECTIVE = "MODE = ACT MODE"


class Mode(str, Enum):
    PLAN = "plan"
    ACT = "act"


class Phase(str, Enum):
    # PLAN
    READ_MEMORY_FILES = "read_memory_files"
    CHECK_FILES_COMPLETE = "check_files_complete"
    CREATE_PLAN = "create_plan"
    DOCUMENT_IN_CHAT = "document_in_chat"
    VERIFY_CONTEXT = "verify_context"
    DEVELOP_STRATEGY = "develop_strategy"
    PRESENT_APPROACH = "present_approach"
    VERIFICATION_GATE = "verification_gate"
    DOCUMENT_IN_MEMORY_FILES = "document_in_memory_files"
    # ACT
    CHECK_MEMORY_FILES = "check_memory_files"
    UPDATE_DOCUMENTATION = "update_documentation"
    UPDATE_RULES = "update_rules"
    EXECUTE = "execute"
    DOCUMENT_CHANGES = "document_changes"
    # shared
    CLARIFICATION = "clarification"
    DONE = "done"


START_EVENT = {Mode.PLAN: "start_plan", Mode.ACT: "start_act"}
BLOCKING_PHASES = frozenset({Phase.VERIFICATION_GATE, Phase.CLARIFICATION})

# (request) -> (mode or None, confidence in [0, 1])
ModeInference = Callable[[str], "tuple[Mode | None, float]"]


@dataclass
class WorkUnit:
    """One logically-complete unit of ACT work."""

    description: str
    documented: bool = False


@dataclass
class PhaseResult:
    """Outcome of one controller step.

    - `nodes`: memory files the phase reads or is concerned with.
    - `updates`: memory files the caller must update now, in order.
    """

    phase: Phase
    nodes: list[str] = field(default_factory=list)
    updates: list[str] = field(default_factory=list)
    trigger: Trigger | None = None
    blocked: bool = False
    note: str = ""


@dataclass
class Session:
    """The one active session. Holds ids only; node data stays in the graph."""

    graph: MemoryGraph = field(repr=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    mode: Mode | None = None
    phase: Phase = Phase.DONE
    request: str = ""
    suspended_phase: Phase | None = None
    trace: list[Phase] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    units: list[WorkUnit] = field(default_factory=list)

    @property
    def stale(self) -> frozenset:
        return self.graph.stale_ids

    @property
    def running(self) -> bool:
        return self.phase is not Phase.DONE

    @property
    def blocked(self) -> bool:
        return self.phase in BLOCKING_PHASES


class PhaseMachine(StateMachine):
    """Guards every phase change of a Session.

    The session stays the record of the current phase: each completed
    transition is written back to ``session.phase`` and appended to
    ``session.trace``.
    """

    done = State(value=Phase.DONE, initial=True)
    # PLAN
    read_memory_files = State(value=Phase.READ_MEMORY_FILES)
    check_files_complete = State(value=Phase.CHECK_FILES_COMPLETE)
    create_plan = State(value=Phase.CREATE_PLAN)
    document_in_chat = State(value=Phase.DOCUMENT_IN_CHAT)
    verify_context = State(value=Phase.VERIFY_CONTEXT)
    develop_strategy = State(value=Phase.DEVELOP_STRATEGY)
    present_approach = State(value=Phase.PRESENT_APPROACH)
    verification_gate = State(value=Phase.VERIFICATION_GATE)
    document_in_memory_files = State(value=Phase.DOCUMENT_IN_MEMORY_FILES)
    # ACT
    check_memory_files = State(value=Phase.CHECK_MEMORY_FILES)
    update_documentation = State(value=Phase.UPDATE_DOCUMENTATION)
    update_rules = State(value=Phase.UPDATE_RULES)
    execute = State(value=Phase.EXECUTE)
    document_changes = State(value=Phase.DOCUMENT_CHANGES)
    # shared
    clarification = State(value=Phase.CLARIFICATION)

    start_plan = done.to(read_memory_files)
    files_read = read_memory_files.to(check_files_complete)
    files_checked = check_files_complete.to(
        verify_context, cond="memory_complete"
    ) | check_files_complete.to(create_plan, unless="memory_complete")
    plan_created = create_plan.to(document_in_chat)
    chat_documented = document_in_chat.to(done)
    context_verified = verify_context.to(develop_strategy)
    strategy_developed = develop_strategy.to(present_approach)
    approach_presented = present_approach.to(verification_gate)
    accept = verification_gate.to(document_in_memory_files)
    reject = verification_gate.to(develop_strategy)
    plan_documented = document_in_memory_files.to(done)

    start_act = done.to(check_memory_files)
    memory_checked = check_memory_files.to(update_documentation)
    documentation_updated = update_documentation.to(update_rules)
    rules_updated = update_rules.to(execute)
    executed = execute.to(document_changes)
    changes_documented = document_changes.to(done)

    suspend = (
        read_memory_files.to(clarification)
        | check_files_complete.to(clarification)
        | create_plan.to(clarification)
        | document_in_chat.to(clarification)
        | verify_context.to(clarification)
        | develop_strategy.to(clarification)
        | present_approach.to(clarification)
        | verification_gate.to(clarification)
        | document_in_memory_files.to(clarification)
        | check_memory_files.to(clarification)
        | update_documentation.to(clarification)
        | update_rules.to(clarification)
        | execute.to(clarification)
        | document_changes.to(clarification)
    )
    resume = clarification.to(
        read_memory_files,
        check_files_complete,
        create_plan,
        document_in_chat,
        verify_context,
        develop_strategy,
        present_approach,
        verification_gate,
        document_in_memory_files,
        check_memory_files,
        update_documentation,
        update_rules,
        execute,
        document_changes,
        cond="is_resume_point",
    )
    abort = (
        read_memory_files.to(done)
        | check_files_complete.to(done)
        | create_plan.to(done)
        | document_in_chat.to(done)
        | verify_context.to(done)
        | develop_strategy.to(done)
        | present_approach.to(done)
        | verification_gate.to(done)
        | document_in_memory_files.to(done)
        | check_memory_files.to(done)
        | update_documentation.to(done)
        | update_rules.to(done)
        | execute.to(done)
        | document_changes.to(done)
        | clarification.to(done)
    )

    def __init__(self, session: Session):
        self.session = session
        super().__init__(start_value=session.phase)

    # ── Guards ───────────────────────────────────────────────

    def memory_complete(self) -> bool:
        return not self.session.graph.missing_core()

    def is_resume_point(self, target: State) -> bool:
        return target.value is self.session.suspended_phase

    # ── Sync back to the session ─────────────────────────────

    def after_transition(self, target: State) -> None:
        logger.debug("Session %s: -> %s", self.session.id, target.value.value)
        self.session.phase = target.value
        self.session.trace.append(target.value)


class ModeController:
    """Drives a Session through the pipeline of its mode."""

    def __init__(
        self,
        session: Session,
        scheduler: UpdateScheduler,
        *,
        infer: ModeInference | None = None,
    ) -> None:
        self.session = session
        self.scheduler = scheduler
        self.infer = infer
        self.machine = PhaseMachine(session)
        self._handlers: dict[Phase, Callable[[], PhaseResult]] = {
            Phase.READ_MEMORY_FILES: self._read_memory_files,
            Phase.CHECK_FILES_COMPLETE: self._check_files_complete,
            Phase.CREATE_PLAN: self._create_plan,
            Phase.DOCUMENT_IN_CHAT: self._document_in_chat,
            Phase.VERIFY_CONTEXT: self._verify_context,
            Phase.DEVELOP_STRATEGY: self._develop_strategy,
            Phase.PRESENT_APPROACH: self._present_approach,
            Phase.DOCUMENT_IN_MEMORY_FILES: self._document_in_memory_files,
            Phase.CHECK_MEMORY_FILES: self._check_memory_files,
            Phase.UPDATE_DOCUMENTATION: self._update_documentation,
            Phase.UPDATE_RULES: self._update_rules,
            Phase.EXECUTE: self._execute,
            Phase.DOCUMENT_CHANGES: self._document_changes,
        }

    @property
    def graph(self) -> MemoryGraph:
        return self.session.graph

    def _send(self, event: str) -> None:
        try:
            self.machine.send(event)
        except TransitionNotAllowed as e:
            raise PhaseOrderError(f"'{event}' not allowed at {self.session.phase.value}: {e}") from None

    # ── Mode selection ───────────────────────────────────────

    def select_mode(self, request: str) -> Mode:
        """Directive first, then inference with total confidence. Never guesses."""
        has_plan = PLAN_DIRECTIVE in request
        has_act = ACT_DIRECTIVE in request
        if has_plan and has_act:
            raise AmbiguousModeError(request)
        if has_plan:
            return Mode.PLAN
        if has_act:
            return Mode.ACT

        if self.infer is not None:
            mode, confidence = self.infer(request)
            if mode is not None and confidence >= 1.0:
                logger.info("Inferred mode %s from request", mode.value)
                return mode
            logger.info("Mode inference not conclusive (%s, %.2f)", mode, confidence)
        raise AmbiguousModeError(request)

    def start(self, request: str) -> Mode:
        """Begin a new run. Raises AmbiguousModeError without touching the session."""
        if self.session.running:
            raise SessionActiveError(
                f"A {self.session.mode.value} run is in progress at {self.session.phase.value}"
            )
        mode = self.select_mode(request)

        s = self.session
        s.mode = mode
        s.request = request
        s.suspended_phase = None
        s.trace = []
        s.notes = []
        s.units = []
        if mode is Mode.PLAN:
            self.graph.ensure_core()
        logger.info("Session %s: entering %s mode", s.id, mode.value)
        self._send(START_EVENT[mode])
        return mode

    def abort(self) -> None:
        """Drop the current run without documenting anything."""
        if self.session.running:
            logger.info("Aborting %s run at %s", self.session.mode.value, self.session.phase.value)
            self.session.suspended_phase = None
            self._send("abort")

    # ── Stepping ─────────────────────────────────────────────

    def advance(self) -> PhaseResult:
        """Execute the current phase and move on. Blocking phases return unchanged."""
        s = self.session
        if not s.running:
            raise PhaseOrderError("No run in progress; call start() first")
        if s.phase is Phase.VERIFICATION_GATE:
            return PhaseResult(s.phase, blocked=True, note="Awaiting accept/reject of the approach")
        if s.phase is Phase.CLARIFICATION:
            return PhaseResult(s.phase, blocked=True, note=s.notes[-1] if s.notes else "")
        return self._handlers[s.phase]()

    def run(self) -> list[PhaseResult]:
        """Advance until the run blocks or finishes."""
        results: list[PhaseResult] = []
        while self.session.running:
            result = self.advance()
            results.append(result)
            if result.blocked:
                break
        return results

    def _present(self) -> list[str]:
        return [nid for nid in self.graph.topo_order() if self.graph.get_node(nid).is_present]

    # ── PLAN phases ──────────────────────────────────────────

    def _read_memory_files(self) -> PhaseResult:
        nodes = self._present()
        self._send("files_read")
        return PhaseResult(Phase.READ_MEMORY_FILES, nodes=nodes)

    def _check_files_complete(self) -> PhaseResult:
        try:
            self.graph.require_complete()
        except IncompleteMemoryError as e:
            logger.info("%s; planning their creation", e)
            self._send("files_checked")
            return PhaseResult(Phase.CHECK_FILES_COMPLETE, nodes=e.missing, note=str(e))
        self._send("files_checked")
        return PhaseResult(Phase.CHECK_FILES_COMPLETE)

    def _create_plan(self) -> PhaseResult:
        missing = self.graph.missing_core()
        self._send("plan_created")
        return PhaseResult(Phase.CREATE_PLAN, nodes=missing, note="Plan to create missing memory files")

    def _document_in_chat(self) -> PhaseResult:
        self._send("chat_documented")
        return PhaseResult(Phase.DOCUMENT_IN_CHAT, note="Plan documented in chat; nothing persisted")

    def _verify_context(self) -> PhaseResult:
        self._send("context_verified")
        return PhaseResult(Phase.VERIFY_CONTEXT, nodes=[ACTIVE_CONTEXT, TASKS_PLAN])

    def _develop_strategy(self) -> PhaseResult:
        self._send("strategy_developed")
        return PhaseResult(Phase.DEVELOP_STRATEGY, note="\n".join(self.session.notes))

    def _present_approach(self) -> PhaseResult:
        self._send("approach_presented")
        return PhaseResult(Phase.PRESENT_APPROACH)

    def submit_verdict(self, accepted: bool, reason: str = "") -> None:
        """Resolve the VerificationGate."""
        if self.session.phase is not Phase.VERIFICATION_GATE:
            raise PhaseOrderError(f"No verification pending (phase: {self.session.phase.value})")
        if accepted:
            logger.info("Approach accepted")
            self._send("accept")
        else:
            logger.info("Approach rejected: %s", reason or "(no reason)")
            self.session.notes.append(f"Rejected: {reason}" if reason else "Rejected")
            self._send("reject")

    def _document_in_memory_files(self) -> PhaseResult:
        updates = self.scheduler.plan(Trigger.PLAN_VERIFIED)
        self._send("plan_documented")
        return PhaseResult(
            Phase.DOCUMENT_IN_MEMORY_FILES, updates=updates, trigger=Trigger.PLAN_VERIFIED
        )

    # ── ACT phases ───────────────────────────────────────────

    def _check_memory_files(self) -> PhaseResult:
        nodes = [nid for nid in self._present() if nid in CORE_KINDS]
        missing = self.graph.missing_core()
        if missing:
            logger.warning("Acting with missing core memory files: %s", ", ".join(missing))
        self._send("memory_checked")
        return PhaseResult(Phase.CHECK_MEMORY_FILES, nodes=nodes)

    def _update_documentation(self) -> PhaseResult:
        updates = [nid for nid in self.graph.get_stale_nodes() if nid not in RULE_KINDS]
        self._send("documentation_updated")
        return PhaseResult(Phase.UPDATE_DOCUMENTATION, updates=updates)

    def _update_rules(self) -> PhaseResult:
        updates = [nid for nid in self.graph.get_stale_nodes() if nid in RULE_KINDS]
        self._send("rules_updated")
        return PhaseResult(Phase.UPDATE_RULES, updates=updates)

    def _execute(self) -> PhaseResult:
        self._send("executed")
        return PhaseResult(Phase.EXECUTE, note=self.session.request)

    def _document_changes(self) -> PhaseResult:
        pending = [u for u in self.session.units if not u.documented]
        if not pending:
            self._send("changes_documented")
            return PhaseResult(Phase.DOCUMENT_CHANGES, note="No completed units reported")
        result = self._document_unit(pending[0])
        if len(pending) == 1:
            self._send("changes_documented")
        return result

    def _document_unit(self, unit: WorkUnit) -> PhaseResult:
        updates = self.scheduler.plan(Trigger.SIGNIFICANT_CHANGE_IMPLEMENTED)
        unit.documented = True
        return PhaseResult(
            Phase.DOCUMENT_CHANGES,
            updates=updates,
            trigger=Trigger.SIGNIFICANT_CHANGE_IMPLEMENTED,
            note=unit.description,
        )

    def record_unit(self, description: str) -> PhaseResult | None:
        """Report a completed unit of ACT work.

        While the ACT run is in progress the unit is queued for
        DocumentChanges (returns None). After the run finished it is
        documented immediately, still one scheduler call per unit.
        """
        s = self.session
        if s.mode is not Mode.ACT:
            raise PhaseOrderError("Work units can only be reported in ACT mode")
        unit = WorkUnit(description)
        s.units.append(unit)
        if s.running:
            return None
        return self._document_unit(unit)

    # ── Triggers & clarification ─────────────────────────────

    def raise_trigger(self, trigger: Trigger, note: str = "") -> PhaseResult:
        """Route a trigger raised mid-session.

        PlanVerified is only meaningful while an approach waits at the
        VerificationGate; anywhere else it raises PhaseOrderError.
        """
        s = self.session
        if trigger is Trigger.CONTEXT_CLARIFICATION_NEEDED:
            return self._suspend(note)
        if trigger is Trigger.PLAN_VERIFIED:
            if s.phase is not Phase.VERIFICATION_GATE:
                raise PhaseOrderError("No approach is awaiting verification")
            # Acceptance; DocumentInMemoryFiles consumes the trigger.
            self.submit_verdict(True)
            return self.advance()
        if trigger is Trigger.SIGNIFICANT_CHANGE_IMPLEMENTED and s.mode is Mode.ACT:
            result = self.record_unit(note or "change implemented")
            return result or PhaseResult(s.phase, note="Unit queued for DocumentChanges")
        return PhaseResult(s.phase, updates=self.scheduler.plan(trigger), trigger=trigger, note=note)

    def _suspend(self, question: str) -> PhaseResult:
        s = self.session
        if not s.running:
            raise PhaseOrderError("Nothing to suspend; no run in progress")
        if question:
            s.notes.append(f"Question: {question}")
        if s.phase is not Phase.CLARIFICATION:
            logger.info("Suspending %s for clarification", s.phase.value)
            s.suspended_phase = s.phase
            self._send("suspend")
        return PhaseResult(Phase.CLARIFICATION, blocked=True, note=question)

    def resolve_clarification(self, answer: str) -> Phase:
        """Record the answer and resume the suspended phase. Returns that phase."""
        s = self.session
        if s.phase is not Phase.CLARIFICATION or s.suspended_phase is None:
            raise PhaseOrderError("No clarification pending")
        s.notes.append(f"Clarified: {answer}")
        resume = s.suspended_phase
        self._send("resume")
        s.suspended_phase = None
        logger.info("Clarification resolved; resuming %s", resume.value)
        return resume
