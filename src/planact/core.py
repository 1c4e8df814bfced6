"""Workflow hub: the one place where protocol decisions meet I/O.

Responsibilities:
1. Session lifecycle: exactly one active session, graph loaded on open
2. Message routing: commands, triggers, mode directives, clarification answers
3. Driving the ModeController until it blocks or finishes
4. Applying update plans: Author produces content, MemoryStore persists it,
   strictly in plan order
5. Debug routine: entry (with fall-through for first-time errors), the
   active routine's steps, and the persisted fix history
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from planact.authors import build_author
from planact.config import PlanactConfig
from planact.connectors.base import IncomingMessage
from planact.debug import DebugRoutine, FixHistory
from planact.errors import DebugEntryRefused, PhaseOrderError, ProtocolError, SessionActiveError
from planact.memory.graph import MemoryGraph
from planact.memory.store import MemoryStore
from planact.modes import (
    ACT_DIRECTIVE,
    PLAN_DIRECTIVE,
    ModeController,
    ModeInference,
    Phase,
    PhaseResult,
    Session,
)
from planact.scheduler import UpdateScheduler
from planact.triggers import UPDATE_COMMAND, Trigger, TriggerDetector

if TYPE_CHECKING:
    from planact.authors.base import Author

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Start a run with "MODE = PLAN MODE" or "MODE = ACT MODE" followed by your request.
"update memory files" reviews all core memory files.

Commands:
  /accept                      accept the presented approach
  /reject <reason>             reject it; strategy is reworked with the reason
  /unit <description>          report a completed unit of ACT work
  /failed <symptoms> | <diagnosis> | <fix>
                               record a fix attempt that did not work
  /debug <symptom>, <symptom>  start the debug routine for a repeated error
  /reason <cause>, <cause>     list candidate causes; known patterns are searched
  /propose <diagnosis> | <fix> propose a fix for a diagnosis not tried before
  /validate pass               the fix worked; record it in error-documentation
  /validate fail <what happened>
                               the fix did not work; back to diagnose
  /status                      show mode, phase and memory file state
  /abort                       drop the current run
"""


@dataclass
class Reply:
    """What the workflow reports back to the connector."""

    text: str
    phase: Phase | None = None
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: bool = False


class Workflow:
    """Core orchestrator. Routes messages through the protocol components."""

    def __init__(
        self,
        config: PlanactConfig,
        author: Author | None = None,
        *,
        infer: ModeInference | None = None,
    ) -> None:
        self.config = config
        self.store = MemoryStore(config.memory.root, versions_keep=config.memory.versions_keep)
        self.author = author or build_author(config.author.name, **config.author.kwargs())
        self.detector = TriggerDetector()
        self.infer = infer
        self.graph: MemoryGraph | None = None
        self.scheduler: UpdateScheduler | None = None
        self.session: Session | None = None
        self.controller: ModeController | None = None
        self.history: FixHistory | None = None
        self.debug: DebugRoutine | None = None
        self._lock = asyncio.Lock()  # one writer at a time

    # ── Session lifecycle ─────────────────────────────────────

    def open_session(self) -> Session:
        """Load the graph from disk and start the single active session."""
        if self.session is not None:
            raise SessionActiveError(f"Session {self.session.id} is still active")
        self.graph = MemoryGraph()
        self.store.load_into(self.graph)
        self.scheduler = UpdateScheduler(self.graph)
        self.session = Session(self.graph)
        self.controller = ModeController(self.session, self.scheduler, infer=self.infer)
        self.history = FixHistory(
            self.store.load_fix_history(), on_record=self.store.append_fix_attempt
        )
        logger.info("Opened session %s (%d memory nodes)", self.session.id, len(self.graph))
        return self.session

    def close_session(self) -> None:
        if self.session is None:
            return
        logger.info("Closed session %s", self.session.id)
        self.session = None
        self.controller = None
        self.scheduler = None
        self.graph = None
        self.history = None
        self.debug = None

    # ── Message handling (the core loop) ─────────────────────

    async def handle_message(self, msg: IncomingMessage) -> Reply:
        """Process an incoming message. This is the main entry point for all connectors."""
        async with self._lock:
            if self.session is None:
                self.open_session()
            try:
                return await self._process(msg.text.strip())
            except ProtocolError as e:
                logger.warning("%s: %s", type(e).__name__, e)
                return Reply(text=f"[{type(e).__name__}] {e}", phase=self.session.phase)

    async def _process(self, text: str) -> Reply:
        s = self.session
        if text.startswith("/"):
            return await self._command(text)

        if UPDATE_COMMAND in text:
            return await self.review_all()

        if s.phase is Phase.CLARIFICATION:
            self.controller.resolve_clarification(text)
            return await self._drive()

        has_directive = PLAN_DIRECTIVE in text or ACT_DIRECTIVE in text
        if s.running:
            if has_directive:
                raise SessionActiveError(
                    f"A {s.mode.value} run is waiting at {s.phase.value}; /abort it first"
                )
            trigger = self.detector.classify(text)
            if trigger is None:
                return Reply(text=self._waiting_text(), phase=s.phase, blocked=True)
            return await self._raise(trigger, text)

        if not has_directive:
            trigger = self.detector.classify(text)
            if trigger is not None and trigger is not Trigger.CONTEXT_CLARIFICATION_NEEDED:
                return await self._raise(trigger, text)

        self.controller.start(text)
        return await self._drive()

    async def _raise(self, trigger: Trigger, text: str) -> Reply:
        result = self.controller.raise_trigger(trigger, text)
        if result.blocked:
            return Reply(text=self._waiting_text(), phase=result.phase, blocked=True)
        updated, failed = await self.apply(result.updates, reason=f"{trigger.value}: {text}")
        if failed and self.session.running:
            self._stop_after_failure(failed)
            return self._reply([result], updated, failed, stopped=True)
        if self.session.running:
            return await self._drive(prior_updated=updated, prior_failed=failed)
        return self._reply([result], updated, failed)

    async def _drive(
        self, prior_updated: list[str] | None = None, prior_failed: list[str] | None = None
    ) -> Reply:
        """Advance the controller until it blocks or the run ends, applying updates."""
        updated = list(prior_updated or [])
        failed = list(prior_failed or [])
        results: list[PhaseResult] = []
        stopped = False
        while self.session.running:
            result = self.controller.advance()
            results.append(result)
            if result.updates:
                reason = f"{result.phase.value}: {result.note or self.session.request}"
                done, bad = await self.apply(result.updates, reason=reason)
                updated.extend(done)
                failed.extend(bad)
                if bad:
                    self._stop_after_failure(bad)
                    stopped = True
                    break
            if result.blocked:
                break
        return self._reply(results, updated, failed, stopped=stopped)

    def _stop_after_failure(self, failed: list[str]) -> None:
        """Abort the run so no downstream file is written over a stale upstream."""
        logger.warning("Stopping %s run after failed update of %s", self.session.mode.value, failed[0])
        self.controller.abort()

    # ── Applying plans ────────────────────────────────────────

    async def apply(self, node_ids: list[str], *, reason: str) -> tuple[list[str], list[str]]:
        """Update nodes in the given order. Stops at the first failure.

        Returns (updated, failed); nodes after a failure stay stale.
        """
        updated: list[str] = []
        context = self._context()
        for nid in node_ids:
            node = self.graph.get_node(nid)
            authored = await self.author.compose(node, context=context, reason=reason)
            if not authored.ok:
                logger.error("Author %s failed on %s: %s", self.author.name, nid, authored.error)
                return updated, [nid]
            new_node = self.graph.set_content(nid, authored.text)
            self.store.write(new_node)
            updated.append(nid)
        return updated, []

    async def review_all(self) -> Reply:
        """The explicit "update memory files" command: every core file, in order."""
        ids = self.scheduler.plan(Trigger.EXPLICIT_UPDATE_COMMAND)
        updated, failed = await self.apply(ids, reason="update memory files")
        text = f"Reviewed {len(updated)}/{len(ids)} core memory files"
        if failed:
            text += f"; failed at {failed[0]}"
        return Reply(text=text, phase=self.session.phase, updated=updated, failed=failed)

    def _context(self) -> str:
        s = self.session
        lines = [f"Mode: {s.mode.value if s.mode else '(none)'}", f"Phase: {s.phase.value}"]
        if s.request:
            lines.append(f"Request: {s.request}")
        if s.notes:
            lines.append("Notes:")
            lines.extend(f"- {n}" for n in s.notes)
        return "\n".join(lines)

    # ── Debug routine ─────────────────────────────────────────

    def begin_debug(self, symptoms: list[str]) -> DebugRoutine | None:
        """Enter the debug routine, or return None to fall through to ordinary handling."""
        try:
            return DebugRoutine(self.graph, self.history, symptoms)
        except DebugEntryRefused as e:
            logger.info("Debug routine not entered: %s", e)
            return None

    async def finish_debug(self, routine: DebugRoutine) -> Reply:
        """Apply a validated fix and record it in error-documentation."""
        ids = routine.apply()
        fix = routine.applied
        updated, failed = await self.apply(
            ids, reason=f"fix for {', '.join(sorted(fix.symptoms))}: {fix.diagnosis} -> {fix.fix}"
        )
        return Reply(text=f"Fix applied: {fix.fix}", updated=updated, failed=failed)

    # ── Commands ──────────────────────────────────────────────

    async def _command(self, text: str) -> Reply:
        cmd, _, arg = text.partition(" ")
        arg = arg.strip()

        if cmd == "/accept":
            self.controller.submit_verdict(True)
            return await self._drive()
        if cmd == "/reject":
            self.controller.submit_verdict(False, arg)
            return await self._drive()
        if cmd == "/unit":
            if not arg:
                return Reply(text="Usage: /unit <description>")
            result = self.controller.record_unit(arg)
            if result is None:
                return Reply(text=f"Queued unit: {arg}", phase=self.session.phase)
            updated, failed = await self.apply(result.updates, reason=f"change: {arg}")
            return self._reply([result], updated, failed)
        if cmd == "/failed":
            parts = [p.strip() for p in arg.split("|")]
            symptoms = [p for p in parts[0].split(",") if p.strip()]
            if len(parts) != 3 or not symptoms or not parts[1] or not parts[2]:
                return Reply(text="Usage: /failed <symptoms> | <diagnosis> | <fix>")
            self.history.record_failure(symptoms, parts[1], parts[2])
            return Reply(text="Recorded failed fix attempt")
        if cmd in ("/debug", "/reason", "/propose", "/validate"):
            return await self._debug_command(cmd, arg)
        if cmd == "/status":
            return Reply(text=self.status(), phase=self.session.phase)
        if cmd == "/abort":
            self.controller.abort()
            return Reply(text="Run aborted", phase=self.session.phase)
        return Reply(text=HELP_TEXT)

    async def _debug_command(self, cmd: str, arg: str) -> Reply:
        if cmd == "/debug":
            symptoms = [p for p in arg.split(",") if p.strip()]
            if not symptoms:
                return Reply(text="Usage: /debug <symptom>, <symptom>")
            routine = self.begin_debug(symptoms)
            if routine is None:
                return Reply(
                    text="No failed fix recorded for these symptoms; handle it as an ordinary error first."
                )
            self.debug = routine
            return self._diagnosis_reply(routine)

        routine = self.debug
        if routine is None:
            raise PhaseOrderError("No debug routine in progress; start one with /debug")

        if cmd == "/reason":
            candidates = routine.reason(p for p in arg.split(","))
            patterns = routine.search_known_patterns()
            lines = ["Candidate causes:"]
            lines.extend(f"- {c}" for c in candidates)
            lines.append("Known patterns:" if patterns else "Known patterns: none")
            lines.extend(f"  {p}" for p in patterns)
            lines.append("Next: /propose <diagnosis> | <fix>")
            return Reply(text="\n".join(lines), phase=self.session.phase)

        if cmd == "/propose":
            diagnosis, sep, fix = (p.strip() for p in arg.partition("|"))
            if not sep or not diagnosis or not fix:
                return Reply(text="Usage: /propose <diagnosis> | <fix>")
            routine.propose_fix(diagnosis, fix)
            return Reply(
                text=f"Proposed: {diagnosis} -> {fix}\n"
                "Try it, then /validate pass or /validate fail <what happened>.",
                phase=self.session.phase,
            )

        verdict, _, failure = arg.partition(" ")
        if verdict not in ("pass", "fail"):
            return Reply(text="Usage: /validate pass | /validate fail <what happened>")
        if verdict == "pass":
            routine.validate(True)
            self.debug = None
            return await self.finish_debug(routine)
        routine.validate(False, failure.strip())
        reply = self._diagnosis_reply(routine)
        reply.text = "Fix did not hold; back to diagnose.\n" + reply.text
        return reply

    def _diagnosis_reply(self, routine: DebugRoutine) -> Reply:
        diagnosis = routine.diagnose()
        lines = [f"Debugging: {', '.join(sorted(diagnosis.symptoms))}"]
        lines.append(f"Failed attempts so far: {len(diagnosis.history)}")
        for attempt in diagnosis.history:
            line = f"- {attempt.diagnosis} -> {attempt.fix}"
            if attempt.failure:
                line += f" ({attempt.failure})"
            lines.append(line)
        lines.append("Next: /reason <cause>, <cause>")
        return Reply(text="\n".join(lines), phase=self.session.phase)

    # ── Presentation ──────────────────────────────────────────

    def status(self) -> str:
        s = self.session
        lines = [
            f"Session: {s.id}",
            f"Mode: {s.mode.value if s.mode else '(none)'}",
            f"Phase: {s.phase.value}",
        ]
        missing = self.graph.missing_core()
        lines.append(f"Missing core files: {', '.join(missing) if missing else 'none'}")
        stale = self.graph.get_stale_nodes()
        lines.append(f"Stale: {', '.join(stale) if stale else 'none'}")
        return "\n".join(lines)

    def _waiting_text(self) -> str:
        s = self.session
        if s.phase is Phase.VERIFICATION_GATE:
            return "Approach presented. Reply /accept or /reject <reason>."
        if s.phase is Phase.CLARIFICATION:
            question = s.notes[-1] if s.notes else "Clarification needed."
            return f"{question}\nReply with the clarification to resume."
        return f"Waiting at {s.phase.value}"

    def _reply(
        self,
        results: list[PhaseResult],
        updated: list[str],
        failed: list[str],
        *,
        stopped: bool = False,
    ) -> Reply:
        s = self.session
        lines = [f"[{r.phase.value}] {r.note}".rstrip() for r in results]
        if updated:
            lines.append(f"Updated: {', '.join(updated)}")
        if failed:
            lines.append(f"Failed: {', '.join(failed)} (left stale)")
        if stopped:
            lines.append("Run stopped; later files were not updated. Start the run again once the author works.")
        if s.blocked:
            lines.append(self._waiting_text())
        return Reply(
            text="\n".join(lines),
            phase=s.phase,
            updated=updated,
            failed=failed,
            blocked=s.blocked,
        )
