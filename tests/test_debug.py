"""Tests for the debug routine."""

from __future__ import annotations

import pytest

from planact.debug import (
    DESIGN_FLAW,
    DebugRoutine,
    DebugStage,
    FixAttempt,
    FixHistory,
    normalize_symptoms,
)
from planact.errors import DebugEntryRefused, PhaseOrderError, RepeatedDiagnosisError
from planact.memory.graph import MemoryGraph
from planact.memory.nodes import ACTIVE_CONTEXT, ERROR_DOCUMENTATION, TASKS_PLAN

SYMPTOMS = ["TimeoutError on login", "500 from /auth"]


@pytest.fixture
def graph() -> MemoryGraph:
    g = MemoryGraph()
    g.upsert_node(ACTIVE_CONTEXT, "Working on auth service")
    g.upsert_node(TASKS_PLAN, "- [ ] login")
    g.upsert_node(
        ERROR_DOCUMENTATION,
        "# Errors\n- timeouterror on login: raise pool size\n- unrelated: ignore\n",
    )
    return g


@pytest.fixture
def history() -> FixHistory:
    h = FixHistory()
    h.record_failure(SYMPTOMS, "slow query", "add index")
    return h


def walk_to_proposal(routine: DebugRoutine) -> None:
    routine.diagnose()
    routine.reason(["bug in retry loop"])
    routine.search_known_patterns()


class TestEntry:
    def test_refuses_with_empty_history(self, graph: MemoryGraph):
        with pytest.raises(DebugEntryRefused):
            DebugRoutine(graph, FixHistory(), SYMPTOMS)
        assert DebugRoutine.can_enter(FixHistory(), SYMPTOMS) is False

    def test_refuses_for_other_symptoms(self, graph: MemoryGraph, history: FixHistory):
        with pytest.raises(DebugEntryRefused):
            DebugRoutine(graph, history, ["disk full"])

    def test_enters_after_failed_fix(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        assert routine.stage is DebugStage.DIAGNOSE
        assert DebugRoutine.can_enter(history, SYMPTOMS)

    def test_symptom_sets_compare_normalized(self, history: FixHistory):
        assert DebugRoutine.can_enter(history, ["500 FROM /auth ", "timeouterror on login"])
        assert normalize_symptoms(["a", " A ", ""]) == frozenset({"a"})

    def test_empty_symptoms(self, history: FixHistory):
        assert DebugRoutine.can_enter(history, []) is False
        with pytest.raises(ValueError):
            normalize_symptoms([" "])


class TestPipeline:
    def test_diagnose_gathers_context(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        diagnosis = routine.diagnose()
        assert diagnosis.active_context == "Working on auth service"
        assert diagnosis.tasks_plan == "- [ ] login"
        assert [a.fix for a in diagnosis.history] == ["add index"]
        assert routine.stage is DebugStage.REASON

    def test_reason_always_considers_design_flaw(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        routine.diagnose()
        assert routine.reason(["bug in retry loop"]) == ["bug in retry loop", DESIGN_FLAW]

    def test_reason_does_not_duplicate_design_flaw(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        routine.diagnose()
        assert routine.reason(["Design  Flaw"]) == ["Design  Flaw"]

    def test_search_known_patterns(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        routine.diagnose()
        routine.reason([])
        assert routine.search_known_patterns() == ["- timeouterror on login: raise pool size"]

    def test_repeated_diagnosis_refused(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        walk_to_proposal(routine)
        with pytest.raises(RepeatedDiagnosisError):
            routine.propose_fix("  Slow   Query ", "add another index")
        assert routine.stage is DebugStage.PROPOSE_FIX

    def test_failed_validation_returns_to_diagnose(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        walk_to_proposal(routine)
        routine.propose_fix("pool exhausted", "raise pool size")
        assert routine.validate(False, "still times out") is False

        assert routine.stage is DebugStage.DIAGNOSE
        assert len(history) == 2
        assert routine.diagnose().history[-1].failure == "still times out"

        routine.reason([])
        routine.search_known_patterns()
        with pytest.raises(RepeatedDiagnosisError):
            routine.propose_fix("pool exhausted", "raise pool size more")

    def test_validated_fix_applies(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        walk_to_proposal(routine)
        routine.propose_fix("token refresh race", "serialize refresh")
        assert routine.validate(True) is True
        assert routine.apply() == [ERROR_DOCUMENTATION]
        assert routine.stage is DebugStage.DONE
        assert routine.applied.fix == "serialize refresh"
        assert len(history) == 1

    def test_steps_out_of_order(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        with pytest.raises(PhaseOrderError):
            routine.propose_fix("x", "y")
        with pytest.raises(PhaseOrderError):
            routine.apply()
        walk_to_proposal(routine)
        routine.propose_fix("x", "y")
        with pytest.raises(PhaseOrderError):
            routine.apply()  # must validate first


class TestFixHistory:
    def test_append_only(self):
        h = FixHistory()
        h.record_failure(["a"], "d1", "f1")
        h.record_failure(["a"], "d2", "f2")
        h.record_failure(["b"], "d3", "f3")
        assert len(h) == 3
        assert [a.diagnosis for a in h.for_symptoms(["a"])] == ["d1", "d2"]
        assert [a.diagnosis for a in h] == ["d1", "d2", "d3"]

    def test_on_record_sees_every_attempt(self):
        seen = []
        h = FixHistory([FixAttempt(frozenset({"a"}), "d0", "f0")], on_record=seen.append)
        h.record_failure(["A "], "d1", "f1", "still broken")
        assert len(h) == 2
        assert seen == [FixAttempt(frozenset({"a"}), "d1", "f1", "still broken")]


class TestStageMachine:
    def test_stage_follows_machine(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        walk_to_proposal(routine)
        assert routine.stage is DebugStage.PROPOSE_FIX
        assert routine._machine.current_state.id == "proposing"

    def test_refused_proposal_keeps_stage_and_history(self, graph: MemoryGraph, history: FixHistory):
        routine = DebugRoutine(graph, history, SYMPTOMS)
        walk_to_proposal(routine)
        with pytest.raises(RepeatedDiagnosisError):
            routine.propose_fix("slow query", "drop the index")
        assert routine.proposal is None
        assert len(history) == 1
        routine.propose_fix("lock contention", "shorter transactions")
        assert routine.stage is DebugStage.VALIDATE
