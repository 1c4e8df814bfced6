"""Tests for the workflow hub."""

import pytest
from pathlib import Path

from planact.authors.base import AuthoredContent
from planact.config import AuthorConfig, MemoryConfig, PlanactConfig
from planact.connectors.base import IncomingMessage
from planact.core import Workflow
from planact.debug import DebugStage
from planact.errors import SessionActiveError
from planact.memory.nodes import CORE_KINDS
from planact.modes import Mode, Phase

VERIFIED_UPDATES = ["tasks-plan", "active-context", "error-documentation", "lessons-learned"]


class MockAuthor:
    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.calls: list[str] = []
        self.last_context: str | None = None

    @property
    def name(self) -> str:
        return "mock"

    async def compose(self, node, *, context, reason) -> AuthoredContent:
        self.calls.append(node.id)
        self.last_context = context
        if node.id == self.fail_on:
            return AuthoredContent(text="", error="boom")
        return AuthoredContent(text=f"# {node.id}\n\n{reason}\n")


def msg(text: str) -> IncomingMessage:
    return IncomingMessage(text=text, sender="user", connector_name="cli")


@pytest.fixture
def config(tmp_path: Path) -> PlanactConfig:
    return PlanactConfig(
        author=AuthorConfig(name="stamp"),
        memory=MemoryConfig(root=tmp_path / "project"),
    )


@pytest.fixture
def author() -> MockAuthor:
    return MockAuthor()


@pytest.fixture
def wf(config: PlanactConfig, author: MockAuthor) -> Workflow:
    return Workflow(config, author)


async def review(wf: Workflow) -> None:
    reply = await wf.handle_message(msg("please update memory files"))
    assert reply.failed == []


class TestSessions:
    def test_default_author_from_config(self, config: PlanactConfig):
        assert Workflow(config).author.name == "stamp"

    def test_single_active_session(self, wf: Workflow):
        wf.open_session()
        with pytest.raises(SessionActiveError):
            wf.open_session()
        wf.close_session()
        wf.open_session()

    @pytest.mark.asyncio
    async def test_session_opened_on_first_message(self, wf: Workflow):
        assert wf.session is None
        await wf.handle_message(msg("/status"))
        assert wf.session is not None

    @pytest.mark.asyncio
    async def test_memory_reloaded_on_reopen(self, wf: Workflow):
        await review(wf)
        wf.close_session()
        wf.open_session()
        assert wf.graph.missing_core() == []
        assert "Missing core files: none" in wf.status()


class TestModeSelection:
    @pytest.mark.asyncio
    async def test_no_directive(self, wf: Workflow):
        reply = await wf.handle_message(msg("build a login page"))
        assert reply.text.startswith("[AmbiguousModeError]")
        assert "MODE = PLAN MODE" in reply.text
        assert not wf.session.running

    @pytest.mark.asyncio
    async def test_inferred_mode(self, config: PlanactConfig, author: MockAuthor):
        wf = Workflow(config, author, infer=lambda text: (Mode.PLAN, 1.0))
        reply = await wf.handle_message(msg("build a login page"))
        assert wf.session.mode is Mode.PLAN
        assert reply.phase is Phase.DONE


class TestPlanMode:
    @pytest.mark.asyncio
    async def test_incomplete_memory_documents_in_chat(self, wf: Workflow, author: MockAuthor):
        reply = await wf.handle_message(msg("MODE = PLAN MODE build a login page"))
        assert reply.phase is Phase.DONE
        assert "[create_plan]" in reply.text
        assert "[document_in_chat]" in reply.text
        assert reply.updated == []
        assert author.calls == []
        assert not (wf.store.root / "docs").exists()

    @pytest.mark.asyncio
    async def test_gate_reject_then_accept(self, wf: Workflow, author: MockAuthor):
        await review(wf)
        author.calls.clear()

        reply = await wf.handle_message(msg("MODE = PLAN MODE add oauth"))
        assert reply.blocked
        assert reply.phase is Phase.VERIFICATION_GATE
        assert reply.updated == []

        reply = await wf.handle_message(msg("/reject too broad"))
        assert reply.phase is Phase.VERIFICATION_GATE
        assert "Rejected: too broad" in wf.session.notes
        assert author.calls == []

        reply = await wf.handle_message(msg("/accept"))
        assert reply.phase is Phase.DONE
        assert reply.updated == VERIFIED_UPDATES
        assert author.calls == VERIFIED_UPDATES
        assert wf.graph.get_stale_nodes() == []
        assert "add oauth" in wf.store.read("tasks-plan")

    @pytest.mark.asyncio
    async def test_unrelated_text_at_gate(self, wf: Workflow):
        await review(wf)
        await wf.handle_message(msg("MODE = PLAN MODE add oauth"))
        reply = await wf.handle_message(msg("hmm"))
        assert reply.blocked
        assert "/accept" in reply.text

    @pytest.mark.asyncio
    async def test_new_directive_while_waiting(self, wf: Workflow):
        await review(wf)
        await wf.handle_message(msg("MODE = PLAN MODE add oauth"))
        reply = await wf.handle_message(msg("MODE = ACT MODE do it"))
        assert reply.text.startswith("[SessionActiveError]")
        assert wf.session.phase is Phase.VERIFICATION_GATE

        await wf.handle_message(msg("/abort"))
        assert not wf.session.running

    @pytest.mark.asyncio
    async def test_clarification_at_gate(self, wf: Workflow, author: MockAuthor):
        await review(wf)
        await wf.handle_message(msg("MODE = PLAN MODE add oauth"))

        reply = await wf.handle_message(msg("the provider list is unclear"))
        assert reply.phase is Phase.CLARIFICATION
        assert reply.blocked

        reply = await wf.handle_message(msg("only google"))
        assert reply.phase is Phase.VERIFICATION_GATE
        assert "Clarified: only google" in wf.session.notes

        reply = await wf.handle_message(msg("/accept"))
        assert reply.updated == VERIFIED_UPDATES
        assert "Clarified: only google" in author.last_context


class TestActMode:
    @pytest.mark.asyncio
    async def test_run_then_unit(self, wf: Workflow, author: MockAuthor):
        await review(wf)
        author.calls.clear()

        reply = await wf.handle_message(msg("MODE = ACT MODE implement oauth"))
        assert reply.phase is Phase.DONE
        assert "[execute]" in reply.text
        assert author.calls == []

        reply = await wf.handle_message(msg("/unit oauth callback handler"))
        assert reply.updated == VERIFIED_UPDATES
        assert wf.session.units[-1].documented

    @pytest.mark.asyncio
    async def test_change_reported_in_text(self, wf: Workflow):
        await review(wf)
        await wf.handle_message(msg("MODE = ACT MODE implement oauth"))

        reply = await wf.handle_message(msg("I implemented the token refresh"))
        assert reply.updated == VERIFIED_UPDATES
        assert wf.session.units[-1].description == "I implemented the token refresh"

    @pytest.mark.asyncio
    async def test_unit_in_plan_mode(self, wf: Workflow):
        await wf.handle_message(msg("MODE = PLAN MODE x"))
        reply = await wf.handle_message(msg("/unit something"))
        assert reply.text.startswith("[PhaseOrderError]")

    @pytest.mark.asyncio
    async def test_new_pattern_outside_run(self, wf: Workflow, author: MockAuthor):
        reply = await wf.handle_message(msg("found a reusable pattern for retries"))
        assert reply.updated == ["lessons-learned"]
        assert author.calls == ["lessons-learned"]


class TestUpdateCommand:
    @pytest.mark.asyncio
    async def test_reviews_all_core_files(self, wf: Workflow, author: MockAuthor):
        reply = await wf.handle_message(msg("update memory files"))
        assert reply.updated == list(CORE_KINDS)
        assert author.calls == list(CORE_KINDS)
        for kind in CORE_KINDS:
            assert wf.store.path_for(kind).exists()

    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self, config: PlanactConfig):
        author = MockAuthor(fail_on="architecture")
        wf = Workflow(config, author)
        reply = await wf.handle_message(msg("update memory files"))
        assert reply.updated == ["product-requirements"]
        assert reply.failed == ["architecture"]
        assert author.calls == ["product-requirements", "architecture"]
        assert not wf.store.path_for("technical").exists()
        assert "failed at architecture" in reply.text

    @pytest.mark.asyncio
    async def test_failed_plan_commit_stops_later_runs(self, wf: Workflow, author: MockAuthor):
        await review(wf)
        author.fail_on = "tasks-plan"
        await wf.handle_message(msg("MODE = PLAN MODE add oauth"))

        reply = await wf.handle_message(msg("/accept"))
        assert reply.updated == []
        assert reply.failed == ["tasks-plan"]
        assert not wf.session.running

        author.calls.clear()
        reply = await wf.handle_message(msg("MODE = ACT MODE y"))
        assert reply.failed == ["tasks-plan"]
        assert reply.updated == []
        assert author.calls == ["tasks-plan"]
        assert "Run stopped" in reply.text
        assert not wf.session.running
        stale = wf.graph.get_stale_nodes()
        assert "error-documentation" in stale
        assert "lessons-learned" in stale


class TestDebug:
    @pytest.mark.asyncio
    async def test_first_time_error_falls_through(self, wf: Workflow):
        reply = await wf.handle_message(msg("/debug login timeout"))
        assert "No failed fix recorded" in reply.text
        assert wf.debug is None

    @pytest.mark.asyncio
    async def test_steps_need_an_active_routine(self, wf: Workflow):
        for text in ("/reason slow dns", "/propose a | b", "/validate pass"):
            reply = await wf.handle_message(msg(text))
            assert reply.text.startswith("[PhaseOrderError]")

    @pytest.mark.asyncio
    async def test_full_loop_through_chat(self, wf: Workflow, author: MockAuthor):
        reply = await wf.handle_message(msg("/failed login timeout | pool too small | raise pool size"))
        assert reply.text == "Recorded failed fix attempt"

        reply = await wf.handle_message(msg("/debug Login Timeout"))
        assert "Debugging: login timeout" in reply.text
        assert "Failed attempts so far: 1" in reply.text
        assert "pool too small -> raise pool size" in reply.text
        assert wf.debug.stage is DebugStage.REASON

        reply = await wf.handle_message(msg("/reason slow dns, pool exhausted"))
        assert "- slow dns" in reply.text
        assert "- design flaw" in reply.text
        assert wf.debug.stage is DebugStage.PROPOSE_FIX

        reply = await wf.handle_message(msg("/propose Pool too small | raise it further"))
        assert reply.text.startswith("[RepeatedDiagnosisError]")
        assert wf.debug.stage is DebugStage.PROPOSE_FIX

        reply = await wf.handle_message(msg("/propose dns lookups are not cached | cache resolver results"))
        assert "Proposed: dns lookups are not cached -> cache resolver results" in reply.text

        reply = await wf.handle_message(msg("/validate fail still times out"))
        assert "back to diagnose" in reply.text
        assert "Failed attempts so far: 2" in reply.text
        assert "(still times out)" in reply.text
        assert wf.debug.stage is DebugStage.REASON

        await wf.handle_message(msg("/reason"))
        reply = await wf.handle_message(msg("/propose dns lookups are not cached | cache longer"))
        assert reply.text.startswith("[RepeatedDiagnosisError]")

        await wf.handle_message(msg("/propose keep-alive disabled | enable keep-alive"))
        reply = await wf.handle_message(msg("/validate pass"))
        assert reply.updated == ["error-documentation"]
        assert author.calls == ["error-documentation"]
        assert "enable keep-alive" in wf.store.read("error-documentation")
        assert wf.debug is None

        assert [a.diagnosis for a in wf.store.load_fix_history()] == [
            "pool too small",
            "dns lookups are not cached",
        ]

    @pytest.mark.asyncio
    async def test_validate_usage(self, wf: Workflow):
        await wf.handle_message(msg("/failed login timeout | pool too small | raise pool size"))
        await wf.handle_message(msg("/debug login timeout"))
        reply = await wf.handle_message(msg("/validate maybe"))
        assert reply.text.startswith("Usage")
        reply = await wf.handle_message(msg("/propose no separator"))
        assert reply.text.startswith("Usage")

    @pytest.mark.asyncio
    async def test_history_survives_new_session(self, config: PlanactConfig, wf: Workflow):
        await wf.handle_message(msg("/failed login timeout | pool too small | raise pool size"))
        wf.close_session()
        wf.open_session()
        assert len(wf.history) == 1
        assert wf.begin_debug(["login timeout"]) is not None

        other = Workflow(config, MockAuthor())
        other.open_session()
        assert other.begin_debug(["LOGIN TIMEOUT"]) is not None

    @pytest.mark.asyncio
    async def test_failed_usage(self, wf: Workflow):
        reply = await wf.handle_message(msg("/failed only symptoms"))
        assert reply.text.startswith("Usage")

    @pytest.mark.asyncio
    async def test_failed_with_empty_fields(self, wf: Workflow):
        for text in ("/failed  | d | f", "/failed , | d | f", "/failed a |  | f", "/failed a | d | "):
            reply = await wf.handle_message(msg(text))
            assert reply.text.startswith("Usage")
        assert len(wf.history) == 0
        assert wf.store.load_fix_history() == []


class TestCommands:
    @pytest.mark.asyncio
    async def test_help(self, wf: Workflow):
        reply = await wf.handle_message(msg("/help"))
        assert "/accept" in reply.text

    @pytest.mark.asyncio
    async def test_status(self, wf: Workflow):
        reply = await wf.handle_message(msg("/status"))
        assert "Mode: (none)" in reply.text
        assert "Missing core files: product-requirements" in reply.text

    @pytest.mark.asyncio
    async def test_accept_without_gate(self, wf: Workflow):
        reply = await wf.handle_message(msg("/accept"))
        assert reply.text.startswith("[PhaseOrderError]")

    @pytest.mark.asyncio
    async def test_plan_verified_without_gate(self, wf: Workflow, author: MockAuthor):
        await review(wf)
        author.calls.clear()
        reply = await wf.handle_message(msg("lgtm"))
        assert reply.text.startswith("[PhaseOrderError]")
        assert reply.updated == []
        assert author.calls == []
        assert wf.graph.get_stale_nodes() == []
