"""
回合执行器测试

使用 ScriptedAgentRuntime 预先写好每个回合 agent 发出的调用
"""
import pytest

from bookgen.agent.runtime import Delay, ScriptedAgentRuntime
from bookgen.credits import InMemoryCreditLedger
from bookgen.models import ErrorKind, GenerationMode, Phase, ProjectStatus, Structure
from bookgen.runtime.phase import count_written_items
from bookgen.services.book_service import BookService


def metadata_call(**fields):
    return {"tool_name": "update_book_metadata", "arguments": fields or {"genre": "fantasy"}}


def steps_of(project_id, service):
    return [cp.step for cp in service.list_checkpoints(project_id)]


class TestTurnBasics:

    def test_question_ends_turn(self, service, runtime, project_at, fx, store):
        project_id = project_at(foundation=False, start_confirmed=False)
        runtime.add_turn([fx.question_call("What genre?"), fx.foundation_call()])

        result = service.run_turn(project_id, "I want to write a book")

        assert result.ok
        assert result.phase == Phase.FOUNDATION
        assert result.question.question == "What genre?"
        assert len(result.question.suggestions) == 5
        assert [d.reason for d in result.discarded] == ["after_question"]
        # 被丢弃的 save_foundation 没有写入
        assert store.get_project(project_id).foundation is None
        assert store.get_project(project_id).status == ProjectStatus.IDLE

    def test_agent_sees_phase_instructions_and_toolset(self, service, runtime, project_at):
        project_id = project_at(foundation=False, start_confirmed=False)
        service.run_turn(project_id, "hello")

        request = runtime.requests[0]
        assert request.step_budget == 3
        assert "PHASE: FOUNDATION" in request.instructions
        assert "save_foundation" in [t.name for t in request.tools]
        assert request.user_input == "hello"

    def test_conversation_history_carries_over(self, service, runtime, project_at, fx, store):
        project_id = project_at(foundation=False, start_confirmed=False)
        runtime.add_turn([fx.question_call("What genre?")])
        service.run_turn(project_id, "A book about lighthouses")
        service.run_turn(project_id, "Fantasy")

        assert store.get_project(project_id).conversation_handle is not None
        history = runtime.requests[1].history
        assert {"role": "user", "content": "A book about lighthouses"} in history
        assert {"role": "assistant", "content": "What genre?"} in history

    def test_foundation_commit_moves_to_structure(self, service, runtime, project_at, fx):
        project_id = project_at(foundation=False, start_confirmed=False)
        runtime.add_turn([fx.foundation_call()])

        result = service.run_turn(project_id, "Fantasy about a lighthouse")

        assert [e.tool_name for e in result.committed_effects] == ["save_foundation"]
        assert result.phase == Phase.FOUNDATION
        assert result.next_phase == Phase.STRUCTURE
        assert "phase_structure" in steps_of(project_id, service)

    def test_tool_outside_phase_fails_and_turn_continues(self, service, runtime, project_at, fx):
        project_id = project_at(foundation=False, start_confirmed=False)
        runtime.add_turn([fx.save_chapter_call(1), metadata_call()])

        result = service.run_turn(project_id)

        assert result.ok
        assert result.failed_invocations[0]["tool_name"] == "save_chapter"
        assert [e.tool_name for e in result.committed_effects] == ["update_book_metadata"]

    def test_invalid_arguments_are_reported_to_agent(self, service, runtime, project_at):
        project_id = project_at(foundation=False, start_confirmed=False)
        runtime.add_turn([{"tool_name": "ask_question", "arguments": {"question": "?", "suggestions": ["a"]}}])

        result = service.run_turn(project_id)

        assert result.question is None
        assert len(result.failed_invocations) == 1
        request = runtime.requests[0]
        assert all(not r.success for r in request.tool_results.values())


class TestOrdering:

    def test_effects_after_pending_approval_are_discarded(self, service, runtime, project_at, fx, store):
        project_id = project_at()
        runtime.add_turn([
            metadata_call(genre="fantasy"),
            fx.structure_call(),
            metadata_call(genre="horror"),
        ])

        result = service.run_turn(project_id)

        assert [e.tool_name for e in result.committed_effects] == ["update_book_metadata"]
        assert result.pending_approval.tool_name == "save_structure"
        assert [(d.tool_name, d.reason) for d in result.discarded] == [
            ("update_book_metadata", "after_pending_approval"),
        ]
        project = store.get_project(project_id)
        assert project.metadata.genre == "fantasy"
        assert project.structure is None
        assert project.status == ProjectStatus.AWAITING_APPROVAL

    def test_calls_beyond_budget_are_discarded(self, service, runtime, project_at):
        project_id = project_at()
        runtime.add_turn([metadata_call(genre=f"g{i}") for i in range(5)])

        result = service.run_turn(project_id)

        assert len(result.committed_effects) == 3
        assert [d.reason for d in result.discarded] == ["step_budget_exceeded"] * 2

    def test_pending_approval_blocks_next_turn(self, service, runtime, project_at, fx):
        project_id = project_at()
        runtime.add_turn([fx.structure_call()])
        service.run_turn(project_id)

        result = service.run_turn(project_id, "continue")

        assert result.error.kind == ErrorKind.APPROVAL_PENDING
        assert len(runtime.requests) == 1


class TestGeneration:

    def test_manual_mode_writes_one_chapter(self, service, runtime, project_at, fx, store):
        project_id = project_at(structure=fx.structure(5), written=[1, 2])
        runtime.add_turn([fx.save_chapter_call(3), fx.save_chapter_call(4)])

        result = service.run_turn(project_id, "write chapter 3")

        assert result.phase == Phase.MANUAL_GENERATION
        assert [e.data["chapter_number"] for e in result.committed_effects] == [3]
        assert [d.reason for d in result.discarded] == ["chapter_save_limit"]
        assert store.get_chapter(project_id, 4) is None
        assert "chapter_3" in steps_of(project_id, service)
        assert store.get_project(project_id).status == ProjectStatus.IDLE

    def test_manual_mode_next_turn_targets_next_chapter(self, service, runtime, project_at, fx):
        project_id = project_at(structure=fx.structure(5))
        runtime.add_turn([fx.save_chapter_call(1)])
        service.run_turn(project_id)
        service.run_turn(project_id, "continue")

        assert 'Next chapter to write: 2 "Title 2"' in runtime.requests[1].instructions

    def test_auto_mode_completes_book(self, service, runtime, project_at, fx, store, credits):
        project_id = project_at(structure=fx.structure(2), mode=GenerationMode.AUTO)
        runtime.add_turn([fx.save_chapter_call(1), fx.save_chapter_call(2)])

        result = service.run_turn(project_id)

        assert result.phase == Phase.AUTO_GENERATION
        assert result.next_phase == Phase.COMPLETE
        assert len(result.committed_effects) == 2
        steps = steps_of(project_id, service)
        assert steps[-3:] == ["chapter_1", "chapter_2", "phase_complete"]

        project = store.get_project(project_id)
        assert project.status == ProjectStatus.COMPLETED
        assert project.credits_used == 1 + 2 * 5
        assert credits.spent(project_id) == 11

    def test_start_confirmation_enters_generation(self, service, runtime, project_at, fx, store):
        project_id = project_at(structure=fx.structure(3), start_confirmed=False)
        runtime.add_turn([fx.mode_call("auto")])

        result = service.run_turn(project_id, "go, write it all")

        assert result.phase == Phase.APPROVAL_TO_START_MANUAL
        assert result.next_phase == Phase.AUTO_GENERATION
        assert "phase_auto_generation" in steps_of(project_id, service)

    def test_runtime_error_checkpoints_last_chapter(self, service, runtime, project_at, fx, store):
        project_id = project_at(structure=fx.structure(5), mode=GenerationMode.AUTO)
        runtime.add_turn([fx.save_chapter_call(1), fx.save_chapter_call(2), RuntimeError("model crashed")])

        result = service.run_turn(project_id)

        assert result.error.kind == ErrorKind.RUNTIME
        assert result.error.retryable
        assert len(result.committed_effects) == 2
        resume = service.get_resume_state(project_id)
        assert resume.status == ProjectStatus.FAILED
        assert resume.can_resume
        assert resume.last_checkpoint.step == "chapter_2"

        # 重试：阶段从数据重新推导，从第 3 章继续
        runtime.add_turn([fx.save_chapter_call(3)])
        outcome = service.retry(project_id)
        assert 'Next chapter to write: 3 "Title 3"' in runtime.requests[1].instructions
        assert outcome.turn.ok
        assert outcome.resume.retry_count == 1
        assert store.get_project(project_id).status == ProjectStatus.IDLE

    def test_gated_policy_holds_chapter(self, config, store, runtime, credits, project_at, fx):
        gated = BookService(
            config=config.model_copy(update={"approval_policy": "approval_gated"}),
            store=store,
            runtime=runtime,
            credits=credits,
        )
        project_id = project_at(structure=fx.structure(5))
        runtime.add_turn([fx.save_chapter_call(1)])

        result = gated.run_turn(project_id)

        assert result.pending_approval.tool_name == "save_chapter"
        assert store.get_chapter(project_id, 1) is None


class TestFailures:

    def test_timeout(self, service, runtime, project_at, fx, store):
        project_id = project_at()
        runtime.add_turn([Delay(seconds=1.0), fx.question_call()])

        result = service.run_turn(project_id, timeout=0.1)

        assert result.error.kind == ErrorKind.TIMEOUT
        assert store.get_project(project_id).status == ProjectStatus.FAILED
        assert service.get_resume_state(project_id).can_resume

    def test_insufficient_credits_before_turn(self, config, store, runtime, project_at, fx):
        broke = BookService(config=config, store=store, runtime=runtime, credits=InMemoryCreditLedger(balance=0))
        project_id = project_at(structure=fx.structure(5))
        runtime.add_turn([fx.save_chapter_call(1)])

        result = broke.run_turn(project_id)

        assert result.error.kind == ErrorKind.INSUFFICIENT_CREDITS
        assert runtime.requests == []
        assert store.get_chapter(project_id, 1) is None
        assert broke.get_resume_state(project_id).last_checkpoint.step == "needs_credits"

    def test_insufficient_credits_mid_turn_keeps_committed_chapter(self, config, store, runtime, project_at, fx):
        # 1 回合 + 5 第一章，第二章还需要 5
        ledger = InMemoryCreditLedger(balance=8)
        service = BookService(config=config, store=store, runtime=runtime, credits=ledger)
        project_id = project_at(structure=fx.structure(5), mode=GenerationMode.AUTO)
        runtime.add_turn([fx.save_chapter_call(1), fx.save_chapter_call(2)])

        result = service.run_turn(project_id)

        assert result.error.kind == ErrorKind.INSUFFICIENT_CREDITS
        assert store.get_chapter(project_id, 1) is not None
        assert store.get_chapter(project_id, 2) is None
        assert ledger.balance == 2
        project = store.get_project(project_id)
        assert project.status == ProjectStatus.FAILED
        assert project.credits_used == 6

    def test_busy_project_is_rejected(self, service, runtime, project_at, store):
        project_id = project_at()
        store.set_status(project_id, ProjectStatus.GENERATING)

        result = service.run_turn(project_id)

        assert result.error.kind == ErrorKind.BUSY
        assert runtime.requests == []

    def test_failed_project_needs_retry(self, service, runtime, project_at, store):
        project_id = project_at()
        store.set_status(project_id, ProjectStatus.FAILED)

        result = service.run_turn(project_id)

        assert result.error.kind == ErrorKind.BUSY

    def test_malformed_project_releases_lease(self, service, runtime, project_at, store):
        project_id = project_at(structure=Structure(chapter_count=0))
        before = steps_of(project_id, service)

        result = service.run_turn(project_id)

        assert result.error.kind == ErrorKind.MALFORMED_PROJECT
        assert not result.error.retryable
        assert runtime.requests == []
        assert store.get_project(project_id).status == ProjectStatus.IDLE
        assert steps_of(project_id, service) == before

    def test_unknown_project(self, service):
        result = service.run_turn("book_missing")
        assert result.error.kind == ErrorKind.NOT_FOUND


@pytest.mark.parametrize("written, expected", [
    ((), Phase.MANUAL_GENERATION),
    ((1, 2, 3), Phase.COMPLETE),
])
def test_phase_reported_on_turn(written, expected, service, runtime, project_at, fx):
    project_id = project_at(structure=fx.structure(3), written=written)
    result = service.run_turn(project_id)
    assert result.phase == expected


def revise_call(chapter_number, content):
    return {
        "tool_name": "revise_chapter",
        "arguments": {"chapter_number": chapter_number, "content": content, "reason": "polish"},
    }


class TestChapterCompleteness:

    def test_blank_revision_keeps_book_complete(self, service, runtime, project_at, fx, store):
        project_id = project_at(structure=fx.structure(2), written=[1, 2])
        assert service.resolve_phase(project_id) == Phase.COMPLETE
        runtime.add_turn([revise_call(2, "   ")])

        result = service.run_turn(project_id, "cut chapter two down")

        assert result.ok
        assert result.committed_effects == []
        assert result.failed_invocations[0]["tool_name"] == "revise_chapter"
        chapter = store.get_chapter(project_id, 2)
        assert chapter.is_written
        assert chapter.version == 1
        assert service.resolve_phase(project_id) == Phase.COMPLETE
        assert store.get_project(project_id).status == ProjectStatus.COMPLETED

    def test_written_items_never_decrease_across_turns(self, service, runtime, project_at, fx, store):
        project_id = project_at(structure=fx.structure(3))
        scripts = [
            [fx.save_chapter_call(1)],
            [revise_call(1, fx.chapter_text(1) + " The keeper wakes.")],
            [revise_call(1, "\n\n")],
            [fx.save_chapter_call(2)],
            [revise_call(2, " ")],
        ]

        counts = []
        for script in scripts:
            runtime.add_turn(script)
            assert service.run_turn(project_id, "continue").ok
            counts.append(count_written_items(store.load_state(project_id)))

        assert counts == [1, 1, 1, 2, 2]
        assert store.get_chapter(project_id, 1).version == 2
