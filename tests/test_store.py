"""
项目存储测试
"""
import pytest

from bookgen.errors import ApprovalPendingError, PendingApprovalNotFoundError, ProjectNotFoundError
from bookgen.models import Checkpoint, PendingApproval, Project, ProjectStatus, Rejection


@pytest.fixture
def project(store):
    return store.create_project(Project(title="The Keeper"))


class TestProjects:

    def test_create_and_get(self, store, project):
        loaded = store.get_project(project.id)
        assert loaded.title == "The Keeper"
        assert loaded.status == ProjectStatus.IDLE

    def test_missing_project(self, store):
        with pytest.raises(ProjectNotFoundError):
            store.get_project("book_missing")

    def test_save_project_keeps_status_column(self, store, project):
        assert store.transition_status(project.id, [ProjectStatus.IDLE], ProjectStatus.GENERATING)
        stale = project.model_copy(update={"status": ProjectStatus.IDLE, "current_step": "chapter_1"})
        store.save_project(stale)
        loaded = store.get_project(project.id)
        assert loaded.status == ProjectStatus.GENERATING
        assert loaded.current_step == "chapter_1"

    def test_list_projects(self, store, project):
        store.create_project(Project(title="Second"))
        titles = {p.title for p in store.list_projects()}
        assert titles == {"The Keeper", "Second"}


class TestStatusTransitions:

    def test_compare_and_set(self, store, project):
        assert store.transition_status(project.id, [ProjectStatus.IDLE], ProjectStatus.GENERATING)
        # 第二次从 IDLE 出发失败：租约已被占用
        assert not store.transition_status(project.id, [ProjectStatus.IDLE], ProjectStatus.GENERATING)
        assert store.get_project(project.id).status == ProjectStatus.GENERATING

    def test_multiple_allowed_sources(self, store, project):
        store.set_status(project.id, ProjectStatus.PAUSED)
        assert store.transition_status(
            project.id, [ProjectStatus.FAILED, ProjectStatus.PAUSED], ProjectStatus.GENERATING
        )

    def test_empty_allowed_never_matches(self, store, project):
        assert not store.transition_status(project.id, [], ProjectStatus.GENERATING)

    def test_set_status_on_missing_project(self, store):
        with pytest.raises(ProjectNotFoundError):
            store.set_status("book_missing", ProjectStatus.IDLE)


class TestChapterVersions:

    def test_first_save_is_version_one(self, store, project, fx):
        chapter = store.save_chapter_version(project.id, 1, "Title 1", fx.chapter_text(1), 40)
        assert chapter.version == 1
        assert store.get_chapter(project.id, 1).content == fx.chapter_text(1)

    def test_resave_revises_in_place(self, store, project, fx):
        store.save_chapter_version(project.id, 1, "Title 1", fx.chapter_text(1), 40)
        chapter = store.save_chapter_version(project.id, 1, "", "new text " * 20, 40, changed_by="user")

        assert chapter.version == 2
        assert chapter.title == "Title 1"
        assert len(store.list_chapters(project.id)) == 1

        versions = store.list_chapter_versions(project.id, 1)
        assert [v.version_number for v in versions] == [1, 2]
        assert versions[0].content == fx.chapter_text(1)
        assert versions[1].changed_by == "user"
        assert versions[1].word_count == 40

    def test_chapters_are_ordered(self, store, project, fx):
        for n in (3, 0, 1):
            store.save_chapter_version(project.id, n, f"Title {n}", fx.chapter_text(n), 40)
        assert [ch.chapter_number for ch in store.list_chapters(project.id)] == [0, 1, 3]

    def test_missing_chapter(self, store, project):
        assert store.get_chapter(project.id, 7) is None


class TestCheckpointsAndSessions:

    def test_checkpoints_in_order(self, store, project):
        for step in ("initialization", "foundation_saved", "chapter_1"):
            store.append_checkpoint(Checkpoint(project_id=project.id, step=step))
        assert [c.step for c in store.list_checkpoints(project.id)] == [
            "initialization", "foundation_saved", "chapter_1",
        ]

    def test_session_created_on_demand(self, store, project):
        session = store.get_session(project.id)
        assert session.retry_count == 0
        session.retry_count = 2
        store.save_session(session)
        assert store.get_session(project.id).retry_count == 2


class TestApprovals:

    def _pending(self, project_id, tool_name="save_structure"):
        return PendingApproval(project_id=project_id, turn_id="turn_1", tool_name=tool_name, arguments={"a": 1})

    def test_single_open_pending(self, store, project):
        first = store.create_pending(self._pending(project.id))
        with pytest.raises(ApprovalPendingError):
            store.create_pending(self._pending(project.id, "save_chapter"))
        assert store.get_open_pending(project.id).id == first.id

    def test_resolve_closes_pending(self, store, project):
        pending = store.create_pending(self._pending(project.id))
        store.resolve_pending(pending.id, "approved")

        assert store.get_open_pending(project.id) is None
        with pytest.raises(PendingApprovalNotFoundError):
            store.get_pending(pending.id)
        with pytest.raises(PendingApprovalNotFoundError):
            store.resolve_pending(pending.id, "rejected")

        # 关闭之后可以再挂起新的审批
        store.create_pending(self._pending(project.id))

    def test_claim_is_exclusive(self, store, project):
        pending = store.create_pending(self._pending(project.id))

        claimed = store.claim_pending(pending.id)

        assert claimed.id == pending.id
        with pytest.raises(PendingApprovalNotFoundError):
            store.claim_pending(pending.id)
        with pytest.raises(PendingApprovalNotFoundError):
            store.get_pending(pending.id)
        # 审批中仍占用项目唯一的审批位
        assert store.get_open_pending(project.id).id == pending.id
        with pytest.raises(ApprovalPendingError):
            store.create_pending(self._pending(project.id))

        assert store.reopen_pending(pending.id)
        assert not store.reopen_pending(pending.id)
        assert store.get_pending(pending.id).id == pending.id

    def test_resolve_from_claimed_state(self, store, project):
        pending = store.create_pending(self._pending(project.id))
        store.claim_pending(pending.id)

        with pytest.raises(PendingApprovalNotFoundError):
            store.resolve_pending(pending.id, "rejected")
        store.resolve_pending(pending.id, "approved", from_state="approving")

        assert store.get_open_pending(project.id) is None

    def test_unknown_pending(self, store):
        with pytest.raises(PendingApprovalNotFoundError):
            store.get_pending("approval_missing")

    def test_rejections_until_acknowledged(self, store, project):
        store.add_rejection(Rejection(pending_id="a1", project_id=project.id, tool_name="save_structure", reason="old"))
        store.add_rejection(Rejection(pending_id="a2", project_id=project.id, tool_name="save_structure", reason="new"))
        assert store.get_last_rejection(project.id).reason == "new"

        store.acknowledge_rejections(project.id)
        assert store.get_last_rejection(project.id) is None

    def test_load_state(self, store, project, fx):
        store.save_chapter_version(project.id, 1, "Title 1", fx.chapter_text(1), 40)
        state = store.load_state(project.id)
        assert state.project.id == project.id
        assert state.written_numbers() == [1]
        assert state.last_rejection is None
