"""
书籍服务

把存储、回合执行器、审批闸门、检查点管理器组装在一起，供 API / Celery / CLI 调用
"""
import logging
from typing import List, Optional

from bookgen.agent.conversation import ConversationStore
from bookgen.agent.runtime import AgentRuntime, LangChainAgentRuntime
from bookgen.config import EngineConfig
from bookgen.credits import CreditLedger, InMemoryCreditLedger
from bookgen.errors import ProjectBusyError, ToolExecutionError
from bookgen.models import (
    ApprovalResult, Chapter, ChapterVersion, Checkpoint, GenerationMode, Phase,
    Project, ProjectStatus, ResumeState, RetryOutcome, TurnResult,
)
from bookgen.runtime.checkpoint import CheckpointManager
from bookgen.runtime.executor import STARTABLE_STATUSES, TurnExecutor
from bookgen.runtime.gate import ApprovalGate
from bookgen.runtime.phase import resolve_phase
from bookgen.runtime.store import ProjectStore, SQLiteProjectStore


logger = logging.getLogger(__name__)


class BookService:
    """书籍生成服务（外部调用入口）"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[ProjectStore] = None,
        runtime: Optional[AgentRuntime] = None,
        credits: Optional[CreditLedger] = None,
    ):
        self.config = config or EngineConfig()
        if store is None:
            store = SQLiteProjectStore(self.config.db_path)
            store.initialize()
        self.store = store
        self.runtime = runtime or LangChainAgentRuntime(config=self.config.llm_config)
        self.credits = credits or InMemoryCreditLedger()
        self.checkpoints = CheckpointManager(self.store, max_retries=self.config.max_retries)
        self.gate = ApprovalGate(
            self.store,
            self.checkpoints,
            self.credits,
            policy=self.config.approval_policy,
            chapter_cost=self.config.chapter_cost,
        )
        self.executor = TurnExecutor(
            self.store,
            self.runtime,
            credits=self.credits,
            config=self.config,
            checkpoints=self.checkpoints,
            gate=self.gate,
            conversations=ConversationStore(self.config.conversation_dir),
        )

    # ---- 项目 ----

    def create_project(self, title: str, book_type: str = "fiction", mode: GenerationMode = GenerationMode.MANUAL) -> Project:
        project = Project(title=title, type=book_type, mode=mode)
        self.store.create_project(project)
        self.checkpoints.checkpoint(project.id, "initialization", {"title": title, "type": book_type})
        logger.info(f"✅ 项目已创建: {project.id} 《{title}》")
        return project

    def get_project(self, project_id: str) -> Project:
        return self.store.get_project(project_id)

    def list_projects(self) -> List[Project]:
        return self.store.list_projects()

    def resolve_phase(self, project_id: str) -> Phase:
        return resolve_phase(self.store.load_state(project_id))

    def list_chapters(self, project_id: str) -> List[Chapter]:
        self.store.get_project(project_id)
        return self.store.list_chapters(project_id)

    def list_chapter_versions(self, project_id: str, chapter_number: int) -> List[ChapterVersion]:
        return self.store.list_chapter_versions(project_id, chapter_number)

    def list_checkpoints(self, project_id: str) -> List[Checkpoint]:
        self.store.get_project(project_id)
        return self.checkpoints.list_checkpoints(project_id)

    def revert_chapter(self, project_id: str, chapter_number: int, version_number: int) -> Chapter:
        """把章节恢复到历史版本（生成一个新版本，不删除历史）

        和回合一样先获取 generating 租约，生成中的项目不能恢复版本

        Raises:
            ToolExecutionError: 章节或版本不存在
            ProjectBusyError: 项目正在生成或不处于可写状态
        """
        versions = self.store.list_chapter_versions(project_id, chapter_number)
        target = next((v for v in versions if v.version_number == version_number), None)
        if target is None:
            raise ToolExecutionError(
                "revert_chapter",
                f"章节 {chapter_number} 不存在版本 {version_number}",
            )

        previous_status = self.store.get_project(project_id).status
        if previous_status not in STARTABLE_STATUSES or not self.store.transition_status(
            project_id, [previous_status], ProjectStatus.GENERATING
        ):
            raise ProjectBusyError(project_id, self.store.get_project(project_id).status.value)

        try:
            current = self.store.get_chapter(project_id, chapter_number)
            chapter = self.store.save_chapter_version(
                project_id,
                chapter_number,
                title=current.title if current else "",
                content=target.content,
                word_count=target.word_count or len(target.content.split()),
                changed_by="user",
                change_description=f"reverted to version {version_number}",
            )
            self.checkpoints.checkpoint(
                project_id,
                f"chapter_{chapter_number}",
                {"chapter_number": chapter_number, "reverted_to": version_number, "version": chapter.version},
            )
        finally:
            self.store.transition_status(project_id, [ProjectStatus.GENERATING], previous_status)

        logger.info(f"↩️ 章节已恢复: {project_id} #{chapter_number} -> v{version_number}")
        return chapter

    # ---- 回合 / 审批 / 恢复 ----

    def run_turn(self, project_id: str, user_input: str = "", timeout: Optional[float] = None) -> TurnResult:
        return self.executor.run_turn(project_id, user_input, timeout=timeout)

    def approve(self, pending_id: str) -> ApprovalResult:
        return self.gate.approve(pending_id)

    def reject(self, pending_id: str, reason: Optional[str] = None) -> ApprovalResult:
        return self.gate.reject(pending_id, reason)

    def get_pending(self, project_id: str):
        return self.store.get_open_pending(project_id)

    def get_resume_state(self, project_id: str) -> ResumeState:
        return self.checkpoints.get_resume_state(project_id)

    def retry(self, project_id: str, user_input: str = "continue", timeout: Optional[float] = None) -> RetryOutcome:
        return self.checkpoints.retry(
            project_id,
            lambda pid, previous: self.executor.run_with_lease(pid, previous, user_input, timeout),
        )

    def reset_retries(self, project_id: str) -> ResumeState:
        return self.checkpoints.reset_retries(project_id)

    def pause(self, project_id: str, reason: str = "paused by user") -> bool:
        self.store.get_project(project_id)
        return self.checkpoints.pause(project_id, reason)

    def recover_interrupted(self, project_id: str) -> bool:
        return self.checkpoints.recover_interrupted(project_id, self.config.stale_lease_seconds)

    def close(self):
        self.store.close()


_service: Optional[BookService] = None


def get_book_service() -> BookService:
    """进程级共享的服务实例（API / Celery worker 使用）"""
    global _service
    if _service is None:
        _service = BookService()
    return _service


def set_book_service(service: Optional[BookService]):
    """替换共享实例（测试注入）"""
    global _service
    _service = service
