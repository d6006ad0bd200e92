"""
检查点与恢复
- 每次阶段切换、每次章节提交之后追加检查点
- 失败/暂停的项目可以重试，重试次数上限 max_retries（默认 3），计数只能通过 reset_retries 人工清零
- 崩溃遗留的 generating 租约可以被回收为 paused

恢复本身不需要回放：重新推导阶段就能从正确的位置继续
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from bookgen.errors import ApprovalPendingError, BookGenError, ProjectBusyError
from bookgen.models import (
    Checkpoint, ErrorKind, Phase, ProjectStatus, ResumeState, RetryOutcome, SessionStatus, TurnResult,
)
from bookgen.runtime.phase import resolve_phase
from bookgen.runtime.store import ProjectStore
from bookgen.tools.registry import ToolResult


logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = (ProjectStatus.FAILED, ProjectStatus.PAUSED)

# 这些工具提交后按章节写检查点
CHAPTER_TOOLS = ("save_chapter", "revise_chapter")


class CheckpointManager:
    """检查点 / 恢复管理器"""

    def __init__(self, store: ProjectStore, max_retries: int = 3):
        self.store = store
        self.max_retries = max_retries

    def checkpoint(self, project_id: str, step: str, data: Optional[Dict[str, Any]] = None) -> Checkpoint:
        """追加检查点并记录到会话"""
        session = self.store.get_session(project_id)
        cp = Checkpoint(
            project_id=project_id,
            step=step,
            data=data or {},
            retry_count=min(session.retry_count, self.max_retries),
        )
        self.store.append_checkpoint(cp)
        session.last_checkpoint = cp
        self.store.save_session(session)
        logger.debug(f"检查点已写入: {project_id} @ {step}")
        return cp

    def record_commit(
        self,
        project_id: str,
        phase_before: Phase,
        tool_name: str,
        result: ToolResult,
    ) -> Phase:
        """一个效果提交之后写检查点

        章节写入 -> chapter_N；阶段发生变化 -> phase_<new>

        Returns:
            提交后的阶段
        """
        data = result.data or {}
        if tool_name in CHAPTER_TOOLS and "chapter_number" in data:
            self.checkpoint(project_id, f"chapter_{data['chapter_number']}", data)

        phase_after = resolve_phase(self.store.load_state(project_id))
        if phase_after != phase_before:
            self.checkpoint(
                project_id,
                f"phase_{phase_after.value}",
                {"from": phase_before.value, "to": phase_after.value},
            )
            logger.info(f"📍 阶段切换: {project_id} {phase_before.value} -> {phase_after.value}")
        return phase_after

    def last_checkpoint(self, project_id: str) -> Optional[Checkpoint]:
        return self.store.get_session(project_id).last_checkpoint

    def list_checkpoints(self, project_id: str) -> List[Checkpoint]:
        return self.store.list_checkpoints(project_id)

    def mark_failed(self, project_id: str, error: BookGenError, step: Optional[str] = None) -> Checkpoint:
        """项目置为 failed，并在最后一个已提交单元处写检查点

        Args:
            project_id: 项目ID
            error: 导致失败的异常
            step: 检查点步骤标签，默认使用项目当前的 current_step
        """
        project = self.store.get_project(project_id)
        self.store.set_status(project_id, ProjectStatus.FAILED)

        session = self.store.get_session(project_id)
        session.status = SessionStatus.FAILED
        session.last_error = error.to_dict()
        self.store.save_session(session)

        logger.error(f"❌ 回合失败: {project_id} ({error.kind.value}) {error.message}")
        return self.checkpoint(
            project_id,
            step or project.current_step,
            {"error": error.to_dict(), "current_step": project.current_step},
        )

    def mark_succeeded(self, project_id: str, completed: bool = False) -> None:
        session = self.store.get_session(project_id)
        session.status = SessionStatus.COMPLETED if completed else SessionStatus.IN_PROGRESS
        session.last_error = None
        self.store.save_session(session)

    def get_resume_state(self, project_id: str) -> ResumeState:
        """读取恢复状态

        can_resume 当且仅当状态为 failed/paused 且重试次数未达上限
        """
        project = self.store.get_project(project_id)
        session = self.store.get_session(project_id)
        retry_count = session.retry_count
        return ResumeState(
            project_id=project_id,
            can_resume=project.status in RESUMABLE_STATUSES and retry_count < self.max_retries,
            status=project.status,
            retry_count=retry_count,
            remaining_retries=max(self.max_retries - retry_count, 0),
            last_checkpoint=session.last_checkpoint,
            last_error=session.last_error,
        )

    def retry(self, project_id: str, run_turn: Callable[[str, ProjectStatus], TurnResult]) -> RetryOutcome:
        """重试失败/暂停的项目

        先以 failed/paused -> generating 获取租约并累加重试次数，再交给 run_turn 运行一个新回合。
        达到重试上限时直接返回 can_resume=False，不会运行回合。

        Args:
            project_id: 项目ID
            run_turn: 在已持有租约的前提下运行回合，参数为 (project_id, 获取租约前的状态)

        Raises:
            ApprovalPendingError: 项目仍有未处理的审批（项目回到 awaiting_approval，不计重试）
            ProjectBusyError: 项目不处于可恢复状态
        """
        pending = self.store.get_open_pending(project_id)
        if pending is not None:
            # 挂起之后被暂停/回收的项目：先处理审批，再继续生成
            self.store.transition_status(project_id, RESUMABLE_STATUSES, ProjectStatus.AWAITING_APPROVAL)
            logger.warning(f"⚠️ 项目 {project_id} 有待审批的 {pending.tool_name}，重试被阻断")
            raise ApprovalPendingError(project_id, pending.id, pending.tool_name)

        resume = self.get_resume_state(project_id)
        if resume.retry_count >= self.max_retries:
            logger.warning(f"⚠️ 项目 {project_id} 已重试 {resume.retry_count} 次，恢复已禁用")
            return RetryOutcome(resume=resume)

        if resume.status not in RESUMABLE_STATUSES:
            raise ProjectBusyError(project_id, resume.status.value)

        if not self.store.transition_status(project_id, [resume.status], ProjectStatus.GENERATING):
            current = self.store.get_project(project_id).status
            raise ProjectBusyError(project_id, current.value)

        session = self.store.get_session(project_id)
        session.retry_count += 1
        session.status = SessionStatus.IN_PROGRESS
        self.store.save_session(session)
        logger.info(f"🔄 重试项目 {project_id}（第 {session.retry_count}/{self.max_retries} 次）")

        turn = run_turn(project_id, resume.status)
        if turn.error is not None and turn.error.kind == ErrorKind.MALFORMED_PROJECT:
            # 数据非法时重试无效，不占用重试次数
            session = self.store.get_session(project_id)
            session.retry_count -= 1
            self.store.save_session(session)
        return RetryOutcome(resume=self.get_resume_state(project_id), turn=turn)

    def reset_retries(self, project_id: str) -> ResumeState:
        """人工介入后清零重试次数（重试耗尽后恢复的唯一途径）"""
        self.store.get_project(project_id)
        session = self.store.get_session(project_id)
        session.retry_count = 0
        self.store.save_session(session)
        self.checkpoint(project_id, "retries_reset")
        logger.info(f"🔄 重试次数已清零: {project_id}")
        return self.get_resume_state(project_id)

    def pause(self, project_id: str, reason: str = "paused") -> bool:
        """暂停项目（空闲或生成中的项目）

        生成中的回合会把已提交的效果保留下来，结束时不会覆盖 paused 状态
        """
        paused = self.store.transition_status(
            project_id,
            [ProjectStatus.IDLE, ProjectStatus.GENERATING],
            ProjectStatus.PAUSED,
        )
        if not paused:
            return False

        session = self.store.get_session(project_id)
        session.status = SessionStatus.PAUSED
        self.store.save_session(session)
        project = self.store.get_project(project_id)
        self.checkpoint(project_id, project.current_step, {"reason": reason})
        logger.info(f"⏸️ 项目已暂停: {project_id}（{reason}）")
        return True

    def recover_interrupted(self, project_id: str, stale_after: float) -> bool:
        """回收崩溃遗留的 generating 租约

        Args:
            project_id: 项目ID
            stale_after: 租约超过该秒数未更新即视为遗留

        Returns:
            是否回收
        """
        project = self.store.get_project(project_id)
        if project.status != ProjectStatus.GENERATING:
            return False
        if datetime.now() - project.updated_at < timedelta(seconds=stale_after):
            return False
        return self.pause(project_id, reason="interrupted")
