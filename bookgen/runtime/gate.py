"""
审批闸门
需要审批的工具调用在回合中被挂起为 PendingApproval，由人工 approve / reject

设计原则：
- 每个项目最多一条未处理的审批
- 存在未处理审批时，任何新回合都被阻断（ApprovalPendingError）
- approve 与自动执行走完全相同的提交路径
"""
import logging
from typing import Optional

from bookgen.credits import CreditLedger
from bookgen.errors import ApprovalPendingError, InsufficientCreditsError
from bookgen.models import (
    ApprovalResult, Phase, PendingApproval, ProjectStatus, Rejection, ToolInvocation,
)
from bookgen.runtime.checkpoint import CheckpointManager
from bookgen.runtime.phase import resolve_phase
from bookgen.runtime.store import ProjectStore
from bookgen.tools.book_tools import book_tool_specs, create_book_tools
from bookgen.tools.registry import ToolRegistry


logger = logging.getLogger(__name__)


class ApprovalGate:
    """审批闸门"""

    def __init__(
        self,
        store: ProjectStore,
        checkpoints: CheckpointManager,
        credits: CreditLedger,
        policy: str = "auto_commit",
        chapter_cost: int = 5,
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.credits = credits
        self.policy = policy
        self.chapter_cost = chapter_cost

    def ensure_no_pending(self, project_id: str) -> None:
        """存在未处理审批时抛出 ApprovalPendingError"""
        pending = self.store.get_open_pending(project_id)
        if pending is not None:
            raise ApprovalPendingError(project_id, pending.id, pending.tool_name)

    def hold(self, project_id: str, turn_id: str, invocation: ToolInvocation) -> PendingApproval:
        """挂起一个需要审批的调用"""
        pending = PendingApproval(
            project_id=project_id,
            turn_id=turn_id,
            tool_name=invocation.tool_name,
            arguments=dict(invocation.arguments),
        )
        self.store.create_pending(pending)
        logger.info(f"⏳ 等待审批: {project_id} {invocation.tool_name} ({pending.id})")
        return pending

    def approve(self, pending_id: str) -> ApprovalResult:
        """批准并提交挂起的效果

        先把审批原子地标记为 approving，并发的第二次 approve / reject 会直接失败；
        提交未完成时审批回到 open

        Raises:
            PendingApprovalNotFoundError: 审批不存在、已处理或正在审批
            InsufficientCreditsError: 章节写入所需积分不足（审批保持未处理）
        """
        pending = self.store.claim_pending(pending_id)
        try:
            return self._commit_claimed(pending)
        except Exception:
            if self.store.reopen_pending(pending_id):
                logger.warning(f"⚠️ 审批提交未完成，已归还: {pending_id}")
            raise

    def _commit_claimed(self, pending: PendingApproval) -> ApprovalResult:
        pending_id = pending.id
        project_id = pending.project_id
        phase_before = resolve_phase(self.store.load_state(project_id))

        specs = book_tool_specs(self.policy)
        spec = specs.get(pending.tool_name)
        cost = self.chapter_cost if spec is not None and spec.saves_chapter else 0
        if cost and not self.credits.reserve(project_id, cost):
            raise InsufficientCreditsError(project_id, cost)

        registry = ToolRegistry.from_specs(
            [spec] if spec is not None else [],
            create_book_tools(self.store, project_id, self.checkpoints.checkpoint),
        )
        invocation = ToolInvocation(
            tool_name=pending.tool_name,
            arguments=pending.arguments,
            needs_approval=True,
        )
        result = registry.execute(invocation)

        if not result.success:
            # 挂起的参数已无法提交，关闭审批，项目回到空闲
            if cost:
                self.credits.commit(project_id, 0)
            self.store.resolve_pending(pending_id, "invalid", from_state="approving")
            self.store.transition_status(project_id, [ProjectStatus.AWAITING_APPROVAL], ProjectStatus.IDLE)
            logger.warning(f"⚠️ 审批的调用无法提交: {pending_id} {result.error}")
            return ApprovalResult(
                pending=pending,
                approved=True,
                committed=False,
                phase=phase_before,
                message=result.error or "",
            )

        if cost:
            self.credits.commit(project_id, cost)
            project = self.store.get_project(project_id)
            project.credits_used += cost
            self.store.save_project(project)

        phase_after = self.checkpoints.record_commit(project_id, phase_before, pending.tool_name, result)
        self.store.resolve_pending(pending_id, "approved", from_state="approving")
        next_status = ProjectStatus.COMPLETED if phase_after == Phase.COMPLETE else ProjectStatus.IDLE
        self.store.transition_status(project_id, [ProjectStatus.AWAITING_APPROVAL], next_status)

        logger.info(f"✅ 审批通过并已提交: {pending.tool_name} ({pending_id})")
        return ApprovalResult(
            pending=pending,
            approved=True,
            committed=True,
            phase=phase_after,
            message=result.message,
            data=result.data or {},
        )

    def reject(self, pending_id: str, reason: Optional[str] = None) -> ApprovalResult:
        """拒绝挂起的效果：不提交，记录拒绝，下一回合的指令会引用它"""
        pending = self.store.get_pending(pending_id)
        project_id = pending.project_id

        self.store.resolve_pending(pending_id, "rejected")
        self.store.add_rejection(Rejection(
            pending_id=pending.id,
            project_id=project_id,
            tool_name=pending.tool_name,
            arguments=pending.arguments,
            reason=reason,
        ))
        self.store.transition_status(project_id, [ProjectStatus.AWAITING_APPROVAL], ProjectStatus.IDLE)

        logger.info(f"🚫 审批被拒绝: {pending.tool_name} ({pending_id}) {reason or ''}")
        return ApprovalResult(
            pending=pending,
            approved=False,
            phase=resolve_phase(self.store.load_state(project_id)),
            message=reason or "",
        )
