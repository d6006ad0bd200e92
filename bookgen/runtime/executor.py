"""
回合执行器
一次 run_turn = 获取租约 -> 推导阶段 -> 合成指令 -> 调用 agent -> 按顺序处理工具调用 -> 释放租约

处理规则（按 agent 发出的顺序）：
- 超出步数预算的调用丢弃
- 需要审批的调用挂起为 PendingApproval，之后的调用全部丢弃，回合结束
- 结束回合的工具（ask_question）把问题返回给调用方，之后的调用全部丢弃
- 超出本阶段章节保存上限的调用丢弃
- 其余调用立即提交，章节提交和阶段切换之后写检查点

执行器是唯一把异常转换为 TurnResult.error 的地方
"""
import time
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterator, Optional

from bookgen.agent.conversation import ConversationStore
from bookgen.agent.runtime import AgentRequest, AgentRuntime
from bookgen.config import EngineConfig
from bookgen.credits import CreditLedger, InMemoryCreditLedger
from bookgen.errors import (
    AgentRuntimeError, BookGenError, InsufficientCreditsError, MalformedProjectError,
    ProjectBusyError, TurnTimeoutError,
)
from bookgen.models import (
    AskedQuestion, CommittedEffect, DiscardedInvocation, Phase, ProjectStatus,
    ToolInvocation, TurnResult,
)
from bookgen.runtime.checkpoint import CheckpointManager
from bookgen.runtime.gate import ApprovalGate
from bookgen.runtime.instructions import TurnDirective, synthesize
from bookgen.runtime.phase import resolve_phase
from bookgen.runtime.store import ProjectStore
from bookgen.tools.book_tools import create_book_tools
from bookgen.tools.registry import ToolRegistry, ToolResult


logger = logging.getLogger(__name__)

# run_turn 可以从这些状态获取租约；failed/paused 只能通过 retry 恢复
STARTABLE_STATUSES = (ProjectStatus.IDLE, ProjectStatus.COMPLETED)

_DONE = object()


class InvocationStream:
    """在单线程池上逐个拉取 agent 运行时产出的调用，带截止时间

    执行器处理完上一个调用后才会向运行时索取下一个。
    超时后正在进行的拉取不做中途取消，线程池也不等待它结束。
    """

    def __init__(self, runtime: AgentRuntime, request: AgentRequest, timeout: Optional[float]):
        self.runtime = runtime
        self.request = request
        self.timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"agent-{request.turn_id}")
        self._iterator: Optional[Iterator[ToolInvocation]] = None

    def _pull(self):
        if self._iterator is None:
            self._iterator = iter(self.runtime.execute(self.request))
        return next(self._iterator, _DONE)

    def _close_iterator(self):
        close = getattr(self._iterator, "close", None)
        if close is not None:
            close()

    def __iter__(self) -> Iterator[ToolInvocation]:
        deadline = time.monotonic() + self.timeout if self.timeout else None
        while True:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TurnTimeoutError(self.timeout)

            future = self._pool.submit(self._pull)
            done, _ = wait([future], timeout=remaining)
            if not done:
                raise TurnTimeoutError(self.timeout)

            invocation = future.result()
            if invocation is _DONE:
                return
            yield invocation

    def close(self):
        self.request.stop_requested = True
        # 排在仍在进行的拉取之后执行
        self._pool.submit(self._close_iterator)
        self._pool.shutdown(wait=False)


class TurnExecutor:
    """回合执行器"""

    def __init__(
        self,
        store: ProjectStore,
        runtime: AgentRuntime,
        credits: Optional[CreditLedger] = None,
        config: Optional[EngineConfig] = None,
        checkpoints: Optional[CheckpointManager] = None,
        gate: Optional[ApprovalGate] = None,
        conversations: Optional[ConversationStore] = None,
    ):
        self.store = store
        self.runtime = runtime
        self.config = config or EngineConfig()
        self.credits = credits or InMemoryCreditLedger()
        self.checkpoints = checkpoints or CheckpointManager(store, max_retries=self.config.max_retries)
        self.gate = gate or ApprovalGate(
            store,
            self.checkpoints,
            self.credits,
            policy=self.config.approval_policy,
            chapter_cost=self.config.chapter_cost,
        )
        self.conversations = conversations

    def run_turn(self, project_id: str, user_input: str = "", timeout: Optional[float] = None) -> TurnResult:
        """运行一个回合

        Args:
            project_id: 项目ID
            user_input: 用户输入（回答问题 / 反馈 / "continue"）
            timeout: agent 调用超时（秒），默认使用配置

        Returns:
            TurnResult；所有错误都在 result.error 中，不会抛出
        """
        result = TurnResult(project_id=project_id)
        try:
            project = self.store.get_project(project_id)
            self.gate.ensure_no_pending(project_id)
        except BookGenError as e:
            logger.warning(f"⚠️ 回合未开始: {e.message}")
            result.error = e.to_turn_error()
            return result

        if not self.store.transition_status(project_id, STARTABLE_STATUSES, ProjectStatus.GENERATING):
            current = self.store.get_project(project_id).status
            result.error = ProjectBusyError(project_id, current.value).to_turn_error()
            return result

        return self.run_with_lease(project_id, project.status, user_input, timeout, result=result)

    def run_with_lease(
        self,
        project_id: str,
        previous_status: ProjectStatus,
        user_input: str = "",
        timeout: Optional[float] = None,
        result: Optional[TurnResult] = None,
    ) -> TurnResult:
        """在已持有 generating 租约的前提下运行回合（retry 也走这里）"""
        result = result or TurnResult(project_id=project_id)
        timeout = timeout if timeout is not None else self.config.turn_timeout_seconds

        try:
            state = self.store.load_state(project_id)
            phase = resolve_phase(state)
            directive = synthesize(phase, state, self.config.approval_policy)
        except MalformedProjectError as e:
            # 数据问题：归还租约，不写检查点，不计重试
            self.store.transition_status(project_id, [ProjectStatus.GENERATING], previous_status)
            logger.error(f"❌ 项目数据非法: {e.message}")
            result.error = e.to_turn_error()
            return result

        result.phase = phase
        logger.info(f"▶️ 回合开始: {project_id} {result.turn_id} phase={phase.value}")

        estimated = self.config.turn_cost
        if any(spec.saves_chapter for spec in directive.tools):
            estimated += self.config.chapter_cost
        if not self.credits.reserve(project_id, estimated):
            error = InsufficientCreditsError(project_id, estimated)
            self.checkpoints.mark_failed(project_id, error, step="needs_credits")
            result.error = error.to_turn_error()
            return result

        try:
            chapter_saves = self._consume(project_id, user_input, timeout, directive, result)
        except InsufficientCreditsError as e:
            self._settle(project_id, chapter_saves=self._count_chapter_effects(result))
            self.checkpoints.mark_failed(project_id, e, step="needs_credits")
            result.error = e.to_turn_error()
            return result
        except BookGenError as e:
            self._settle(project_id, chapter_saves=self._count_chapter_effects(result))
            self.checkpoints.mark_failed(project_id, e)
            result.error = e.to_turn_error()
            return result
        except Exception as e:
            error = AgentRuntimeError(f"回合执行失败: {e}", project_id=project_id)
            logger.exception(f"❌ 回合异常: {project_id} {result.turn_id}")
            self._settle(project_id, chapter_saves=self._count_chapter_effects(result))
            self.checkpoints.mark_failed(project_id, error)
            result.error = error.to_turn_error()
            return result

        self._settle(project_id, chapter_saves=chapter_saves)
        self._release(project_id, result)
        logger.info(
            f"✅ 回合完成: {project_id} {result.turn_id} "
            f"committed={len(result.committed_effects)} discarded={len(result.discarded)}"
        )
        return result

    # ---- 内部实现 ----

    def _consume(
        self,
        project_id: str,
        user_input: str,
        timeout: Optional[float],
        directive: TurnDirective,
        result: TurnResult,
    ) -> int:
        """按顺序处理 agent 产出的调用，返回提交的章节数"""
        project = self.store.get_project(project_id)
        thread = None
        if self.conversations is not None:
            if project.conversation_handle is None:
                project.conversation_handle = ConversationStore.new_handle()
                self.store.save_project(project)
            thread = self.conversations.load(project.conversation_handle)

        registry = ToolRegistry.from_specs(
            directive.tools,
            create_book_tools(self.store, project_id, self.checkpoints.checkpoint),
        )
        request = AgentRequest(
            project_id=project_id,
            turn_id=result.turn_id,
            instructions=directive.instructions,
            user_input=user_input,
            step_budget=directive.step_budget,
            tools=directive.tools,
            conversation_handle=project.conversation_handle,
            history=thread.get_history_for_llm() if thread else [],
        )
        if thread is not None and user_input:
            thread.add_user_message(user_input, {"turn_id": result.turn_id})

        stream = InvocationStream(self.runtime, request, timeout)
        invocations = iter(stream)
        current_phase = directive.phase
        steps = 0
        chapter_saves = 0
        stop_reason = None

        try:
            for raw in invocations:
                invocation = registry.tag(raw)
                steps += 1
                if steps > directive.step_budget:
                    self._discard(result, invocation, "step_budget_exceeded")
                    continue

                tool = registry.get_tool(invocation.tool_name)
                if tool is None:
                    failed = ToolResult(
                        tool_name=invocation.tool_name,
                        success=False,
                        error=f"工具 {invocation.tool_name} 在 {directive.phase.value} 阶段不可用",
                    )
                    self._record_failure(request, result, invocation, failed)
                    continue

                if invocation.needs_approval:
                    result.pending_approval = self.gate.hold(project_id, result.turn_id, invocation)
                    stop_reason = "after_pending_approval"
                    break

                if tool.spec.saves_chapter:
                    if directive.max_chapter_saves is not None and chapter_saves >= directive.max_chapter_saves:
                        self._discard(result, invocation, "chapter_save_limit")
                        continue
                    # 第一章已在回合开始时预留
                    if chapter_saves >= 1 and not self.credits.reserve(project_id, self.config.chapter_cost):
                        raise InsufficientCreditsError(project_id, self.config.chapter_cost)

                tool_result = registry.execute(invocation)
                request.tool_results[invocation.id] = tool_result
                if not tool_result.success:
                    self._record_failure(request, result, invocation, tool_result)
                    continue

                if tool.spec.ends_turn:
                    result.question = AskedQuestion(**(tool_result.data or {}))
                    if thread is not None:
                        thread.add_assistant_message(result.question.question, {"turn_id": result.turn_id})
                    stop_reason = "after_question"
                    break

                result.committed_effects.append(CommittedEffect(
                    invocation_id=invocation.id,
                    tool_name=invocation.tool_name,
                    summary=tool_result.message,
                    data=tool_result.data or {},
                ))
                if thread is not None:
                    thread.add_message("tool", f"{invocation.tool_name} ok", {"turn_id": result.turn_id})
                if tool.spec.saves_chapter:
                    chapter_saves += 1
                current_phase = self.checkpoints.record_commit(
                    project_id, current_phase, invocation.tool_name, tool_result
                )

            if stop_reason is not None:
                request.stop_requested = True
                self._drain(invocations, result, stop_reason)
        finally:
            stream.close()

        result.next_phase = current_phase
        return chapter_saves

    def _drain(self, invocations: Iterator[ToolInvocation], result: TurnResult, reason: str):
        """停止后仍被发出的调用全部记为丢弃"""
        try:
            for invocation in invocations:
                self._discard(result, invocation, reason)
        except Exception as e:
            logger.warning(f"⚠️ 回合已停止，忽略运行时后续错误: {e}")

    def _discard(self, result: TurnResult, invocation: ToolInvocation, reason: str):
        result.discarded.append(DiscardedInvocation(
            invocation_id=invocation.id,
            tool_name=invocation.tool_name,
            reason=reason,
        ))

    def _record_failure(self, request: AgentRequest, result: TurnResult, invocation: ToolInvocation, tool_result: ToolResult):
        request.tool_results[invocation.id] = tool_result
        result.failed_invocations.append({
            "invocation_id": invocation.id,
            "tool_name": invocation.tool_name,
            "error": tool_result.error,
        })
        logger.warning(f"⚠️ 工具调用失败: {invocation.tool_name} {tool_result.error}")

    def _count_chapter_effects(self, result: TurnResult) -> int:
        return sum(1 for effect in result.committed_effects if effect.tool_name == "save_chapter")

    def _settle(self, project_id: str, chapter_saves: int):
        """按实际消耗结算积分并累计到项目"""
        actual = self.config.turn_cost + chapter_saves * self.config.chapter_cost
        self.credits.commit(project_id, actual)
        project = self.store.get_project(project_id)
        project.credits_used += actual
        self.store.save_project(project)

    def _release(self, project_id: str, result: TurnResult):
        """释放 generating 租约（被暂停的项目保持 paused）"""
        if result.pending_approval is not None:
            next_status = ProjectStatus.AWAITING_APPROVAL
        elif result.next_phase == Phase.COMPLETE:
            next_status = ProjectStatus.COMPLETED
        else:
            next_status = ProjectStatus.IDLE

        if not self.store.transition_status(project_id, [ProjectStatus.GENERATING], next_status):
            logger.info(f"回合结束时项目已不在 generating 状态，保持原状态: {project_id}")
            return

        self.checkpoints.mark_succeeded(project_id, completed=next_status == ProjectStatus.COMPLETED)
        self.store.acknowledge_rejections(project_id)
