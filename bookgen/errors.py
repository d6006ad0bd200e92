"""
错误分类

- MalformedProjectError: 持久化数据违反不变式，致命，重试无效
- ApprovalPendingError: 存在未处理的审批时发起新回合，调用方错误
- AgentRuntimeError / TurnTimeoutError: 外部 agent 调用失败或超时，可重试
- InsufficientCreditsError: 积分不足，充值后可重试

回合执行器是唯一把这些异常转换为 TurnResult.error 的地方
"""
from typing import Any, Dict, Optional

from bookgen.models import ErrorKind, TurnError


class BookGenError(Exception):
    """bookgen 所有领域异常的基类"""

    kind: ErrorKind = ErrorKind.RUNTIME
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式（用于 API / 工具返回）"""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }

    def to_turn_error(self) -> TurnError:
        return TurnError(
            kind=self.kind,
            message=self.message,
            retryable=self.retryable,
            details=dict(self.details),
        )


class MalformedProjectError(BookGenError):
    """项目数据违反不变式（需要修数据，不是生成问题）"""

    kind = ErrorKind.MALFORMED_PROJECT
    retryable = False


class ApprovalPendingError(BookGenError):
    """项目存在未处理的审批，无法开始新回合"""

    kind = ErrorKind.APPROVAL_PENDING
    retryable = True

    def __init__(self, project_id: str, pending_id: str, tool_name: str):
        super().__init__(
            f"项目 {project_id} 存在待审批的 {tool_name} 调用 ({pending_id})，请先 approve 或 reject",
            project_id=project_id,
            pending_id=pending_id,
            tool_name=tool_name,
        )


class AgentRuntimeError(BookGenError):
    """外部 agent 运行时在回合中出错"""

    kind = ErrorKind.RUNTIME
    retryable = True


class TurnTimeoutError(AgentRuntimeError):
    """外部 agent 调用超过时间预算"""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout: float):
        super().__init__(f"agent 调用超时（{timeout:.0f} 秒）", timeout=timeout)


class InsufficientCreditsError(BookGenError):
    """积分不足"""

    kind = ErrorKind.INSUFFICIENT_CREDITS
    retryable = True

    def __init__(self, project_id: str, required: int):
        super().__init__(
            f"积分不足：项目 {project_id} 需要 {required} 积分",
            project_id=project_id,
            required=required,
        )


class ProjectNotFoundError(BookGenError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, project_id: str):
        super().__init__(f"未找到项目: {project_id}", project_id=project_id)


class ProjectBusyError(BookGenError):
    """项目的生成租约已被占用，或当前状态不允许开始回合"""

    kind = ErrorKind.BUSY
    retryable = True

    def __init__(self, project_id: str, status: str):
        super().__init__(
            f"项目 {project_id} 当前状态为 {status}，无法开始新回合",
            project_id=project_id,
            status=status,
        )


class PendingApprovalNotFoundError(BookGenError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, pending_id: str):
        super().__init__(f"未找到待审批记录: {pending_id}", pending_id=pending_id)


class ToolExecutionError(BookGenError):
    """工具参数非法或效果无法提交（不会写入存储）"""

    def __init__(self, tool_name: str, message: str, hint: Optional[str] = None):
        details: Dict[str, Any] = {"tool_name": tool_name}
        if hint:
            details["hint"] = hint
        super().__init__(message, **details)
        self.tool_name = tool_name
