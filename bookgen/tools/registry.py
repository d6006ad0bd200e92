"""
工具注册表模块
管理可调用工具、审批门控能力标记、单回合工具集

工具以“带标签的变体”表示：ToolSpec 描述名称/参数/能力，不携带状态；
Tool = ToolSpec + 处理函数。每个回合都重新构建 ToolRegistry，不在原地修改。
"""
from typing import Optional, List, Dict, Any, Callable, Type, Iterable
from enum import Enum
from datetime import datetime

from pydantic import BaseModel, Field, ConfigDict, ValidationError

from bookgen.errors import ToolExecutionError
from bookgen.models import ToolInvocation


class ToolCapability(str, Enum):
    """工具能力"""
    AUTO_EXECUTE = "auto_execute"      # 直接提交
    NEEDS_APPROVAL = "needs_approval"  # 挂起等待人工审批


class ToolSpec(BaseModel):
    """工具定义（无状态）"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(description="工具名称")
    description: str = Field(description="工具描述（同时作为给模型的说明）")
    capability: ToolCapability = Field(default=ToolCapability.AUTO_EXECUTE, description="能力标记")
    args_schema: Type[BaseModel] = Field(description="参数模型")
    ends_turn: bool = Field(default=False, description="调用后本回合立即结束（如向用户提问）")
    saves_chapter: bool = Field(default=False, description="是否计入章节保存次数")

    @property
    def needs_approval(self) -> bool:
        return self.capability == ToolCapability.NEEDS_APPROVAL


class Tool(BaseModel):
    """可执行工具：定义 + 处理函数"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    spec: ToolSpec
    handler: Optional[Callable[[BaseModel], Any]] = Field(
        default=None,
        description="工具处理函数",
        exclude=True  # 不序列化
    )

    @property
    def name(self) -> str:
        return self.spec.name


class ToolResult(BaseModel):
    """工具执行结果"""
    tool_name: str = Field(description="工具名称")
    success: bool = Field(description="是否成功")
    message: str = Field(default="", description="结果消息")
    data: Optional[Dict[str, Any]] = Field(default=None, description="返回数据")
    error: Optional[str] = Field(default=None, description="错误信息")
    executed_at: str = Field(
        default_factory=lambda: datetime.now().isoformat(),
        description="执行时间"
    )


class ToolRegistry:
    """单回合工具注册表

    只接受本回合工具集中的工具；参数先经过 args_schema 校验再交给处理函数
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    @classmethod
    def from_specs(
        cls,
        specs: Iterable[ToolSpec],
        handlers: Dict[str, Callable[[BaseModel], Any]],
    ) -> "ToolRegistry":
        """按工具集定义绑定处理函数"""
        return cls(Tool(spec=spec, handler=handlers.get(spec.name)) for spec in specs)

    def register(self, tool: Tool):
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self, capability: Optional[ToolCapability] = None) -> List[Tool]:
        tools = list(self._tools.values())
        if capability:
            tools = [t for t in tools if t.spec.capability == capability]
        return tools

    def specs(self) -> List[ToolSpec]:
        return [t.spec for t in self._tools.values()]

    def needs_approval(self, tool_name: str) -> bool:
        tool = self.get_tool(tool_name)
        return bool(tool and tool.spec.needs_approval)

    def tag(self, invocation: ToolInvocation) -> ToolInvocation:
        """按工具集的能力标记调用（运行时给的标记不可信）"""
        return invocation.model_copy(update={"needs_approval": self.needs_approval(invocation.tool_name)})

    def execute(self, invocation: ToolInvocation) -> ToolResult:
        """执行工具调用

        参数非法或处理函数抛出 ToolExecutionError 时返回失败结果，不会有任何写入；
        其他异常（例如存储故障）继续向上抛出，由回合执行器处理
        """
        tool = self.get_tool(invocation.tool_name)
        if tool is None:
            return ToolResult(
                tool_name=invocation.tool_name,
                success=False,
                error=f"未找到工具: {invocation.tool_name}"
            )

        if tool.handler is None:
            return ToolResult(
                tool_name=invocation.tool_name,
                success=False,
                error=f"工具 {invocation.tool_name} 未实现处理函数"
            )

        try:
            params = tool.spec.args_schema.model_validate(invocation.arguments)
        except ValidationError as e:
            return ToolResult(
                tool_name=invocation.tool_name,
                success=False,
                error=f"参数校验失败: {e.errors(include_url=False)}"
            )

        try:
            result = tool.handler(params)
        except ToolExecutionError as e:
            return ToolResult(
                tool_name=invocation.tool_name,
                success=False,
                error=e.message,
                data=e.to_dict(),
            )

        if isinstance(result, ToolResult):
            return result
        elif isinstance(result, dict):
            return ToolResult(
                tool_name=invocation.tool_name,
                success=True,
                data=result
            )
        else:
            return ToolResult(
                tool_name=invocation.tool_name,
                success=True,
                message=str(result) if result is not None else ""
            )
