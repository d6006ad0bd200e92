"""
Agent 运行时接口

execute(request) 是一个生成器：按 agent 发出的顺序逐个产出 ToolInvocation。
回合执行器每处理完一个调用才会向生成器索取下一个，并把结果写入 request.tool_results，
这样运行时可以把真实的工具结果回传给模型。

- LangChainAgentRuntime: 基于 ChatOpenAI.bind_tools 的工具调用循环
- ScriptedAgentRuntime: 按脚本产出调用的确定性实现（测试 / 演示）
"""
import json
import time
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from bookgen.config import LLMConfig
from bookgen.llm import get_llm
from bookgen.errors import AgentRuntimeError
from bookgen.models import ToolInvocation
from bookgen.tools.registry import ToolResult, ToolSpec


logger = logging.getLogger(__name__)


class AgentRequest(BaseModel):
    """一次 agent 调用的输入"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    project_id: str
    turn_id: str
    instructions: str
    user_input: str = ""
    step_budget: int
    tools: List[ToolSpec] = Field(default_factory=list)
    conversation_handle: Optional[str] = None
    history: List[Dict[str, str]] = Field(default_factory=list, description="会话历史（role + content）")
    tool_results: Dict[str, ToolResult] = Field(default_factory=dict, description="执行器回填的工具结果")
    stop_requested: bool = Field(default=False, description="执行器已停止消费，运行时不应再调用模型")


class AgentRuntime(ABC):
    """外部 agent 运行时"""

    @abstractmethod
    def execute(self, request: AgentRequest) -> Iterator[ToolInvocation]:
        """按发出顺序产出工具调用，必须遵守 step_budget"""


def spec_to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """ToolSpec -> OpenAI function tool 定义"""
    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.args_schema.model_json_schema(),
        },
    }


def _history_to_messages(history: Sequence[Dict[str, str]]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for item in history:
        if item.get("role") == "user":
            messages.append(HumanMessage(content=item.get("content", "")))
        else:
            messages.append(AIMessage(content=item.get("content", "")))
    return messages


class LangChainAgentRuntime(AgentRuntime):
    """基于 langchain-openai 的工具调用循环

    每一步调用一次模型；模型返回的每个 tool_call 计为一步。
    需要审批或结束回合的工具被产出后执行器会停止消费，循环随之结束。
    """

    def __init__(self, llm=None, config: Optional[LLMConfig] = None, verbose: bool = False):
        self._llm = llm
        self.config = config
        self.verbose = verbose

    @property
    def llm(self):
        if self._llm is None:
            self._llm = get_llm(self.config, verbose=self.verbose)
        return self._llm

    def execute(self, request: AgentRequest) -> Iterator[ToolInvocation]:
        bound = self.llm.bind_tools([spec_to_openai_tool(spec) for spec in request.tools])
        messages: List[BaseMessage] = [SystemMessage(content=request.instructions)]
        messages.extend(_history_to_messages(request.history))
        messages.append(HumanMessage(content=request.user_input or "continue"))

        steps = 0
        while steps < request.step_budget and not request.stop_requested:
            try:
                response = bound.invoke(messages)
            except Exception as e:
                raise AgentRuntimeError(f"模型调用失败: {e}", project_id=request.project_id) from e

            messages.append(response)
            tool_calls = getattr(response, "tool_calls", None) or []
            if not tool_calls:
                logger.debug(f"模型未发出工具调用，回合结束: {request.turn_id}")
                return

            for call in tool_calls:
                if steps >= request.step_budget:
                    return
                steps += 1
                invocation = ToolInvocation(
                    tool_name=call["name"],
                    arguments=call.get("args") or {},
                )
                if call.get("id"):
                    invocation.id = call["id"]
                yield invocation

                result = request.tool_results.get(invocation.id)
                payload = result.model_dump(exclude={"executed_at"}) if result else {"success": False}
                messages.append(ToolMessage(
                    content=json.dumps(payload, ensure_ascii=False, default=str),
                    tool_call_id=invocation.id,
                ))


class Delay(BaseModel):
    """脚本步骤：阻塞若干秒（模拟慢速模型）"""
    seconds: float


ScriptStep = Union[ToolInvocation, Dict[str, Any], Delay, Exception]


class ScriptedAgentRuntime(AgentRuntime):
    """按脚本产出调用的确定性运行时

    scripts 中每个元素对应一个回合；回合脚本的步骤可以是：
    - ToolInvocation 或 {"tool_name": ..., "arguments": {...}}
    - Delay(seconds)：阻塞
    - Exception 实例：在该位置抛出
    脚本用完之后的回合不产出任何调用。
    """

    def __init__(self, scripts: Optional[Sequence[Sequence[ScriptStep]]] = None):
        self.scripts: List[List[ScriptStep]] = [list(s) for s in scripts or []]
        self.requests: List[AgentRequest] = []

    def add_turn(self, steps: Sequence[ScriptStep]) -> "ScriptedAgentRuntime":
        self.scripts.append(list(steps))
        return self

    def execute(self, request: AgentRequest) -> Iterator[ToolInvocation]:
        self.requests.append(request)
        steps = self.scripts.pop(0) if self.scripts else []
        for step in steps:
            if isinstance(step, Delay):
                time.sleep(step.seconds)
            elif isinstance(step, Exception):
                raise step
            elif isinstance(step, ToolInvocation):
                yield step.model_copy()
            else:
                yield ToolInvocation(tool_name=step["tool_name"], arguments=step.get("arguments", {}))
