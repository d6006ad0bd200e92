"""
Agent 运行时模块
提供外部工具调用 agent 的接口与会话线程持久化
"""

from bookgen.agent.runtime import AgentRequest, AgentRuntime, LangChainAgentRuntime, ScriptedAgentRuntime
from bookgen.agent.conversation import ChatMessage, ConversationThread, ConversationStore

__all__ = [
    "AgentRequest",
    "AgentRuntime",
    "LangChainAgentRuntime",
    "ScriptedAgentRuntime",
    "ChatMessage",
    "ConversationThread",
    "ConversationStore",
]
