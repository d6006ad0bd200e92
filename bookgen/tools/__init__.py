"""
工具系统模块
提供 agent 可调用的书籍工具与单回合工具注册表
"""

from bookgen.tools.registry import ToolRegistry, Tool, ToolSpec, ToolResult, ToolCapability

__all__ = ["ToolRegistry", "Tool", "ToolSpec", "ToolResult", "ToolCapability"]
