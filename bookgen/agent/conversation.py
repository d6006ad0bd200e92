"""
会话线程

每个项目一条会话线程，通过 conversation_handle 引用；消息以 JSONL 追加落盘，
agent 运行时读取最近的消息作为历史
"""
import os
import re
import json
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    """单条会话消息"""
    role: Literal["user", "assistant", "tool"] = Field(description="消息角色")
    content: str = Field(description="消息内容")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")
    meta: Dict[str, Any] = Field(default_factory=dict, description="可选元信息：turn_id, tool_name 等")

    def to_dict(self) -> Dict[str, str]:
        """转换为字典（用于 LLM 输入）"""
        return {"role": self.role, "content": self.content}

    def to_jsonl(self) -> str:
        return json.dumps(
            {
                "role": self.role,
                "content": self.content,
                "created_at": self.created_at.isoformat(),
                "meta": self.meta,
            },
            ensure_ascii=False,
        )


class ConversationThread(BaseModel):
    """会话线程（含裁剪与落盘）"""
    handle: str = Field(description="会话句柄")
    messages: List[ChatMessage] = Field(default_factory=list)

    # 裁剪配置
    max_messages: int = Field(default=20, description="最大保留消息数")
    max_chars: int = Field(default=8000, description="最大保留字符数")

    persist_path: Optional[str] = Field(default=None, description="JSONL 落盘路径")

    def add_message(self, role: Literal["user", "assistant", "tool"], content: str, meta: Optional[Dict[str, Any]] = None):
        message = ChatMessage(role=role, content=content, meta=meta or {})
        self.messages.append(message)
        self._trim_history()
        if self.persist_path:
            self._persist_message(message)

    def add_user_message(self, content: str, meta: Optional[Dict[str, Any]] = None):
        self.add_message("user", content, meta)

    def add_assistant_message(self, content: str, meta: Optional[Dict[str, Any]] = None):
        self.add_message("assistant", content, meta)

    def get_history_for_llm(self) -> List[Dict[str, str]]:
        # 工具结果以 assistant 旁白的形式回放，避免依赖原始 tool_call_id
        history = []
        for msg in self.messages:
            if msg.role == "tool":
                history.append({"role": "assistant", "content": f"[tool] {msg.content}"})
            else:
                history.append(msg.to_dict())
        return history

    def _trim_history(self):
        """从最旧的消息开始裁剪，直到满足条数和字符数限制"""
        while len(self.messages) > self.max_messages:
            self.messages.pop(0)

        total_chars = sum(len(msg.content) for msg in self.messages)
        while total_chars > self.max_chars and len(self.messages) > 2:
            removed = self.messages.pop(0)
            total_chars -= len(removed.content)

    def _persist_message(self, message: ChatMessage):
        try:
            os.makedirs(os.path.dirname(self.persist_path), exist_ok=True)
            with open(self.persist_path, "a", encoding="utf-8") as f:
                f.write(_sanitize_content(message.to_jsonl()) + "\n")
        except OSError as e:
            # 落盘失败不阻断回合
            logger.warning(f"⚠️ 会话历史落盘失败: {e}")


def _sanitize_content(content: str) -> str:
    """脱敏：替换疑似 API Key"""
    patterns = [
        (r'(OPENAI_API_KEY|API_KEY|SECRET_KEY|PASSWORD)=\S+', r'\1=***'),
        (r'sk-[a-zA-Z0-9]{20,}', 'sk-***'),
        (r'Bearer [a-zA-Z0-9._-]+', 'Bearer ***'),
    ]
    result = content
    for pattern, replacement in patterns:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
    return result


class ConversationStore:
    """会话线程仓库：一个句柄对应 base_dir 下的一个 JSONL 文件"""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    @staticmethod
    def new_handle() -> str:
        return f"thread_{uuid4().hex[:12]}"

    def _path(self, handle: str) -> str:
        return os.path.join(self.base_dir, f"{handle}.jsonl")

    def load(self, handle: str) -> ConversationThread:
        """加载会话线程，文件不存在时返回空线程"""
        thread = ConversationThread(handle=handle)
        path = self._path(handle)
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        thread.messages.append(ChatMessage.model_validate_json(line))
                    except ValueError:
                        logger.warning(f"⚠️ 跳过无法解析的会话记录: {handle}")
            thread._trim_history()
        thread.persist_path = path
        return thread
