"""
LLM实例管理
统一管理 agent 运行时使用的 ChatOpenAI 实例
"""
import time
import logging
from typing import Any, Dict, List, Optional

from langchain_openai import ChatOpenAI
from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.outputs import LLMResult

from bookgen.config import LLMConfig


logger = logging.getLogger(__name__)


class UsageLogCallbackHandler(BaseCallbackHandler):
    """记录每次 LLM 调用的耗时与 token 用量"""

    def __init__(self):
        self.start_time: Optional[float] = None
        self.total_tokens = 0

    def on_chat_model_start(self, serialized: Dict[str, Any], messages: List[List[Any]], **kwargs) -> None:
        self.start_time = time.time()
        logger.debug(f"🤖 LLM调用开始（{sum(len(m) for m in messages)} 条消息）")

    def on_llm_end(self, response: LLMResult, **kwargs) -> None:
        elapsed = time.time() - self.start_time if self.start_time else 0.0
        usage = (response.llm_output or {}).get("token_usage") or {}
        self.total_tokens += usage.get("total_tokens", 0)
        logger.debug(f"✅ LLM调用完成，耗时 {elapsed:.2f}s，tokens={usage.get('total_tokens', 0)}")

    def on_llm_error(self, error: BaseException, **kwargs) -> None:
        logger.error(f"❌ LLM调用失败: {error}")


def get_llm(config: Optional[LLMConfig] = None, verbose: bool = False) -> ChatOpenAI:
    """
    获取LLM实例

    Args:
        config: LLM配置，如果为None则使用默认配置
        verbose: 是否记录调用耗时与 token 用量

    Returns:
        ChatOpenAI实例
    """
    if config is None:
        config = LLMConfig()

    callbacks = [UsageLogCallbackHandler()] if verbose else None

    return ChatOpenAI(
        model=config.model_name,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        api_key=config.api_key,
        base_url=config.base_url,
        callbacks=callbacks,
    )
