"""
配置管理
管理 LLM 配置、引擎策略（审批策略/超时/重试上限）与存储路径

环境变量优先级高于默认值；显式传入的参数优先级最高
"""
import os
from typing import Optional, Literal
from pydantic import BaseModel, Field
from dotenv import load_dotenv


# 在模块导入阶段自动加载默认的 .env 文件，支持 .env.local 优先级
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
for _env_filename in (".env.local", ".env"):
    _env_path = os.path.join(_PROJECT_ROOT, _env_filename)
    if os.path.exists(_env_path):
        # override=False 避免覆盖已经存在的环境变量（如 shell 中显式设置）
        load_dotenv(_env_path, override=False)


ApprovalPolicy = Literal["auto_commit", "approval_gated"]


class LLMConfig(BaseModel):
    """LLM配置（外部 agent 运行时使用）"""
    model_name: Optional[str] = Field(default=None, description="模型名称")
    temperature: float = Field(default=0.7, description="温度参数")
    max_tokens: Optional[int] = Field(default=None, description="最大token数")
    api_key: Optional[str] = Field(default=None, description="API密钥")
    base_url: Optional[str] = Field(default=None, description="API基础URL")

    def __init__(self, **data):
        super().__init__(**data)

        if self.api_key is None:
            self.api_key = os.getenv("BOOKGEN_API_KEY") or os.getenv("OPENAI_API_KEY")
        if self.base_url is None:
            self.base_url = os.getenv("BOOKGEN_BASE_URL") or os.getenv("OPENAI_BASE_URL")

        env_model = os.getenv("BOOKGEN_MODEL_NAME")
        if env_model:
            self.model_name = env_model
        elif self.model_name is None:
            self.model_name = os.getenv("OPENAI_MODEL_NAME") or "gpt-4o-mini"

        if os.getenv("BOOKGEN_TEMPERATURE"):
            self.temperature = float(os.getenv("BOOKGEN_TEMPERATURE"))
        if self.max_tokens is None and os.getenv("BOOKGEN_MAX_TOKENS"):
            self.max_tokens = int(os.getenv("BOOKGEN_MAX_TOKENS"))


class EngineConfig(BaseModel):
    """编排引擎配置

    注意：
    - approval_policy=auto_commit 时章节直接提交，只有结构提案需要人工审批
    - approval_policy=approval_gated 时结构、章节保存、章节修订全部需要审批
    """

    approval_policy: ApprovalPolicy = Field(
        default="auto_commit",
        description="哪些工具需要人工审批：auto_commit / approval_gated"
    )
    max_retries: int = Field(default=3, description="恢复重试上限")
    turn_timeout_seconds: float = Field(default=300.0, description="单回合 agent 调用超时（秒）")
    stale_lease_seconds: float = Field(
        default=1800.0,
        description="generating 租约超过该时长视为崩溃遗留，可被回收为 paused"
    )
    db_path: str = Field(default="data/bookgen.db", description="SQLite 数据库路径")
    conversation_dir: str = Field(default="data/conversations", description="会话记录（JSONL）目录")
    turn_cost: int = Field(default=1, description="每回合基础积分")
    chapter_cost: int = Field(default=5, description="每提交一章的积分")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Celery broker 地址")
    llm_config: LLMConfig = Field(default_factory=LLMConfig, description="LLM配置")

    def __init__(self, **data):
        if "approval_policy" not in data:
            env_policy = os.getenv("BOOKGEN_APPROVAL_POLICY", "auto_commit")
            if env_policy in ("auto_commit", "approval_gated"):
                data["approval_policy"] = env_policy

        if "turn_timeout_seconds" not in data and os.getenv("BOOKGEN_TURN_TIMEOUT"):
            data["turn_timeout_seconds"] = float(os.getenv("BOOKGEN_TURN_TIMEOUT"))

        if "stale_lease_seconds" not in data and os.getenv("BOOKGEN_STALE_LEASE_SECONDS"):
            data["stale_lease_seconds"] = float(os.getenv("BOOKGEN_STALE_LEASE_SECONDS"))

        if "db_path" not in data and os.getenv("BOOKGEN_DB_PATH"):
            data["db_path"] = os.getenv("BOOKGEN_DB_PATH")

        if "conversation_dir" not in data and os.getenv("BOOKGEN_CONVERSATION_DIR"):
            data["conversation_dir"] = os.getenv("BOOKGEN_CONVERSATION_DIR")

        if "turn_cost" not in data and os.getenv("BOOKGEN_TURN_COST"):
            data["turn_cost"] = int(os.getenv("BOOKGEN_TURN_COST"))

        if "chapter_cost" not in data and os.getenv("BOOKGEN_CHAPTER_COST"):
            data["chapter_cost"] = int(os.getenv("BOOKGEN_CHAPTER_COST"))

        if "redis_url" not in data:
            data["redis_url"] = os.getenv("REDIS_URL", "redis://localhost:6379/0")

        super().__init__(**data)
