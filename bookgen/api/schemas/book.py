"""
书籍相关 API 数据模型
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from bookgen.models import Chapter, GenerationMode, Phase, PendingApproval, Project, ProjectStatus


class CreateBookRequest(BaseModel):
    """创建书籍的请求体"""

    title: str = Field(min_length=1, description="书名")
    type: str = Field(default="fiction", description="内容类别：fiction/non_fiction/childrens/educational")
    mode: GenerationMode = Field(default=GenerationMode.MANUAL, description="生成模式")


class BookSummary(BaseModel):
    """书籍摘要"""

    id: str
    title: str
    type: str
    status: ProjectStatus
    phase: Optional[Phase] = Field(default=None, description="当前阶段（数据非法时为空）")
    credits_used: int = 0

    @classmethod
    def from_project(cls, project: Project, phase: Optional[Phase]) -> "BookSummary":
        return cls(
            id=project.id,
            title=project.title,
            type=project.type,
            status=project.status,
            phase=phase,
            credits_used=project.credits_used,
        )


class BookDetailResponse(BaseModel):
    """书籍详情"""

    summary: BookSummary
    project: Project
    pending_approval: Optional[PendingApproval] = None


class PhaseResponse(BaseModel):
    phase: Phase


class TurnRequest(BaseModel):
    """运行回合的请求体"""

    user_input: str = Field(default="", description="用户输入（回答 / 反馈 / continue）")
    timeout: Optional[float] = Field(default=None, gt=0, description="agent 调用超时（秒）")
    background: bool = Field(default=False, description="是否提交到 Celery 后台执行")


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="拒绝原因，会反馈给下一回合")


class RevertRequest(BaseModel):
    version_number: int = Field(ge=1)


class PauseResponse(BaseModel):
    paused: bool


class ChapterListResponse(BaseModel):
    items: List[Chapter] = Field(description="章节列表")
    total: int
