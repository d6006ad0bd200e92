"""
数据模型定义
所有书籍生成相关的数据结构都定义在此文件中

阶段（Phase）不是存储字段，而是由 foundation/structure/mode/chapters 推导出的视图，
见 bookgen.runtime.phase
"""
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class GenerationMode(str, Enum):
    """生成模式"""
    AUTO = "auto"        # 连续生成，不等待用户
    MANUAL = "manual"    # 逐章生成，每章后暂停


class ProjectStatus(str, Enum):
    """项目运行状态

    generating 同时充当单写者租约：同一项目同一时刻只允许一个回合持有
    """
    IDLE = "idle"
    GENERATING = "generating"
    AWAITING_APPROVAL = "awaiting_approval"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"


class ChapterStatus(str, Enum):
    """章节状态"""
    DRAFT = "draft"
    APPROVED = "approved"


class Phase(str, Enum):
    """生成阶段（派生值，不持久化）"""
    FOUNDATION = "foundation"
    STRUCTURE = "structure"
    APPROVAL_TO_START_AUTO = "approval_to_start_auto"
    APPROVAL_TO_START_MANUAL = "approval_to_start_manual"
    AUTO_GENERATION = "auto_generation"
    MANUAL_GENERATION = "manual_generation"
    COMPLETE = "complete"

    @property
    def is_approval_to_start(self) -> bool:
        return self in (Phase.APPROVAL_TO_START_AUTO, Phase.APPROVAL_TO_START_MANUAL)

    @property
    def is_generation(self) -> bool:
        return self in (Phase.AUTO_GENERATION, Phase.MANUAL_GENERATION)


class CharacterSketch(BaseModel):
    """角色简述（虚构类）"""
    name: str = Field(description="角色姓名")
    role: str = Field(description="角色定位")
    description: str = Field(description="角色描述")


class Foundation(BaseModel):
    """书籍基础设定（概念阶段收集）"""
    synopsis: str = Field(description="故事梗概/主题概述")
    themes: List[str] = Field(default_factory=list, description="主题列表")
    target_audience: str = Field(description="目标读者")
    target_word_count: int = Field(description="目标字数")
    genre: str = Field(description="类型/体裁")

    # 虚构类字段
    characters: Optional[List[CharacterSketch]] = Field(default=None, description="主要角色")
    setting: Optional[str] = Field(default=None, description="故事背景")
    conflict: Optional[str] = Field(default=None, description="核心冲突")
    tone: Optional[str] = Field(default=None, description="基调")

    # 非虚构类字段
    core_arguments: Optional[List[str]] = Field(default=None, description="核心论点")
    approach: Optional[str] = Field(default=None, description="写作方法")


class ChapterRange(BaseModel):
    start: int
    end: int


class BookPart(BaseModel):
    """分卷/分部"""
    part_number: int = Field(description="部编号")
    title: str = Field(description="部标题")
    chapter_range: ChapterRange = Field(description="覆盖的章节范围")


class Structure(BaseModel):
    """书籍结构（章节规划）"""
    chapter_count: int = Field(description="正文章节数")
    chapter_titles: List[str] = Field(default_factory=list, description="正文章节标题（按顺序）")
    has_prologue: bool = Field(default=False, description="是否有序章")
    has_epilogue: bool = Field(default=False, description="是否有尾声")
    estimated_words_per_chapter: int = Field(default=3000, description="每章预计字数")
    parts: Optional[List[BookPart]] = Field(default=None, description="分部（可选）")

    def title_for(self, chapter_number: int) -> str:
        """按章节编号取标题（0=序章，N+1=尾声）"""
        if chapter_number == 0:
            return "Prologue"
        if chapter_number == self.chapter_count + 1 and self.has_epilogue:
            return "Epilogue"
        index = chapter_number - 1
        if 0 <= index < len(self.chapter_titles):
            return self.chapter_titles[index]
        return f"Chapter {chapter_number}"


class StoryIdea(BaseModel):
    """故事创意（供用户挑选）"""
    title: str
    premise: str
    genre: str


class BookMetadata(BaseModel):
    """书籍元数据"""
    genre: Optional[str] = None
    target_audience: Optional[str] = None
    page_count: Optional[int] = None
    language: Optional[str] = None
    tone: Optional[str] = None


class Project(BaseModel):
    """书籍项目

    current_step 只是粗粒度提示标签，阶段永远从数据重新推导
    """
    id: str = Field(default_factory=lambda: _new_id("book"), description="项目ID")
    title: str = Field(description="书名")
    type: str = Field(default="fiction", description="内容类别：fiction/non_fiction/childrens/educational 等")
    mode: GenerationMode = Field(default=GenerationMode.MANUAL, description="生成模式")
    start_confirmed: bool = Field(default=False, description="用户是否已确认开始写作")
    status: ProjectStatus = Field(default=ProjectStatus.IDLE, description="运行状态")
    current_step: str = Field(default="initialization", description="粗粒度步骤标签（仅供展示）")
    foundation: Optional[Foundation] = Field(default=None, description="基础设定")
    structure: Optional[Structure] = Field(default=None, description="章节结构")
    metadata: BookMetadata = Field(default_factory=BookMetadata, description="元数据")
    story_ideas: List[StoryIdea] = Field(default_factory=list, description="候选创意")
    credits_used: int = Field(default=0, description="已消耗积分")
    conversation_handle: Optional[str] = Field(default=None, description="外部 agent 会话句柄")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Chapter(BaseModel):
    """章节

    chapter_number: 0=序章，1..N=正文，N+1=尾声（仅 has_epilogue 时有效）
    """
    project_id: str = Field(description="所属项目ID")
    chapter_number: int = Field(description="章节编号")
    title: str = Field(description="章节标题")
    content: str = Field(default="", description="当前版本正文（markdown）")
    word_count: int = Field(default=0, description="字数")
    status: ChapterStatus = Field(default=ChapterStatus.APPROVED, description="章节状态")
    version: int = Field(default=0, description="当前版本号")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_written(self) -> bool:
        return bool(self.content) and self.word_count > 0


class ChapterVersion(BaseModel):
    """章节历史版本"""
    project_id: str
    chapter_number: int
    version_number: int
    content: str
    word_count: int = Field(default=0, description="该版本的字数")
    changed_by: str = Field(default="ai", description="ai / user")
    change_description: str = Field(default="", description="变更说明")
    created_at: datetime = Field(default_factory=datetime.now)


class Checkpoint(BaseModel):
    """可恢复检查点"""
    project_id: str = Field(description="项目ID")
    step: str = Field(description="刚完成的步骤标签，如 foundation_saved / chapter_3")
    data: Dict[str, Any] = Field(default_factory=dict, description="不透明的快照数据")
    retry_count: int = Field(default=0, description="记录时的重试次数")
    timestamp: datetime = Field(default_factory=datetime.now)


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationSession(BaseModel):
    """生成会话（每个项目一条），承载重试计数与最近检查点"""
    project_id: str
    status: SessionStatus = SessionStatus.IN_PROGRESS
    retry_count: int = 0
    last_checkpoint: Optional[Checkpoint] = None
    last_error: Optional[Dict[str, Any]] = None
    last_active_at: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)


class ToolInvocation(BaseModel):
    """agent 发出的一次工具调用"""
    id: str = Field(default_factory=lambda: _new_id("call"), description="调用ID")
    tool_name: str = Field(description="工具名称")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="调用参数")
    needs_approval: bool = Field(default=False, description="是否需要人工审批（由工具集标记）")


class PendingApproval(BaseModel):
    """挂起的工具调用，等待人工 approve / reject"""
    id: str = Field(default_factory=lambda: _new_id("approval"))
    project_id: str
    turn_id: str = Field(description="产生该调用的回合ID")
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


class Rejection(BaseModel):
    """被拒绝的提案，下一回合的指令会引用它"""
    pending_id: str
    project_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ProjectState(BaseModel):
    """阶段推导与指令合成所需的只读快照"""
    project: Project
    chapters: List[Chapter] = Field(default_factory=list)
    last_rejection: Optional[Rejection] = None

    def chapter(self, chapter_number: int) -> Optional[Chapter]:
        for ch in self.chapters:
            if ch.chapter_number == chapter_number:
                return ch
        return None

    def written_numbers(self) -> List[int]:
        return sorted(ch.chapter_number for ch in self.chapters if ch.is_written)


class ErrorKind(str, Enum):
    MALFORMED_PROJECT = "malformed_project"
    APPROVAL_PENDING = "approval_pending"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    BUSY = "busy"
    NOT_FOUND = "not_found"


class TurnError(BaseModel):
    """回合错误（统一格式，不向外抛异常）"""
    kind: ErrorKind
    message: str
    retryable: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class CommittedEffect(BaseModel):
    """已提交的工具效果"""
    invocation_id: str
    tool_name: str
    summary: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class DiscardedInvocation(BaseModel):
    invocation_id: str
    tool_name: str
    reason: str


class AskedQuestion(BaseModel):
    """agent 在本回合向用户提出的问题"""
    question: str
    suggestions: List[str] = Field(default_factory=list)
    allow_custom_input: bool = True


class TurnResult(BaseModel):
    """回合执行结果"""
    turn_id: str = Field(default_factory=lambda: _new_id("turn"))
    project_id: str
    phase: Optional[Phase] = Field(default=None, description="回合运行时的阶段")
    next_phase: Optional[Phase] = Field(default=None, description="回合结束后重新推导的阶段")
    committed_effects: List[CommittedEffect] = Field(default_factory=list)
    failed_invocations: List[Dict[str, Any]] = Field(default_factory=list)
    discarded: List[DiscardedInvocation] = Field(default_factory=list)
    pending_approval: Optional[PendingApproval] = None
    question: Optional[AskedQuestion] = None
    error: Optional[TurnError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResumeState(BaseModel):
    """恢复状态"""
    project_id: str
    can_resume: bool
    status: ProjectStatus
    retry_count: int
    remaining_retries: int
    last_checkpoint: Optional[Checkpoint] = None
    last_error: Optional[Dict[str, Any]] = None


class RetryOutcome(BaseModel):
    """retry 的结果：恢复状态 + 本次重试运行的回合（重试被拒绝时为 None）"""
    resume: ResumeState
    turn: Optional[TurnResult] = None


class ApprovalResult(BaseModel):
    """approve / reject 的结果"""
    pending: PendingApproval
    approved: bool
    committed: bool = False
    phase: Optional[Phase] = None
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
