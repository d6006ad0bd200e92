"""
书籍工具模块
提供 agent 在各阶段可调用的工具：提问、基础设定、结构、生成模式、章节保存/修订、元数据、检查点

- book_tool_specs(policy): 按审批策略给出工具定义（能力标记在这里决定）
- create_book_tools(store, project_id, checkpoint_fn): 绑定到某个项目的处理函数

处理函数只做一件事：校验后写入存储。非法调用抛出 ToolExecutionError，不会有任何写入。
"""
import logging
from typing import Optional, List, Dict, Any, Callable, Literal

from pydantic import BaseModel, Field

from bookgen.errors import ToolExecutionError
from bookgen.models import (
    BookMetadata, BookPart, CharacterSketch, Foundation, GenerationMode,
    StoryIdea, Structure,
)
from bookgen.runtime.phase import count_written_items, reading_order, total_items
from bookgen.runtime.store import ProjectStore
from bookgen.tools.registry import ToolCapability, ToolSpec


logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


# ==================== 参数模型 ====================

class AskQuestionArgs(BaseModel):
    question: str = Field(description="The single question to ask the user")
    suggestions: List[str] = Field(
        min_length=5, max_length=5,
        description="Exactly 5 unique, specific suggestions tailored to the book"
    )
    allow_custom_input: bool = Field(default=True, description="Whether the user may type a custom answer")


class SaveStoryIdeasArgs(BaseModel):
    ideas: List[StoryIdea] = Field(min_length=3, max_length=5, description="3-5 story concepts")


class SaveFoundationArgs(BaseModel):
    synopsis: str
    themes: List[str]
    target_audience: str
    target_word_count: int = Field(gt=0)
    genre: str
    characters: Optional[List[CharacterSketch]] = None
    setting: Optional[str] = None
    conflict: Optional[str] = None
    tone: Optional[str] = None
    core_arguments: Optional[List[str]] = None
    approach: Optional[str] = None


class SaveStructureArgs(BaseModel):
    chapter_count: int = Field(ge=1, le=100, description="Number of regular chapters")
    chapter_titles: List[str] = Field(description="Titles of the regular chapters, in order")
    has_prologue: bool = False
    has_epilogue: bool = False
    estimated_words_per_chapter: int = Field(default=3000, gt=0)
    parts: Optional[List[BookPart]] = None


class SetGenerationModeArgs(BaseModel):
    mode: Literal["auto", "manual"]


class SaveChapterArgs(BaseModel):
    chapter_number: int = Field(ge=0, description="0 = prologue, 1..N = chapters, N+1 = epilogue")
    title: str
    content: str = Field(min_length=100, description="Full chapter text in markdown")
    word_count: int = Field(gt=0)


class ReviseChapterArgs(BaseModel):
    chapter_number: int = Field(ge=0)
    content: str = Field(min_length=1)
    reason: str = Field(default="", description="What was changed and why")
    title: Optional[str] = None


class UpdateBookMetadataArgs(BaseModel):
    genre: Optional[str] = None
    target_audience: Optional[str] = None
    page_count: Optional[int] = None
    language: Optional[str] = None
    tone: Optional[str] = None


class SaveCheckpointArgs(BaseModel):
    step: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class GetBookContextArgs(BaseModel):
    pass


# ==================== 工具定义 ====================

# approval_gated 策略下额外需要审批的工具
_GATED_TOOLS = {"save_chapter", "revise_chapter"}


def book_tool_specs(policy: str = "auto_commit") -> Dict[str, ToolSpec]:
    """按审批策略生成全部工具定义

    Args:
        policy: auto_commit（只有结构需要审批）或 approval_gated（结构与章节写入都需要审批）

    Returns:
        工具名 -> ToolSpec
    """
    def capability(name: str) -> ToolCapability:
        if name == "save_structure":
            return ToolCapability.NEEDS_APPROVAL
        if policy == "approval_gated" and name in _GATED_TOOLS:
            return ToolCapability.NEEDS_APPROVAL
        return ToolCapability.AUTO_EXECUTE

    specs = [
        ToolSpec(
            name="ask_question",
            description=(
                "Ask the user ONE question with exactly 5 specific suggestions. "
                "Your turn ends immediately after this call."
            ),
            args_schema=AskQuestionArgs,
            ends_turn=True,
        ),
        ToolSpec(
            name="save_story_ideas",
            description="Save 3-5 story concepts for the user to choose from when the prompt is vague.",
            args_schema=SaveStoryIdeasArgs,
        ),
        ToolSpec(
            name="save_foundation",
            description="Save the book foundation once all essential elements are gathered.",
            args_schema=SaveFoundationArgs,
        ),
        ToolSpec(
            name="save_structure",
            description="Propose the book structure: chapter count and titles, prologue/epilogue, parts.",
            args_schema=SaveStructureArgs,
        ),
        ToolSpec(
            name="set_generation_mode",
            description="Record the user's choice of auto or manual generation and start writing.",
            args_schema=SetGenerationModeArgs,
        ),
        ToolSpec(
            name="save_chapter",
            description="Save one generated chapter. Saving an existing number revises it.",
            args_schema=SaveChapterArgs,
            saves_chapter=True,
        ),
        ToolSpec(
            name="revise_chapter",
            description="Replace the text of an existing chapter, keeping the previous version in history.",
            args_schema=ReviseChapterArgs,
        ),
        ToolSpec(
            name="update_book_metadata",
            description="Update book metadata (genre, target audience, page count, language, tone).",
            args_schema=UpdateBookMetadataArgs,
        ),
        ToolSpec(
            name="save_checkpoint",
            description="Save a progress checkpoint to enable resume.",
            args_schema=SaveCheckpointArgs,
        ),
        ToolSpec(
            name="get_book_context",
            description="Read the foundation, structure and progress of the book.",
            args_schema=GetBookContextArgs,
        ),
    ]

    for spec in specs:
        spec.capability = capability(spec.name)
    return {spec.name: spec for spec in specs}


# ==================== 处理函数 ====================

def create_book_tools(
    store: ProjectStore,
    project_id: str,
    checkpoint_fn: Optional[Callable[[str, str, Dict[str, Any]], Any]] = None,
) -> Dict[str, Callable[[BaseModel], Any]]:
    """创建绑定到项目的工具处理函数

    Args:
        store: 项目存储
        project_id: 项目ID
        checkpoint_fn: 写检查点的回调 (project_id, step, data)，供 save_checkpoint 使用

    Returns:
        工具名 -> 处理函数
    """

    def _require_structure(tool_name: str):
        project = store.get_project(project_id)
        if project.structure is None:
            raise ToolExecutionError(tool_name, "尚未保存书籍结构，不能写章节", hint="先调用 save_structure")
        return project, project.structure

    def _check_chapter_number(tool_name: str, structure: Structure, chapter_number: int):
        valid = reading_order(structure)
        if chapter_number not in valid:
            raise ToolExecutionError(
                tool_name,
                f"章节编号 {chapter_number} 超出结构范围（有效编号: {valid[0]}..{valid[-1]}）",
                hint="0 仅在有序章时有效，N+1 仅在有尾声时有效",
            )

    def ask_question(params: AskQuestionArgs) -> Dict[str, Any]:
        return {
            "question": params.question,
            "suggestions": list(params.suggestions),
            "allow_custom_input": params.allow_custom_input,
        }

    def save_story_ideas(params: SaveStoryIdeasArgs) -> Dict[str, Any]:
        project = store.get_project(project_id)
        project.story_ideas = list(params.ideas)
        store.save_project(project)
        return {"count": len(params.ideas)}

    def save_foundation(params: SaveFoundationArgs) -> Dict[str, Any]:
        project = store.get_project(project_id)
        project.foundation = Foundation(**params.model_dump())
        project.current_step = "foundation_saved"
        store.save_project(project)
        logger.info(f"✅ 基础设定已保存: {project_id}")
        return {"genre": params.genre, "target_word_count": params.target_word_count}

    def save_structure(params: SaveStructureArgs) -> Dict[str, Any]:
        project = store.get_project(project_id)
        if project.foundation is None:
            raise ToolExecutionError("save_structure", "尚未保存基础设定，不能保存结构", hint="先调用 save_foundation")
        project.structure = Structure(**params.model_dump())
        project.current_step = "structure_saved"
        store.save_project(project)
        logger.info(f"✅ 书籍结构已保存: {project_id}（{params.chapter_count} 章）")
        return {"chapter_count": params.chapter_count, "total_items": total_items(project.structure)}

    def set_generation_mode(params: SetGenerationModeArgs) -> Dict[str, Any]:
        project = store.get_project(project_id)
        if project.structure is None:
            raise ToolExecutionError("set_generation_mode", "尚未保存书籍结构，不能开始写作")
        project.mode = GenerationMode(params.mode)
        project.start_confirmed = True
        project.current_step = "generation_started"
        store.save_project(project)
        return {"mode": params.mode}

    def save_chapter(params: SaveChapterArgs) -> Dict[str, Any]:
        project, structure = _require_structure("save_chapter")
        _check_chapter_number("save_chapter", structure, params.chapter_number)
        chapter = store.save_chapter_version(
            project_id,
            params.chapter_number,
            title=params.title,
            content=params.content,
            word_count=params.word_count,
            changed_by="ai",
            change_description="generated",
        )
        project.current_step = f"chapter_{params.chapter_number}"
        store.save_project(project)
        logger.info(f"✅ 章节已保存: {project_id} #{params.chapter_number}（v{chapter.version}）")
        return {
            "chapter_number": chapter.chapter_number,
            "title": chapter.title,
            "word_count": chapter.word_count,
            "version": chapter.version,
        }

    def revise_chapter(params: ReviseChapterArgs) -> Dict[str, Any]:
        _, structure = _require_structure("revise_chapter")
        _check_chapter_number("revise_chapter", structure, params.chapter_number)
        existing = store.get_chapter(project_id, params.chapter_number)
        if existing is None:
            raise ToolExecutionError(
                "revise_chapter",
                f"章节 {params.chapter_number} 不存在，无法修订",
                hint="新章节请使用 save_chapter",
            )
        # 已写章节不能被修订成空章节
        word_count = len(params.content.split())
        if word_count == 0:
            raise ToolExecutionError(
                "revise_chapter",
                f"章节 {params.chapter_number} 的修订内容为空",
                hint="请提供完整的章节正文",
            )
        chapter = store.save_chapter_version(
            project_id,
            params.chapter_number,
            title=params.title or existing.title,
            content=params.content,
            word_count=word_count,
            changed_by="ai",
            change_description=params.reason,
        )
        return {
            "chapter_number": chapter.chapter_number,
            "title": chapter.title,
            "word_count": chapter.word_count,
            "version": chapter.version,
        }

    def update_book_metadata(params: UpdateBookMetadataArgs) -> Dict[str, Any]:
        project = store.get_project(project_id)
        updates = params.model_dump(exclude_none=True)
        project.metadata = BookMetadata(**{**project.metadata.model_dump(), **updates})
        store.save_project(project)
        return {"updated": sorted(updates)}

    def save_checkpoint(params: SaveCheckpointArgs) -> Dict[str, Any]:
        if checkpoint_fn is None:
            raise ToolExecutionError("save_checkpoint", "当前回合不支持写检查点")
        checkpoint_fn(project_id, params.step, params.data)
        return {"step": params.step}

    def get_book_context(params: GetBookContextArgs) -> Dict[str, Any]:
        state = store.load_state(project_id)
        return summarize_progress(state)

    return {
        "ask_question": ask_question,
        "save_story_ideas": save_story_ideas,
        "save_foundation": save_foundation,
        "save_structure": save_structure,
        "set_generation_mode": set_generation_mode,
        "save_chapter": save_chapter,
        "revise_chapter": revise_chapter,
        "update_book_metadata": update_book_metadata,
        "save_checkpoint": save_checkpoint,
        "get_book_context": get_book_context,
    }


def summarize_progress(state) -> Dict[str, Any]:
    """书籍进度摘要（已写章节 + 200 字预览）

    Args:
        state: ProjectState

    Returns:
        可直接序列化的摘要字典
    """
    project = state.project
    structure = project.structure
    summaries = []
    for chapter in state.chapters:
        if not chapter.is_written:
            continue
        summaries.append({
            "chapter_number": chapter.chapter_number,
            "title": chapter.title,
            "word_count": chapter.word_count,
            "preview": chapter.content[:PREVIEW_LENGTH],
        })
    return {
        "title": project.title,
        "type": project.type,
        "mode": project.mode.value,
        "foundation": project.foundation.model_dump() if project.foundation else None,
        "structure": structure.model_dump() if structure else None,
        "completed_count": count_written_items(state),
        "total_count": total_items(structure) if structure else 0,
        "chapters": summaries,
    }
