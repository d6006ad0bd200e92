"""
指令合成
按阶段生成给 agent 的指令、步数预算和本回合可用工具集

纯函数：只读 ProjectState，不写存储
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bookgen.models import Phase, ProjectState, Rejection
from bookgen.runtime.phase import (
    count_written_items, last_completed_chapter, next_chapter_target, total_items,
)
from bookgen.tools.book_tools import PREVIEW_LENGTH, book_tool_specs
from bookgen.tools.registry import ToolSpec


STEP_BUDGETS: Dict[Phase, int] = {
    Phase.FOUNDATION: 3,
    Phase.STRUCTURE: 3,
    Phase.APPROVAL_TO_START_AUTO: 3,
    Phase.APPROVAL_TO_START_MANUAL: 3,
    Phase.AUTO_GENERATION: 15,
    Phase.MANUAL_GENERATION: 2,
    Phase.COMPLETE: 3,
}

# 每回合最多保存的章节数（None 表示不限，仅受步数预算约束）
MAX_CHAPTER_SAVES: Dict[Phase, Optional[int]] = {
    Phase.MANUAL_GENERATION: 1,
}

PHASE_TOOLS: Dict[Phase, List[str]] = {
    Phase.FOUNDATION: [
        "ask_question", "save_story_ideas", "save_foundation", "update_book_metadata", "save_checkpoint",
    ],
    Phase.STRUCTURE: ["ask_question", "save_structure", "update_book_metadata", "get_book_context"],
    Phase.APPROVAL_TO_START_AUTO: ["ask_question", "set_generation_mode", "get_book_context"],
    Phase.APPROVAL_TO_START_MANUAL: ["ask_question", "set_generation_mode", "get_book_context"],
    Phase.AUTO_GENERATION: ["save_chapter", "revise_chapter", "ask_question", "get_book_context", "save_checkpoint"],
    Phase.MANUAL_GENERATION: ["save_chapter", "revise_chapter", "ask_question", "get_book_context", "save_checkpoint"],
    Phase.COMPLETE: ["ask_question", "revise_chapter", "update_book_metadata", "get_book_context"],
}

# 基础设定阶段按书籍类别提问（未知类别回退到 educational）
FOUNDATION_QUESTIONS: Dict[str, List[str]] = {
    "fiction": [
        "Synopsis / story idea",
        "Main themes",
        "Main characters",
        "Setting / world",
        "Central conflict",
        "Tone / style",
        "Target audience",
        "Target word count",
    ],
    "non_fiction": [
        "Core topic / subject",
        "Target reader",
        "Main arguments / points",
        "Writing approach",
        "Target word count",
    ],
    "childrens": [
        "Main theme / lesson",
        "Character concepts",
        "Age group",
        "Story style",
        "Target page count",
    ],
    "educational": [
        "Learning objectives",
        "Target level",
        "Knowledge progression",
        "Exercise types",
        "Target length",
    ],
}

_TYPE_ALIASES = {
    "non-fiction": "non_fiction",
    "nonfiction": "non_fiction",
    "children's": "childrens",
    "children": "childrens",
    "kids": "childrens",
}


class TurnDirective(BaseModel):
    """单回合指令"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    phase: Phase
    instructions: str
    step_budget: int
    tools: List[ToolSpec] = Field(default_factory=list)
    max_chapter_saves: Optional[int] = None

    @property
    def tool_names(self) -> List[str]:
        return [t.name for t in self.tools]


def foundation_questions(book_type: str) -> List[str]:
    key = (book_type or "").strip().lower().replace(" ", "_")
    key = _TYPE_ALIASES.get(key, key)
    return FOUNDATION_QUESTIONS.get(key, FOUNDATION_QUESTIONS["educational"])


def _header(state: ProjectState) -> str:
    project = state.project
    return (
        f'You are an expert book writing assistant helping create a {project.type} book '
        f'titled "{project.title}".\n\n'
        "RULES:\n"
        "- Ask at most ONE question per turn using ask_question, then stop.\n"
        "- Never ask questions in plain text.\n"
        "- Do not explain your reasoning; call tools.\n"
    )


def _rejection_note(rejection: Optional[Rejection]) -> str:
    if rejection is None:
        return ""
    reason = rejection.reason or "no reason given"
    return (
        f"\nPREVIOUS PROPOSAL REJECTED: the user rejected your {rejection.tool_name} proposal "
        f"({reason}). Take this feedback into account and propose something different.\n"
    )


def progress_summary(state: ProjectState) -> str:
    """已完成章节摘要，注入到生成阶段的指令中"""
    structure = state.project.structure
    written = [ch for ch in state.chapters if ch.is_written]
    if structure is None or not written:
        return ""

    lines = [
        "",
        "BOOK PROGRESS SUMMARY:",
        f"Completed chapters ({count_written_items(state)}/{total_items(structure)}):",
    ]
    for ch in written:
        lines.append(f'- Chapter {ch.chapter_number}: "{ch.title}" ({ch.word_count} words)')
        lines.append(f"  Preview: {ch.content[:PREVIEW_LENGTH]}...")
    return "\n".join(lines) + "\n"


def _foundation_text(state: ProjectState) -> str:
    project = state.project
    questions = foundation_questions(project.type)
    numbered = "\n".join(f"  {i}. {q}" for i, q in enumerate(questions, 1))
    return (
        "PHASE: FOUNDATION\n"
        f"Gather the essential elements of this {project.type} book one question at a time:\n"
        f"{numbered}\n"
        "Each ask_question call must include exactly 5 unique, creative suggestions.\n"
        "If the user's prompt is vague, you may call save_story_ideas with 3-5 concepts.\n"
        "Once every element is known, call save_foundation (no approval needed).\n"
    )


def _structure_text(state: ProjectState) -> str:
    foundation = state.project.foundation
    return (
        "PHASE: STRUCTURE\n"
        f"Foundation synopsis: {foundation.synopsis}\n"
        f"Target word count: {foundation.target_word_count}\n"
        "Design a professional structure: prologue/epilogue needs, chapter count and titles, "
        "parts if needed, estimated words per chapter.\n"
        "Call save_structure with your proposal. The user must approve it before writing starts.\n"
    )


def _approval_to_start_text(phase: Phase, state: ProjectState) -> str:
    structure = state.project.structure
    suggested = "auto" if phase == Phase.APPROVAL_TO_START_AUTO else "manual"
    return (
        "PHASE: APPROVAL TO START\n"
        f"The structure is ready: {structure.chapter_count} chapters"
        f"{', with prologue' if structure.has_prologue else ''}"
        f"{', with epilogue' if structure.has_epilogue else ''}.\n"
        f"Current mode: {suggested}.\n"
        "Ask the user whether to generate continuously (auto) or one chapter at a time (manual).\n"
        "When they confirm, call set_generation_mode with their choice.\n"
    )


def _generation_text(phase: Phase, state: ProjectState) -> str:
    structure = state.project.structure
    target = next_chapter_target(state)
    last = last_completed_chapter(state)
    total = total_items(structure)
    done = count_written_items(state)
    target_title = structure.title_for(target) if target is not None else ""
    last_text = f"Chapter {last} is the last completed chapter." if last is not None else "No chapter written yet."

    if phase == Phase.AUTO_GENERATION:
        mode_text = (
            "AUTO MODE: generate the remaining chapters in one continuous sequence using save_chapter, "
            "in reading order, without waiting for the user.\n"
        )
    else:
        mode_text = (
            "MANUAL MODE: generate exactly ONE chapter with save_chapter, then stop. "
            "The user decides whether to continue.\n"
        )

    return (
        f"PHASE: {phase.value.upper()}\n"
        f"Progress: {done} of {total} items written. {last_text}\n"
        f'Next chapter to write: {target} "{target_title}".\n'
        "Chapter numbering: 0 = prologue, 1..N = chapters, N+1 = epilogue.\n"
        + mode_text
        + progress_summary(state)
    )


def _complete_text(state: ProjectState) -> str:
    structure = state.project.structure
    return (
        "PHASE: COMPLETE\n"
        f"All {total_items(structure)} items of the book are written.\n"
        "Help the user polish the book: revise chapters on request with revise_chapter "
        "or update metadata. Do not write new chapters.\n"
        + progress_summary(state)
    )


def synthesize(phase: Phase, state: ProjectState, policy: str = "auto_commit") -> TurnDirective:
    """为阶段生成指令、步数预算与工具集

    Args:
        phase: resolve_phase 的结果
        state: 项目快照
        policy: 审批策略，决定工具的能力标记

    Returns:
        TurnDirective
    """
    if phase == Phase.FOUNDATION:
        body = _foundation_text(state)
    elif phase == Phase.STRUCTURE:
        body = _structure_text(state)
    elif phase.is_approval_to_start:
        body = _approval_to_start_text(phase, state)
    elif phase.is_generation:
        body = _generation_text(phase, state)
    else:
        body = _complete_text(state)

    all_specs = book_tool_specs(policy)
    tools = [all_specs[name] for name in PHASE_TOOLS[phase]]

    return TurnDirective(
        phase=phase,
        instructions=_header(state) + "\n" + body + _rejection_note(state.last_rejection),
        step_budget=STEP_BUDGETS[phase],
        tools=tools,
        max_chapter_saves=MAX_CHAPTER_SAVES.get(phase),
    )
