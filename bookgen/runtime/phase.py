"""
阶段推导

阶段是对持久化数据的纯投影：只看 foundation / structure / mode / start_confirmed / chapters，
从不读取 current_step。同一份数据调用任意次都返回同一个结果。
"""
from typing import List, Optional

from bookgen.errors import MalformedProjectError
from bookgen.models import GenerationMode, Phase, ProjectState, Structure


def _validated_structure(state: ProjectState) -> Optional[Structure]:
    """校验结构相关的不变式"""
    project = state.project
    structure = project.structure
    if structure is None:
        return None
    if project.foundation is None:
        raise MalformedProjectError(
            f"项目 {project.id} 有结构但没有基础设定",
            project_id=project.id,
        )
    if not structure.chapter_count or structure.chapter_count <= 0:
        raise MalformedProjectError(
            f"项目 {project.id} 的 structure.chapter_count 缺失或为 0",
            project_id=project.id,
            chapter_count=structure.chapter_count,
        )
    return structure


def total_items(structure: Structure) -> int:
    """需要写完的条目总数：正文 + 序章 + 尾声"""
    return (
        structure.chapter_count
        + (1 if structure.has_prologue else 0)
        + (1 if structure.has_epilogue else 0)
    )


def count_written_items(state: ProjectState) -> int:
    """已写完的条目数

    尾声只有在全部正文写完之后才计入
    """
    structure = state.project.structure
    if structure is None:
        return 0

    written = set(state.written_numbers())
    regular_written = sum(1 for n in range(1, structure.chapter_count + 1) if n in written)
    count = regular_written

    if structure.has_prologue and 0 in written:
        count += 1

    epilogue_number = structure.chapter_count + 1
    if (
        structure.has_epilogue
        and epilogue_number in written
        and regular_written == structure.chapter_count
    ):
        count += 1

    return count


def all_items_written(state: ProjectState) -> bool:
    structure = _validated_structure(state)
    if structure is None:
        return False
    return count_written_items(state) >= total_items(structure)


def reading_order(structure: Structure) -> List[int]:
    """按阅读顺序列出所有需要写的章节编号"""
    numbers: List[int] = []
    if structure.has_prologue:
        numbers.append(0)
    numbers.extend(range(1, structure.chapter_count + 1))
    if structure.has_epilogue:
        numbers.append(structure.chapter_count + 1)
    return numbers


def next_chapter_target(state: ProjectState) -> Optional[int]:
    """下一个要写的章节编号（按阅读顺序的第一个未写条目）

    全部写完或还没有结构时返回 None
    """
    structure = _validated_structure(state)
    if structure is None:
        return None
    written = set(state.written_numbers())
    for number in reading_order(structure):
        if number not in written:
            return number
    return None


def last_completed_chapter(state: ProjectState) -> Optional[int]:
    """阅读顺序中最后一个已写完的章节编号"""
    structure = state.project.structure
    if structure is None:
        return None
    written = set(state.written_numbers())
    completed = [n for n in reading_order(structure) if n in written]
    return completed[-1] if completed else None


def resolve_phase(state: ProjectState) -> Phase:
    """从项目数据推导当前阶段（第一个命中的规则生效）

    Raises:
        MalformedProjectError: 结构数据违反不变式
    """
    project = state.project

    if project.foundation is None:
        if project.structure is not None:
            _validated_structure(state)
        return Phase.FOUNDATION

    structure = _validated_structure(state)
    if structure is None:
        return Phase.STRUCTURE

    written_count = count_written_items(state)
    any_written = bool(state.written_numbers())

    if not any_written and not project.start_confirmed:
        if project.mode == GenerationMode.AUTO:
            return Phase.APPROVAL_TO_START_AUTO
        return Phase.APPROVAL_TO_START_MANUAL

    if written_count >= total_items(structure):
        return Phase.COMPLETE

    if project.mode == GenerationMode.AUTO:
        return Phase.AUTO_GENERATION
    return Phase.MANUAL_GENERATION
