"""
测试公共夹具
"""
import pytest

from bookgen.agent.runtime import ScriptedAgentRuntime
from bookgen.config import EngineConfig
from bookgen.credits import InMemoryCreditLedger
from bookgen.models import (
    Chapter, Foundation, GenerationMode, Project, ProjectState, Structure,
)
from bookgen.runtime.store import SQLiteProjectStore
from bookgen.services.book_service import BookService


class TestFixtures:
    """测试夹具工厂"""

    @staticmethod
    def foundation() -> Foundation:
        return Foundation(
            synopsis="A lighthouse keeper discovers the light guides ships between worlds.",
            themes=["duty", "isolation"],
            target_audience="adult",
            target_word_count=60000,
            genre="fantasy",
        )

    @staticmethod
    def structure(chapter_count: int = 5, has_prologue: bool = False, has_epilogue: bool = False) -> Structure:
        return Structure(
            chapter_count=chapter_count,
            chapter_titles=[f"Title {i}" for i in range(1, chapter_count + 1)],
            has_prologue=has_prologue,
            has_epilogue=has_epilogue,
            estimated_words_per_chapter=3000,
        )

    @staticmethod
    def chapter_text(chapter_number: int) -> str:
        return (f"Chapter {chapter_number} begins as the fog rolls in over the rocks. " * 4).strip()

    @staticmethod
    def chapter(project_id: str, chapter_number: int) -> Chapter:
        content = TestFixtures.chapter_text(chapter_number)
        return Chapter(
            project_id=project_id,
            chapter_number=chapter_number,
            title=f"Title {chapter_number}",
            content=content,
            word_count=len(content.split()),
            version=1,
        )

    @staticmethod
    def state(
        foundation: bool = True,
        structure: Structure = None,
        written=(),
        mode: GenerationMode = GenerationMode.MANUAL,
        start_confirmed: bool = False,
    ) -> ProjectState:
        project = Project(
            title="The Keeper",
            mode=mode,
            start_confirmed=start_confirmed,
            foundation=TestFixtures.foundation() if foundation else None,
            structure=structure,
        )
        return ProjectState(
            project=project,
            chapters=[TestFixtures.chapter(project.id, n) for n in written],
        )

    # ---- agent 调用 ----

    @staticmethod
    def save_chapter_call(chapter_number: int, title: str = None) -> dict:
        content = TestFixtures.chapter_text(chapter_number)
        return {
            "tool_name": "save_chapter",
            "arguments": {
                "chapter_number": chapter_number,
                "title": title or f"Title {chapter_number}",
                "content": content,
                "word_count": len(content.split()),
            },
        }

    @staticmethod
    def question_call(question: str = "Shall I continue?") -> dict:
        return {
            "tool_name": "ask_question",
            "arguments": {
                "question": question,
                "suggestions": ["Yes", "No", "Later", "Change tone", "Add a twist"],
            },
        }

    @staticmethod
    def foundation_call() -> dict:
        return {"tool_name": "save_foundation", "arguments": TestFixtures.foundation().model_dump()}

    @staticmethod
    def structure_call(chapter_count: int = 5, has_prologue: bool = False, has_epilogue: bool = False) -> dict:
        return {
            "tool_name": "save_structure",
            "arguments": TestFixtures.structure(chapter_count, has_prologue, has_epilogue).model_dump(),
        }

    @staticmethod
    def mode_call(mode: str = "manual") -> dict:
        return {"tool_name": "set_generation_mode", "arguments": {"mode": mode}}


@pytest.fixture
def fx():
    return TestFixtures


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        approval_policy="auto_commit",
        db_path=str(tmp_path / "bookgen.db"),
        conversation_dir=str(tmp_path / "conversations"),
        turn_timeout_seconds=5,
        turn_cost=1,
        chapter_cost=5,
    )


@pytest.fixture
def store(config):
    s = SQLiteProjectStore(config.db_path)
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def runtime():
    return ScriptedAgentRuntime()


@pytest.fixture
def credits():
    return InMemoryCreditLedger()


@pytest.fixture
def service(config, store, runtime, credits):
    return BookService(config=config, store=store, runtime=runtime, credits=credits)


@pytest.fixture
def project_at(service, store, fx):
    """在指定进度上创建项目

    Args:
        structure: 结构（None 表示只到基础设定）
        written: 已写章节编号
        mode / start_confirmed: 生成模式与是否已确认开始
        foundation: 是否已有基础设定
    """
    def _make(structure=None, written=(), mode=GenerationMode.MANUAL, start_confirmed=True, foundation=True):
        project = service.create_project("The Keeper", "fiction", mode)
        project = store.get_project(project.id)
        if foundation:
            project.foundation = fx.foundation()
        project.structure = structure
        project.start_confirmed = start_confirmed
        store.save_project(project)
        for n in written:
            text = fx.chapter_text(n)
            store.save_chapter_version(project.id, n, f"Title {n}", text, len(text.split()))
        return project.id

    return _make
