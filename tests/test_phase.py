"""
阶段推导测试
"""
import pytest

from bookgen.errors import MalformedProjectError
from bookgen.models import GenerationMode, Phase, Structure
from bookgen.runtime.phase import (
    count_written_items, next_chapter_target, resolve_phase, total_items,
)


class TestResolvePhase:

    def test_no_foundation_is_foundation(self, fx):
        state = fx.state(foundation=False)
        assert resolve_phase(state) == Phase.FOUNDATION

    def test_foundation_without_structure_is_structure(self, fx):
        assert resolve_phase(fx.state()) == Phase.STRUCTURE

    def test_structure_without_confirmation_waits_for_start(self, fx):
        manual = fx.state(structure=fx.structure(), mode=GenerationMode.MANUAL)
        auto = fx.state(structure=fx.structure(), mode=GenerationMode.AUTO)
        assert resolve_phase(manual) == Phase.APPROVAL_TO_START_MANUAL
        assert resolve_phase(auto) == Phase.APPROVAL_TO_START_AUTO

    def test_confirmed_start_enters_generation(self, fx):
        manual = fx.state(structure=fx.structure(), start_confirmed=True)
        auto = fx.state(structure=fx.structure(), mode=GenerationMode.AUTO, start_confirmed=True)
        assert resolve_phase(manual) == Phase.MANUAL_GENERATION
        assert resolve_phase(auto) == Phase.AUTO_GENERATION

    def test_written_chapter_skips_start_approval(self, fx):
        state = fx.state(structure=fx.structure(), written=[1])
        assert resolve_phase(state) == Phase.MANUAL_GENERATION

    def test_all_written_is_complete(self, fx):
        state = fx.state(structure=fx.structure(3), written=[1, 2, 3])
        assert resolve_phase(state) == Phase.COMPLETE

    def test_unwritten_prologue_keeps_generation(self, fx):
        structure = fx.structure(5, has_prologue=True)
        state = fx.state(structure=structure, written=[1, 2, 3, 4, 5], mode=GenerationMode.AUTO)
        assert total_items(structure) == 6
        assert count_written_items(state) == 5
        assert resolve_phase(state) == Phase.AUTO_GENERATION
        assert next_chapter_target(state) == 0

    def test_epilogue_only_counts_after_all_regular_chapters(self, fx):
        structure = fx.structure(3, has_epilogue=True)
        early = fx.state(structure=structure, written=[1, 4])
        assert count_written_items(early) == 1
        assert resolve_phase(early) == Phase.MANUAL_GENERATION

        done = fx.state(structure=structure, written=[1, 2, 3, 4])
        assert count_written_items(done) == 4
        assert resolve_phase(done) == Phase.COMPLETE

    def test_empty_content_is_not_written(self, fx):
        state = fx.state(structure=fx.structure(2), written=[1, 2])
        state.chapters[1].content = ""
        assert resolve_phase(state) == Phase.MANUAL_GENERATION
        assert next_chapter_target(state) == 2

    def test_resolution_is_idempotent(self, fx):
        state = fx.state(structure=fx.structure(4, has_prologue=True), written=[0, 1])
        phases = {resolve_phase(state) for _ in range(5)}
        assert phases == {Phase.MANUAL_GENERATION}

    def test_current_step_is_ignored(self, fx):
        state = fx.state()
        state.project.current_step = "chapter_9"
        assert resolve_phase(state) == Phase.STRUCTURE


class TestMalformedProject:

    def test_zero_chapter_count(self, fx):
        state = fx.state(structure=Structure(chapter_count=0))
        with pytest.raises(MalformedProjectError):
            resolve_phase(state)

    def test_structure_without_foundation(self, fx):
        state = fx.state(foundation=False, structure=fx.structure())
        with pytest.raises(MalformedProjectError):
            resolve_phase(state)


class TestNextChapterTarget:

    def test_reading_order(self, fx):
        structure = fx.structure(2, has_prologue=True, has_epilogue=True)
        assert next_chapter_target(fx.state(structure=structure)) == 0
        assert next_chapter_target(fx.state(structure=structure, written=[0])) == 1
        assert next_chapter_target(fx.state(structure=structure, written=[0, 1, 2])) == 3
        assert next_chapter_target(fx.state(structure=structure, written=[0, 1, 2, 3])) is None

    def test_gap_is_filled_first(self, fx):
        state = fx.state(structure=fx.structure(5), written=[1, 2, 4])
        assert next_chapter_target(state) == 3
