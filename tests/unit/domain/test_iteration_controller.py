"""Tests for the refinement loop: verdicts, snapshots, revert, accept."""

import pytest

from character_tools.domain.entities.pipeline_state import Stage, StageResult, StageStatus, Verdict
from character_tools.domain.services import iteration_controller
from character_tools.domain.services.iteration_controller import (
    RESTORED_MARKER,
    accept_rewrite,
    can_refine,
    complete_refinement,
    extract_verdict,
    revert_to_iteration,
    start_refinement,
)


@pytest.fixture
def analyzed(state, complete):
    """State with a rewrite and its analysis."""
    return complete(complete(state, Stage.REWRITE, "REWRITE-1"), Stage.ANALYZE, "ANALYSIS-1 has an issue")


def _refine(state, complete, rewrite, analysis, **kwargs):
    archived = start_refinement(state, **kwargs)
    refined = complete_refinement(archived, StageResult(response=rewrite))
    return complete(refined, Stage.ANALYZE, analysis)


class TestExtractVerdict:
    """Verdict extraction from free-form text."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("## Verdict\n**ACCEPT** - ready", Verdict.ACCEPT),
            ("Verdict: NEEDS REFINEMENT, do not accept yet", Verdict.NEEDS_REFINEMENT),
            ("VERDICT: REGRESSION", Verdict.REGRESSION),
            ("This one is ready to use.", Verdict.ACCEPT),
            ("Honestly worse than the original.", Verdict.REGRESSION),
            ("A few problems remain.", Verdict.NEEDS_REFINEMENT),
            ("", Verdict.NEEDS_REFINEMENT),
        ],
    )
    def test_extract(self, text, expected):
        assert extract_verdict(text) is expected


class TestCanRefine:
    def test_reasons(self, state, complete):
        assert can_refine(state).reason == "No rewrite to refine"
        with_rewrite = complete(state, Stage.REWRITE, "new")
        assert can_refine(with_rewrite).reason == "Run analyze first to identify issues"
        assert can_refine(complete(with_rewrite, Stage.ANALYZE, "ok")).can_run


class TestRefinementCycle:
    """start_refinement / complete_refinement."""

    def test_start_archives_current_cycle(self, analyzed):
        started = start_refinement(analyzed)
        assert started.iteration_count == 1
        assert started.is_refining is True
        assert started.result(Stage.ANALYZE) is None
        assert started.status(Stage.ANALYZE) is StageStatus.PENDING
        assert started.result(Stage.REWRITE).response == "REWRITE-1"

        snapshot = started.iteration_history[0]
        assert snapshot.iteration == 0
        assert snapshot.rewrite_response == "REWRITE-1"
        assert snapshot.analysis_response == "ANALYSIS-1 has an issue"
        assert snapshot.verdict is Verdict.NEEDS_REFINEMENT

    def test_start_without_analysis_is_noop(self, state, complete):
        with_rewrite = complete(state, Stage.REWRITE, "new")
        assert start_refinement(with_rewrite) is with_rewrite

    def test_complete_installs_rewrite(self, analyzed):
        refined = complete_refinement(start_refinement(analyzed), StageResult(response="REWRITE-2", locked=True))
        assert refined.result(Stage.REWRITE).response == "REWRITE-2"
        assert refined.result(Stage.REWRITE).locked is False
        assert refined.status(Stage.REWRITE) is StageStatus.COMPLETE
        assert refined.result(Stage.ANALYZE) is None
        assert refined.current_stage is None

    def test_previews_are_prefixes(self, state, complete):
        long_text = "x" * 500
        state = complete(complete(state, Stage.REWRITE, long_text), Stage.ANALYZE, long_text)
        snapshot = start_refinement(state, preview_length=50).iteration_history[0]
        assert snapshot.rewrite_preview == "x" * 50
        assert snapshot.rewrite_response == long_text

    def test_history_is_bounded_fifo(self, analyzed, complete):
        state = analyzed
        for i in range(2, 5):
            state = _refine(state, complete, f"REWRITE-{i}", f"ANALYSIS-{i}", max_history=2)
        assert state.iteration_count == 3
        assert [s.iteration for s in state.iteration_history] == [1, 2]
        assert len(state.iteration_history) == 2


class TestRevert:
    """revert_to_iteration."""

    def test_revert_restores_archived_rewrite(self, analyzed, complete):
        state = _refine(analyzed, complete, "REWRITE-2", "ANALYSIS-2")
        state = _refine(state, complete, "REWRITE-3", "ANALYSIS-3")
        assert state.iteration_count == 2

        reverted = revert_to_iteration(state, 0)
        rewrite = reverted.result(Stage.REWRITE)
        assert rewrite.response == "REWRITE-1"
        assert rewrite.prompt_used == RESTORED_MARKER
        assert rewrite.is_structured is False
        assert reverted.result(Stage.ANALYZE) is None
        assert reverted.iteration_history == []
        assert reverted.iteration_count == 0
        assert reverted.is_refining is True

    def test_revert_keeps_earlier_history(self, analyzed, complete):
        state = _refine(analyzed, complete, "REWRITE-2", "ANALYSIS-2")
        state = _refine(state, complete, "REWRITE-3", "ANALYSIS-3")
        reverted = revert_to_iteration(state, 1)
        assert reverted.result(Stage.REWRITE).response == "REWRITE-2"
        assert len(reverted.iteration_history) == 1
        assert reverted.iteration_count == 1

    def test_out_of_range_is_noop(self, analyzed):
        assert revert_to_iteration(analyzed, 0) is analyzed
        assert revert_to_iteration(analyzed, -1) is analyzed


class TestAccept:
    def test_accept_locks_rewrite(self, analyzed):
        accepted = accept_rewrite(analyzed)
        assert accepted.result(Stage.REWRITE).locked is True
        assert accepted.is_refining is False

    def test_accept_without_rewrite(self, state):
        assert iteration_controller.accept_rewrite(state) is state
