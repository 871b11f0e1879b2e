"""Tests for the markdown session export."""

from datetime import datetime, timezone

from character_tools.domain.entities.pipeline_state import Stage, StageResult
from character_tools.domain.services.export import generate_export_data, set_export_data
from character_tools.domain.services.iteration_controller import complete_refinement, start_refinement

NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class TestGenerateExportData:
    def test_needs_rewrite(self, state):
        assert generate_export_data(state) is None

    def test_document_layout(self, state, complete):
        state = complete(complete(state, Stage.SCORE, "SCORE-TEXT"), Stage.REWRITE, "REWRITE-TEXT")
        text = generate_export_data(state, NOW)
        lines = text.split("\n")
        assert lines[0] == "# Aria (Rewritten)"
        assert "Generated: 2026-01-02T03:04:05+00:00" in lines
        assert "Iterations: 0" in lines
        assert "- Alternate Greetings (entries: 1, 2)" in lines
        assert "## Original Score" in lines
        assert "## Final Analysis" not in lines
        assert "## Iteration History" not in lines
        assert text.index("REWRITE-TEXT") < text.index("SCORE-TEXT")

    def test_history_has_full_texts(self, state, complete):
        """Archived rewrites and analyses are exported in full, not as previews."""
        long_rewrite = "R" * 600
        state = complete(complete(state, Stage.REWRITE, long_rewrite), Stage.ANALYZE, "VERDICT: ACCEPT")
        state = complete_refinement(start_refinement(state), StageResult(response="REWRITE-TWO"))
        state = complete(state, Stage.ANALYZE, "final thoughts")

        text = generate_export_data(state, NOW)
        assert "Iterations: 1" in text
        assert "### Iteration 1 - ACCEPT" in text
        assert long_rewrite in text
        assert "## Final Analysis\n\nfinal thoughts" in text
        assert text.index("REWRITE-TWO") < text.index("## Iteration History")

    def test_set_export_data(self, state, complete):
        state = set_export_data(complete(state, Stage.REWRITE, "REWRITE-TEXT"), NOW)
        assert state.export_data.startswith("# Aria (Rewritten)")
