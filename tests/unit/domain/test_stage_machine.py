"""Tests for pipeline stage transitions, queries and validation."""

from datetime import datetime, timezone

from character_tools.domain.entities.character import Character
from character_tools.domain.entities.pipeline_state import Stage, StageResult, StageStatus, utcnow
from character_tools.domain.entities.presets import DEFAULT_STAGE_CONFIGS
from character_tools.domain.services import iteration_controller, stage_machine
from character_tools.domain.services.preset_catalog import PresetCatalog


class TestLifecycle:
    """Creating, selecting and resetting."""

    def test_initial_state(self):
        """Score and rewrite are selected; every stage is pending."""
        state = stage_machine.create_initial_state()
        assert state.selected_stages == [Stage.SCORE, Stage.REWRITE]
        assert all(state.status(s) is StageStatus.PENDING for s in Stage)
        assert state.configs == DEFAULT_STAGE_CONFIGS
        assert state.character is None
        assert state.iteration_count == 0

    def test_select_initializes_field_selection(self, state):
        """All populated fields are selected, list fields with every entry."""
        assert state.character_index == 0
        assert state.selected_fields["description"] is True
        assert state.selected_fields["first_mes"] is True
        assert state.selected_fields["alternate_greetings"] == [0, 1]

    def test_reselecting_same_index_is_noop(self, state, character, complete):
        """Progress survives selecting the same card again."""
        state = complete(state, Stage.SCORE, "7/10")
        again = stage_machine.set_source_content(state, character, 0)
        assert again is state

    def test_selecting_other_card_resets_progress(self, state, complete):
        """A different card drops results but keeps the chosen stages."""
        state = stage_machine.toggle_stage(complete(state, Stage.SCORE, "7/10"), Stage.ANALYZE)
        other = Character(name="Bram", avatar="bram.png", description="A smith.")
        switched = stage_machine.set_source_content(state, other, 1)
        assert switched.character.name == "Bram"
        assert switched.result(Stage.SCORE) is None
        assert switched.selected_stages == [Stage.SCORE, Stage.REWRITE, Stage.ANALYZE]
        assert switched.selected_fields == {"description": True}

    def test_reset_keeps_character_on_request(self, state, complete):
        state = complete(state, Stage.SCORE, "7/10")
        kept = stage_machine.reset_pipeline(state, keep_character=True)
        assert kept.character == state.character
        assert kept.selected_fields == state.selected_fields
        assert kept.result(Stage.SCORE) is None

        cleared = stage_machine.reset_pipeline(state)
        assert cleared.character is None

    def test_input_state_not_modified(self, state):
        """Transitions return new values and leave the input alone."""
        before = state.model_dump()
        stage_machine.start_stage(state, Stage.SCORE)
        stage_machine.toggle_stage(state, Stage.ANALYZE)
        stage_machine.select_all_fields(state, False)
        assert state.model_dump() == before


class TestSyncSourceIndex:
    """Re-validating the cached index after the library changed."""

    def test_index_still_valid(self, state, character):
        assert stage_machine.sync_source_index(state, [character]) is state

    def test_card_moved(self, state, character):
        other = Character(name="Bram", avatar="bram.png", description="A smith.")
        synced = stage_machine.sync_source_index(state, [other, character])
        assert synced.character_index == 1
        assert synced.character == character

    def test_card_removed(self, state):
        other = Character(name="Bram", avatar="bram.png", description="A smith.")
        synced = stage_machine.sync_source_index(state, [other])
        assert synced.character is None
        assert synced.character_index is None


class TestSelection:
    """Stage and field selection."""

    def test_stages_kept_in_canonical_order(self, state):
        state = stage_machine.set_selected_stages(state, [Stage.ANALYZE, Stage.SCORE])
        assert state.selected_stages == [Stage.SCORE, Stage.ANALYZE]
        state = stage_machine.toggle_stage(state, Stage.REWRITE)
        assert state.selected_stages == [Stage.SCORE, Stage.REWRITE, Stage.ANALYZE]

    def test_select_all_stages(self, state):
        assert stage_machine.select_all_stages(state).selected_stages == list(Stage)
        assert stage_machine.select_all_stages(state, False).selected_stages == []

    def test_toggle_list_field_entry(self, state):
        state = stage_machine.toggle_field_entry(state, "alternate_greetings", 0)
        assert state.selected_fields["alternate_greetings"] == [1]

    def test_toggle_list_field_switches_all_entries(self, state):
        state = stage_machine.toggle_field(state, "alternate_greetings")
        assert state.selected_fields["alternate_greetings"] == []
        state = stage_machine.toggle_field(state, "alternate_greetings")
        assert state.selected_fields["alternate_greetings"] == [0, 1]

    def test_toggle_scalar_field(self, state):
        state = stage_machine.toggle_field(state, "personality")
        assert state.selected_fields["personality"] is False


class TestCanRunStage:
    """Stage preconditions."""

    def test_no_character(self):
        check = stage_machine.can_run_stage(stage_machine.create_initial_state(), Stage.SCORE)
        assert not check.can_run
        assert check.reason == stage_machine.NO_CHARACTER

    def test_no_fields(self, state):
        check = stage_machine.can_run_stage(stage_machine.select_all_fields(state, False), Stage.SCORE)
        assert not check.can_run
        assert check.reason == stage_machine.NO_FIELDS

    def test_selection_of_missing_field_cannot_run(self, state):
        state = stage_machine.set_field_selection(state, {"no_such_field": True})
        check = stage_machine.can_run_stage(state, Stage.SCORE)
        assert not check.can_run
        assert check.reason == stage_machine.NO_FIELDS

    def test_rewrite_without_score_is_advisory(self, state):
        """Rewrite may run before score; the reason is only a warning."""
        check = stage_machine.can_run_stage(state, Stage.REWRITE)
        assert check.can_run
        assert check.reason == stage_machine.SCORE_INCOMPLETE

    def test_rewrite_after_score(self, state, complete):
        check = stage_machine.can_run_stage(complete(state, Stage.SCORE, "7/10"), Stage.REWRITE)
        assert check.can_run
        assert check.reason is None

    def test_analyze_needs_rewrite(self, state, complete):
        assert not stage_machine.can_run_stage(state, Stage.ANALYZE).can_run
        assert stage_machine.can_run_stage(complete(state, Stage.REWRITE, "new"), Stage.ANALYZE).can_run


class TestExecution:
    """start / complete / fail / skip / lock."""

    def test_start_marks_running(self, state):
        running = stage_machine.start_stage(state, Stage.SCORE)
        assert running.current_stage is Stage.SCORE
        assert running.status(Stage.SCORE) is StageStatus.RUNNING

    def test_complete_installs_unlocked_result(self, state):
        running = stage_machine.start_stage(state, Stage.SCORE)
        done = stage_machine.complete_stage(running, Stage.SCORE, StageResult(response="7/10", locked=True))
        assert done.current_stage is None
        assert done.status(Stage.SCORE) is StageStatus.COMPLETE
        assert done.result(Stage.SCORE).response == "7/10"
        assert done.result(Stage.SCORE).locked is False

    def test_complete_stamps_completion_time(self, state):
        stale = StageResult(response="7/10", timestamp=datetime(2000, 1, 1, tzinfo=timezone.utc))
        before = utcnow()
        done = stage_machine.complete_stage(state, Stage.SCORE, stale)
        assert done.result(Stage.SCORE).timestamp >= before

    def test_complete_analyze_opens_refinement(self, state, complete):
        state = complete(complete(state, Stage.REWRITE, "new"), Stage.ANALYZE, "Verdict: ACCEPT")
        assert state.is_refining is True

    def test_fail_keeps_previous_result(self, state, complete):
        """A failed rerun rolls back to pending without losing the old result."""
        state = complete(state, Stage.SCORE, "first")
        failed = stage_machine.fail_stage(stage_machine.start_stage(state, Stage.SCORE), Stage.SCORE, "boom")
        assert failed.status(Stage.SCORE) is StageStatus.PENDING
        assert failed.current_stage is None
        assert failed.result(Stage.SCORE).response == "first"

    def test_lock_and_unlock(self, state, complete):
        assert stage_machine.lock_stage_result(state, Stage.SCORE) is state
        state = stage_machine.lock_stage_result(complete(state, Stage.SCORE, "7/10"), Stage.SCORE)
        assert stage_machine.is_stage_result_locked(state, Stage.SCORE)
        state = stage_machine.unlock_stage_result(state, Stage.SCORE)
        assert not stage_machine.is_stage_result_locked(state, Stage.SCORE)

    def test_clear_result(self, state, complete):
        state = stage_machine.clear_stage_result(complete(state, Stage.SCORE, "7/10"), Stage.SCORE)
        assert state.result(Stage.SCORE) is None
        assert state.status(Stage.SCORE) is StageStatus.PENDING


class TestQueries:
    """Navigation, completion and summary."""

    def test_navigation(self, state):
        assert stage_machine.get_next_stage(state, Stage.SCORE) is Stage.REWRITE
        assert stage_machine.get_next_stage(state, Stage.REWRITE) is None
        assert stage_machine.get_previous_stage(state, Stage.REWRITE) is Stage.SCORE
        assert stage_machine.get_previous_stage(state, Stage.SCORE) is None
        assert stage_machine.get_next_stage(state, Stage.ANALYZE) is None

    def test_completion_counts_skipped(self, state, complete):
        assert stage_machine.get_first_incomplete_stage(state) is Stage.SCORE
        state = stage_machine.skip_stage(state, Stage.SCORE)
        assert stage_machine.get_first_incomplete_stage(state) is Stage.REWRITE
        assert not stage_machine.is_pipeline_complete(state)
        state = complete(state, Stage.REWRITE, "new")
        assert stage_machine.is_pipeline_complete(state)
        assert stage_machine.get_first_incomplete_stage(state) is None

    def test_can_export_needs_rewrite(self, state, complete):
        assert not stage_machine.can_export(state)
        assert stage_machine.can_export(complete(state, Stage.REWRITE, "new"))

    def test_summary(self, state, complete):
        state = stage_machine.lock_stage_result(complete(state, Stage.SCORE, "7/10"), Stage.SCORE)
        summary = stage_machine.get_pipeline_summary(state)
        assert summary["character"] == "Aria"
        assert summary["completed_stages"] == ["score"]
        assert summary["locked_stages"] == ["score"]
        assert summary["last_verdict"] is None
        assert summary["can_export"] is False


class TestValidatePipeline:
    """Pre-run validation."""

    def test_valid(self, state):
        result = stage_machine.validate_pipeline(state, PresetCatalog(), api_connected=True)
        assert result.valid
        assert result.errors == []

    def test_no_character_and_no_api(self):
        result = stage_machine.validate_pipeline(stage_machine.create_initial_state(), PresetCatalog(), False)
        assert not result.valid
        assert stage_machine.NO_CHARACTER in result.errors
        assert "API is not connected" in result.errors

    def test_missing_prompt(self, state):
        state = stage_machine.update_stage_config(state, Stage.SCORE, prompt_preset_id=None, custom_prompt="  ")
        result = stage_machine.validate_pipeline(state, PresetCatalog(), True)
        assert "score: No prompt configured" in result.errors

    def test_no_stages(self, state):
        result = stage_machine.validate_pipeline(stage_machine.select_all_stages(state, False), PresetCatalog(), True)
        assert "No stages selected" in result.errors

    def test_analyze_alone_needs_rewrite(self, state):
        state = stage_machine.set_selected_stages(state, [Stage.ANALYZE])
        result = stage_machine.validate_pipeline(state, PresetCatalog(), True)
        assert "Analyze requires rewrite results" in result.errors

    def test_rewrite_without_score_warns(self, state):
        """Score is selected alongside rewrite but has no result yet."""
        result = stage_machine.validate_pipeline(state, PresetCatalog(), True)
        assert result.valid
        assert result.warnings == ["Rewrite will run without score feedback (score not complete)"]

    def test_no_warning_once_score_has_result(self, state, complete):
        result = stage_machine.validate_pipeline(complete(state, Stage.SCORE, "7/10"), PresetCatalog(), True)
        assert result.warnings == []

    def test_no_warning_for_rewrite_alone(self, state):
        state = stage_machine.set_selected_stages(state, [Stage.REWRITE])
        result = stage_machine.validate_pipeline(state, PresetCatalog(), True)
        assert result.valid
        assert result.warnings == []

    def test_unknown_field_selection_is_error(self, state):
        state = stage_machine.set_field_selection(state, {"no_such_field": True})
        result = stage_machine.validate_pipeline(state, PresetCatalog(), True)
        assert stage_machine.NO_FIELDS in result.errors


class TestValidateRefinement:
    """Refinement preconditions and warnings."""

    def test_needs_analysis(self, state, complete):
        result = stage_machine.validate_refinement(complete(state, Stage.REWRITE, "new"), True)
        assert result.errors == ["Run analyze first to identify issues"]

    def test_long_loop_and_accept_warnings(self, state, complete):
        state = complete(complete(state, Stage.REWRITE, "new"), Stage.ANALYZE, "VERDICT: ACCEPT")
        state = iteration_controller.start_refinement(state)
        state = complete(state, Stage.ANALYZE, "VERDICT: ACCEPT")
        state = state.model_copy(update={"iteration_count": 5})
        result = stage_machine.validate_refinement(state, True, warn_after_iterations=5)
        assert result.valid
        assert "Last analysis suggested accepting the rewrite" in result.warnings
        assert "Already at iteration 6 - consider accepting or starting fresh" in result.warnings


class TestSerialization:
    """Persisted form of a state."""

    def test_card_reattached_by_index(self, state, character, complete):
        state = complete(state, Stage.SCORE, "7/10")
        data = stage_machine.serialize_pipeline_state(state)
        assert "character" not in data
        assert "current_stage" not in data

        restored = stage_machine.deserialize_pipeline_state(data, [character])
        assert restored.character == character
        assert restored.result(Stage.SCORE).response == "7/10"
        assert restored.selected_fields == state.selected_fields

    def test_missing_card_clears_index(self, state):
        restored = stage_machine.deserialize_pipeline_state(stage_machine.serialize_pipeline_state(state), [])
        assert restored.character is None
        assert restored.character_index is None

    def test_malformed_returns_none(self):
        assert stage_machine.deserialize_pipeline_state({"iteration_count": "many"}, []) is None
