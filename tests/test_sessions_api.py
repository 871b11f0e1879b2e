"""Tests for the Sessions API."""

from unittest.mock import AsyncMock

import pytest

from character_tools.api.dependencies import get_session_store
from character_tools.domain.entities.character import Character
from character_tools.domain.ports.llm import LLMResponse
from character_tools.domain.services import stage_machine
from character_tools.infrastructure.persistence.iteration_history import character_key


def _create(api, **body) -> dict:
    response = api.post("/sessions", json=body)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def session(api) -> dict:
    """Session with Aria selected."""
    return _create(api, character_index=0)


class TestSessionLifecycle:
    """Create, read, delete."""

    def test_create_empty(self, api):
        data = _create(api)
        assert data["character"] is None
        assert data["running"] is False
        assert data["summary"]["selected_stages"] == ["score", "rewrite"]

    def test_create_with_character(self, session):
        assert session["character"] == "Aria"
        assert session["state"]["character_index"] == 0

    def test_create_with_stages(self, api):
        data = _create(api, character_index=1, stages=["analyze", "score"])
        assert data["summary"]["selected_stages"] == ["score", "analyze"]

    def test_create_unknown_character(self, api):
        response = api.post("/sessions", json={"character_index": 9})
        assert response.status_code == 404

    def test_get_and_delete(self, api, session):
        assert api.get(f"/sessions/{session['id']}").json()["id"] == session["id"]
        assert api.delete(f"/sessions/{session['id']}").json() == {"ok": True}
        assert api.get(f"/sessions/{session['id']}").status_code == 404
        assert api.delete(f"/sessions/{session['id']}").status_code == 404

    def test_select_character(self, api):
        data = _create(api)
        response = api.post(f"/sessions/{data['id']}/character", json={"index": 1})
        assert response.json()["character"] == "Brom"
        assert api.post(f"/sessions/{data['id']}/character", json={"index": 7}).status_code == 404

    def test_select_character_with_corrupt_history(self, api, tmp_path):
        """An unreadable history file does not block selecting the card."""
        history_dir = tmp_path / "output" / "history"
        history_dir.mkdir(parents=True)
        for name in ("Aria", "Brom"):
            card = Character(name=name, avatar=f"{name.lower()}.json")
            (history_dir / f"{character_key(card)}.json").write_bytes(b'{"characterName": "\xff\xfe"}')

        data = _create(api)
        response = api.post(f"/sessions/{data['id']}/character", json={"index": 0})
        assert response.status_code == 200
        assert response.json()["character"] == "Aria"
        assert response.json()["summary"]["history_length"] == 0

    def test_reset_keeps_character(self, api, session):
        api.post(f"/sessions/{session['id']}/stages/score/run")
        data = api.post(f"/sessions/{session['id']}/reset", json={"keep_character": True}).json()
        assert data["character"] == "Aria"
        assert data["summary"]["completed_stages"] == []


class TestStageRuns:
    """Running stages over HTTP."""

    def test_run_score(self, api, session, mock_llm):
        response = api.post(f"/sessions/{session['id']}/stages/score/run")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["session"]["state"]["results"]["score"]["response"] == "LLM response"
        assert data["session"]["summary"]["completed_stages"] == ["score"]
        mock_llm.generate.assert_called_once()

    def test_rewrite_returns_advisory(self, api, session):
        data = api.post(f"/sessions/{session['id']}/stages/rewrite/run").json()
        assert data["success"] is True
        assert data["warnings"] == [stage_machine.SCORE_INCOMPLETE]

    def test_blocked_is_conflict(self, api, mock_llm):
        data = _create(api)
        response = api.post(f"/sessions/{data['id']}/stages/score/run")
        assert response.status_code == 409
        assert response.json()["detail"] == stage_machine.NO_CHARACTER
        mock_llm.generate.assert_not_called()

    def test_analyze_needs_rewrite(self, api, session):
        response = api.post(f"/sessions/{session['id']}/stages/analyze/run")
        assert response.status_code == 409
        assert response.json()["detail"] == stage_machine.ANALYZE_NEEDS_REWRITE

    def test_no_fields_selected(self, api, session):
        api.put(f"/sessions/{session['id']}/fields", json={"selection": {}})
        response = api.post(f"/sessions/{session['id']}/stages/score/run")
        assert response.status_code == 409
        assert response.json()["detail"] == stage_machine.NO_FIELDS

    def test_selection_naming_no_card_field(self, api, session, mock_llm):
        api.put(f"/sessions/{session['id']}/fields", json={"selection": {"no_such_field": True}})
        response = api.post(f"/sessions/{session['id']}/stages/score/run")
        assert response.status_code == 409
        assert response.json()["detail"] == stage_machine.NO_FIELDS
        mock_llm.generate.assert_not_called()

    def test_generation_failure_is_reported(self, api, session, mock_llm):
        mock_llm.generate = AsyncMock(side_effect=RuntimeError("boom"))
        response = api.post(f"/sessions/{session['id']}/stages/score/run")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "boom"
        assert data["session"]["state"]["stage_status"]["score"] == "pending"

    def test_busy_session(self, api, session):
        store = api.app.dependency_overrides[get_session_store]()
        store.begin_run(session["id"])
        response = api.post(f"/sessions/{session['id']}/stages/score/run")
        assert response.status_code == 409
        assert api.put(f"/sessions/{session['id']}/stages", json={"stages": ["score"]}).status_code == 409
        assert api.post(f"/sessions/{session['id']}/cancel").json() == {"cancelled": True}

    def test_cancel_when_idle(self, api, session):
        assert api.post(f"/sessions/{session['id']}/cancel").json() == {"cancelled": False}

    def test_locked_result(self, api, session):
        sid = session["id"]
        assert api.post(f"/sessions/{sid}/stages/score/lock").status_code == 409
        api.post(f"/sessions/{sid}/stages/score/run")
        locked = api.post(f"/sessions/{sid}/stages/score/lock").json()
        assert locked["summary"]["locked_stages"] == ["score"]

        response = api.post(f"/sessions/{sid}/stages/score/run")
        assert response.status_code == 409
        assert response.json()["detail"] == "Stage result is locked"

        api.post(f"/sessions/{sid}/stages/score/unlock")
        assert api.post(f"/sessions/{sid}/stages/score/run").status_code == 200

    def test_run_selected(self, api, session, mock_llm):
        mock_llm.generate = AsyncMock(
            side_effect=[
                LLMResponse(content="SCORE-TEXT", model="test-model"),
                LLMResponse(content="REWRITE-TEXT", model="test-model"),
            ]
        )
        data = api.post(f"/sessions/{session['id']}/run").json()
        assert data["success"] is True
        assert data["completed"] == ["score", "rewrite"]
        assert data["session"]["summary"]["is_complete"] is True
        assert data["session"]["summary"]["can_export"] is True

    def test_skip_and_clear(self, api, session):
        sid = session["id"]
        skipped = api.post(f"/sessions/{sid}/stages/score/skip").json()
        assert skipped["state"]["stage_status"]["score"] == "skipped"
        api.post(f"/sessions/{sid}/stages/rewrite/run")
        cleared = api.delete(f"/sessions/{sid}/stages/rewrite/result").json()
        assert cleared["state"]["results"]["rewrite"] is None


class TestStageSetup:
    """Fields, stages and per-stage config."""

    def test_fields(self, api, session):
        data = api.get(f"/sessions/{session['id']}/fields").json()
        keys = [f["key"] for f in data["fields"]]
        assert keys == ["description", "personality", "first_mes"]
        assert data["selection"]["description"] is True

    def test_fields_need_character(self, api):
        data = _create(api)
        assert api.get(f"/sessions/{data['id']}/fields").status_code == 409

    def test_stage_config(self, api, session):
        sid = session["id"]
        data = api.put(
            f"/sessions/{sid}/stages/score/config",
            json={"use_structured_output": True, "schema_preset_id": "builtin_schema_score"},
        ).json()
        config = data["state"]["configs"]["score"]
        assert config["use_structured_output"] is True
        assert config["schema_preset_id"] == "builtin_schema_score"

        cleared = api.put(f"/sessions/{sid}/stages/score/config", json={"clear_schema_preset": True}).json()
        assert cleared["state"]["configs"]["score"]["schema_preset_id"] is None

    def test_unknown_stage(self, api, session):
        assert api.post(f"/sessions/{session['id']}/stages/polish/run").status_code == 422

    def test_prompt_preview(self, api, session):
        data = api.get(f"/sessions/{session['id']}/stages/score/prompt").json()
        assert data["can_run"] is True
        assert data["reason"] is None
        assert "A wandering bard" in data["prompt"]

    def test_validate(self, api, session):
        data = api.get(f"/sessions/{session['id']}/validate").json()
        assert data["pipeline"]["valid"] is True
        assert data["refinement"]["valid"] is False


class TestResults:
    """Export, parsed rewrites, refinement and history."""

    def test_export_needs_rewrite(self, api, session):
        assert api.get(f"/sessions/{session['id']}/export").status_code == 409

    def test_export(self, api, session):
        api.post(f"/sessions/{session['id']}/stages/rewrite/run")
        response = api.get(f"/sessions/{session['id']}/export")
        assert response.status_code == 200
        assert response.text.startswith("# Aria (Rewritten)")

    def test_accept_needs_rewrite(self, api, session):
        assert api.post(f"/sessions/{session['id']}/accept").status_code == 409

    def test_apply_rewrite(self, api, session, mock_llm):
        mock_llm.generate = AsyncMock(
            return_value=LLMResponse(content="## Description\nA calmer bard.\n", model="test-model")
        )
        sid = session["id"]
        api.post(f"/sessions/{sid}/stages/rewrite/run")

        parsed = api.get(f"/sessions/{sid}/rewrite/fields").json()
        assert parsed["parse_method"] == "markdown"

        applied = api.post(f"/sessions/{sid}/rewrite/apply").json()
        assert applied["updated_fields"] == ["Description"]
        assert applied["character"]["description"] == "A calmer bard."

    def test_apply_unparseable_rewrite(self, api, session):
        api.post(f"/sessions/{session['id']}/stages/rewrite/run")
        assert api.post(f"/sessions/{session['id']}/rewrite/apply").status_code == 422

    def test_refine_and_revert(self, api, session):
        sid = session["id"]
        assert api.post(f"/sessions/{sid}/refine").status_code == 409

        api.post(f"/sessions/{sid}/stages/rewrite/run")
        api.post(f"/sessions/{sid}/stages/analyze/run")
        data = api.post(f"/sessions/{sid}/refine").json()
        assert data["success"] is True
        assert data["session"]["summary"]["iteration_count"] == 1
        assert data["session"]["summary"]["history_length"] == 1

        assert api.post(f"/sessions/{sid}/revert", json={"index": 3}).status_code == 422
        reverted = api.post(f"/sessions/{sid}/revert", json={"index": 0}).json()
        assert reverted["state"]["results"]["rewrite"]["response"] == "LLM response"

    def test_history_round_trip(self, api, session):
        sid = session["id"]
        api.post(f"/sessions/{sid}/stages/rewrite/run")
        api.post(f"/sessions/{sid}/stages/analyze/run")
        api.post(f"/sessions/{sid}/refine")

        other = _create(api, character_index=0)
        assert other["summary"]["history_length"] == 1

        assert api.delete(f"/sessions/{sid}/history").json() == {"cleared": True}
        assert _create(api, character_index=0)["summary"]["history_length"] == 0
