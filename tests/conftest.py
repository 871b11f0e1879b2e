"""Pytest configuration and shared fixtures."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from character_tools.domain.entities.character import Character
from character_tools.domain.entities.pipeline_state import PipelineState, Stage, StageResult
from character_tools.domain.ports.llm import LLMResponse
from character_tools.domain.services import stage_machine


@pytest.fixture
def character() -> Character:
    """A small V2-style card with macros and a list field."""
    return Character(
        name="Aria",
        avatar="aria.png",
        description="A wandering bard who sings for {{user}}.",
        personality="Curious, warm, a little reckless",
        first_mes="Hello, {{user}}! I'm {{char}}.",
        data={"alternate_greetings": ["Well met.", "Back again?"]},
    )


@pytest.fixture
def state(character) -> PipelineState:
    """Fresh state with the card selected at index 0."""
    return stage_machine.set_source_content(stage_machine.create_initial_state(), character, 0)


@pytest.fixture
def complete():
    """Helper: install a result for a stage as if it had just run."""

    def _complete(state: PipelineState, stage: Stage, response: str) -> PipelineState:
        return stage_machine.complete_stage(state, stage, StageResult(response=response))

    return _complete


@pytest.fixture
def mock_llm():
    """LLM adapter mock: always available, answers with a fixed text."""
    llm = MagicMock()
    llm.generate = AsyncMock(
        return_value=LLMResponse(content="LLM response", model="test-model", done=True)
    )
    llm.is_available = AsyncMock(return_value=True)
    llm.list_models = AsyncMock(return_value=["qwen2.5:7b"])
    return llm


@pytest.fixture
def cards_dir(tmp_path):
    """Characters directory with two cards."""
    directory = tmp_path / "characters"
    directory.mkdir()
    (directory / "aria.json").write_text(
        json.dumps(
            {
                "name": "Aria",
                "description": "A wandering bard who sings for {{user}}.",
                "personality": "Curious, warm, a little reckless",
                "first_mes": "Hello, {{user}}! I'm {{char}}.",
            }
        ),
        encoding="utf-8",
    )
    (directory / "brom.json").write_text(
        json.dumps({"spec": "chara_card_v2", "data": {"name": "Brom", "description": "A blacksmith."}}),
        encoding="utf-8",
    )
    return directory


@pytest.fixture
def api(tmp_path, cards_dir, mock_llm, monkeypatch):
    """TestClient over the app with the container swapped for tmp-backed services."""
    from fastapi.testclient import TestClient

    from character_tools.api import dependencies
    from character_tools.api.store import SessionStore
    from character_tools.application.pipeline.generation import StageGenerator
    from character_tools.application.pipeline.use_case import PipelineUseCase
    from character_tools.domain.services.preset_catalog import PresetCatalog
    from character_tools.infrastructure.characters.library import CharacterLibrary
    from character_tools.infrastructure.persistence.iteration_history import IterationHistoryStore
    from character_tools.main import app

    presets = PresetCatalog()
    library = CharacterLibrary(str(cards_dir))
    history = IterationHistoryStore(output_dir=str(tmp_path / "output"))
    use_case = PipelineUseCase(StageGenerator(mock_llm, presets, model="test-model"), presets, history=history)
    store = SessionStore()

    app.dependency_overrides[dependencies.get_session_store] = lambda: store
    app.dependency_overrides[dependencies.get_pipeline_use_case] = lambda: use_case
    app.dependency_overrides[dependencies.get_presets] = lambda: presets
    app.dependency_overrides[dependencies.get_library] = lambda: library
    monkeypatch.setattr(dependencies.limiter, "enabled", False)
    yield TestClient(app)
    app.dependency_overrides.clear()
