"""Prompt composition for pipeline stages and refinement passes.

A prompt is the user's instruction text with placeholders substituted, plus a
labeled section for every piece of context the stage needs that the
instructions did not already reference. Context is always read from the
current ``results`` slots, so a prompt built during iteration N only ever
carries iteration N text.
"""

import re
from dataclasses import dataclass

from character_tools.domain.entities.character import Character
from character_tools.domain.entities.pipeline_state import PipelineState, Stage
from character_tools.domain.entities.presets import DEFAULT_REFINEMENT_PROMPT, Placeholder
from character_tools.domain.services.character_fields import build_character_summary_from_selection
from character_tools.domain.services.preset_catalog import PresetCatalog, PresetLookup, resolve_prompt

DEFAULT_USER_NAME = "User"
SECTION_SEPARATOR = "\n\n---\n\n"

_NAME_ALIASES = {"{{char}}": Placeholder.CHARACTER_NAME, "{{user}}": Placeholder.USER_NAME}

_STAGE_VERBS = {Stage.SCORE: "Analyze", Stage.REWRITE: "Rewrite", Stage.ANALYZE: "Compare"}

_default_presets: PresetCatalog | None = None


def _builtin_presets() -> PresetCatalog:
    global _default_presets
    if _default_presets is None:
        _default_presets = PresetCatalog()
    return _default_presets


@dataclass(frozen=True)
class _Requirement:
    """One context piece a prompt must carry, and the placeholders that satisfy it."""

    satisfied_by: frozenset[Placeholder]
    heading: str
    lead: str
    text: str

    def render(self) -> str:
        lead = f"{self.lead}\n\n" if self.lead else ""
        return f"## {self.heading}\n{lead}{self.text}"


_ORIGINAL = frozenset({Placeholder.ORIGINAL_CHARACTER})
_SCORE = frozenset({Placeholder.SCORE_RESULTS})
_REWRITE = frozenset({Placeholder.REWRITE_RESULTS, Placeholder.CURRENT_REWRITE})
_ANALYSIS = frozenset({Placeholder.CURRENT_ANALYSIS})


def find_placeholders(text: str) -> set[Placeholder]:
    """Placeholders referenced by ``text`` (case-insensitive exact tokens)."""
    lowered = text.lower()
    return {p for p in Placeholder if p.value in lowered}


def substitute_placeholders(text: str, values: dict[str, str]) -> str:
    """Replace every known token in one pass.

    Inserted values are never rescanned, so output text that happens to contain
    a token cannot pull in other context.
    """
    if not values:
        return text
    table = {token.lower(): value for token, value in values.items()}
    pattern = re.compile("|".join(re.escape(token) for token in table), re.IGNORECASE)
    return pattern.sub(lambda m: table[m.group(0).lower()], text)


def _with_aliases(values: dict[str, str]) -> dict[str, str]:
    merged = dict(values)
    for alias, target in _NAME_ALIASES.items():
        if target.value in values:
            merged[alias] = values[target.value]
    return merged


def _names(state: PipelineState, user_name: str) -> dict[str, str]:
    name = state.character.name if state.character else ""
    return {Placeholder.CHARACTER_NAME.value: name, Placeholder.USER_NAME.value: user_name}


def _summary(state: PipelineState, character: Character, user_name: str) -> str:
    summary = build_character_summary_from_selection(character, state.selected_fields)
    # Cards use {{char}}/{{user}} macros; resolve them to this card's names
    return substitute_placeholders(summary, _with_aliases(_names(state, user_name)))


def _response(state: PipelineState, stage: Stage) -> str | None:
    result = state.result(stage)
    return result.response if result is not None else None


def _compose(instructions: str, values: dict[str, str], requirements: list[_Requirement]) -> str:
    referenced = find_placeholders(instructions)
    body = substitute_placeholders(instructions, _with_aliases(values))
    missing = [r.render() for r in requirements if not (r.satisfied_by & referenced)]
    if not missing:
        return body
    return SECTION_SEPARATOR.join([*missing, f"## Instructions\n\n{body}"])


def build_stage_prompt(
    state: PipelineState,
    stage: Stage,
    presets: PresetLookup | None = None,
    user_name: str = DEFAULT_USER_NAME,
) -> str | None:
    """Prompt for ``stage``, or None without source content or instructions.

    Score prompts get no pipeline output at all; rewrite prompts get the score
    when one exists; analyze prompts get the current rewrite and the score.
    """
    if state.character is None:
        return None
    config = state.configs.get(stage)
    if config is None:
        return None
    instructions = resolve_prompt(config, presets or _builtin_presets())
    if not instructions.strip():
        return None

    summary = _summary(state, state.character, user_name)
    score = _response(state, Stage.SCORE) if stage is not Stage.SCORE else None
    rewrite = _response(state, Stage.REWRITE) if stage is Stage.ANALYZE else None

    values = {
        **_names(state, user_name),
        Placeholder.ORIGINAL_CHARACTER.value: summary,
        Placeholder.SCORE_RESULTS.value: score or "",
        Placeholder.REWRITE_RESULTS.value: rewrite or "",
        Placeholder.CURRENT_REWRITE.value: rewrite or "",
        Placeholder.CURRENT_ANALYSIS.value: "",
        Placeholder.ITERATION_NUMBER.value: str(state.iteration_count + 1),
    }

    requirements = [_Requirement(_ORIGINAL, f"Character to {_STAGE_VERBS[stage]}", "", summary)]
    if stage is Stage.ANALYZE and rewrite:
        requirements.append(
            _Requirement(_REWRITE, "Rewritten Version", "Compare this against the original:", rewrite)
        )
    if score and stage is Stage.REWRITE:
        requirements.append(
            _Requirement(_SCORE, "Score Feedback", "Use this feedback to guide your rewrite:", score)
        )
    elif score and stage is Stage.ANALYZE:
        requirements.append(
            _Requirement(
                _SCORE,
                "Original Score Feedback",
                "Reference for what was identified as needing improvement:",
                score,
            )
        )
    return _compose(instructions, values, requirements)


def build_refinement_prompt(
    state: PipelineState,
    template: str | None = None,
    user_name: str = DEFAULT_USER_NAME,
) -> str | None:
    """Prompt for a refinement pass over the current rewrite and analysis.

    None unless source content, a rewrite and an analysis all exist.
    """
    rewrite = _response(state, Stage.REWRITE)
    analysis = _response(state, Stage.ANALYZE)
    if state.character is None or not rewrite or not analysis:
        return None
    instructions = template if template and template.strip() else DEFAULT_REFINEMENT_PROMPT

    summary = _summary(state, state.character, user_name)
    score = _response(state, Stage.SCORE)
    iteration = str(state.iteration_count + 1)
    values = {
        **_names(state, user_name),
        Placeholder.ORIGINAL_CHARACTER.value: summary,
        Placeholder.SCORE_RESULTS.value: score or "",
        Placeholder.REWRITE_RESULTS.value: rewrite,
        Placeholder.CURRENT_REWRITE.value: rewrite,
        Placeholder.CURRENT_ANALYSIS.value: analysis,
        Placeholder.ITERATION_NUMBER.value: iteration,
    }
    requirements = [
        _Requirement(_ORIGINAL, "Original Character", "", summary),
        _Requirement(_REWRITE, f"Current Rewrite (Iteration {iteration})", "", rewrite),
        _Requirement(_ANALYSIS, "Analysis of Current Rewrite", "", analysis),
    ]
    if score:
        requirements.append(
            _Requirement(
                _SCORE,
                "Original Score Feedback",
                "Reference for what was identified as needing improvement:",
                score,
            )
        )
    return _compose(instructions, values, requirements)


def get_unfilled_placeholders(prompt: str, stage: Stage, has_score: bool, has_rewrite: bool) -> list[str]:
    """Placeholders the prompt uses that will be empty for this stage."""
    used = find_placeholders(prompt)
    unfilled: list[str] = []
    if Placeholder.SCORE_RESULTS in used and (stage is Stage.SCORE or not has_score):
        unfilled.append("{{score_results}} - no score results available")
    if used & _REWRITE and (stage is not Stage.ANALYZE or not has_rewrite):
        unfilled.append("{{rewrite_results}} - no rewrite results available")
    if Placeholder.CURRENT_ANALYSIS in used:
        unfilled.append("{{current_analysis}} - only filled during refinement")
    return unfilled
