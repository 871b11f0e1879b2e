"""Prompt/schema presets, built-in catalogue and default prompts."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from character_tools.domain.entities.pipeline_state import Stage, StageConfig
from character_tools.domain.entities.schema import StructuredOutputSchema

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Placeholder(str, Enum):
    """Tokens a prompt template may reference. Matched case-insensitively."""

    ORIGINAL_CHARACTER = "{{original_character}}"
    SCORE_RESULTS = "{{score_results}}"
    REWRITE_RESULTS = "{{rewrite_results}}"
    CURRENT_REWRITE = "{{current_rewrite}}"
    CURRENT_ANALYSIS = "{{current_analysis}}"
    ITERATION_NUMBER = "{{iteration_number}}"
    CHARACTER_NAME = "{{char_name}}"
    USER_NAME = "{{user_name}}"


class PromptPreset(BaseModel):
    """Named instruction text. Empty ``stages`` means usable for every stage."""

    id: str
    name: str
    prompt: str
    stages: list[Stage] = Field(default_factory=list)
    is_builtin: bool = False
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH

    model_config = ConfigDict(frozen=True)


class SchemaPreset(BaseModel):
    """Named structured-output schema."""

    id: str
    name: str
    schema_def: StructuredOutputSchema = Field(alias="schema")
    stages: list[Stage] = Field(default_factory=list)
    is_builtin: bool = False
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH

    model_config = ConfigDict(frozen=True, populate_by_name=True)


DEFAULT_SYSTEM_PROMPT = """You are a creative writing assistant specializing in character development for roleplay and fiction. Analyze character cards and provide thoughtful, actionable feedback.

Adapt your response style to the task:
- For scoring: Be critical but fair, rate 1-10 with specific justifications
- For rewrites: Preserve the character's core identity while improving weak areas
- For analysis: Compare versions objectively, identify what was lost or gained
- For refinement: Address specific issues from analysis while keeping improvements

Focus on: writing quality, character depth, consistency, roleplay usability, and potential issues (contradictions, cliches, underdeveloped areas).

Always maintain the character's essential personality and unique traits. Improvements should enhance, not replace, what makes the character interesting."""

# Score feedback is not referenced here; the composer adds it as its own section when present.
DEFAULT_REFINEMENT_PROMPT = """You are refining a character card rewrite based on analysis feedback.

## Original Character (Ground Truth)
{{original_character}}

## Current Rewrite (Iteration {{iteration_number}})
{{current_rewrite}}

## Analysis of Current Rewrite
{{current_analysis}}

---

## Your Task

Create an improved version that:

1. **Addresses Issues**: Fix the specific problems identified in the analysis
2. **Preserves Wins**: Keep what the analysis said was working well
3. **Maintains Soul**: The character must still feel like the original, just better
4. **Avoids Regression**: Don't reintroduce problems that were already fixed

Output the complete refined character card with all fields. Mark significantly changed sections with [REFINED] at the start.

Do NOT explain your changes - just output the improved character card."""


BUILTIN_PROMPT_PRESETS: tuple[PromptPreset, ...] = (
    PromptPreset(
        id="builtin_score_default",
        name="Default Score",
        stages=[Stage.SCORE],
        is_builtin=True,
        prompt="""Rate this character card on a scale of 1-10 for each populated field. For each field, provide:

1. **Score** (1-10)
2. **Strengths** - What works well
3. **Weaknesses** - What needs improvement
4. **Specific Suggestions** - Concrete changes to improve it

After scoring all fields, provide:
- **Overall Score** (weighted average, with First Message and Description weighted higher)
- **Top 3 Priority Improvements** - The changes that would have the biggest impact
- **Summary** - A brief overall assessment

Be critical but constructive. Vague praise is useless. Specific, actionable feedback is gold.""",
    ),
    PromptPreset(
        id="builtin_score_quick",
        name="Quick Score",
        stages=[Stage.SCORE],
        is_builtin=True,
        prompt="""Give a quick assessment of this character card:

1. Overall score (1-10)
2. Three biggest strengths
3. Three areas needing work
4. One-sentence summary

Keep it concise but useful.""",
    ),
    PromptPreset(
        id="builtin_rewrite_default",
        name="Default Rewrite",
        stages=[Stage.REWRITE],
        is_builtin=True,
        prompt="""Based on the scoring feedback, rewrite this character card to address the identified weaknesses while preserving its strengths.

Guidelines:
- Maintain the character's core personality and unique traits
- Improve weak areas identified in the score
- Keep the same general length unless brevity/expansion was specifically noted
- Preserve any distinctive voice or style that works
- Fix contradictions and fill gaps
- Make the character more engaging for roleplay

Output the complete rewritten character card with all fields, using the same field structure as the original. Mark significantly changed sections with [REVISED] at the start.

{{score_results}}""",
    ),
    PromptPreset(
        id="builtin_rewrite_conservative",
        name="Conservative Rewrite",
        stages=[Stage.REWRITE],
        is_builtin=True,
        prompt="""Make minimal, surgical improvements to this character card. Only change what's clearly broken or weak.

Rules:
- Change as little as possible
- Preserve the author's voice completely
- Only fix obvious issues (contradictions, grammar, clarity)
- Do NOT add new content unless filling a critical gap
- Do NOT change style or tone

Output only the fields you changed, with [ORIGINAL] and [REVISED] versions for comparison.

{{score_results}}""",
    ),
    PromptPreset(
        id="builtin_rewrite_expansive",
        name="Expansive Rewrite",
        stages=[Stage.REWRITE],
        is_builtin=True,
        prompt="""Significantly expand and enhance this character card. Add depth, detail, and richness.

Goals:
- Flesh out underdeveloped areas
- Add sensory details and specific examples
- Deepen personality with quirks, contradictions, history
- Improve example messages with more variety
- Make the character feel more three-dimensional

Don't change the core concept, but make it shine. Output the complete expanded character card.

{{score_results}}""",
    ),
    PromptPreset(
        id="builtin_analyze_default",
        name="Default Analyze",
        stages=[Stage.ANALYZE],
        is_builtin=True,
        prompt="""Compare the original character card with the rewritten version. Analyze:

## What Was Preserved
- Core personality traits that remained intact
- Distinctive elements that were kept
- Voice and style consistency

## What Was Lost
- Any personality aspects that were diminished or removed
- Unique quirks that disappeared
- Tone shifts that changed the character's feel

## What Was Gained
- New depth or detail added
- Improvements that enhance the character
- Better clarity or consistency

## Soul Check
Does the rewritten version still feel like the same character? Rate the "soul preservation" from 1-10 and explain.

## Verdict
State clearly: **ACCEPT** (ready to use), **NEEDS REFINEMENT** (good progress but has issues), or **REGRESSION** (worse than before).

## Specific Issues to Address
If verdict is NEEDS REFINEMENT, list the specific problems that should be fixed in the next iteration.

---

### Original Character:
{{original_character}}

### Rewritten Version:
{{rewrite_results}}

### Score Feedback:
{{score_results}}""",
    ),
    PromptPreset(
        id="builtin_analyze_iteration",
        name="Iteration Analyze",
        stages=[Stage.ANALYZE],
        is_builtin=True,
        prompt="""This is iteration {{iteration_number}} of refinement. Compare the current rewrite against the original.

## Progress Check
- What issues from previous analysis were addressed?
- What new issues (if any) were introduced?
- Is this version better, worse, or lateral move from the last?

## Current State Assessment

### Preserved from Original
Core traits and elements that remain intact.

### Still Missing or Lost
Things from the original that should be restored.

### Successfully Improved
What's genuinely better now.

### New Problems
Any issues introduced by this iteration.

## Soul Preservation Score
Rate 1-10: Does this still feel like the original character?

## Verdict
**ACCEPT** - Ready to use, no more iterations needed
**NEEDS REFINEMENT** - Making progress, but specific issues remain
**REGRESSION** - This iteration made things worse, consider reverting

## Next Steps
If NEEDS REFINEMENT: List exactly what the next iteration should fix.
If REGRESSION: Explain what went wrong and what to preserve from previous version.

---

### Original Character:
{{original_character}}

### Current Rewrite (Iteration {{iteration_number}}):
{{rewrite_results}}""",
    ),
    PromptPreset(
        id="builtin_analyze_quick",
        name="Quick Analyze",
        stages=[Stage.ANALYZE],
        is_builtin=True,
        prompt="""Quick comparison of original vs rewrite:

1. Soul preserved? (Yes/Partially/No)
2. Best improvement made
3. Biggest thing lost (if any)
4. Verdict: ACCEPT / NEEDS REFINEMENT / REGRESSION

{{original_character}}

{{rewrite_results}}""",
    ),
    PromptPreset(
        id="builtin_freeform",
        name="Freeform",
        stages=[],
        is_builtin=True,
        prompt="[Enter your custom instructions here]",
    ),
)


def _string_list() -> dict:
    return {"type": "array", "items": {"type": "string"}}


_SCORE_SCHEMA = StructuredOutputSchema(
    name="CharacterScore",
    strict=True,
    value={
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "fieldScores": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "field": {"type": "string"},
                        "score": {"type": "number"},
                        "strengths": {"type": "string"},
                        "weaknesses": {"type": "string"},
                        "suggestions": {"type": "string"},
                    },
                    "required": ["field", "score", "strengths", "weaknesses", "suggestions"],
                },
            },
            "overallScore": {"type": "number"},
            "priorityImprovements": _string_list(),
            "summary": {"type": "string"},
        },
        "required": ["fieldScores", "overallScore", "priorityImprovements", "summary"],
    },
)

_QUICK_SCORE_SCHEMA = StructuredOutputSchema(
    name="QuickScore",
    strict=True,
    value={
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "overallScore": {"type": "number"},
            "strengths": _string_list(),
            "weaknesses": _string_list(),
            "summary": {"type": "string"},
        },
        "required": ["overallScore", "strengths", "weaknesses", "summary"],
    },
)

_ANALYZE_SCHEMA = StructuredOutputSchema(
    name="CharacterAnalysis",
    strict=True,
    value={
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "preserved": _string_list(),
            "lost": _string_list(),
            "gained": _string_list(),
            "soulPreservationScore": {"type": "number"},
            "soulAssessment": {"type": "string"},
            "verdict": {"type": "string", "enum": ["ACCEPT", "NEEDS_REFINEMENT", "REGRESSION"]},
            "issuesToAddress": _string_list(),
            "recommendations": _string_list(),
        },
        "required": [
            "preserved",
            "lost",
            "gained",
            "soulPreservationScore",
            "soulAssessment",
            "verdict",
            "issuesToAddress",
            "recommendations",
        ],
    },
)

BUILTIN_SCHEMA_PRESETS: tuple[SchemaPreset, ...] = (
    SchemaPreset(
        id="builtin_schema_score",
        name="Default Score",
        schema=_SCORE_SCHEMA,
        stages=[Stage.SCORE],
        is_builtin=True,
    ),
    SchemaPreset(
        id="builtin_schema_quick_score",
        name="Quick Score",
        schema=_QUICK_SCORE_SCHEMA,
        stages=[Stage.SCORE],
        is_builtin=True,
    ),
    SchemaPreset(
        id="builtin_schema_analyze",
        name="Default Analyze",
        schema=_ANALYZE_SCHEMA,
        stages=[Stage.ANALYZE],
        is_builtin=True,
    ),
)

# Structured output is opt-in per stage; rewrite has no schema preset.
DEFAULT_STAGE_CONFIGS: dict[Stage, StageConfig] = {
    Stage.SCORE: StageConfig(
        prompt_preset_id="builtin_score_default",
        schema_preset_id="builtin_schema_score",
    ),
    Stage.REWRITE: StageConfig(prompt_preset_id="builtin_rewrite_default"),
    Stage.ANALYZE: StageConfig(
        prompt_preset_id="builtin_analyze_default",
        schema_preset_id="builtin_schema_analyze",
    ),
}
