"""Pipeline state: stages, results, iteration snapshots.

Every model here is frozen. Transitions in ``domain.services`` build new values
with ``model_copy(update=...)`` and never touch the previous state.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from character_tools.domain.entities.character import Character, FieldSelection


class Stage(str, Enum):
    """Pipeline stages, in canonical order."""

    SCORE = "score"
    REWRITE = "rewrite"
    ANALYZE = "analyze"


STAGES: tuple[Stage, ...] = (Stage.SCORE, Stage.REWRITE, Stage.ANALYZE)

STAGE_LABELS: dict[Stage, str] = {
    Stage.SCORE: "Score",
    Stage.REWRITE: "Rewrite",
    Stage.ANALYZE: "Analyze",
}


class StageStatus(str, Enum):
    """Execution status of a single stage."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    SKIPPED = "skipped"


class Verdict(str, Enum):
    """Outcome of an analysis pass."""

    ACCEPT = "accept"
    NEEDS_REFINEMENT = "needs_refinement"
    REGRESSION = "regression"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageResult(BaseModel):
    """Output of one completed stage run. Only ``locked`` ever changes afterwards."""

    response: str
    is_structured: bool = False
    prompt_used: str = ""
    schema_used: dict | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    locked: bool = False

    model_config = ConfigDict(frozen=True)


class StageConfig(BaseModel):
    """Per-stage prompt/schema configuration.

    A set preset id wins over the custom text; custom text is only a draft
    until the preset id is cleared.
    """

    prompt_preset_id: str | None = None
    custom_prompt: str = ""
    schema_preset_id: str | None = None
    custom_schema: str = ""
    use_structured_output: bool = False

    model_config = ConfigDict(frozen=True, extra="ignore")


class IterationSnapshot(BaseModel):
    """Frozen record of one rewrite/analysis cycle."""

    iteration: int
    rewrite_response: str
    rewrite_preview: str
    analysis_response: str
    analysis_preview: str
    verdict: Verdict
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


def _empty_results() -> dict[Stage, StageResult | None]:
    return {stage: None for stage in STAGES}


def _pending_status() -> dict[Stage, StageStatus]:
    return {stage: StageStatus.PENDING for stage in STAGES}


class PipelineState(BaseModel):
    """Aggregate root of one improvement session."""

    character: Character | None = None
    character_index: int | None = None
    results: dict[Stage, StageResult | None] = Field(default_factory=_empty_results)
    configs: dict[Stage, StageConfig] = Field(default_factory=dict)
    selected_stages: list[Stage] = Field(default_factory=lambda: [Stage.SCORE, Stage.REWRITE])
    current_stage: Stage | None = None
    stage_status: dict[Stage, StageStatus] = Field(default_factory=_pending_status)
    iteration_count: int = 0
    iteration_history: list[IterationSnapshot] = Field(default_factory=list)
    is_refining: bool = False
    selected_fields: FieldSelection = Field(default_factory=dict)
    export_data: str | None = None

    model_config = ConfigDict(frozen=True)

    def result(self, stage: Stage) -> StageResult | None:
        return self.results.get(stage)

    def status(self, stage: Stage) -> StageStatus:
        return self.stage_status.get(stage, StageStatus.PENDING)


class RunCheck(BaseModel):
    """Answer to "may this run now?" with an optional reason (hard or advisory)."""

    can_run: bool
    reason: str | None = None


class PipelineValidation(BaseModel):
    """Pre-run validation outcome. Errors block; warnings are advisory."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
