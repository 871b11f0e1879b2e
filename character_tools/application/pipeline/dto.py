"""DTOs for the pipeline use case."""

from dataclasses import dataclass, field

from character_tools.domain.entities.pipeline_state import PipelineState, Stage

CANCELLED = "Generation cancelled"


@dataclass
class GenerationResult:
    """Outcome of one completion call."""

    success: bool
    response: str | None = None
    is_structured: bool = False
    error: str | None = None
    cancelled: bool = False
    prompt_used: str = ""
    schema_used: dict | None = None


@dataclass
class StageRunResult:
    """State after a stage run plus what the generator reported."""

    state: PipelineState
    stage: Stage
    generation: GenerationResult
    warnings: list[str] = field(default_factory=list)
    # Preconditions failed; nothing was sent to the LLM
    blocked: bool = False


@dataclass
class PipelineRunResult:
    """State after running the selected stages in order."""

    state: PipelineState
    completed: list[Stage] = field(default_factory=list)
    failed_stage: Stage | None = None
    error: str | None = None
    cancelled: bool = False
    warnings: list[str] = field(default_factory=list)
    blocked: bool = False
