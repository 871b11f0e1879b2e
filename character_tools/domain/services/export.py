"""Markdown export of a finished (or in-progress) improvement session.

Stored texts go into the document verbatim; nothing is shortened.
"""

from datetime import datetime

from character_tools.domain.entities.pipeline_state import PipelineState, Stage, utcnow
from character_tools.domain.services.character_fields import describe_selection

RULE = "---"


def _section(title: str, body: str) -> list[str]:
    return ["", RULE, "", f"## {title}", "", body]


def generate_export_data(state: PipelineState, now: datetime | None = None) -> str | None:
    """Export document, or None without a card and a rewrite."""
    rewrite = state.result(Stage.REWRITE)
    if state.character is None or rewrite is None:
        return None
    stamp = (now or utcnow()).isoformat(timespec="seconds")

    lines = [
        f"# {state.character.name} (Rewritten)",
        "",
        f"Generated: {stamp}",
        f"Iterations: {state.iteration_count}",
    ]

    included = describe_selection(state.character, state.selected_fields)
    if included:
        lines.extend(["", "Included fields:"])
        lines.extend(f"- {item}" for item in included)

    lines.extend(["", RULE, "", rewrite.response])

    analysis = state.result(Stage.ANALYZE)
    if analysis is not None:
        lines.extend(_section("Final Analysis", analysis.response))
    score = state.result(Stage.SCORE)
    if score is not None:
        lines.extend(_section("Original Score", score.response))

    if state.iteration_history:
        lines.extend(["", RULE, "", "## Iteration History"])
        for snapshot in state.iteration_history:
            lines.extend(
                [
                    "",
                    f"### Iteration {snapshot.iteration + 1} - {snapshot.verdict.value.upper()}",
                    snapshot.timestamp.isoformat(timespec="seconds"),
                    "",
                    "#### Rewrite",
                    "",
                    snapshot.rewrite_response,
                    "",
                    "#### Analysis",
                    "",
                    snapshot.analysis_response,
                ]
            )

    return "\n".join(lines)


def set_export_data(state: PipelineState, now: datetime | None = None) -> PipelineState:
    return state.model_copy(update={"export_data": generate_export_data(state, now)})
