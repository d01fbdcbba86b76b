"""Analysis state and the stage updates merged into it.

AnalysisState is immutable. Each stage returns one tagged update; the
orchestrator merges it with ``apply_update`` to produce the next state.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AnalysisState(BaseModel):
    """Everything known about one analysis run."""

    model_config = ConfigDict(frozen=True)

    proposal_text: str
    analysis_id: str
    user_id: str
    extracted_statements: list[str] = Field(default_factory=list)
    downstream_impacts: list[str] = Field(default_factory=list)
    grouped_categories: dict[str, list[str]] = Field(default_factory=dict)
    research_findings: dict[str, str] = Field(default_factory=dict)
    evaluated_scores: dict[str, float] = Field(default_factory=dict)
    final_summary: str = ""


# =============================================================================
# Stage updates
# =============================================================================


class ExtractUpdate(BaseModel):
    stage: Literal["extract"] = "extract"
    extracted_statements: list[str]


class DownstreamUpdate(BaseModel):
    stage: Literal["downstream"] = "downstream"
    downstream_impacts: list[str]


class CategorizeUpdate(BaseModel):
    stage: Literal["categorize"] = "categorize"
    grouped_categories: dict[str, list[str]]


class EvaluateUpdate(BaseModel):
    """Research findings and scores, keyed by category name."""

    stage: Literal["evaluate"] = "evaluate"
    research_findings: dict[str, str]
    evaluated_scores: dict[str, float]


class SummarizeUpdate(BaseModel):
    stage: Literal["summarize"] = "summarize"
    final_summary: str


StageUpdate = (
    ExtractUpdate
    | DownstreamUpdate
    | CategorizeUpdate
    | EvaluateUpdate
    | SummarizeUpdate
)


def apply_update(state: AnalysisState, update: StageUpdate) -> AnalysisState:
    """Return a new state with ``update`` merged in. ``state`` is unchanged."""
    if isinstance(update, ExtractUpdate):
        changes = {"extracted_statements": list(update.extracted_statements)}
    elif isinstance(update, DownstreamUpdate):
        changes = {"downstream_impacts": list(update.downstream_impacts)}
    elif isinstance(update, CategorizeUpdate):
        changes = {
            "grouped_categories": {
                name: list(impacts)
                for name, impacts in update.grouped_categories.items()
            }
        }
    elif isinstance(update, EvaluateUpdate):
        changes = {
            "research_findings": dict(update.research_findings),
            "evaluated_scores": dict(update.evaluated_scores),
        }
    elif isinstance(update, SummarizeUpdate):
        changes = {"final_summary": update.final_summary}
    else:
        raise TypeError(f"Unknown stage update: {type(update).__name__}")
    return state.model_copy(update=changes)
