"""The five analysis stages.

Each stage takes the current AnalysisState and a StageContext and returns
one tagged update. Model output that breaks a stage's contract and cannot
be repaired raises StageOutputError, which aborts the run.
"""

import asyncio
import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..config import StageModelConfig, StageModels
from ..core.errors import StageOutputError
from ..core.invocation import ModelRequest
from ..core.providers.base import PromptSpec
from . import prompts
from .state import (
    AnalysisState,
    CategorizeUpdate,
    DownstreamUpdate,
    EvaluateUpdate,
    ExtractUpdate,
    SummarizeUpdate,
)

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"

# (request, candidate models) -> parsed content
Invoker = Callable[[ModelRequest, list[str]], Awaitable[Any]]


@dataclass
class StageContext:
    """What a stage needs besides the state: a way to call models and routing."""

    invoke: Invoker
    models: StageModels
    max_concurrency: int = 8

    async def call(
        self,
        name: str,
        route: StageModelConfig,
        text: str,
        schema: dict | None = None,
    ) -> Any:
        request = ModelRequest(
            prompt=PromptSpec(text=text, response_schema=schema, schema_name=name),
            temperature=route.temperature,
            name=name,
        )
        return await self.invoke(request, route.candidates)


def _string_list(content: Any, key: str, stage: str) -> list[str]:
    """Pull a list of non-empty strings out of a structured response."""
    if not isinstance(content, dict) or not isinstance(content.get(key), list):
        raise StageOutputError(f"{stage}: response has no '{key}' list")
    return [
        item.strip()
        for item in content[key]
        if isinstance(item, str) and item.strip()
    ]


# =============================================================================
# extract
# =============================================================================


async def extract_statements(state: AnalysisState, ctx: StageContext) -> ExtractUpdate:
    """Break the proposal into atomic impact statements."""
    content = await ctx.call(
        "extract_statements",
        ctx.models.extract,
        prompts.build_extract_prompt(state.proposal_text),
        prompts.EXTRACT_SCHEMA,
    )
    statements = _string_list(content, "statements", "extract")
    if not statements:
        raise StageOutputError("extract: no statements extracted from proposal")

    logger.info(f"[pipeline] Extracted {len(statements)} statements")
    return ExtractUpdate(extracted_statements=statements)


# =============================================================================
# downstream
# =============================================================================


async def generate_downstream_impacts(
    state: AnalysisState, ctx: StageContext
) -> DownstreamUpdate:
    """Expand every statement into its downstream impacts, concurrently.

    Results are concatenated in statement order regardless of completion
    order. The first failure cancels the remaining calls and propagates.
    """
    semaphore = asyncio.Semaphore(max(1, ctx.max_concurrency))

    async def impacts_for(statement: str) -> list[str]:
        async with semaphore:
            content = await ctx.call(
                "downstream_impacts",
                ctx.models.downstream,
                prompts.build_downstream_prompt(statement),
                prompts.DOWNSTREAM_SCHEMA,
            )
        impacts = _string_list(content, "impacts", "downstream")
        if not impacts:
            raise StageOutputError(
                f"downstream: no impacts generated for statement {statement!r}"
            )
        return impacts

    tasks = [
        asyncio.create_task(impacts_for(statement))
        for statement in state.extracted_statements
    ]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    impacts = [impact for group in results for impact in group]
    logger.info(
        f"[pipeline] Generated {len(impacts)} downstream impacts "
        f"from {len(state.extracted_statements)} statements"
    )
    return DownstreamUpdate(downstream_impacts=impacts)


# =============================================================================
# categorize
# =============================================================================


def partition_impacts(
    impacts: list[str], proposed: list[tuple[str, list[str]]]
) -> dict[str, list[str]]:
    """Turn a model's proposed grouping into an exact partition of ``impacts``.

    Impacts the model invented, or listed more often than they occur, are
    removed. Impacts it left out go to the "Uncategorized" category.
    Categories with nothing left in them are omitted.
    """
    remaining = Counter(impacts)
    grouped: dict[str, list[str]] = {}
    discarded = 0

    for name, members in proposed:
        name = name.strip() or UNCATEGORIZED
        for impact in members:
            if remaining[impact] > 0:
                remaining[impact] -= 1
                grouped.setdefault(name, []).append(impact)
            else:
                discarded += 1

    leftovers = []
    for impact in impacts:
        if remaining[impact] > 0:
            remaining[impact] -= 1
            leftovers.append(impact)
    if leftovers:
        grouped.setdefault(UNCATEGORIZED, []).extend(leftovers)

    if discarded or leftovers:
        logger.warning(
            f"[pipeline] Repaired categorization: removed {discarded} unknown "
            f"or duplicate entries, {len(leftovers)} impacts uncategorized"
        )
    return grouped


async def categorize_impacts(
    state: AnalysisState, ctx: StageContext
) -> CategorizeUpdate:
    """Group downstream impacts into named categories."""
    content = await ctx.call(
        "categorize_impacts",
        ctx.models.categorize,
        prompts.build_categorize_prompt(state.downstream_impacts),
        prompts.CATEGORIZE_SCHEMA,
    )
    if not isinstance(content, dict) or not isinstance(content.get("categories"), list):
        raise StageOutputError("categorize: response has no 'categories' list")

    proposed: list[tuple[str, list[str]]] = []
    for entry in content["categories"]:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        members = entry.get("impacts")
        if not isinstance(name, str) or not isinstance(members, list):
            continue
        proposed.append(
            (name, [m.strip() for m in members if isinstance(m, str)])
        )

    grouped = partition_impacts(state.downstream_impacts, proposed)

    flattened = [impact for members in grouped.values() for impact in members]
    if Counter(flattened) != Counter(state.downstream_impacts):
        raise StageOutputError("categorize: categories do not partition the impacts")

    logger.info(f"[pipeline] Grouped impacts into {len(grouped)} categories")
    return CategorizeUpdate(grouped_categories=grouped)


# =============================================================================
# evaluate
# =============================================================================


def _clamp_score(value: Any, category: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise StageOutputError(f"evaluate: score for {category!r} is not a number")
    score = float(value)
    if math.isnan(score):
        raise StageOutputError(f"evaluate: score for {category!r} is NaN")
    clamped = min(1.0, max(-1.0, score))
    if clamped != score:
        logger.warning(
            f"[pipeline] Clamped score for {category!r} from {score} to {clamped}"
        )
    return clamped


async def research_and_evaluate(
    state: AnalysisState, ctx: StageContext
) -> EvaluateUpdate:
    """Research, then score, each category in turn."""
    findings: dict[str, str] = {}
    scores: dict[str, float] = {}

    for category, impacts in state.grouped_categories.items():
        research = await ctx.call(
            "research_category",
            ctx.models.research,
            prompts.build_research_prompt(category, impacts),
        )
        if not isinstance(research, str) or not research.strip():
            raise StageOutputError(f"evaluate: empty research for {category!r}")
        findings[category] = research.strip()

        content = await ctx.call(
            "evaluate_category",
            ctx.models.evaluate,
            prompts.build_evaluate_prompt(category, impacts, findings[category]),
            prompts.EVALUATE_SCHEMA,
        )
        if not isinstance(content, dict) or "score" not in content:
            raise StageOutputError(f"evaluate: response for {category!r} has no score")
        scores[category] = _clamp_score(content["score"], category)
        logger.info(f"[pipeline] Scored {category!r}: {scores[category]:+.2f}")

    return EvaluateUpdate(research_findings=findings, evaluated_scores=scores)


# =============================================================================
# summarize
# =============================================================================


async def summarize_findings(
    state: AnalysisState, ctx: StageContext
) -> SummarizeUpdate:
    """Write the final Markdown summary and recommendation."""
    content = await ctx.call(
        "summarize_findings",
        ctx.models.summarize,
        prompts.build_summarize_prompt(
            state.proposal_text, state.evaluated_scores, state.research_findings
        ),
        prompts.SUMMARIZE_SCHEMA,
    )
    summary = content.get("summary") if isinstance(content, dict) else None
    if not isinstance(summary, str) or not summary.strip():
        raise StageOutputError("summarize: empty summary")
    return SummarizeUpdate(final_summary=summary.strip())
