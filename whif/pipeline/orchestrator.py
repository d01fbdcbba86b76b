"""Pipeline orchestrator: runs the fixed stage chain over an AnalysisState."""

import logging
import time
from typing import Awaitable, Callable

from .stages import (
    StageContext,
    categorize_impacts,
    extract_statements,
    generate_downstream_impacts,
    research_and_evaluate,
    summarize_findings,
)
from .state import AnalysisState, StageUpdate, apply_update

logger = logging.getLogger(__name__)

Stage = Callable[[AnalysisState, StageContext], Awaitable[StageUpdate]]

STAGES: tuple[tuple[str, Stage], ...] = (
    ("extract", extract_statements),
    ("downstream", generate_downstream_impacts),
    ("categorize", categorize_impacts),
    ("evaluate", research_and_evaluate),
    ("summarize", summarize_findings),
)


class PipelineOrchestrator:
    """Drives extract -> downstream -> categorize -> evaluate -> summarize.

    Stages run strictly in order. A stage exception is logged with the
    stage name and re-raised unchanged; later stages never run.
    """

    def __init__(
        self,
        context: StageContext,
        stages: tuple[tuple[str, Stage], ...] = STAGES,
    ) -> None:
        self.context = context
        self.stages = stages

    async def run(self, initial_state: AnalysisState) -> AnalysisState:
        state = initial_state
        run_start = time.monotonic()

        for name, stage in self.stages:
            logger.info(f"[pipeline] {initial_state.analysis_id}: stage {name} starting")
            stage_start = time.monotonic()
            try:
                update = await stage(state, self.context)
            except Exception as e:
                logger.error(
                    f"[pipeline] {initial_state.analysis_id}: stage {name} failed "
                    f"after {time.monotonic() - stage_start:.2f}s: "
                    f"{type(e).__name__}: {e}"
                )
                raise
            state = apply_update(state, update)
            logger.info(
                f"[pipeline] {initial_state.analysis_id}: stage {name} done "
                f"in {time.monotonic() - stage_start:.2f}s"
            )

        logger.info(
            f"[pipeline] {initial_state.analysis_id}: completed in "
            f"{time.monotonic() - run_start:.2f}s"
        )
        return state
