"""Fixed five-stage analysis pipeline.

extract -> downstream -> categorize -> evaluate -> summarize
"""

from .orchestrator import STAGES, PipelineOrchestrator
from .stages import UNCATEGORIZED, StageContext, partition_impacts
from .state import (
    AnalysisState,
    CategorizeUpdate,
    DownstreamUpdate,
    EvaluateUpdate,
    ExtractUpdate,
    StageUpdate,
    SummarizeUpdate,
    apply_update,
)

__all__ = [
    "STAGES",
    "PipelineOrchestrator",
    "StageContext",
    "UNCATEGORIZED",
    "partition_impacts",
    "AnalysisState",
    "ExtractUpdate",
    "DownstreamUpdate",
    "CategorizeUpdate",
    "EvaluateUpdate",
    "SummarizeUpdate",
    "StageUpdate",
    "apply_update",
]
