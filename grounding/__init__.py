"""Content-grounding pipeline: discover, validate, score and cite web sources."""

from grounding.models.options import (
    ContentValidationOptions,
    LinkValidationOptions,
    PipelineOptions,
    ScoringWeights,
    WebValidationOptions,
)
from grounding.models.pipeline import Citation, PipelineError, PipelineMetrics, PipelineResult, Source
from grounding.services.pipeline_orchestrator import PipelineOrchestrator, PipelineState, run_pipeline

__version__ = "0.1.0"

__all__ = [
    "Citation",
    "ContentValidationOptions",
    "LinkValidationOptions",
    "PipelineError",
    "PipelineMetrics",
    "PipelineOptions",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineState",
    "ScoringWeights",
    "Source",
    "WebValidationOptions",
    "run_pipeline",
]
