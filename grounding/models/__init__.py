from .options import (
    ContentValidationOptions,
    LinkValidationOptions,
    PipelineOptions,
    ScoringWeights,
    WebValidationOptions,
)
from .pipeline import (
    CacheEntry,
    Candidate,
    Citation,
    ErrorCode,
    PageMetadata,
    PipelineError,
    PipelineMetrics,
    PipelineResult,
    Source,
    SourceValidations,
    ValidationOutcome,
    ValidationPhase,
)

__all__ = [
    "CacheEntry",
    "Candidate",
    "Citation",
    "ContentValidationOptions",
    "ErrorCode",
    "LinkValidationOptions",
    "PageMetadata",
    "PipelineError",
    "PipelineMetrics",
    "PipelineOptions",
    "PipelineResult",
    "ScoringWeights",
    "Source",
    "SourceValidations",
    "ValidationOutcome",
    "ValidationPhase",
    "WebValidationOptions",
]
