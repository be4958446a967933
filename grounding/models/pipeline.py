"""
Canonical records produced by a pipeline run.

Every record is a frozen Pydantic model: candidates, stage outcomes, sources,
errors, metrics and the final result share one contract from the search
provider through to the answer generator.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from grounding.utils.date_utils import utc_now


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ValidationPhase(str, Enum):
    LINK = "link"
    WEB = "web"
    CONTENT = "content"
    PROCESSING = "processing"


class ErrorCode(str, Enum):
    LINK_INVALID = "LINK_INVALID"
    LINK_UNREACHABLE = "LINK_UNREACHABLE"
    WEB_INVALID = "WEB_INVALID"
    WEB_UNAVAILABLE = "WEB_UNAVAILABLE"
    CONTENT_INVALID = "CONTENT_INVALID"
    TIMEOUT = "TIMEOUT"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    SEARCH_FAILED = "SEARCH_FAILED"


class Candidate(_Frozen):
    """An unvalidated URL returned by a search provider."""

    url: str
    title: str = ""
    snippet: str = ""
    date: Optional[str] = None
    provider: str = "unknown"
    discovery_index: int = 0


class ValidationOutcome(_Frozen):
    passed: bool
    reason: Optional[str] = None
    checked_at: datetime = Field(default_factory=utc_now)
    attempt: int = 1
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, *, attempt: int = 1, **details: Any) -> "ValidationOutcome":
        return cls(passed=True, attempt=attempt, details=details)

    @classmethod
    def fail(cls, reason: str, *, attempt: int = 1, **details: Any) -> "ValidationOutcome":
        return cls(passed=False, reason=reason, attempt=attempt, details=details)


class SourceValidations(_Frozen):
    link: ValidationOutcome
    web: ValidationOutcome
    content: Optional[ValidationOutcome] = None

    @model_validator(mode="after")
    def _content_requires_link_and_web(self) -> "SourceValidations":
        if self.content is not None and not (self.link.passed and self.web.passed):
            raise ValueError("content validation requires passed link and web validation")
        return self


class PageMetadata(_Frozen):
    """Facts lifted from the fetched page and the extracted text."""

    title: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    language: Optional[str] = None
    word_count: int = 0
    reading_time: int = 0


class Source(_Frozen):
    """A candidate that passed link, web and content validation."""

    url: str
    title: str = ""
    description: str = ""
    extracted_content: str = ""
    score: float = Field(0.0, ge=0.0, le=1.0)
    relevance: float = Field(0.0, ge=0.0, le=1.0)
    date: Optional[str] = None
    validations: SourceValidations
    metadata: PageMetadata = Field(default_factory=PageMetadata)
    discovery_index: int = 0
    retry_count: int = 0


class Citation(_Frozen):
    url: str
    title: str = ""
    snippet: str = ""
    date: Optional[str] = None
    relevance: float = 0.0

    @classmethod
    def from_source(cls, source: Source, snippet_chars: int = 280) -> "Citation":
        text = source.description or source.extracted_content
        snippet = " ".join(text.split())[:snippet_chars]
        return cls(
            url=source.url,
            title=source.title,
            snippet=snippet,
            date=source.date,
            relevance=source.relevance,
        )


class PipelineError(_Frozen):
    url: str
    phase: ValidationPhase
    message: str
    code: Optional[ErrorCode] = None
    retry_count: int = 0


class PipelineMetrics(_Frozen):
    query: str
    started_at: datetime
    search_time: float = 0.0
    link_validation_time: float = 0.0
    web_validation_time: float = 0.0
    content_validation_time: float = 0.0
    scoring_time: float = 0.0
    total_time: float = 0.0
    search_results: int = 0
    links_found: int = 0
    valid_links: int = 0
    sources_processed: int = 0
    grounded_sources: int = 0
    cache_hits: int = 0
    retries: int = 0
    duplicates_removed: int = 0
    average_score: float = 0.0
    final_state: str = "idle"
    processing_steps: List[str] = Field(default_factory=list)


class PipelineResult(_Frozen):
    is_valid: bool
    score: float = 0.0
    sources: List[Source] = Field(default_factory=list)
    metadata: Optional[PipelineMetrics] = None
    citations: List[Citation] = Field(default_factory=list)
    errors: List[PipelineError] = Field(default_factory=list)

    def grounding_metadata(self) -> Dict[str, Any]:
        """Source summary in the shape consumed by the answer generator."""
        return {
            "webSearchSources": [
                {
                    "url": c.url,
                    "title": c.title,
                    "date": c.date,
                    "relevance": c.relevance,
                    "snippet": c.snippet,
                }
                for c in self.citations
            ]
        }


class CacheEntry(_Frozen):
    """Stage outcomes that passed for one (query, url) pair."""

    link: Optional[ValidationOutcome] = None
    web: Optional[ValidationOutcome] = None
    content: Optional[ValidationOutcome] = None
    extracted_content: Optional[str] = None
    page: Optional[PageMetadata] = None
    stored_at: datetime = Field(default_factory=utc_now)

    @property
    def retries(self) -> int:
        """Retries the stored network stages consumed when they were first run."""
        return sum(max(0, o.attempt - 1) for o in (self.link, self.web) if o is not None)
