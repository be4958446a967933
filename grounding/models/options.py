"""
Tunable knobs for a pipeline run.

Plain dataclasses: callers build them directly or through
:func:`grounding.core.config.default_pipeline_options`. Invalid values raise
``ValueError`` at construction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from grounding.utils.similarity import SIMILARITY_ALGORITHMS

DEFAULT_USER_AGENT = "grounding-pipeline/0.1 (+https://example.invalid/bot)"


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


@dataclass
class LinkValidationOptions:
    allowed_schemes: Tuple[str, ...] = ("http", "https")
    blocked_domains: Tuple[str, ...] = ()
    blocked_patterns: Tuple[str, ...] = ()
    allowed_domains: Tuple[str, ...] = ()
    max_url_length: int = 2048
    check_reachability: bool = True
    probe_timeout: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        self.allowed_schemes = tuple(s.lower() for s in self.allowed_schemes)
        self.blocked_domains = tuple(self.blocked_domains)
        self.blocked_patterns = tuple(self.blocked_patterns)
        self.allowed_domains = tuple(self.allowed_domains)
        _require(bool(self.allowed_schemes), "allowed_schemes must not be empty")
        _require(self.max_url_length > 0, "max_url_length must be positive")
        _require(self.probe_timeout > 0, "probe_timeout must be positive")


@dataclass
class WebValidationOptions:
    max_redirects: int = 5
    allowed_content_types: Tuple[str, ...] = ("text/html", "application/xhtml+xml", "text/plain")
    max_content_bytes: int = 5 * 1024 * 1024
    request_timeout: float = 10.0
    respect_robots_txt: bool = True
    robots_ttl: float = 3600.0
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        self.allowed_content_types = tuple(t.lower() for t in self.allowed_content_types)
        _require(self.max_redirects >= 0, "max_redirects must be >= 0")
        _require(self.max_content_bytes > 0, "max_content_bytes must be positive")
        _require(self.request_timeout > 0, "request_timeout must be positive")
        _require(self.robots_ttl >= 0, "robots_ttl must be >= 0")


@dataclass
class ContentValidationOptions:
    min_length: int = 200
    min_words: int = 50
    max_words: Optional[int] = None
    max_boilerplate_ratio: float = 0.5
    allowed_languages: Tuple[str, ...] = ("en",)
    required_keywords: Tuple[str, ...] = ()
    forbidden_keywords: Tuple[str, ...] = ()
    spam_threshold: float = 0.3
    reading_speed_wpm: int = 200

    def __post_init__(self) -> None:
        self.allowed_languages = tuple(lang.lower() for lang in self.allowed_languages)
        self.required_keywords = tuple(self.required_keywords)
        self.forbidden_keywords = tuple(self.forbidden_keywords)
        _require(self.min_length >= 0, "min_length must be >= 0")
        _require(self.min_words >= 0, "min_words must be >= 0")
        _require(
            self.max_words is None or self.max_words >= self.min_words,
            "max_words must be >= min_words",
        )
        _require(0.0 <= self.max_boilerplate_ratio <= 1.0, "max_boilerplate_ratio must be within [0, 1]")
        _require(0.0 <= self.spam_threshold <= 1.0, "spam_threshold must be within [0, 1]")
        _require(self.reading_speed_wpm > 0, "reading_speed_wpm must be positive")


@dataclass
class ScoringWeights:
    relevance: float = 0.5
    recency: float = 0.2
    confidence: float = 0.3
    recency_half_life_days: float = 365.0
    retry_penalty: float = 0.05
    min_confidence: float = 0.5

    def __post_init__(self) -> None:
        _require(
            min(self.relevance, self.recency, self.confidence) >= 0,
            "scoring weights must be >= 0",
        )
        _require(self.relevance + self.recency + self.confidence > 0, "scoring weights must not all be zero")
        _require(self.recency_half_life_days > 0, "recency_half_life_days must be positive")
        _require(0.0 <= self.min_confidence <= 1.0, "min_confidence must be within [0, 1]")
        _require(self.retry_penalty >= 0, "retry_penalty must be >= 0")


@dataclass
class PipelineOptions:
    max_concurrent_requests: int = 5
    timeout: Optional[float] = 30.0
    retry_count: int = 3
    retry_delay: float = 1.0
    cache_results: bool = True
    similarity_threshold: float = 0.8
    similarity_algorithm: str = "jaccard"
    max_results: int = 10
    sort_results: bool = True
    filter_duplicates: bool = True
    include_metadata: bool = True
    log_progress: bool = False
    retry_max_delay: float = 30.0
    cache_ttl: float = 3600.0
    link_validation: LinkValidationOptions = field(default_factory=LinkValidationOptions)
    web_validation: WebValidationOptions = field(default_factory=WebValidationOptions)
    content_validation: ContentValidationOptions = field(default_factory=ContentValidationOptions)
    scoring: ScoringWeights = field(default_factory=ScoringWeights)

    def __post_init__(self) -> None:
        _require(self.max_concurrent_requests >= 1, "max_concurrent_requests must be >= 1")
        _require(self.timeout is None or self.timeout > 0, "timeout must be positive")
        _require(self.retry_count >= 0, "retry_count must be >= 0")
        _require(self.retry_delay >= 0, "retry_delay must be >= 0")
        _require(self.retry_max_delay >= 0, "retry_max_delay must be >= 0")
        _require(0.0 <= self.similarity_threshold <= 1.0, "similarity_threshold must be within [0, 1]")
        algorithm = getattr(self.similarity_algorithm, "value", self.similarity_algorithm)
        self.similarity_algorithm = str(algorithm).lower()
        _require(
            self.similarity_algorithm in SIMILARITY_ALGORITHMS,
            f"similarity_algorithm must be one of {', '.join(SIMILARITY_ALGORITHMS)}",
        )
        _require(self.max_results >= 1, "max_results must be >= 1")
        _require(self.cache_ttl > 0, "cache_ttl must be positive")
