"""
Scoring and deduplication of validated candidates.

Scores are a weighted mean of three components in [0, 1]: lexical relevance
to the query, recency, and validation confidence. Deduplication is lexical
(Jaccard over lower-cased whitespace tokens unless another measure from
:mod:`grounding.utils.similarity` is chosen) and keeps the higher-scored
member of each near-duplicate pair.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import List, Optional, Sequence, Set, Tuple, Union

import structlog

from grounding.models.options import PipelineOptions, ScoringWeights
from grounding.models.pipeline import Source, SourceValidations
from grounding.services.candidate_processor import ValidatedCandidate
from grounding.utils.date_utils import age_days, iso_or_none
from grounding.utils.similarity import SimilarityAlgorithm, sequence_similarity, word_sequence
from grounding.utils.text_utils import jaccard_similarity, whitespace_tokens

logger = structlog.get_logger(__name__)

_LN2 = math.log(2.0)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class SourceScorer:
    def __init__(self, weights: Optional[ScoringWeights] = None, now: Optional[datetime] = None) -> None:
        self.weights = weights or ScoringWeights()
        self.now = now

    @staticmethod
    def relevance(query: str, text: str) -> float:
        return _clamp(jaccard_similarity(query, text))

    def recency(self, date: Optional[str]) -> float:
        """Exponential decay with a configurable half-life; 0.5 when the date is unknown."""
        age = age_days(date, now=self.now) if date else None
        if age is None:
            return 0.5
        return _clamp(math.exp(-_LN2 * age / self.weights.recency_half_life_days))

    def confidence(self, retries: int) -> float:
        w = self.weights
        return _clamp(max(w.min_confidence, 1.0 - w.retry_penalty * max(0, retries)))

    def combine(self, relevance: float, recency: float, confidence: float) -> float:
        w = self.weights
        total = w.relevance + w.recency + w.confidence
        return _clamp((w.relevance * relevance + w.recency * recency + w.confidence * confidence) / total)

    def score(self, query: str, validated: ValidatedCandidate) -> Source:
        cand = validated.candidate
        page = validated.page
        date = iso_or_none(cand.date) or cand.date or page.date
        relevance = self.relevance(query, validated.text)
        score = self.combine(relevance, self.recency(date), self.confidence(validated.retries))
        return Source(
            url=cand.url,
            title=cand.title or page.title or cand.url,
            description=cand.snippet or page.description or "",
            extracted_content=validated.text,
            score=score,
            relevance=relevance,
            date=date,
            validations=SourceValidations(
                link=validated.link, web=validated.web, content=validated.content
            ),
            metadata=page.model_copy(update={"date": page.date or date}),
            discovery_index=cand.discovery_index,
            retry_count=validated.retries,
        )


def _rank_key(source: Source) -> Tuple[float, int]:
    return (-source.score, source.discovery_index)


class ContentDeduplicator:
    def __init__(
        self,
        threshold: float = 0.8,
        algorithm: Union[SimilarityAlgorithm, str] = SimilarityAlgorithm.JACCARD,
    ) -> None:
        self.threshold = threshold
        self.algorithm = SimilarityAlgorithm(algorithm)

    def _profile(self, text: str) -> Tuple[Set[str], List[str]]:
        tokens = whitespace_tokens(text)
        if self.algorithm is SimilarityAlgorithm.JACCARD:
            return tokens, []
        return tokens, word_sequence(text)

    def similarity(self, a: Tuple[Set[str], List[str]], b: Tuple[Set[str], List[str]]) -> float:
        if self.algorithm is SimilarityAlgorithm.JACCARD:
            return jaccard_similarity(a[0], b[0])
        return sequence_similarity(a[1], b[1], self.algorithm, token_sets=(a[0], b[0]))

    def dedupe(self, sources: Sequence[Source]) -> Tuple[List[Source], int]:
        """Drop near-duplicates; survivors keep discovery order.

        Sources are visited best-first (score desc, discovery index asc) and a
        source is dropped when its similarity to any kept one exceeds the
        threshold.
        """
        kept: List[Tuple[Source, Tuple[Set[str], List[str]]]] = []
        removed = 0
        for src in sorted(sources, key=_rank_key):
            profile = self._profile(src.extracted_content)
            if any(self.similarity(profile, other) > self.threshold for _, other in kept):
                removed += 1
                logger.debug("Dropping near-duplicate source", url=src.url, algorithm=self.algorithm.value)
                continue
            kept.append((src, profile))
        survivors = sorted((s for s, _ in kept), key=lambda s: s.discovery_index)
        return survivors, removed


def rank_sources(sources: Sequence[Source], options: PipelineOptions) -> Tuple[List[Source], int]:
    """Dedupe, sort and truncate according to *options*; returns (sources, duplicates_removed)."""
    out = sorted(sources, key=lambda s: s.discovery_index)
    removed = 0
    if options.filter_duplicates:
        deduplicator = ContentDeduplicator(options.similarity_threshold, options.similarity_algorithm)
        out, removed = deduplicator.dedupe(out)
    if options.sort_results:
        out = sorted(out, key=_rank_key)
    return out[: options.max_results], removed
