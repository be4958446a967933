"""
Lexical similarity measures used for near-duplicate detection.

All measures return a value in [0, 1]. Jaccard works on the raw
whitespace token sets (the pipeline default). The other measures work on
the normalised word sequence of each text: lower-cased unless asked
otherwise, punctuation dropped, whitespace collapsed.

Edit-distance style measures are quadratic in sequence length, so they
compare words rather than characters and only look at the first
``max_tokens`` words of each text.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from enum import Enum
from typing import AbstractSet, List, Optional, Sequence, Tuple, Union

from .text_utils import jaccard_similarity, whitespace_tokens

DEFAULT_MAX_TOKENS = 200
_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WORD_RE = re.compile(r"\w+", re.UNICODE)

Words = Union[str, Sequence[str]]


class SimilarityAlgorithm(str, Enum):
    JACCARD = "jaccard"
    LEVENSHTEIN = "levenshtein"
    JARO_WINKLER = "jaro-winkler"
    COSINE = "cosine"
    HYBRID = "hybrid"


SIMILARITY_ALGORITHMS = tuple(a.value for a in SimilarityAlgorithm)

# hybrid = weighted mean of the four base measures
_HYBRID_WEIGHTS = (
    (SimilarityAlgorithm.LEVENSHTEIN, 0.3),
    (SimilarityAlgorithm.JARO_WINKLER, 0.3),
    (SimilarityAlgorithm.JACCARD, 0.2),
    (SimilarityAlgorithm.COSINE, 0.2),
)


def word_sequence(text: str, *, case_sensitive: bool = False, ignore_punctuation: bool = True) -> List[str]:
    text = text or ""
    if not case_sensitive:
        text = text.lower()
    if ignore_punctuation:
        text = _PUNCT_RE.sub(" ", text)
    return _WORD_RE.findall(text)


def _words(value: Words) -> List[str]:
    return word_sequence(value) if isinstance(value, str) else list(value)


def levenshtein_similarity(a: Words, b: Words, max_tokens: int = DEFAULT_MAX_TOKENS) -> float:
    """``1 - edit_distance / longer_length`` over word sequences."""
    sa, sb = _words(a)[:max_tokens], _words(b)[:max_tokens]
    if not sa or not sb:
        return 0.0
    if sa == sb:
        return 1.0
    if len(sa) < len(sb):
        sa, sb = sb, sa
    previous = list(range(len(sb) + 1))
    for i, x in enumerate(sa, 1):
        current = [i]
        for j, y in enumerate(sb, 1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (x != y)))
        previous = current
    return 1.0 - previous[-1] / float(len(sa))


def _jaro(sa: Sequence[str], sb: Sequence[str]) -> float:
    window = max(0, max(len(sa), len(sb)) // 2 - 1)
    matched_a = [False] * len(sa)
    matched_b = [False] * len(sb)
    matches = 0
    for i, x in enumerate(sa):
        for j in range(max(0, i - window), min(i + window + 1, len(sb))):
            if not matched_b[j] and sb[j] == x:
                matched_a[i] = matched_b[j] = True
                matches += 1
                break
    if not matches:
        return 0.0
    half_transpositions = 0
    k = 0
    for i, x in enumerate(sa):
        if not matched_a[i]:
            continue
        while not matched_b[k]:
            k += 1
        if x != sb[k]:
            half_transpositions += 1
        k += 1
    m = float(matches)
    return (m / len(sa) + m / len(sb) + (m - half_transpositions / 2.0) / m) / 3.0


def jaro_winkler_similarity(
    a: Words,
    b: Words,
    *,
    prefix_scale: float = 0.1,
    max_prefix: int = 4,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> float:
    """Jaro similarity boosted by the length of the common prefix (capped at ``max_prefix``)."""
    sa, sb = _words(a)[:max_tokens], _words(b)[:max_tokens]
    if not sa or not sb:
        return 0.0
    if sa == sb:
        return 1.0
    # greedy matching depends on direction; fix an order so the measure is symmetric
    if (len(sa), sa) > (len(sb), sb):
        sa, sb = sb, sa
    jaro = _jaro(sa, sb)
    prefix = 0
    for x, y in zip(sa[:max_prefix], sb[:max_prefix]):
        if x != y:
            break
        prefix += 1
    return min(1.0, jaro + prefix * prefix_scale * (1.0 - jaro))


def cosine_similarity(a: Words, b: Words) -> float:
    """Cosine of the word-frequency vectors."""
    ca, cb = Counter(_words(a)), Counter(_words(b))
    if not ca or not cb:
        return 0.0
    dot = sum(ca[t] * cb[t] for t in ca.keys() & cb.keys())
    norm = math.sqrt(sum(v * v for v in ca.values())) * math.sqrt(sum(v * v for v in cb.values()))
    return min(1.0, dot / norm) if norm else 0.0


def calculate_similarity(
    a: str,
    b: str,
    algorithm: Union[SimilarityAlgorithm, str] = SimilarityAlgorithm.JACCARD,
) -> float:
    algorithm = SimilarityAlgorithm(algorithm)
    if algorithm is SimilarityAlgorithm.JACCARD:
        return jaccard_similarity(whitespace_tokens(a), whitespace_tokens(b))
    return sequence_similarity(
        word_sequence(a), word_sequence(b), algorithm, token_sets=(whitespace_tokens(a), whitespace_tokens(b))
    )


def sequence_similarity(
    sa: Sequence[str],
    sb: Sequence[str],
    algorithm: SimilarityAlgorithm,
    token_sets: Optional[Tuple[AbstractSet[str], AbstractSet[str]]] = None,
) -> float:
    """Similarity of two pre-tokenised word sequences.

    *token_sets* are the whitespace token sets used for Jaccard (alone or
    inside the hybrid); without them Jaccard falls back to the word sets.
    """
    if algorithm is SimilarityAlgorithm.LEVENSHTEIN:
        return levenshtein_similarity(sa, sb)
    if algorithm is SimilarityAlgorithm.JARO_WINKLER:
        return jaro_winkler_similarity(sa, sb)
    if algorithm is SimilarityAlgorithm.COSINE:
        return cosine_similarity(sa, sb)
    if algorithm is SimilarityAlgorithm.JACCARD:
        if token_sets is not None:
            return jaccard_similarity(*token_sets)
        return jaccard_similarity(set(sa), set(sb))
    total = 0.0
    for part, weight in _HYBRID_WEIGHTS:
        total += weight * sequence_similarity(sa, sb, part, token_sets)
    return min(1.0, total)
