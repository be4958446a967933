from __future__ import annotations

import os
import re
from typing import Dict, FrozenSet, Iterable, Optional, Set, Tuple

import nltk

# ISO 639-1 code -> NLTK stopwords corpus file id
_NLTK_LANGUAGES: Dict[str, str] = {
    "en": "english",
    "es": "spanish",
    "fr": "french",
    "de": "german",
    "pt": "portuguese",
    "it": "italian",
    "nl": "dutch",
    "sv": "swedish",
    "da": "danish",
    "no": "norwegian",
    "fi": "finnish",
    "ru": "russian",
    "tr": "turkish",
}

_FALLBACK_STOP_WORDS: Dict[str, FrozenSet[str]] = {
    "en": frozenset({
        "the", "a", "an", "and", "or", "but", "of", "in", "on", "for", "to", "with", "by",
        "is", "are", "was", "were", "be", "as", "at", "it", "this", "that", "from", "not",
        "have", "has", "you", "they", "which", "can", "will", "their", "its", "when",
    }),
    "es": frozenset({
        "el", "la", "los", "las", "de", "del", "que", "y", "en", "un", "una", "por", "con",
        "para", "es", "se", "no", "su", "al", "lo", "como", "más", "pero", "sus", "le",
    }),
    "fr": frozenset({
        "le", "la", "les", "de", "des", "du", "et", "en", "un", "une", "est", "que", "qui",
        "dans", "pour", "pas", "sur", "au", "avec", "ce", "il", "elle", "sont", "par", "plus",
    }),
    "de": frozenset({
        "der", "die", "das", "und", "ist", "nicht", "ein", "eine", "zu", "den", "mit", "von",
        "sich", "des", "auf", "für", "im", "dem", "auch", "es", "an", "als", "wird", "sind",
    }),
    "pt": frozenset({
        "o", "os", "as", "de", "do", "da", "dos", "das", "e", "em", "um", "uma", "que", "não",
        "para", "com", "por", "se", "na", "no", "mais", "ao", "como", "seu", "sua",
    }),
    "it": frozenset({
        "il", "lo", "gli", "le", "di", "del", "della", "e", "è", "un", "una", "che", "non",
        "per", "con", "su", "si", "nel", "nella", "sono", "anche", "come", "più", "ma",
    }),
}


def _ensure_nltk_ready() -> bool:
    """Return True if the stopwords corpus is available (download if env allows)."""
    try:
        nltk.data.find("corpora/stopwords")
        return True
    except LookupError:
        if os.getenv("GROUNDING_ALLOW_NLTK_DOWNLOADS") == "1":
            try:
                return bool(nltk.download("stopwords", quiet=True))
            except Exception:
                return False
        return False


def _load_stop_words() -> Dict[str, FrozenSet[str]]:
    if not _ensure_nltk_ready():
        return dict(_FALLBACK_STOP_WORDS)
    tables: Dict[str, FrozenSet[str]] = {}
    for code, fileid in _NLTK_LANGUAGES.items():
        try:
            tables[code] = frozenset(nltk.corpus.stopwords.words(fileid))
        except (LookupError, OSError):
            continue
    return tables or dict(_FALLBACK_STOP_WORDS)


LANGUAGE_STOP_WORDS: Dict[str, FrozenSet[str]] = _load_stop_words()

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def whitespace_tokens(text: str) -> Set[str]:
    """Lower-cased whitespace-separated raw tokens (no stop-word handling)."""
    return set((text or "").lower().split())


def jaccard_similarity(a: Iterable[str] | str, b: Iterable[str] | str) -> float:
    """Intersection over union of two token sets.

    Strings are tokenized with :func:`whitespace_tokens`. Two empty inputs
    have similarity 0.
    """
    set_a = whitespace_tokens(a) if isinstance(a, str) else set(a)
    set_b = whitespace_tokens(b) if isinstance(b, str) else set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / float(len(set_a | set_b))


def count_words(text: str) -> int:
    return len((text or "").split())


def detect_language(
    text: str,
    *,
    min_hits: int = 3,
    candidates: Optional[Iterable[str]] = None,
) -> Tuple[Optional[str], float]:
    """Guess the language of *text* by stop-word overlap.

    Returns ``(code, confidence)`` where confidence is the share of the best
    language's stop-word hits among all hits. ``code`` is None when fewer
    than *min_hits* stop words were seen.
    """
    words = [w.lower() for w in _WORD_RE.findall(text or "")[:2000]]
    if not words:
        return None, 0.0
    codes = list(candidates) if candidates else list(LANGUAGE_STOP_WORDS)
    hits: Dict[str, int] = {}
    for code in codes:
        table = LANGUAGE_STOP_WORDS.get(code)
        if not table:
            continue
        hits[code] = sum(1 for w in words if w in table)
    if not hits:
        return None, 0.0
    best = max(hits, key=lambda c: (hits[c], c == "en"))
    total = sum(hits.values())
    if hits[best] < min_hits or total == 0:
        return None, 0.0
    return best, hits[best] / float(total)
