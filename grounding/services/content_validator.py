"""
Quality checks on extracted main-body text.

Checks run in a fixed order and the first failure wins: emptiness, length,
word count, boilerplate ratio, language, keyword policy, spam score.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from typing import Any, Dict, List, Optional

import structlog

from grounding.models.options import ContentValidationOptions
from grounding.models.pipeline import ValidationOutcome
from grounding.utils.text_utils import count_words, detect_language

logger = structlog.get_logger(__name__)

BOILERPLATE_PHRASES = (
    "cookie", "cookies", "accept all", "privacy policy", "terms of service", "terms of use",
    "all rights reserved", "subscribe", "newsletter", "sign up", "sign in", "log in",
    "share this", "share on", "follow us", "advertisement", "sponsored", "skip to content",
    "back to top", "related posts", "read more", "menu", "home |",
)
SPAM_PHRASES = ("buy now", "click here", "free", "guarantee", "limited time")

_BULLET_RE = re.compile(r"^\s*([-*•|>]|\d+[.)])\s+")
_PUNCT_RE = re.compile(r"[!?.,;:]")
_CAPS_RE = re.compile(r"[A-Z]")


def boilerplate_ratio(text: str) -> float:
    """Share of words that sit on navigation/cookie/ad/share lines or short bullet lines."""
    total = 0
    boiler = 0
    for line in (text or "").splitlines():
        words = line.split()
        if not words:
            continue
        total += len(words)
        lowered = line.lower()
        if any(p in lowered for p in BOILERPLATE_PHRASES) and len(words) <= 12:
            boiler += len(words)
        elif _BULLET_RE.match(line) and len(words) <= 4:
            boiler += len(words)
    return boiler / total if total else 0.0


def spam_score(text: str) -> float:
    """Punctuation density + capitals density + top-word share + spam phrases, scaled to [0, 1]."""
    if not text:
        return 0.0
    length = float(len(text))
    score = len(_PUNCT_RE.findall(text)) / length
    score += len(_CAPS_RE.findall(text)) / length
    words = text.lower().split()
    if words:
        score += Counter(words).most_common(1)[0][1] / float(len(words))
    lowered = text.lower()
    score += 0.1 * sum(1 for phrase in SPAM_PHRASES if phrase in lowered)
    return min(1.0, score / 4.0)


def _contains(haystack: str, keyword: str) -> bool:
    return keyword.strip().lower() in haystack


class ContentValidator:
    def validate(
        self,
        text: str,
        options: ContentValidationOptions,
        *,
        attempt: int = 1,
    ) -> ValidationOutcome:
        text = (text or "").strip()
        if not text:
            return ValidationOutcome.fail("empty_content", attempt=attempt)

        word_count = count_words(text)
        details: Dict[str, Any] = {"length": len(text), "word_count": word_count}

        if len(text) < options.min_length:
            return ValidationOutcome.fail("too_short", attempt=attempt, **details)
        if word_count < options.min_words:
            return ValidationOutcome.fail("insufficient_words", attempt=attempt, **details)
        if options.max_words is not None and word_count > options.max_words:
            return ValidationOutcome.fail("too_many_words", attempt=attempt, **details)

        ratio = boilerplate_ratio(text)
        details["boilerplate_ratio"] = round(ratio, 4)
        if ratio > options.max_boilerplate_ratio:
            return ValidationOutcome.fail("boilerplate", attempt=attempt, **details)

        language: Optional[str] = None
        if options.allowed_languages:
            language, confidence = detect_language(text)
            details["language"] = language
            details["language_confidence"] = round(confidence, 4)
            # Too little signal to call it; not a rejection
            if language is not None and language not in options.allowed_languages:
                return ValidationOutcome.fail("language_mismatch", attempt=attempt, **details)

        lowered = text.lower()
        missing: List[str] = [k for k in options.required_keywords if not _contains(lowered, k)]
        if missing:
            return ValidationOutcome.fail("missing_keywords", attempt=attempt, missing=missing, **details)
        forbidden = [k for k in options.forbidden_keywords if _contains(lowered, k)]
        if forbidden:
            return ValidationOutcome.fail("forbidden_keywords", attempt=attempt, found=forbidden, **details)

        spam = spam_score(text)
        details["spam_score"] = round(spam, 4)
        if spam > options.spam_threshold:
            return ValidationOutcome.fail("spam", attempt=attempt, **details)

        details["language"] = language
        details["reading_time"] = math.ceil(word_count / float(options.reading_speed_wpm))
        return ValidationOutcome.ok(attempt=attempt, **details)
