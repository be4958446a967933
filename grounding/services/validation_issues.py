"""
Typed findings recorded by the link and web validators, and the per-stage
quality score derived from them.

Each finding carries a type, a severity and a message. A stage score
starts at 1.0 and loses 0.4 per error, 0.2 per warning and 0.1 per info
finding. A slow response (over two seconds) costs another 0.1 and every
redirect followed by the link check 0.05. Good-practice signals add small
bonuses. The result is clamped to [0, 1].

Findings and score land in ``ValidationOutcome.details`` under ``issues``
and ``score``; they are informational and do not change pass/fail.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

SLOW_RESPONSE_MS = 2000.0
SLOW_RESPONSE_PENALTY = 0.1
REDIRECT_PENALTY = 0.05


class IssueSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LinkIssueType(str, Enum):
    PROTOCOL = "protocol"
    DOMAIN = "domain"
    STATUS = "status"
    SSL = "ssl"
    ROBOTS = "robots"
    RELEVANCE = "relevance"
    REDIRECT = "redirect"
    RESPONSE = "response"
    FORMAT = "format"


class WebIssueType(str, Enum):
    SECURITY = "security"
    ACCESSIBILITY = "accessibility"
    SEO = "seo"
    PERFORMANCE = "performance"
    STRUCTURE = "structure"
    HEADERS = "headers"
    METADATA = "metadata"
    STANDARDS = "standards"


SEVERITY_PENALTY = {
    IssueSeverity.ERROR: 0.4,
    IssueSeverity.WARNING: 0.2,
    IssueSeverity.INFO: 0.1,
}

# Good-practice bonuses for fetched pages
WEB_BONUSES = {
    "csp": 0.1,
    "hsts": 0.1,
    "open_graph": 0.05,
    "twitter_card": 0.05,
    "schema_org": 0.1,
    "canonical": 0.1,
}


@dataclass(frozen=True)
class Issue:
    type: Union[LinkIssueType, WebIssueType]
    severity: IssueSeverity
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "severity": self.severity.value, "message": self.message}


def overall_score(
    issues: Iterable[Issue],
    *,
    response_ms: Optional[float] = None,
    redirects: int = 0,
    bonus: float = 0.0,
) -> float:
    score = 1.0 - sum(SEVERITY_PENALTY[i.severity] for i in issues)
    if response_ms is not None and response_ms > SLOW_RESPONSE_MS:
        score -= SLOW_RESPONSE_PENALTY
    score -= REDIRECT_PENALTY * max(0, redirects)
    score += bonus
    return max(0.0, min(1.0, score))


def issue_report(issues: List[Issue], **score_kwargs: Any) -> Dict[str, Any]:
    """``{"issues": [...], "score": float}`` ready to merge into outcome details."""
    return {
        "issues": [i.as_dict() for i in issues],
        "score": round(overall_score(issues, **score_kwargs), 4),
    }
