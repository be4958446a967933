"""
Link-level validation: URL shape, scheme and domain policy, reachability.

Policy checks never touch the network. The optional reachability probe is a
single HEAD request; connection problems and 5xx responses are raised as
``TransientError`` so the retry executor can re-attempt them. Every outcome
carries its findings and a stage score (see
:mod:`grounding.services.validation_issues`).
"""

from __future__ import annotations

import asyncio
import re
import time
from functools import lru_cache
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urlparse

import aiohttp
import structlog

from grounding.models.options import LinkValidationOptions
from grounding.models.pipeline import Candidate, ValidationOutcome
from grounding.services.validation_issues import Issue, IssueSeverity, LinkIssueType, issue_report
from grounding.utils.error_handling import TransientError
from grounding.utils.url_utils import domain_matches, extract_domain, is_valid_url

logger = structlog.get_logger(__name__)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def _rejection(reason: str, issue_type: LinkIssueType, message: str, **details) -> ValidationOutcome:
    issue = Issue(issue_type, IssueSeverity.ERROR, message)
    return ValidationOutcome.fail(reason, **details, **issue_report([issue]))


class LinkValidator:
    def __init__(self, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.session = session

    def check_policy(self, url: str, options: LinkValidationOptions) -> Optional[ValidationOutcome]:
        """Return a failed outcome when *url* breaks policy, else None."""
        url = (url or "").strip()
        if not is_valid_url(url, options.max_url_length):
            return _rejection(
                "malformed_url", LinkIssueType.FORMAT, "URL is malformed or too long", url_length=len(url)
            )

        scheme = urlparse(url).scheme.lower()
        domain = extract_domain(url)
        if scheme not in options.allowed_schemes:
            return _rejection(
                "scheme_not_allowed",
                LinkIssueType.PROTOCOL,
                f"protocol '{scheme}' is not allowed",
                scheme=scheme,
                domain=domain,
            )
        if domain_matches(domain, options.blocked_domains):
            return _rejection(
                "blacklisted", LinkIssueType.DOMAIN, f"domain '{domain}' is blacklisted",
                scheme=scheme, domain=domain, rule="domain",
            )
        for pattern in options.blocked_patterns:
            if _compile(pattern).search(url):
                return _rejection(
                    "blacklisted", LinkIssueType.DOMAIN, f"URL matches blocked pattern {pattern!r}",
                    scheme=scheme, domain=domain, rule="pattern", pattern=pattern,
                )
        if options.allowed_domains and not domain_matches(domain, options.allowed_domains):
            return _rejection(
                "domain_not_allowed", LinkIssueType.DOMAIN, f"domain '{domain}' is not in whitelist",
                scheme=scheme, domain=domain,
            )
        return None

    async def _probe(self, url: str, options: LinkValidationOptions) -> Tuple[int, int]:
        """HEAD *url*; returns (status, redirects followed)."""
        headers = {"User-Agent": options.user_agent}
        timeout = aiohttp.ClientTimeout(total=options.probe_timeout)

        async def _head() -> Tuple[int, int]:
            async with self.session.head(
                url, headers=headers, timeout=timeout, allow_redirects=True
            ) as resp:
                return resp.status, len(resp.history or ())

        try:
            status, redirects = await asyncio.wait_for(_head(), timeout=options.probe_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError("reachability probe timed out", reason="unreachable", url=url) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransientError(f"reachability probe failed: {exc}", reason="unreachable", url=url) from exc

        if status >= 500:
            raise TransientError(
                f"server error {status}", reason="server_error", url=url, status_code=status
            )
        return status, redirects

    async def validate(
        self,
        candidate: Candidate,
        options: LinkValidationOptions,
        *,
        attempt: int = 1,
    ) -> ValidationOutcome:
        """Validate ``candidate.url``.

        Statuses below 500 count as reachable: HEAD-specific refusals such as
        404 or 405 are left for the web validator's GET and only recorded as
        a warning.
        """
        url = candidate.url.strip()
        rejected = self.check_policy(url, options)
        if rejected is not None:
            logger.debug("Link rejected", url=url, reason=rejected.reason)
            return rejected.model_copy(update={"attempt": attempt})

        details = {"scheme": urlparse(url).scheme.lower(), "domain": extract_domain(url)}
        issues: List[Issue] = []
        response_ms: Optional[float] = None
        redirects = 0
        if options.check_reachability and self.session is not None:
            start = time.perf_counter()
            status, redirects = await self._probe(url, options)
            response_ms = (time.perf_counter() - start) * 1000.0
            details.update(status_code=status, redirects=redirects, response_time_ms=round(response_ms, 1))
            if status >= 400:
                issues.append(Issue(LinkIssueType.STATUS, IssueSeverity.WARNING, f"HTTP {status} on HEAD"))
            if redirects:
                issues.append(
                    Issue(LinkIssueType.REDIRECT, IssueSeverity.INFO, f"URL has {redirects} redirect(s)")
                )
        details.update(issue_report(issues, response_ms=response_ms, redirects=redirects))
        return ValidationOutcome.ok(attempt=attempt, **details)
