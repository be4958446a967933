"""
Page-level validation: robots policy, HTTP status, redirects, content type
and payload size.

The body is streamed in chunks and never buffered past
``max_content_bytes``. A passing outcome is returned together with the
fetched page so the content stage can work on the same bytes. Outcomes
carry typed findings and a stage score (see
:mod:`grounding.services.validation_issues`).
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import aiohttp
import structlog

from grounding.models.options import WebValidationOptions
from grounding.models.pipeline import Candidate, PageMetadata, ValidationOutcome
from grounding.services.content_extractor import header_signals, inspect_page
from grounding.services.validation_issues import (
    WEB_BONUSES,
    Issue,
    IssueSeverity,
    WebIssueType,
    issue_report,
)
from grounding.utils.error_handling import TransientError
from grounding.utils.url_utils import url_origin

logger = structlog.get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


@dataclass
class FetchedPage:
    url: str
    body: str
    content_type: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    metadata: PageMetadata = field(default_factory=PageMetadata)
    signals: FrozenSet[str] = frozenset()


@dataclass
class PageFetch:
    outcome: ValidationOutcome
    page: Optional[FetchedPage] = None


def _rejected(reason: str, issue_type: WebIssueType, message: str, attempt: int, **details) -> PageFetch:
    report = issue_report([Issue(issue_type, IssueSeverity.ERROR, message)])
    return PageFetch(ValidationOutcome.fail(reason, attempt=attempt, **details, **report))


class RobotsPolicy:
    """robots.txt cache keyed by origin, fetched through the caller's session.

    At most ``max_origins`` origins are remembered; expired entries are
    dropped whenever a fresh copy is loaded, and the least recently used
    origin goes first when the map is full.
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        max_origins: int = 1024,
    ) -> None:
        self.ttl = ttl
        self.max_origins = max(1, max_origins)
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[Optional[RobotFileParser], float]]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._cache)

    async def _load(
        self, session: aiohttp.ClientSession, origin: str, user_agent: str, timeout: float
    ) -> Optional[RobotFileParser]:
        robots_url = f"{origin}/robots.txt"
        try:
            async with session.get(
                robots_url,
                headers={"User-Agent": user_agent},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    return None
                text = await resp.text()
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError, UnicodeDecodeError) as exc:
            logger.debug("robots.txt unreadable", origin=origin, error=str(exc))
            return None
        rp = RobotFileParser()
        rp.set_url(robots_url)
        rp.parse(text.splitlines())
        return rp

    def _forget(self, origin: str) -> None:
        self._cache.pop(origin, None)
        lock = self._locks.get(origin)
        if lock is not None and not lock.locked():
            del self._locks[origin]

    def _prune(self, ttl: float, now: float) -> None:
        for origin in [o for o, (_, loaded_at) in self._cache.items() if now - loaded_at > ttl]:
            self._forget(origin)
        while len(self._cache) > self.max_origins:
            self._forget(next(iter(self._cache)))

    async def allowed(
        self,
        session: aiohttp.ClientSession,
        url: str,
        user_agent: str,
        timeout: float = 5.0,
        ttl: Optional[float] = None,
    ) -> bool:
        origin = url_origin(url)
        if origin is None:
            return True
        ttl = self.ttl if ttl is None else ttl
        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            cached = self._cache.get(origin)
            if cached is None or self._clock() - cached[1] > ttl:
                parser = await self._load(session, origin, user_agent, timeout)
                cached = (parser, self._clock())
                self._cache[origin] = cached
                self._cache.move_to_end(origin)
                self._prune(ttl, cached[1])
            else:
                self._cache.move_to_end(origin)
        parser = cached[0]
        if parser is None:
            return True
        return parser.can_fetch(user_agent, url)

    def clear(self) -> None:
        self._cache.clear()
        self._locks = {o: lock for o, lock in self._locks.items() if lock.locked()}


def _page_findings(page: FetchedPage, redirects: int) -> List[Issue]:
    meta = page.metadata
    issues: List[Issue] = []
    if urlparse(page.url).scheme == "http":
        issues.append(Issue(WebIssueType.SECURITY, IssueSeverity.WARNING, "page is served over plain http"))
    if page.content_type.startswith("text/plain"):
        return issues
    if not meta.title:
        issues.append(Issue(WebIssueType.SEO, IssueSeverity.WARNING, "missing page title"))
    if not meta.description:
        issues.append(Issue(WebIssueType.SEO, IssueSeverity.INFO, "missing meta description"))
    if not meta.language:
        issues.append(Issue(WebIssueType.ACCESSIBILITY, IssueSeverity.INFO, "missing html lang attribute"))
    if redirects:
        issues.append(Issue(WebIssueType.PERFORMANCE, IssueSeverity.INFO, f"{redirects} redirect(s) before the page"))
    return issues


class WebValidator:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        robots: Optional[RobotsPolicy] = None,
    ) -> None:
        self.session = session
        self.robots = robots or RobotsPolicy()

    @staticmethod
    def _content_type_allowed(content_type: str, options: WebValidationOptions) -> bool:
        ctype = (content_type or "").lower()
        return any(ctype.startswith(allowed) for allowed in options.allowed_content_types)

    async def _fetch(self, url: str, options: WebValidationOptions, attempt: int) -> PageFetch:
        headers = {
            "User-Agent": options.user_agent,
            "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5",
            "Accept-Language": "en-US,en;q=0.5",
        }
        timeout = aiohttp.ClientTimeout(total=options.request_timeout)
        start = time.perf_counter()

        async with self.session.get(
            url,
            headers=headers,
            timeout=timeout,
            allow_redirects=True,
            max_redirects=options.max_redirects,
        ) as resp:
            status = resp.status
            final_url = str(resp.url)
            redirects = len(resp.history or ())
            content_type = (resp.headers.get("Content-Type") or "").split(";")[0].strip().lower()
            details = {
                "status_code": status,
                "final_url": final_url,
                "content_type": content_type,
                "redirects": redirects,
            }

            if redirects > options.max_redirects:
                return _rejected(
                    "too_many_redirects", WebIssueType.PERFORMANCE, f"{redirects} redirects", attempt, **details
                )
            if status == 429:
                raise TransientError("rate limited", reason="rate_limited", url=url, status_code=status)
            if status >= 500:
                raise TransientError(f"server error {status}", reason="server_error", url=url, status_code=status)
            if not 200 <= status < 300:
                return _rejected(f"http_{status}", WebIssueType.STANDARDS, f"HTTP {status}", attempt, **details)
            if not self._content_type_allowed(content_type, options):
                return _rejected(
                    "unsupported_content_type",
                    WebIssueType.STANDARDS,
                    f"content type '{content_type}' is not accepted",
                    attempt,
                    **details,
                )

            declared = resp.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > options.max_content_bytes:
                return _rejected(
                    "payload_too_large", WebIssueType.PERFORMANCE, "declared body exceeds the size cap",
                    attempt, content_length=int(declared), **details,
                )

            buf = bytearray()
            async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                buf.extend(chunk)
                if len(buf) > options.max_content_bytes:
                    return _rejected(
                        "payload_too_large", WebIssueType.PERFORMANCE, "body exceeds the size cap",
                        attempt, content_length=len(buf), **details,
                    )

            body = bytes(buf).decode(resp.charset or "utf-8", errors="replace")
            response_headers = {k: v for k, v in resp.headers.items()}
        elapsed_ms = (time.perf_counter() - start) * 1000.0

        if content_type.startswith("text/plain"):
            metadata, signals = PageMetadata(), frozenset(header_signals(response_headers))
        else:
            metadata, signals = inspect_page(body, headers=response_headers)
        page = FetchedPage(
            url=final_url,
            body=body,
            content_type=content_type,
            status_code=status,
            headers=response_headers,
            metadata=metadata,
            signals=signals,
        )
        details["content_length"] = len(buf)
        details["load_time_ms"] = round(elapsed_ms, 1)
        details.update(issue_report(
            _page_findings(page, redirects),
            response_ms=elapsed_ms,
            bonus=sum(WEB_BONUSES.get(s, 0.0) for s in signals),
        ))
        return PageFetch(ValidationOutcome.ok(attempt=attempt, **details), page)

    async def validate(
        self,
        candidate: Candidate,
        options: WebValidationOptions,
        *,
        attempt: int = 1,
    ) -> PageFetch:
        url = candidate.url.strip()
        if options.respect_robots_txt:
            if not await self.robots.allowed(self.session, url, options.user_agent, ttl=options.robots_ttl):
                return _rejected(
                    "robots_disallowed", WebIssueType.STANDARDS, "URL is disallowed by robots.txt", attempt
                )

        try:
            return await asyncio.wait_for(
                self._fetch(url, options, attempt), timeout=options.request_timeout
            )
        except aiohttp.TooManyRedirects:
            return _rejected(
                "too_many_redirects", WebIssueType.PERFORMANCE, "redirect limit exceeded",
                attempt, redirects=options.max_redirects + 1,
            )
        except asyncio.TimeoutError as exc:
            raise TransientError("page fetch timed out", reason="timeout", url=url) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransientError(f"page fetch failed: {exc}", reason="unavailable", url=url) from exc
