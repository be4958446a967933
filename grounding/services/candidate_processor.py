"""
Per-candidate validation flow: Link -> Web -> Content.

Stages run strictly in sequence and the first failure short-circuits the
rest. Network stages run under the retry executor and share one
``RetryBudget``; each stage consults the cache first when caching is on.
Failures come back as a ``PipelineError`` on the outcome, never as
exceptions, except deadline expiry which the scheduler turns into a
``TIMEOUT`` record.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import structlog

from grounding.models.options import PipelineOptions
from grounding.models.pipeline import (
    CacheEntry,
    Candidate,
    ErrorCode,
    PageMetadata,
    PipelineError,
    ValidationOutcome,
    ValidationPhase,
)
from grounding.services.cache import ResultCache
from grounding.services.content_extractor import ContentExtractor
from grounding.services.content_validator import ContentValidator
from grounding.services.link_validator import LinkValidator
from grounding.services.metrics import RunMetrics
from grounding.services.web_validator import WebValidator
from grounding.utils.async_utils import Deadline
from grounding.utils.error_handling import RejectionError, TransientError
from grounding.utils.retry import RetryBudget, RetryExecutor, RetryPolicy

logger = structlog.get_logger(__name__)


@dataclass
class ValidatedCandidate:
    """Everything the scorer needs to turn a candidate into a Source."""

    candidate: Candidate
    link: ValidationOutcome
    web: ValidationOutcome
    content: ValidationOutcome
    text: str
    page: PageMetadata = field(default_factory=PageMetadata)
    retries: int = 0


@dataclass
class CandidateOutcome:
    candidate: Candidate
    validated: Optional[ValidatedCandidate] = None
    error: Optional[PipelineError] = None
    cache_entry: Optional[CacheEntry] = None
    from_cache: bool = False
    retries: int = 0


def _stage_error(
    candidate: Candidate,
    phase: ValidationPhase,
    outcome: ValidationOutcome,
    code: ErrorCode,
    retries: int,
) -> PipelineError:
    return PipelineError(
        url=candidate.url,
        phase=phase,
        message=f"{phase.value} validation failed: {outcome.reason}",
        code=code,
        retry_count=retries,
    )


def timeout_error(candidate: Candidate, retries: int = 0) -> PipelineError:
    return PipelineError(
        url=candidate.url,
        phase=ValidationPhase.PROCESSING,
        message="request deadline exceeded before validation finished",
        code=ErrorCode.TIMEOUT,
        retry_count=retries,
    )


def processing_error(candidate: Candidate, exc: BaseException, retries: int = 0) -> PipelineError:
    return PipelineError(
        url=candidate.url,
        phase=ValidationPhase.PROCESSING,
        message=f"{type(exc).__name__}: {exc}",
        code=ErrorCode.PROCESSING_ERROR,
        retry_count=retries,
    )


class CandidateProcessor:
    def __init__(
        self,
        query: str,
        options: PipelineOptions,
        *,
        link_validator: LinkValidator,
        web_validator: WebValidator,
        content_validator: ContentValidator,
        extractor: ContentExtractor,
        cache: Optional[ResultCache],
        metrics: RunMetrics,
        deadline: Deadline,
        retry_executor: Optional[RetryExecutor] = None,
    ) -> None:
        self.query = query
        self.options = options
        self.link_validator = link_validator
        self.web_validator = web_validator
        self.content_validator = content_validator
        self.extractor = extractor
        self.cache = cache if options.cache_results else None
        self.metrics = metrics
        self.deadline = deadline
        self.retry = retry_executor or RetryExecutor()
        self.policy = RetryPolicy.from_retry_count(
            options.retry_count, options.retry_delay, options.retry_max_delay
        )
        self._budgets: dict = {}

    def retries_for(self, candidate: Candidate) -> int:
        budget = self._budgets.get(candidate.discovery_index)
        return budget.used if budget is not None else 0

    async def process(self, candidate: Candidate) -> CandidateOutcome:
        budget = RetryBudget(self.options.retry_count)
        self._budgets[candidate.discovery_index] = budget
        url = candidate.url
        opts = self.options

        cached: Optional[CacheEntry] = None
        if self.cache is not None:
            cached = await self.deadline.run(self.cache.get(self.query, url), url=url)
        from_cache = False
        fresh = False
        # retries spent by stages reused from the cache, on the run that stored them
        carried = 0

        def _retries() -> int:
            return budget.used + carried

        def _fail(phase: ValidationPhase, outcome: ValidationOutcome, code: ErrorCode, entry=None) -> CandidateOutcome:
            if from_cache:
                self.metrics.increment("cache_hits")
            logger.info(
                "Candidate rejected",
                url=url,
                phase=phase.value,
                reason=outcome.reason,
                retries=_retries(),
            )
            return CandidateOutcome(
                candidate=candidate,
                error=_stage_error(candidate, phase, outcome, code, _retries()),
                cache_entry=entry,
                from_cache=from_cache,
                retries=_retries(),
            )

        # Link
        if cached is not None and cached.link is not None and cached.link.passed:
            link = cached.link
            carried += max(0, link.attempt - 1)
            from_cache = True
        else:
            fresh = True
            start = time.perf_counter()
            try:
                link = await self.retry.run(
                    lambda attempt: self.link_validator.validate(
                        candidate, opts.link_validation, attempt=attempt
                    ),
                    self.policy,
                    deadline=self.deadline,
                    budget=budget,
                    metrics=self.metrics,
                    url=url,
                    stage="link",
                )
            except TransientError as exc:
                link = ValidationOutcome.fail(
                    exc.reason if exc.reason in ("unreachable", "server_error") else "unreachable",
                    attempt=budget.used + 1,
                    status_code=exc.status_code,
                )
            except RejectionError as exc:
                link = ValidationOutcome.fail(exc.reason, attempt=budget.used + 1)
            finally:
                self.metrics.add_time("link_validation_time", time.perf_counter() - start)
        if not link.passed:
            code = (
                ErrorCode.LINK_UNREACHABLE
                if link.reason in ("unreachable", "server_error")
                else ErrorCode.LINK_INVALID
            )
            return _fail(ValidationPhase.LINK, link, code)
        self.metrics.increment("valid_links")
        self.metrics.step(f"link_passed:{url}")

        # Web (+ extraction)
        text: Optional[str] = None
        page = PageMetadata()
        if (
            cached is not None
            and cached.web is not None
            and cached.web.passed
            and cached.extracted_content is not None
        ):
            web = cached.web
            carried += max(0, web.attempt - 1)
            text = cached.extracted_content
            page = cached.page or PageMetadata()
            from_cache = True
        else:
            fresh = True
            start = time.perf_counter()
            try:
                fetch = await self.retry.run(
                    lambda attempt: self.web_validator.validate(
                        candidate, opts.web_validation, attempt=attempt
                    ),
                    self.policy,
                    deadline=self.deadline,
                    budget=budget,
                    metrics=self.metrics,
                    url=url,
                    stage="web",
                )
                web = fetch.outcome
            except TransientError as exc:
                fetch = None
                web = ValidationOutcome.fail(
                    exc.reason or "unavailable", attempt=budget.used + 1, status_code=exc.status_code
                )
            except RejectionError as exc:
                fetch = None
                web = ValidationOutcome.fail(exc.reason, attempt=budget.used + 1)
            finally:
                self.metrics.add_time("web_validation_time", time.perf_counter() - start)
            if not web.passed:
                code = ErrorCode.WEB_INVALID
                if web.reason in ("rate_limited", "server_error", "timeout", "unavailable"):
                    code = ErrorCode.WEB_UNAVAILABLE
                return _fail(ValidationPhase.WEB, web, code, self._entry(link, None, None, None, None, fresh))
            page = fetch.page.metadata if fetch is not None and fetch.page is not None else PageMetadata()

        # Content
        start = time.perf_counter()
        try:
            if text is None:
                try:
                    text = self.extractor.extract_main_text(
                        fetch.page.body, content_type=fetch.page.content_type
                    )
                except RejectionError as exc:
                    content = ValidationOutcome.fail(exc.reason)
                    return _fail(
                        ValidationPhase.CONTENT, content, ErrorCode.CONTENT_INVALID,
                        self._entry(link, web, None, None, None, fresh),
                    )
            if (
                cached is not None
                and cached.content is not None
                and cached.content.passed
                and text == cached.extracted_content
            ):
                content = cached.content
                from_cache = True
            else:
                fresh = True
                content = self.content_validator.validate(text, opts.content_validation)
        finally:
            self.metrics.add_time("content_validation_time", time.perf_counter() - start)
        if not content.passed:
            return _fail(
                ValidationPhase.CONTENT, content, ErrorCode.CONTENT_INVALID,
                self._entry(link, web, None, text, page, fresh),
            )

        if from_cache:
            self.metrics.increment("cache_hits")
        self.metrics.increment("sources_processed")
        page = page.model_copy(update={
            "word_count": int(content.details.get("word_count") or 0),
            "reading_time": int(content.details.get("reading_time") or 0),
            "language": content.details.get("language") or page.language,
        })
        if opts.log_progress:
            logger.info("Candidate validated", url=url, retries=_retries(), from_cache=from_cache)
        return CandidateOutcome(
            candidate=candidate,
            validated=ValidatedCandidate(
                candidate=candidate,
                link=link,
                web=web,
                content=content,
                text=text,
                page=page,
                retries=_retries(),
            ),
            cache_entry=self._entry(link, web, content, text, page, fresh),
            from_cache=from_cache,
            retries=_retries(),
        )

    def _entry(
        self,
        link: Optional[ValidationOutcome],
        web: Optional[ValidationOutcome],
        content: Optional[ValidationOutcome],
        text: Optional[str],
        page: Optional[PageMetadata],
        fresh: bool,
    ) -> Optional[CacheEntry]:
        """Whole-entry snapshot of the passed stages, or None when nothing new was learned."""
        if self.cache is None or not fresh:
            return None
        return CacheEntry(
            link=link,
            web=web,
            content=content,
            extracted_content=text if web is not None else None,
            page=page if web is not None else None,
        )
