"""
Pipeline orchestrator: search -> validate -> score/dedupe -> cache -> result.

One ``run_pipeline`` call walks the state machine

    IDLE -> SEARCHING -> VALIDATING -> SCORING -> CACHING -> COMPLETED

with ABORTED reachable from any non-terminal state. Callers always get a
``PipelineResult`` back; only invalid options raise.

State belongs to the run, not the orchestrator, so one orchestrator can
serve overlapping ``run_pipeline`` calls.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

import aiohttp
import structlog

from grounding.core.config import get_brave_api_key, get_redis_url, merge_options
from grounding.logging_config import bind_request_context, clear_request_context
from grounding.models.options import PipelineOptions
from grounding.models.pipeline import (
    Candidate,
    Citation,
    ErrorCode,
    PipelineError,
    PipelineResult,
    Source,
    ValidationPhase,
)
from grounding.services.cache import InMemoryResultCache, RedisResultCache, ResultCache
from grounding.services.candidate_processor import (
    CandidateOutcome,
    CandidateProcessor,
    processing_error,
    timeout_error,
)
from grounding.services.content_extractor import ContentExtractor, HtmlContentExtractor
from grounding.services.content_validator import ContentValidator
from grounding.services.link_validator import LinkValidator
from grounding.services.metrics import RunMetrics
from grounding.services.scheduler import BoundedScheduler
from grounding.services.scoring import SourceScorer, rank_sources
from grounding.services.search_providers import BraveSearchProvider, SearchProvider
from grounding.services.web_validator import RobotsPolicy, WebValidator
from grounding.utils.async_utils import Deadline
from grounding.utils.error_handling import PipelineTimeoutError, log_exception
from grounding.utils.url_utils import normalize_url

logger = structlog.get_logger(__name__)

OptionsArg = Union[PipelineOptions, Mapping[str, Any], None]


class PipelineState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    VALIDATING = "validating"
    SCORING = "scoring"
    CACHING = "caching"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TERMINAL = {PipelineState.COMPLETED, PipelineState.ABORTED}
_ALLOWED = {
    PipelineState.IDLE: {PipelineState.SEARCHING},
    PipelineState.SEARCHING: {PipelineState.VALIDATING},
    PipelineState.VALIDATING: {PipelineState.SCORING},
    PipelineState.SCORING: {PipelineState.CACHING, PipelineState.COMPLETED},
    PipelineState.CACHING: {PipelineState.COMPLETED},
}


@dataclass
class PipelineRun:
    """Mutable bookkeeping for a single ``run_pipeline`` call."""

    run_id: str
    query: str
    options: PipelineOptions
    metrics: RunMetrics
    deadline: Deadline
    state: PipelineState = PipelineState.IDLE
    scheduler: Optional[BoundedScheduler] = None
    errors: List[PipelineError] = field(default_factory=list)

    def transition(self, new: PipelineState) -> None:
        old = self.state
        if new is PipelineState.ABORTED:
            if old in _TERMINAL:
                raise RuntimeError(f"cannot abort from terminal state {old.value}")
        elif new not in _ALLOWED.get(old, set()):
            raise RuntimeError(f"invalid pipeline transition {old.value} -> {new.value}")
        self.state = new
        self.metrics.step(new.value)
        logger.debug("Pipeline state change", old=old.value, new=new.value)

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL


def dedupe_candidates(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Drop repeated URLs (first occurrence wins) and renumber discovery order."""
    seen = set()
    out: List[Candidate] = []
    for cand in candidates:
        key = normalize_url(cand.url)
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(cand.model_copy(update={"discovery_index": len(out)}))
    return out


class PipelineOrchestrator:
    def __init__(
        self,
        search_provider: SearchProvider,
        *,
        cache: Optional[ResultCache] = None,
        session: Optional[aiohttp.ClientSession] = None,
        extractor: Optional[ContentExtractor] = None,
        link_validator: Optional[LinkValidator] = None,
        web_validator: Optional[WebValidator] = None,
        content_validator: Optional[ContentValidator] = None,
        scorer: Optional[SourceScorer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.search_provider = search_provider
        self.cache = cache if cache is not None else InMemoryResultCache()
        self.session = session
        self.extractor = extractor or HtmlContentExtractor()
        self.link_validator = link_validator
        self.web_validator = web_validator
        self.content_validator = content_validator or ContentValidator()
        self.scorer = scorer
        self.robots = RobotsPolicy()
        self._clock = clock
        self._last_run: Optional[PipelineRun] = None

    @property
    def last_run(self) -> Optional[PipelineRun]:
        """The most recently finished run (read-only view for diagnostics)."""
        return self._last_run

    @property
    def state(self) -> PipelineState:
        return self._last_run.state if self._last_run is not None else PipelineState.IDLE

    @property
    def last_scheduler(self) -> Optional[BoundedScheduler]:
        return self._last_run.scheduler if self._last_run is not None else None

    async def run_pipeline(self, query: str, options: OptionsArg = None) -> PipelineResult:
        """Ground *query*; never raises for network or validation failures."""
        opts = merge_options(None, options) if options is not None else merge_options()
        run = PipelineRun(
            run_id=uuid.uuid4().hex[:12],
            query=query,
            options=opts,
            metrics=RunMetrics(query, log_progress=opts.log_progress),
            deadline=Deadline(opts.timeout, clock=self._clock),
        )
        bind_request_context(run_id=run.run_id, query=query)
        try:
            if self.session is not None:
                return await self._run(run, self.session)
            async with aiohttp.ClientSession() as session:
                return await self._run(run, session)
        finally:
            if run.finished:
                self._last_run = run
            clear_request_context()

    async def _run(self, run: PipelineRun, session: aiohttp.ClientSession) -> PipelineResult:
        query, options, metrics, deadline = run.query, run.options, run.metrics, run.deadline
        logger.info("Pipeline started", max_results=options.max_results, timeout=options.timeout)

        # Searching
        run.transition(PipelineState.SEARCHING)
        try:
            with metrics.timer("search_time"):
                raw = list(await deadline.run(self.search_provider.search(query)))
        except PipelineTimeoutError:
            return self._abort(run, ErrorCode.TIMEOUT, "search did not finish before the request deadline")
        except Exception as exc:
            log_exception("Search failed", exc, provider=getattr(self.search_provider, "name", None))
            return self._abort(run, ErrorCode.SEARCH_FAILED, f"search failed: {exc}")

        candidates = dedupe_candidates(raw)
        metrics.set_count("search_results", len(raw))
        metrics.set_count("links_found", len(candidates))

        # Validating
        run.transition(PipelineState.VALIDATING)
        processor = CandidateProcessor(
            query,
            options,
            link_validator=self.link_validator or LinkValidator(session),
            web_validator=self.web_validator or WebValidator(session, robots=self.robots),
            content_validator=self.content_validator,
            extractor=self.extractor,
            cache=self.cache,
            metrics=metrics,
            deadline=deadline,
        )
        run.scheduler = BoundedScheduler(options.max_concurrent_requests)
        outcomes: List[CandidateOutcome] = await run.scheduler.run(
            candidates,
            processor.process,
            deadline=deadline,
            on_timeout=lambda c: CandidateOutcome(c, error=timeout_error(c, processor.retries_for(c))),
            on_error=lambda c, exc: CandidateOutcome(
                c, error=processing_error(c, exc, processor.retries_for(c))
            ),
        )
        aborted = any(o.error is not None and o.error.code is ErrorCode.TIMEOUT for o in outcomes)
        if aborted:
            logger.warning(
                "Request deadline reached during validation",
                unfinished=sum(1 for o in outcomes if o.error and o.error.code is ErrorCode.TIMEOUT),
            )

        # Scoring
        run.transition(PipelineState.SCORING)
        scorer = self.scorer or SourceScorer(options.scoring)
        with metrics.timer("scoring_time"):
            scored = [scorer.score(query, o.validated) for o in outcomes if o.validated is not None]
            sources, removed = rank_sources(scored, options)
        metrics.set_count("duplicates_removed", removed)
        metrics.set_count("grounded_sources", len(sources))

        # Caching
        if aborted:
            run.transition(PipelineState.ABORTED)
        else:
            if options.cache_results and self.cache is not None:
                run.transition(PipelineState.CACHING)
                for o in outcomes:
                    if o.cache_entry is not None:
                        await self.cache.put(query, o.candidate.url, o.cache_entry, ttl=options.cache_ttl)
            run.transition(PipelineState.COMPLETED)

        run.errors = [o.error for o in outcomes if o.error is not None]
        result = self._result(run, sources)
        logger.info(
            "Pipeline finished",
            state=run.state.value,
            sources=len(sources),
            errors=len(run.errors),
            score=round(result.score, 4),
        )
        return result

    def _abort(self, run: PipelineRun, code: ErrorCode, message: str) -> PipelineResult:
        run.transition(PipelineState.ABORTED)
        run.errors = [PipelineError(url="", phase=ValidationPhase.PROCESSING, message=message, code=code)]
        logger.warning("Pipeline aborted", code=code.value, message=message)
        return self._result(run, [])

    def _result(self, run: PipelineRun, sources: List[Source]) -> PipelineResult:
        score = sum(s.score for s in sources) / len(sources) if sources else 0.0
        metadata = None
        if run.options.include_metadata:
            metadata = run.metrics.snapshot(final_state=run.state.value, average_score=score)
        return PipelineResult(
            is_valid=bool(sources),
            score=score,
            sources=sources,
            metadata=metadata,
            citations=[Citation.from_source(s) for s in sources],
            errors=run.errors,
        )


def build_default_cache(cache_ttl: float = 3600.0) -> ResultCache:
    """Fresh cache from the environment: Redis when ``REDIS_URL`` is set, else in-memory."""
    redis_url = get_redis_url()
    if redis_url:
        return RedisResultCache(redis_url, default_ttl=cache_ttl)
    return InMemoryResultCache(default_ttl=cache_ttl)


async def run_pipeline(
    query: str,
    options: OptionsArg = None,
    *,
    search_provider: Optional[SearchProvider] = None,
    cache: Optional[ResultCache] = None,
    session: Optional[aiohttp.ClientSession] = None,
    **kwargs: Any,
) -> PipelineResult:
    """Convenience entry point around :class:`PipelineOrchestrator`.

    Without an explicit provider, Brave Search is used (``BRAVE_SEARCH_API_KEY``).
    Without an explicit cache, one is built for this call by
    :func:`build_default_cache` and closed afterwards; an in-memory default
    therefore never outlives the call. Inject a cache to reuse entries
    across calls.
    """
    opts = merge_options(None, options) if options is not None else merge_options()
    if search_provider is None:
        api_key = get_brave_api_key()
        if not api_key:
            raise ValueError("no search_provider given and BRAVE_SEARCH_API_KEY is not set")
        search_provider = BraveSearchProvider(api_key, session=session)
    owned_cache = cache is None
    if owned_cache:
        cache = build_default_cache(opts.cache_ttl)
    orchestrator = PipelineOrchestrator(search_provider, cache=cache, session=session, **kwargs)
    try:
        return await orchestrator.run_pipeline(query, opts)
    finally:
        if owned_cache:
            await cache.close()
