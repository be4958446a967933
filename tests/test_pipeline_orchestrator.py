import asyncio

import pytest

from conftest import (
    RUST_BORROWING,
    RUST_LIFETIMES,
    RUST_OWNERSHIP,
    RUST_OWNERSHIP_ES,
    DummyResponse,
    DummySession,
    html_page,
)
from grounding.models.options import PipelineOptions
from grounding.models.pipeline import Candidate, ErrorCode, ValidationPhase
from grounding.services.cache import InMemoryResultCache, RedisResultCache
from grounding.services.pipeline_orchestrator import (
    PipelineOrchestrator,
    PipelineState,
    build_default_cache,
    dedupe_candidates,
    run_pipeline,
)
from grounding.services.search_providers import SearchProvider, StaticSearchProvider
from grounding.utils.error_handling import SearchProviderError

QUERY = "rust ownership"
OWNERSHIP_URL = "https://doc.rust-lang.org/book/ch04-01-what-is-ownership.html"
MIRROR_URL = "https://rust-book.mirror.example/ownership.html"
BORROWING_URL = "https://doc.rust-lang.org/book/ch04-02-references-and-borrowing.html"
LIFETIMES_URL = "https://doc.rust-lang.org/book/ch10-03-lifetime-syntax.html"
MISSING_URL = "https://doc.rust-lang.org/book/gone.html"


def _opts(**kwargs):
    kwargs.setdefault("retry_delay", 0.0)
    return PipelineOptions(**kwargs)


def _page(title, text):
    return DummyResponse(200, html_page(title, text))


def _orchestrator(urls, session, cache=None):
    return PipelineOrchestrator(
        StaticSearchProvider(urls), cache=cache or InMemoryResultCache(), session=session
    )


class FailingProvider(SearchProvider):
    name = "failing"

    async def search(self, query):
        raise SearchProviderError("quota exceeded")


class SlowProvider(SearchProvider):
    async def search(self, query):
        await asyncio.sleep(1.0)
        return []


@pytest.mark.asyncio
async def test_mixed_candidates_ground_one_source():
    near_copy = RUST_OWNERSHIP.replace("Every value", "Each value")
    session = DummySession(
        get={
            OWNERSHIP_URL: _page("What is Ownership?", RUST_OWNERSHIP),
            MIRROR_URL: _page("What is Ownership?", near_copy),
        }
    )
    urls = [OWNERSHIP_URL, MIRROR_URL, "ftp://files.example.com/rust.txt", "not a url", MISSING_URL]
    result = await _orchestrator(urls, session).run_pipeline(QUERY, _opts())

    assert result.is_valid
    assert len(result.sources) == 1
    assert result.sources[0].url in (OWNERSHIP_URL, MIRROR_URL)
    assert 0.0 < result.score <= 1.0
    assert result.score == pytest.approx(result.sources[0].score)

    by_url = {e.url: e for e in result.errors}
    assert len(by_url) == 3
    assert by_url["ftp://files.example.com/rust.txt"].code is ErrorCode.LINK_INVALID
    assert by_url["not a url"].phase is ValidationPhase.LINK
    assert by_url[MISSING_URL].code is ErrorCode.WEB_INVALID
    assert "http_404" in by_url[MISSING_URL].message

    meta = result.metadata
    assert meta.search_results == 5
    assert meta.links_found == 5
    assert meta.valid_links == 3
    assert meta.sources_processed == 2
    assert meta.duplicates_removed == 1
    assert meta.grounded_sources == 1
    assert meta.final_state == "completed"
    assert meta.cache_hits == 0

    assert [c.url for c in result.citations] == [s.url for s in result.sources]
    grounding = result.grounding_metadata()
    assert grounding["webSearchSources"][0]["url"] == result.sources[0].url


@pytest.mark.asyncio
async def test_deadline_aborts_with_timeout_errors():
    session = DummySession(delay=0.2)
    orchestrator = _orchestrator([OWNERSHIP_URL, BORROWING_URL, LIFETIMES_URL], session)
    result = await orchestrator.run_pipeline(QUERY, _opts(timeout=0.05, max_concurrent_requests=2))

    assert not result.is_valid
    assert result.sources == []
    assert len(result.errors) == 3
    assert all(e.code is ErrorCode.TIMEOUT for e in result.errors)
    assert all(e.phase is ValidationPhase.PROCESSING for e in result.errors)
    assert result.metadata.final_state == "aborted"
    assert orchestrator.state is PipelineState.ABORTED
    assert orchestrator.last_run.errors == result.errors


@pytest.mark.asyncio
async def test_deadline_abort_skips_cache_writes():
    cache = InMemoryResultCache()
    session = DummySession(
        get={OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP)},
        delays={BORROWING_URL: 0.5},
    )
    await _orchestrator([OWNERSHIP_URL, BORROWING_URL], session, cache).run_pipeline(
        QUERY, _opts(timeout=0.2)
    )
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_search_failure_is_fatal():
    orchestrator = PipelineOrchestrator(FailingProvider(), session=DummySession())
    result = await orchestrator.run_pipeline(QUERY, _opts())
    assert not result.is_valid
    assert len(result.errors) == 1
    assert result.errors[0].code is ErrorCode.SEARCH_FAILED
    assert result.errors[0].url == ""
    assert result.metadata.final_state == "aborted"


@pytest.mark.asyncio
async def test_search_timeout_aborts():
    orchestrator = PipelineOrchestrator(SlowProvider(), session=DummySession())
    result = await orchestrator.run_pipeline(QUERY, _opts(timeout=0.05))
    assert [e.code for e in result.errors] == [ErrorCode.TIMEOUT]


@pytest.mark.asyncio
async def test_second_run_is_served_from_cache():
    session = DummySession(
        get={
            OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP),
            BORROWING_URL: _page("Borrowing", RUST_BORROWING),
        }
    )
    cache = InMemoryResultCache()
    orchestrator = _orchestrator([OWNERSHIP_URL, BORROWING_URL], session, cache)

    first = await orchestrator.run_pipeline(QUERY, _opts())
    calls_after_first = len(session.calls)
    second = await orchestrator.run_pipeline(QUERY, _opts())

    assert len(session.calls) == calls_after_first
    assert second.metadata.cache_hits == second.metadata.links_found == 2
    assert [s.model_dump() for s in second.sources] == [s.model_dump() for s in first.sources]
    assert second.score == first.score


@pytest.mark.asyncio
async def test_cache_disabled_always_refetches():
    session = DummySession(get={OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP)})
    cache = InMemoryResultCache()
    orchestrator = _orchestrator([OWNERSHIP_URL], session, cache)
    opts = _opts(cache_results=False)
    await orchestrator.run_pipeline(QUERY, opts)
    second = await orchestrator.run_pipeline(QUERY, opts)
    assert session.count("GET", OWNERSHIP_URL) == 2
    assert second.metadata.cache_hits == 0
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_transient_failures_are_retried_and_counted():
    session = DummySession(
        get={OWNERSHIP_URL: [DummyResponse(503), DummyResponse(503), _page("Ownership", RUST_OWNERSHIP)]}
    )
    result = await _orchestrator([OWNERSHIP_URL], session).run_pipeline(QUERY, _opts())
    assert result.is_valid
    source = result.sources[0]
    assert source.retry_count == 2
    assert source.validations.web.attempt == 3
    assert result.metadata.retries == 2


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_reports_unavailable():
    session = DummySession(get={OWNERSHIP_URL: DummyResponse(503)})
    result = await _orchestrator([OWNERSHIP_URL], session).run_pipeline(QUERY, _opts(retry_count=1))
    assert not result.is_valid
    error = result.errors[0]
    assert error.code is ErrorCode.WEB_UNAVAILABLE
    assert error.retry_count == 1
    assert session.count("GET", OWNERSHIP_URL) == 2


@pytest.mark.asyncio
async def test_max_results_truncates_after_sorting():
    session = DummySession(
        get={
            OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP),
            BORROWING_URL: _page("Borrowing", RUST_BORROWING),
            LIFETIMES_URL: _page("Lifetimes", RUST_LIFETIMES),
        }
    )
    orchestrator = _orchestrator([OWNERSHIP_URL, BORROWING_URL, LIFETIMES_URL], session)
    result = await orchestrator.run_pipeline(QUERY, _opts(max_results=2))
    assert len(result.sources) == 2
    assert result.sources[0].score >= result.sources[1].score
    assert result.metadata.sources_processed == 3
    assert result.metadata.grounded_sources == 2


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected():
    urls = [f"https://site{i}.example/page" for i in range(6)]
    session = DummySession(get={u: _page("Ownership", RUST_OWNERSHIP) for u in urls}, delay=0.01)
    orchestrator = _orchestrator(urls, session)
    await orchestrator.run_pipeline(QUERY, _opts(max_concurrent_requests=2, filter_duplicates=False))
    assert orchestrator.last_scheduler.peak_concurrency <= 2


@pytest.mark.asyncio
async def test_metadata_can_be_omitted():
    session = DummySession(get={OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP)})
    result = await _orchestrator([OWNERSHIP_URL], session).run_pipeline(QUERY, _opts(include_metadata=False))
    assert result.is_valid
    assert result.metadata is None


@pytest.mark.asyncio
async def test_progress_steps_recorded_when_enabled():
    session = DummySession(get={OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP)})
    result = await _orchestrator([OWNERSHIP_URL], session).run_pipeline(QUERY, _opts(log_progress=True))
    steps = result.metadata.processing_steps
    assert steps[:2] == ["searching", "validating"]
    assert f"link_passed:{OWNERSHIP_URL}" in steps
    assert steps[-2:] == ["caching", "completed"]


@pytest.mark.asyncio
async def test_empty_search_completes_without_sources():
    result = await _orchestrator([], DummySession()).run_pipeline(QUERY, _opts())
    assert not result.is_valid
    assert result.errors == []
    assert result.metadata.final_state == "completed"


@pytest.mark.asyncio
async def test_option_mapping_is_merged_and_validated(monkeypatch):
    monkeypatch.delenv("GROUNDING_MAX_RESULTS", raising=False)
    orchestrator = _orchestrator([], DummySession())
    with pytest.raises(ValueError):
        await orchestrator.run_pipeline(QUERY, {"max_results": 0})
    result = await orchestrator.run_pipeline(QUERY, {"include_metadata": False})
    assert result.metadata is None


def test_duplicate_urls_are_collapsed_and_renumbered():
    cands = [
        Candidate(url="https://a.com/x?utm_source=feed", discovery_index=0),
        Candidate(url="https://A.com/x/", discovery_index=1),
        Candidate(url="https://b.com/y", discovery_index=2),
    ]
    out = dedupe_candidates(cands)
    assert [c.url for c in out] == ["https://a.com/x?utm_source=feed", "https://b.com/y"]
    assert [c.discovery_index for c in out] == [0, 1]


@pytest.mark.asyncio
async def test_module_entry_point_requires_provider_or_key(monkeypatch):
    monkeypatch.delenv("BRAVE_SEARCH_API_KEY", raising=False)
    with pytest.raises(ValueError):
        await run_pipeline(QUERY)
    result = await run_pipeline(
        QUERY,
        _opts(),
        search_provider=StaticSearchProvider([OWNERSHIP_URL]),
        cache=InMemoryResultCache(),
        session=DummySession(get={OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP)}),
    )
    assert result.is_valid


@pytest.mark.asyncio
async def test_overlapping_runs_share_one_orchestrator():
    session = DummySession(
        get={
            OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP),
            BORROWING_URL: _page("Borrowing", RUST_BORROWING),
        },
        delay=0.02,
    )
    orchestrator = _orchestrator([OWNERSHIP_URL, BORROWING_URL], session)
    first, second = await asyncio.gather(
        orchestrator.run_pipeline(QUERY, _opts()),
        orchestrator.run_pipeline("rust memory", _opts()),
    )
    assert first.is_valid and second.is_valid
    assert first.metadata.final_state == second.metadata.final_state == "completed"
    assert first.metadata.query == QUERY
    assert second.metadata.query == "rust memory"
    assert orchestrator.state is PipelineState.COMPLETED


@pytest.mark.asyncio
async def test_cached_rerun_keeps_retry_count_and_score():
    session = DummySession(
        get={OWNERSHIP_URL: [DummyResponse(503), DummyResponse(503), _page("Ownership", RUST_OWNERSHIP)]}
    )
    orchestrator = _orchestrator([OWNERSHIP_URL], session, InMemoryResultCache())
    first = await orchestrator.run_pipeline(QUERY, _opts())
    second = await orchestrator.run_pipeline(QUERY, _opts())

    assert session.count("GET", OWNERSHIP_URL) == 3
    assert second.metadata.cache_hits == 1
    assert second.metadata.retries == 0
    assert first.sources[0].retry_count == second.sources[0].retry_count == 2
    assert second.score == pytest.approx(first.score)
    assert [s.score for s in second.sources] == pytest.approx([s.score for s in first.sources])


@pytest.mark.asyncio
async def test_content_stage_failures_are_reported():
    script_only = "https://app.example.com/dashboard"
    spanish = "https://doc.rust-lang.org/es/ch04-01-what-is-ownership.html"
    session = DummySession(
        get={
            OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP),
            script_only: DummyResponse(200, "<html><body><script>render()</script></body></html>"),
            spanish: DummyResponse(200, html_page("Propiedad", RUST_OWNERSHIP_ES, lang="es")),
        }
    )
    result = await _orchestrator([OWNERSHIP_URL, script_only, spanish], session).run_pipeline(QUERY, _opts())

    assert [s.url for s in result.sources] == [OWNERSHIP_URL]
    by_url = {e.url: e for e in result.errors}
    assert set(by_url) == {script_only, spanish}
    for error in by_url.values():
        assert error.phase is ValidationPhase.CONTENT
        assert error.code is ErrorCode.CONTENT_INVALID
    assert "extraction_failed" in by_url[script_only].message
    assert "language_mismatch" in by_url[spanish].message

    meta = result.metadata
    assert meta.valid_links == 3
    assert meta.sources_processed == 1
    assert meta.grounded_sources == 1


@pytest.mark.asyncio
async def test_module_entry_point_cache_lives_for_one_call(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    closed = []
    close = InMemoryResultCache.close

    async def _tracking_close(self):
        closed.append(self)
        await close(self)

    monkeypatch.setattr(InMemoryResultCache, "close", _tracking_close)
    session = DummySession(get={OWNERSHIP_URL: _page("Ownership", RUST_OWNERSHIP)})
    for _ in range(2):
        result = await run_pipeline(
            QUERY, _opts(), search_provider=StaticSearchProvider([OWNERSHIP_URL]), session=session
        )
        assert result.metadata.cache_hits == 0

    assert session.count("GET", OWNERSHIP_URL) == 2
    assert len(closed) == 2
    assert closed[0] is not closed[1]


def test_default_cache_follows_environment(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    local = build_default_cache(120.0)
    assert isinstance(local, InMemoryResultCache)
    assert local.default_ttl == 120.0
    assert build_default_cache() is not local

    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    shared = build_default_cache(60.0)
    assert isinstance(shared, RedisResultCache)
    assert shared.default_ttl == 60.0
