import aiohttp
import pytest

from conftest import DummyResponse, DummySession
from grounding.models.pipeline import Candidate
from grounding.services.search_providers import BraveSearchProvider, StaticSearchProvider
from grounding.utils.error_handling import SearchProviderError

BRAVE = BraveSearchProvider.base


@pytest.mark.asyncio
async def test_brave_results_become_candidates():
    payload = {
        "web": {
            "results": [
                {
                    "url": "https://doc.rust-lang.org/book/ch04-01-what-is-ownership.html",
                    "title": "What is Ownership?",
                    "description": "Ownership is a set of rules",
                    "page_age": "2024-03-01T00:00:00",
                },
                {"url": "", "title": "skipped"},
                {
                    "url": "https://blog.rust-lang.org/ownership",
                    "title": "Blog",
                    "meta_url": {"cite": {"datePublished": "2023-01-15"}},
                    "age": "2 days ago",
                },
                {"url": "https://example.com/undated", "age": "yesterday"},
            ]
        }
    }
    session = DummySession(get={BRAVE: DummyResponse(200, payload=payload, content_type="application/json")})
    results = await BraveSearchProvider("key", session=session).search("rust ownership")

    assert [c.discovery_index for c in results] == [0, 1, 2]
    assert results[0].title == "What is Ownership?"
    assert results[0].snippet == "Ownership is a set of rules"
    assert results[0].date.startswith("2024-03-01")
    assert results[0].provider == "brave"
    assert results[1].date.startswith("2023-01-15")
    assert results[2].date is None

    _method, _url, kwargs = session.calls[0]
    assert kwargs["headers"]["X-Subscription-Token"] == "key"
    assert kwargs["params"]["q"] == "rust ownership"


@pytest.mark.asyncio
async def test_brave_http_error_raises_search_error():
    session = DummySession(get={BRAVE: DummyResponse(401, "unauthorized")})
    with pytest.raises(SearchProviderError) as info:
        await BraveSearchProvider("key", session=session).search("q")
    assert info.value.reason == "http_401"


@pytest.mark.asyncio
async def test_brave_client_error_raises_search_error():
    session = DummySession(get={BRAVE: aiohttp.ClientConnectionError("dns failure")})
    with pytest.raises(SearchProviderError):
        await BraveSearchProvider("key", session=session).search("q")


def test_brave_requires_api_key():
    with pytest.raises(ValueError):
        BraveSearchProvider("")


@pytest.mark.asyncio
async def test_static_provider_accepts_mixed_items():
    provider = StaticSearchProvider(
        [
            "https://a.com/1",
            {"url": "https://b.com/2", "title": "B"},
            Candidate(url="https://c.com/3", discovery_index=7),
        ]
    )
    results = await provider.search("anything")
    assert [c.url for c in results] == ["https://a.com/1", "https://b.com/2", "https://c.com/3"]
    assert results[0].provider == "static"
    assert results[1].title == "B"
    assert results[1].discovery_index == 1
    assert results[2].discovery_index == 7
