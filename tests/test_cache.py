import pytest
import redis.asyncio as redis

from grounding.models.pipeline import CacheEntry, PageMetadata, ValidationOutcome
from grounding.services.cache import InMemoryResultCache, RedisResultCache, make_cache_key


def _entry(text="body"):
    return CacheEntry(
        link=ValidationOutcome.ok(status_code=200),
        web=ValidationOutcome.ok(status_code=200, final_url="https://a.com/x"),
        extracted_content=text,
        page=PageMetadata(title="A"),
    )


def test_cache_key_normalizes_query_and_url():
    a = make_cache_key("Rust  Ownership", "https://Example.com/a/?utm_source=x#frag")
    b = make_cache_key("rust ownership", "https://example.com/a")
    assert a == b
    assert a.startswith("grounding:")


def test_long_cache_keys_are_hashed():
    key = make_cache_key("q", "https://example.com/" + "a" * 400)
    assert key.startswith("grounding:hash:")


@pytest.mark.asyncio
async def test_in_memory_roundtrip_and_ttl_expiry(fake_clock):
    cache = InMemoryResultCache(default_ttl=10, clock=fake_clock)
    await cache.put("q", "https://a.com/x", _entry())
    got = await cache.get("Q", "https://a.com/x/")
    assert got is not None and got.extracted_content == "body"

    fake_clock.advance(11)
    assert await cache.get("q", "https://a.com/x") is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_in_memory_put_replaces_whole_entry(fake_clock):
    cache = InMemoryResultCache(clock=fake_clock)
    await cache.put("q", "https://a.com/x", _entry("first"))
    await cache.put("q", "https://a.com/x", CacheEntry(link=ValidationOutcome.ok()))
    got = await cache.get("q", "https://a.com/x")
    assert got.web is None and got.extracted_content is None


@pytest.mark.asyncio
async def test_in_memory_evicts_oldest_beyond_capacity(fake_clock):
    cache = InMemoryResultCache(max_entries=2, clock=fake_clock)
    for i in range(3):
        await cache.put("q", f"https://a.com/{i}", _entry())
    assert await cache.get("q", "https://a.com/0") is None
    assert await cache.get("q", "https://a.com/2") is not None


@pytest.mark.asyncio
async def test_in_memory_invalidate_and_clear(fake_clock):
    cache = InMemoryResultCache(clock=fake_clock)
    await cache.put("q", "https://a.com/1", _entry())
    await cache.put("q", "https://a.com/2", _entry())
    await cache.invalidate("q", "https://a.com/1")
    assert await cache.get("q", "https://a.com/1") is None
    await cache.clear()
    assert len(cache) == 0


class FakeRedis:
    def __init__(self, fail=False):
        self.store = {}
        self.ttls = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        self._check()
        for k in keys:
            self.store.pop(k, None)

    async def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        for k in list(self.store):
            if k.startswith(prefix):
                yield k

    async def aclose(self):
        return None


@pytest.mark.asyncio
async def test_redis_cache_roundtrip_uses_setex():
    client = FakeRedis()
    cache = RedisResultCache(client=client, default_ttl=120)
    await cache.put("q", "https://a.com/x", _entry())
    key = make_cache_key("q", "https://a.com/x")
    assert client.ttls[key] == 120
    got = await cache.get("q", "https://a.com/x")
    assert got.extracted_content == "body"
    assert got.web.details["final_url"] == "https://a.com/x"
    assert got.page.title == "A"
    await cache.clear()
    assert client.store == {}


@pytest.mark.asyncio
async def test_redis_errors_read_as_miss_and_drop_writes():
    cache = RedisResultCache(client=FakeRedis(fail=True))
    await cache.put("q", "https://a.com/x", _entry())
    assert await cache.get("q", "https://a.com/x") is None


@pytest.mark.asyncio
async def test_redis_garbage_payload_is_a_miss():
    client = FakeRedis()
    client.store[make_cache_key("q", "https://a.com/x")] = "{not json"
    assert await RedisResultCache(client=client).get("q", "https://a.com/x") is None


def test_redis_cache_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisResultCache()


def test_entry_retries_come_from_stored_attempts():
    entry = CacheEntry(
        link=ValidationOutcome.ok(attempt=2, status_code=200),
        web=ValidationOutcome.ok(attempt=3, status_code=200),
        extracted_content="body",
    )
    assert entry.retries == 3
    assert _entry().retries == 0
    assert CacheEntry(link=ValidationOutcome.ok(attempt=2)).retries == 1
