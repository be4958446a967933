"""
Search collaborators: turn a query into raw candidates.

A provider is called once per run; any exception it raises is fatal to the
run and is reported as ``SEARCH_FAILED``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import aiohttp
import structlog

from grounding.models.pipeline import Candidate
from grounding.utils.date_utils import iso_or_none
from grounding.utils.error_handling import SearchProviderError

logger = structlog.get_logger(__name__)


class SearchProvider(ABC):
    name = "unknown"

    @abstractmethod
    async def search(self, query: str) -> Sequence[Candidate]:
        ...


class StaticSearchProvider(SearchProvider):
    """Returns a fixed candidate list; used for ``--url`` runs and tests."""

    name = "static"

    def __init__(self, items: Iterable[Union[Candidate, Mapping[str, Any], str]]) -> None:
        self._candidates: List[Candidate] = []
        for i, item in enumerate(items):
            if isinstance(item, Candidate):
                cand = item
            elif isinstance(item, str):
                cand = Candidate(url=item, provider=self.name, discovery_index=i)
            else:
                data = dict(item)
                data.setdefault("provider", self.name)
                data.setdefault("discovery_index", i)
                cand = Candidate(**data)
            self._candidates.append(cand)

    async def search(self, query: str) -> Sequence[Candidate]:
        return list(self._candidates)


class BraveSearchProvider(SearchProvider):
    name = "brave"
    base = "https://api.search.brave.com/res/v1/web/search"

    def __init__(
        self,
        api_key: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        count: int = 10,
        language: str = "en",
        timeout: float = 15.0,
    ) -> None:
        if not api_key:
            raise ValueError("Brave Search requires an API key")
        self.api_key = api_key
        self.session = session
        self.count = count
        self.language = language
        self.timeout = timeout

    async def search(self, query: str) -> Sequence[Candidate]:
        params = {
            "q": query[:400],
            "count": min(self.count, 20),
            "search_lang": self.language,
        }
        headers = {"X-Subscription-Token": self.api_key, "Accept": "application/json"}
        owns_session = self.session is None
        session = self.session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )
        try:
            async with session.get(self.base, params=params, headers=headers) as r:
                if r.status != 200:
                    raise SearchProviderError(
                        f"Brave search returned HTTP {r.status}", reason=f"http_{r.status}"
                    )
                data = await r.json()
        except aiohttp.ClientError as exc:
            raise SearchProviderError(f"Brave search failed: {exc}") from exc
        finally:
            if owns_session:
                await session.close()

        results: List[Candidate] = []
        for item in (data.get("web") or {}).get("results", []):
            url = item.get("url") or ""
            if not url:
                continue
            # Best-effort published date
            published = (
                ((item.get("meta_url") or {}).get("cite") or {}).get("datePublished")
                or item.get("page_age")
                or item.get("age")
            )
            date = iso_or_none(published) if isinstance(published, str) and re.search(r"\d{4}", published) else None
            results.append(
                Candidate(
                    url=url,
                    title=item.get("title", "") or "",
                    snippet=item.get("description", "") or "",
                    date=date,
                    provider=self.name,
                    discovery_index=len(results),
                )
            )
        logger.info("Brave search complete", results=len(results))
        return results
