"""Command line entry point.

Usage examples:

  python -m grounding "rust ownership model" --url https://doc.rust-lang.org/book/ch04-01-what-is-ownership.html

  python -m grounding "grid-scale energy storage" --brave --max-results 5 --timeout 20

Prints the ``PipelineResult`` as JSON on stdout. Logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

import structlog

from grounding.core.config import default_pipeline_options, get_brave_api_key, get_redis_url, merge_options
from grounding.logging_config import configure_logging
from grounding.services.cache import InMemoryResultCache, RedisResultCache, ResultCache
from grounding.services.pipeline_orchestrator import PipelineOrchestrator
from grounding.services.search_providers import BraveSearchProvider, SearchProvider, StaticSearchProvider
from grounding.utils.similarity import SIMILARITY_ALGORITHMS

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="grounding", description="Ground a query in validated web sources")
    p.add_argument("query", help="query to ground")
    p.add_argument("--url", action="append", default=[], help="candidate URL (repeatable)")
    p.add_argument("--brave", action="store_true", help="discover candidates with Brave Search")
    p.add_argument("--max-results", type=int, default=None)
    p.add_argument("--timeout", type=float, default=None, help="request deadline in seconds")
    p.add_argument("--similarity", choices=SIMILARITY_ALGORITHMS, default=None, help="near-duplicate measure")
    p.add_argument("--no-cache", action="store_true", help="bypass the result cache")
    p.add_argument("--redis-url", default=None, help="use a Redis result cache")
    return p


async def _main(args: argparse.Namespace) -> int:
    overrides = {}
    if args.max_results is not None:
        overrides["max_results"] = args.max_results
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    if args.similarity is not None:
        overrides["similarity_algorithm"] = args.similarity
    if args.no_cache:
        overrides["cache_results"] = False
    options = merge_options(default_pipeline_options(), overrides)

    provider: SearchProvider
    if args.brave:
        api_key = get_brave_api_key()
        if not api_key:
            print("BRAVE_SEARCH_API_KEY is not set", file=sys.stderr)
            return 2
        provider = BraveSearchProvider(api_key, count=options.max_results * 2)
    elif args.url:
        provider = StaticSearchProvider(args.url)
    else:
        print("give at least one --url or use --brave", file=sys.stderr)
        return 2

    redis_url = args.redis_url or get_redis_url()
    cache: ResultCache = (
        RedisResultCache(redis_url, default_ttl=options.cache_ttl)
        if redis_url
        else InMemoryResultCache(default_ttl=options.cache_ttl)
    )
    try:
        result = await PipelineOrchestrator(provider, cache=cache).run_pipeline(args.query, options)
    finally:
        await cache.close()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0 if result.is_valid else 1


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except ValueError as exc:
        logger.error("Invalid options", error=str(exc))
        return 2


if __name__ == "__main__":
    sys.exit(main())
