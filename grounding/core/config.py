"""
Core configuration for the grounding pipeline.

Defaults are env-overridable (a ``.env`` file in the working directory is
loaded on import) so deployments can tune concurrency, deadlines and
retries without code changes.
"""

import os
from dataclasses import fields, is_dataclass, replace
from typing import Any, List, Mapping, Optional, Tuple, Union

from dotenv import load_dotenv

from grounding.models.options import (
    DEFAULT_USER_AGENT,
    LinkValidationOptions,
    PipelineOptions,
    WebValidationOptions,
)
from grounding.utils.similarity import SIMILARITY_ALGORITHMS

load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, choices: Tuple[str, ...], default: str) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    return raw if raw in choices else default


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "") or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_redis_url() -> Optional[str]:
    return os.getenv("REDIS_URL") or None


def get_brave_api_key() -> Optional[str]:
    return os.getenv("BRAVE_SEARCH_API_KEY") or None


def default_pipeline_options() -> PipelineOptions:
    """Build ``PipelineOptions`` from the ``GROUNDING_*`` environment."""
    user_agent = os.getenv("GROUNDING_USER_AGENT") or DEFAULT_USER_AGENT
    timeout = _env_float("GROUNDING_TIMEOUT_SEC", 30.0)
    return PipelineOptions(
        max_concurrent_requests=_env_int("GROUNDING_MAX_CONCURRENCY", 5),
        timeout=timeout if timeout > 0 else None,
        retry_count=_env_int("GROUNDING_RETRY_COUNT", 3),
        retry_delay=_env_float("GROUNDING_RETRY_DELAY_SEC", 1.0),
        cache_results=_env_bool("GROUNDING_CACHE_RESULTS", True),
        similarity_threshold=_env_float("GROUNDING_SIMILARITY_THRESHOLD", 0.8),
        similarity_algorithm=_env_choice("GROUNDING_SIMILARITY_ALGORITHM", SIMILARITY_ALGORITHMS, "jaccard"),
        max_results=_env_int("GROUNDING_MAX_RESULTS", 10),
        log_progress=_env_bool("GROUNDING_LOG_PROGRESS", False),
        cache_ttl=_env_float("GROUNDING_CACHE_TTL_SEC", 3600.0),
        link_validation=LinkValidationOptions(
            blocked_domains=tuple(_env_list("GROUNDING_BLOCKED_DOMAINS")),
            user_agent=user_agent,
        ),
        web_validation=WebValidationOptions(user_agent=user_agent),
    )


def _merge_dataclass(base: Any, overrides: Mapping[str, Any], path: str) -> Any:
    known = {f.name: f for f in fields(base)}
    changes = {}
    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown option '{path}{key}'")
        current = getattr(base, key)
        if is_dataclass(current) and isinstance(value, Mapping):
            changes[key] = _merge_dataclass(current, value, f"{path}{key}.")
        else:
            changes[key] = value
    # replace() re-runs __post_init__, so merged values are validated
    return replace(base, **changes)


def merge_options(
    base: Optional[PipelineOptions] = None,
    overrides: Union[PipelineOptions, Mapping[str, Any], None] = None,
) -> PipelineOptions:
    """
    Overlay *overrides* on *base* (defaults from the environment if omitted).

    Nested validator option mappings merge field-wise; unknown keys raise
    ``ValueError``.
    """
    base = base or default_pipeline_options()
    if overrides is None:
        return base
    if isinstance(overrides, PipelineOptions):
        return overrides
    return _merge_dataclass(base, overrides, "")
