"""
Error taxonomy and logging helpers for the grounding pipeline.

Four kinds of failure are distinguished:

* ``fatal``      - the search phase failed; the run cannot produce sources
* ``transient``  - network timeouts, connection resets, 5xx; retried
* ``rejection``  - a validator refused the candidate on quality/policy grounds
* ``timeout``    - the per-request deadline elapsed
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

import aiohttp
import structlog

_logger = structlog.get_logger(__name__)


class ErrorKind(str, Enum):
    FATAL = "fatal"
    TRANSIENT = "transient"
    REJECTION = "rejection"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class GroundingError(Exception):
    """Base class for all pipeline errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, reason: Optional[str] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason or self.kind.value
        self.url = url


class SearchProviderError(GroundingError):
    """The search collaborator failed; fatal to the run."""

    kind = ErrorKind.FATAL


class TransientError(GroundingError):
    """A retryable network condition (timeout, reset, 5xx, 429)."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[str] = None,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, reason=reason, url=url)
        self.status_code = status_code


class RejectionError(GroundingError):
    """Validation refused the candidate; never retried."""

    kind = ErrorKind.REJECTION


class ExtractionError(RejectionError):
    """The content extractor could not produce main-body text."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message, reason="extraction_failed", url=url)


class PipelineTimeoutError(GroundingError):
    """The per-request deadline elapsed before the operation finished."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str = "request deadline exceeded", *, url: Optional[str] = None) -> None:
        super().__init__(message, reason="deadline_exceeded", url=url)


def classify_exception(error: BaseException) -> ErrorKind:
    """Map an arbitrary exception onto the pipeline's error taxonomy.

    Client-side network failures are transient; anything unrecognised is
    reported as ``unknown`` and treated as non-retryable by callers.
    """
    if isinstance(error, GroundingError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, aiohttp.ClientResponseError):
        status = getattr(error, "status", 0) or 0
        return ErrorKind.TRANSIENT if status >= 500 or status == 429 else ErrorKind.REJECTION
    if isinstance(error, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, OSError):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def is_transient(error: BaseException) -> bool:
    return classify_exception(error) is ErrorKind.TRANSIENT


def log_exception(context: str, exc: BaseException, **fields: Any) -> None:
    """Log an exception with context; never raises."""
    try:
        _logger.warning(context, error=str(exc), error_type=type(exc).__name__, **fields)
    except Exception:
        # Avoid secondary failures during error handling
        pass
