"""structlog setup for the grounding pipeline.

Every record, ours or from aiohttp/redis through the stdlib bridge, is
rendered by one formatter on stderr (stdout stays free for the CLI's JSON
result). Records emitted while a run is active carry its ``run_id`` and a
truncated ``query``.

Environment:

``GROUNDING_LOG_LEVEL`` (or ``LOG_LEVEL``)
    Root level, ``INFO`` by default.
``GROUNDING_LOG_FORMAT``
    ``json`` (default) or ``console`` for human-readable lines.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, List, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

__all__ = [
    "configure_logging",
    "bind_request_context",
    "clear_request_context",
]

_RUN_KEYS = ("run_id", "query")
_QUERY_LOG_CHARS = 120

_configured = False
_handler: Optional[logging.Handler] = None


def _level() -> int:
    name = (os.getenv("GROUNDING_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _renderer() -> Any:
    if (os.getenv("GROUNDING_LOG_FORMAT") or "json").strip().lower() == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging(force: bool = False) -> None:
    """Install the grounding handler and structlog processors.

    Idempotent: later calls are no-ops unless *force* is set, which
    re-reads the environment and swaps our handler. Handlers installed by
    the host application are left alone.
    """
    global _configured, _handler
    if _configured and not force:
        return

    renderer = _renderer()
    stamp = structlog.processors.TimeStamper(fmt="iso", utc=True)
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        stamp,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    # rendering happens once, in the handler, for structlog and stdlib records alike
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            stamp,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(formatter)
    root.addHandler(_handler)
    root.setLevel(_level())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def bind_request_context(run_id: Optional[str] = None, query: Optional[str] = None) -> None:
    """Attach run identifiers to every log record of the current task."""
    context = {}
    if run_id:
        context["run_id"] = run_id
    if query:
        context["query"] = query[:_QUERY_LOG_CHARS]
    if context:
        bind_contextvars(**context)


def clear_request_context() -> None:
    unbind_contextvars(*_RUN_KEYS)


configure_logging()
