"""Structured logging for kubesim.

Logs are JSON lines on stderr; tables and events meant for the learner go to
stdout. While a tick runs, every line also carries the scenario name and the
tick number, bound through structlog's contextvars.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import cast

import structlog
from structlog.typing import FilteringBoundLogger


def setup_logging(level: str = "info") -> None:
    """Configure structlog to render JSON to stderr at ``level``."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> FilteringBoundLogger:
    """Get a logger bound to a simulator component (controller, engine, cli)."""
    return cast(FilteringBoundLogger, structlog.get_logger(component=component))


@contextmanager
def tick_context(scenario: str, tick: int) -> Iterator[None]:
    """Tag every log line emitted inside the block with ``scenario`` and ``tick``."""
    with structlog.contextvars.bound_contextvars(scenario=scenario or None, tick=tick):
        yield
