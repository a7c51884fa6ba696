from __future__ import annotations

import logging
import os
import sys

import structlog


_LEVEL_ALIASES = {"warn": "warning"}


def resolve_log_level(*candidates: str | None) -> int:
    """
    First non-empty candidate wins; the LOG_LEVEL env var is consulted ahead
    of all of them. Unknown names fall back to INFO.
    """
    for raw in (os.getenv("LOG_LEVEL"), *candidates):
        name = str(raw or "").strip().lower()
        if not name:
            continue
        name = _LEVEL_ALIASES.get(name, name)
        level = logging.getLevelName(name.upper())
        return level if isinstance(level, int) else logging.INFO
    return logging.INFO


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    # The webhook key is part of the URL that httpx logs per request.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
