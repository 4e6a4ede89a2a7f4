"""
Structured logging setup and trace id helpers.
"""

import logging
import uuid
from typing import Optional

import structlog

TRACE_HEADER = "X-Trace-Id"


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog once for the whole process."""
    level_no = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(level_no, int):
        level_no = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def new_trace_id() -> str:
    return str(uuid.uuid4())


def resolve_trace_id(header_value: Optional[str]) -> str:
    """Use the caller's trace id when it looks sane, otherwise mint one."""
    if header_value:
        candidate = header_value.strip()
        if 0 < len(candidate) <= 128 and candidate.isprintable():
            return candidate
    return new_trace_id()


def bind_trace_id(trace_id: str) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(trace_id=trace_id)


def current_trace_id() -> str:
    return structlog.contextvars.get_contextvars().get("trace_id") or new_trace_id()
