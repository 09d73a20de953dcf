# src/plinth/core/logging.py
"""Log output for plinth processes.

Every event, whether it comes from a structlog logger or from a stdlib
logger inside httpx or SQLAlchemy, is rendered by one ProcessorFormatter
on stdout.

The executor binds ``request_id``, ``provider`` and ``attempt`` through
structlog.contextvars for the lifetime of an external call, so anything
logged while the call is in flight carries them. JSON output keeps them
as separate keys for log search. Console output folds them into a single
``call`` field such as ``search/0f3a9c12#1`` (provider, request id prefix,
retry index) so retry chatter stays readable on one line.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

from plinth.core.config import LoggingSettings

# Libraries that log per request or per statement below WARNING
_QUIET_LIBRARIES: tuple[str, ...] = ("httpx", "httpcore", "sqlalchemy.engine", "sqlalchemy.pool")

_REQUEST_ID_PREFIX = 8


def render_call_context(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Collapse executor call context into a compact ``call`` field.

    Events logged outside an external call pass through unchanged.
    """
    if "request_id" not in event_dict and "provider" not in event_dict:
        return event_dict
    provider = event_dict.pop("provider", None) or "-"
    request_id = str(event_dict.pop("request_id", None) or "-")
    call = f"{provider}/{request_id[:_REQUEST_ID_PREFIX]}"
    attempt = event_dict.pop("attempt", None)
    if attempt is not None:
        call = f"{call}#{attempt}"
    event_dict["call"] = call
    return event_dict


def _renderer_chain(json_output: bool) -> list[Any]:
    if json_output:
        return [
            ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        ProcessorFormatter.remove_processors_meta,
        render_call_context,
        structlog.dev.ConsoleRenderer(colors=False),
    ]


def configure_logging(settings: LoggingSettings | None = None) -> None:
    """Route structlog and stdlib logging to stdout in one format.

    Safe to call more than once; each call replaces the root handler.
    """
    settings = settings or LoggingSettings()
    level = logging.getLevelName(settings.level)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level, *pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Module-level loggers are created at import time, before configuration
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processors=_renderer_chain(settings.json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
