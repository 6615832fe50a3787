from __future__ import annotations

import logging
import sys

import structlog

from .context import get_request_id

# Event keys that must never reach the log sink verbatim.
_DROPPED_KEYS = frozenset({"email", "authorization", "password"})
_TOKEN_KEYS = frozenset({"token", "access_token", "id_token", "next_token", "device_id"})

_CONFIGURED = False


def _add_request_id(_: logging.Logger, __: str, event_dict: dict) -> dict:
    rid = get_request_id()
    if rid:
        event_dict["request_id"] = rid
    return event_dict


def _redact(_: logging.Logger, __: str, event_dict: dict) -> dict:
    for k in list(event_dict.keys()):
        if k in _DROPPED_KEYS:
            event_dict.pop(k, None)
        elif k in _TOKEN_KEYS and event_dict[k]:
            v = str(event_dict[k])
            event_dict[k] = f"{v[:6]}..." if len(v) > 6 else "..."
    return event_dict


def _shared_processors() -> list:
    return [
        _add_request_id,
        _redact,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(*, level: str | int = "INFO") -> None:
    """
    JSON logs on stdout for both structlog and stdlib loggers.

    Every event carries ``request_id`` (when inside a request), the logger name,
    the level and an ISO UTC timestamp. Emails are dropped and token-like
    values truncated before rendering.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors(),
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # uvicorn logs go through root so they share the JSON format.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True

    # botocore is chatty at INFO (credential discovery, retries).
    logging.getLogger("botocore").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None):
    return structlog.get_logger(name)
