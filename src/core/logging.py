"""
Structured Logging with structlog

JSON lines in production, coloured console output in development.
Every entry carries the app version plus the session id and pipeline stage
of the code that emitted it, taken from context variables so background
stage tasks keep the context of the request that launched them.
"""

import sys
import asyncio
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime
from contextvars import ContextVar
from functools import wraps

from src.core.config import settings

session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "PIL", "multipart", "onnxruntime")


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Attach version, session id and stage."""
    event_dict["version"] = settings.APP_VERSION

    session_id = session_id_var.get()
    if session_id:
        event_dict.setdefault("session_id", session_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    return event_dict


def summarize_payloads(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace raw image bytes with their length."""
    for key, value in event_dict.items():
        if isinstance(value, (bytes, bytearray)):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Configure stdlib logging and structlog.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON renderer if True, console renderer otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            summarize_payloads,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope session id and/or stage for the enclosed block.

    Usage:
        with LogContext(session_id=machine.session_id, stage="stylization"):
            logger.info("stylization_starting")

    None leaves the current value in place.
    """

    def __init__(self, session_id: Optional[str] = None, stage: Optional[str] = None):
        self._values = [(session_id_var, session_id), (stage_var, stage)]
        self._tokens = []

    def __enter__(self):
        self._tokens = [var.set(value) for var, value in self._values if value]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens = []
        return False


def set_session_context(session_id: str, stage: Optional[str] = None):
    """Bind the session (and optionally stage) for the rest of the request."""
    session_id_var.set(session_id)
    if stage:
        stage_var.set(stage)


def clear_session_context():
    session_id_var.set(None)
    stage_var.set(None)


def with_logging(stage: str):
    """
    Wrap a stage coroutine with stage_started / stage_completed /
    stage_failed entries and a ``duration_ms`` field.

    Usage:
        @with_logging("background_removal")
        async def remove_background(image, segmenter, storage) -> PipelineResult:
            ...
    """
    def decorator(func):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("with_logging only wraps coroutine functions")

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            start_time = datetime.utcnow()

            with LogContext(stage=stage):
                logger.info("stage_started")
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    logger.error(
                        "stage_failed",
                        duration_ms=_elapsed_ms(start_time),
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    raise
                logger.info("stage_completed", duration_ms=_elapsed_ms(start_time))
                return result

        return async_wrapper

    return decorator


def _elapsed_ms(start_time: datetime) -> int:
    return int((datetime.utcnow() - start_time).total_seconds() * 1000)
