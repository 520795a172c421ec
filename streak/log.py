"""Structured logging configuration."""

import logging
import uuid
from typing import Any, Dict

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, reset_contextvars


def configure_logging(log_level: str = "INFO") -> None:
    """Configure JSON logging with request id tracking.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    structlog.configure(
        processors=[
            _add_request_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    context = get_contextvars()
    if "request_id" in context:
        event_dict["request_id"] = context["request_id"]
    return event_dict


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


class RequestContext:
    """Binds a request id into the logging context for the duration of a block."""

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id or str(uuid.uuid4())
        self._tokens = None

    def __enter__(self) -> str:
        self._tokens = bind_contextvars(request_id=self.request_id)
        return self.request_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tokens:
            reset_contextvars(**self._tokens)
