# structlog setup for ragcore; request scope travels in contextvars

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.contextvars import bound_contextvars, get_contextvars

SERVICE_NAME = "ragcore"


def add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


@contextmanager
def request_scope(
    organization_id: Optional[str],
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Iterator[str]:
    """
    Bind org, user and a request id onto every event logged inside the block.

    Nested scopes keep the outer request id unless a new one is passed.
    Yields the request id in effect.
    """
    request_id = request_id or get_contextvars().get("request_id") or uuid.uuid4().hex
    with bound_contextvars(org=organization_id, user=user_id, request_id=request_id):
        yield request_id


def current_request_id() -> Optional[str]:
    return get_contextvars().get("request_id")


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure stdlib logging and structlog for the host process.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: one JSON object per line; colored console lines otherwise
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level '{log_level}'")
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            add_service,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
            if json_output
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class LoggerAdapter:
    """Adds fixed fields (organization, user) to every event of one retrieval."""

    def __init__(self, logger: structlog.BoundLogger, **default_fields: Any):
        self.logger = logger
        self.default_fields = default_fields

    def _log(self, level: str, event: str, **kwargs: Any) -> None:
        getattr(self.logger, level)(event, **{**self.default_fields, **kwargs})

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log("error", event, **kwargs)

    def bind(self, **new_fields: Any) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, **{**self.default_fields, **new_fields})
