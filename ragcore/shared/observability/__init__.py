# Observability package
from .logging import (
    LoggerAdapter,
    current_request_id,
    get_logger,
    request_scope,
    setup_logging,
)
from .metrics import get_metrics

__all__ = [
    "get_logger",
    "setup_logging",
    "request_scope",
    "current_request_id",
    "LoggerAdapter",
    "get_metrics",
]
