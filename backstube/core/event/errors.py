"""
Handler error reporting.

Handler failures never propagate: the pool wraps them in `HandlerError` and
hands them to an `ErrorSink`. `LoggingErrorSink` is the default sink; tests
and alerting integrations provide their own.
"""

from __future__ import annotations

from collections import Counter
from logging import Logger
from typing import Optional, Protocol, runtime_checkable

from backstube.core.exceptions import HandlerError
from backstube.core.logging.logger import get_logger


@runtime_checkable
class ErrorSink(Protocol):
    def report(self, error: HandlerError) -> None: ...


class LoggingErrorSink:
    """Logs each handler error with structured context and counts them per handler."""

    def __init__(self, logger: Optional[Logger] = None) -> None:
        self._logger = logger or get_logger(__name__)
        self.counts: Counter[str] = Counter()

    def report(self, error: HandlerError) -> None:
        self.counts[error.handler_id] += 1
        original = error.original_error
        self._logger.log(
            error.severity.log_level,
            "Handler failed",
            extra={"error": error.to_dict()},
            exc_info=(type(original), original, original.__traceback__),
        )

    @property
    def total(self) -> int:
        return sum(self.counts.values())
