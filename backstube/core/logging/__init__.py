from backstube.core.logging.logger import (
    ColoredFormatter,
    ContextFilter,
    JSONFormatter,
    LogContext,
    clear_log_context,
    get_log_context,
    get_logger,
    get_logging_health,
    set_log_context,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "ColoredFormatter",
    "ContextFilter",
    "JSONFormatter",
    "LogContext",
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "get_logging_health",
    "set_log_context",
    "setup_logging",
    "shutdown_logging",
]
