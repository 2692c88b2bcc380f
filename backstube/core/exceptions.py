"""
Exception hierarchy for the Backstube gateway runtime.

How each family is handled
--------------------------
NetworkError, ConnectionClosed, DeadConnectionError
    Transient. The session state machine reconnects with backoff.
ProtocolError
    Malformed or out-of-order frame. The connection is dropped and
    re-established.
SessionInvalid, ReconnectRequested
    Server-driven. The session is cleared (unless resumable) and the
    state machine reconnects.
ConfigurationError
    Fatal. Reaches `BotRuntime.start()` and the process exits non-zero.
HandlerError
    Contained to one handler invocation and reported to the error sink.
HTTPException and subclasses
    REST failures after the client's own retries are exhausted.

Every exception carries a stable `error_code`, a `details` mapping for
structured logging, a `severity` and whether retrying can help.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def log_level(self) -> int:
        return logging.getLevelName(self.name)


class BackstubeException(Exception):
    """
    Root of every Backstube error.

    Subclasses set DEFAULT_SEVERITY / DEFAULT_RETRYABLE; callers may
    override either per instance.

    >>> err = BackstubeException("Gateway connection failed", {"endpoint": "wss://gateway.discord.gg"})
    >>> str(err)
    "[BackstubeException] Gateway connection failed {'endpoint': 'wss://gateway.discord.gg'}"
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.severity = self.DEFAULT_SEVERITY if severity is None else severity
        self.is_retryable = self.DEFAULT_RETRYABLE if is_retryable is None else is_retryable
        self.error_code = error_code or type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for `extra={"error": ...}` log fields."""
        payload: Dict[str, Any] = {
            "error_code": self.error_code,
            "error_type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "retryable": self.is_retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        if not self.details:
            return f"[{self.error_code}] {self.message}"
        return f"[{self.error_code}] {self.message} {self.details}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, error_code={self.error_code!r})"


# ============================================================================
# Gateway / Network
# ============================================================================


class NetworkError(BackstubeException):
    """
    Raised when a transport operation fails for a transient reason.

    Connection refused, DNS failure, TLS handshake failure, timeouts and
    dropped sockets all map here. Always retried with backoff.
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "NETWORK_ERROR",
    ) -> None:
        super().__init__(message, details=details, error_code=error_code)


class ConnectionClosed(NetworkError):
    """
    Raised by `Transport.receive_next` when the socket has been closed.

    Args:
        code: WebSocket close code (None when the peer vanished without one)
        reason: Close reason sent by the peer, if any
    """

    def __init__(self, code: Optional[int] = None, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(
            f"Connection closed (code={code})",
            details={"code": code, "reason": reason},
            error_code="CONNECTION_CLOSED",
        )


class DeadConnectionError(NetworkError):
    """Raised when the heartbeat monitor declares the connection dead."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        super().__init__(
            "Heartbeat acknowledgement missed; connection considered dead",
            details={"heartbeat_interval_seconds": interval},
            error_code="DEAD_CONNECTION",
        )


class ProtocolError(BackstubeException):
    """
    Raised when a frame is malformed or arrives when it is not expected.

    The connection is dropped and a reconnect is attempted; the server may
    self-correct on a fresh connection.
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details, error_code="PROTOCOL_ERROR")


class SessionInvalid(BackstubeException):
    """
    Raised when the gateway reports the session as invalid (opcode 9).

    Args:
        resumable: Whether the server indicated the session may still be resumed
    """

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True

    def __init__(self, resumable: bool = False) -> None:
        self.resumable = resumable
        super().__init__(
            "Gateway session invalidated",
            details={"resumable": resumable},
            error_code="SESSION_INVALID",
        )


class ReconnectRequested(BackstubeException):
    """Raised when the gateway instructs the client to reconnect (opcode 7)."""

    DEFAULT_SEVERITY = ErrorSeverity.INFO
    DEFAULT_RETRYABLE = True

    def __init__(self) -> None:
        super().__init__("Gateway requested reconnect", error_code="RECONNECT_REQUESTED")


class ConfigurationError(BackstubeException):
    """
    Raised when a configuration key is invalid or missing.

    Covers credentials rejected by the platform, capability (intent)
    mismatches and malformed identify responses. Retrying cannot fix any of
    these, so the runtime stops.

    Args:
        config_key: The configuration key that has issues
        message: Description of the configuration problem
    """

    DEFAULT_SEVERITY = ErrorSeverity.CRITICAL
    DEFAULT_RETRYABLE = False

    def __init__(self, config_key: str, message: str) -> None:
        self.config_key = config_key
        error_message = f"Configuration error for {config_key}: {message}"
        super().__init__(
            error_message,
            details={
                "config_key": config_key,
                "message": message,
            },
            error_code="CONFIG_ERROR",
        )


# ============================================================================
# Handlers
# ============================================================================


class HandlerError(BackstubeException):
    """
    Wraps a failure raised by a registered handler.

    Args:
        handler_id: Identifier of the failing handler
        event_name: Gateway event the handler was invoked for
        original_error: The exception raised by the handler
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE = False

    def __init__(
        self,
        handler_id: str,
        event_name: str,
        original_error: BaseException,
    ) -> None:
        self.handler_id = handler_id
        self.event_name = event_name
        self.original_error = original_error
        super().__init__(
            f"Handler {handler_id} failed on {event_name}: {original_error}",
            details={
                "handler_id": handler_id,
                "event_name": event_name,
                "error": str(original_error),
                "error_type": type(original_error).__name__,
            },
            error_code="HANDLER_ERROR",
        )


class RegistryFrozenError(BackstubeException):
    """Raised when a handler is registered after the registry was frozen."""

    def __init__(self, trigger: str) -> None:
        self.trigger = trigger
        super().__init__(
            f"Cannot register '{trigger}': registry is frozen",
            details={"trigger": trigger},
            error_code="REGISTRY_FROZEN",
        )


# ============================================================================
# REST
# ============================================================================


class HTTPException(BackstubeException):
    """
    Raised when a REST request fails with a non-success status.

    Args:
        status: HTTP status code
        method: Request method
        path: Request path
        body: Decoded error body, if any
    """

    def __init__(
        self,
        status: int,
        method: str,
        path: str,
        body: Any = None,
    ) -> None:
        self.status = status
        self.method = method
        self.path = path
        self.body = body
        message = body.get("message") if isinstance(body, dict) else None
        super().__init__(
            f"{method} {path} failed with {status}: {message or 'no message'}",
            details={"status": status, "method": method, "path": path, "body": body},
            is_retryable=status >= 500,
            error_code=f"HTTP_{status}",
        )


class Forbidden(HTTPException):
    """Raised on HTTP 403."""


class NotFound(HTTPException):
    """Raised on HTTP 404."""


__all__ = [
    "ErrorSeverity",
    "BackstubeException",
    "NetworkError",
    "ConnectionClosed",
    "DeadConnectionError",
    "ProtocolError",
    "SessionInvalid",
    "ReconnectRequested",
    "ConfigurationError",
    "HandlerError",
    "RegistryFrozenError",
    "HTTPException",
    "Forbidden",
    "NotFound",
]
