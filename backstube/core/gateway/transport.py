"""
Gateway transport.

`Transport` is the seam between the session state machine and the network:
an ordered, bidirectional stream of text frames. `WebSocketTransport`
implements it over aiohttp websockets (TLS via `wss://`).

Failures surface as `NetworkError`; a closed socket surfaces as
`ConnectionClosed` carrying the close code. `receive_next` returns frames in
exact arrival order and never reorders, deduplicates or drops them.
"""

from __future__ import annotations

import abc
import asyncio
from typing import Any, Optional

import aiohttp

from backstube.core.exceptions import ConnectionClosed, NetworkError, ProtocolError
from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)


class Transport(abc.ABC):
    """Ordered text-frame stream to the gateway."""

    @abc.abstractmethod
    async def connect(self, endpoint: str) -> Any:
        """Open a connection and return an opaque connection handle."""

    @abc.abstractmethod
    async def send(self, connection: Any, frame: str) -> None:
        """Send one text frame."""

    @abc.abstractmethod
    async def receive_next(self, connection: Any) -> str:
        """Return the next inbound text frame."""

    @abc.abstractmethod
    async def close(self, connection: Any, code: int = 1000) -> None:
        """Close the connection. Must be safe to call on a closed connection."""

    async def aclose(self) -> None:
        """Release resources shared across connections."""


class WebSocketTransport(Transport):
    """aiohttp websocket transport; one `ClientSession` shared by all connections."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        connect_timeout: float = 30.0,
        max_msg_size: int = 0,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._connect_timeout = connect_timeout
        self._max_msg_size = max_msg_size

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(self, endpoint: str) -> aiohttp.ClientWebSocketResponse:
        session = await self._get_session()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(
                    endpoint,
                    autoclose=False,
                    autoping=True,
                    max_msg_size=self._max_msg_size,
                    compress=0,
                ),
                timeout=self._connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise NetworkError(
                "Gateway connect failed",
                details={
                    "endpoint": endpoint,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            ) from exc

        logger.debug("Gateway socket opened", extra={"endpoint": endpoint})
        return ws

    async def send(self, connection: aiohttp.ClientWebSocketResponse, frame: str) -> None:
        if connection.closed:
            raise ConnectionClosed(connection.close_code, "send on closed socket")
        try:
            await connection.send_str(frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise NetworkError(
                "Gateway send failed",
                details={"error": str(exc), "error_type": type(exc).__name__},
            ) from exc

    async def receive_next(self, connection: aiohttp.ClientWebSocketResponse) -> str:
        while True:
            try:
                msg = await connection.receive()
            except (aiohttp.ClientError, ConnectionError) as exc:
                raise NetworkError(
                    "Gateway receive failed",
                    details={"error": str(exc), "error_type": type(exc).__name__},
                ) from exc

            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                try:
                    return msg.data.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise ProtocolError(
                        "Binary frame is not UTF-8",
                        details={"error": str(exc), "size": len(msg.data)},
                    ) from exc
            if msg.type in (aiohttp.WSMsgType.PING, aiohttp.WSMsgType.PONG):
                continue
            if msg.type == aiohttp.WSMsgType.CLOSE:
                code = msg.data if isinstance(msg.data, int) else connection.close_code
                reason = msg.extra or ""
                await connection.close()
                raise ConnectionClosed(code, reason)
            if msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                raise ConnectionClosed(connection.close_code, "socket closed")
            if msg.type == aiohttp.WSMsgType.ERROR:
                exc = connection.exception()
                raise NetworkError(
                    "Gateway socket error",
                    details={"error": str(exc), "error_type": type(exc).__name__},
                )

    async def close(self, connection: aiohttp.ClientWebSocketResponse, code: int = 1000) -> None:
        if connection.closed:
            return
        try:
            await connection.close(code=code)
        except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError) as exc:
            logger.debug(
                "Error while closing gateway socket",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
