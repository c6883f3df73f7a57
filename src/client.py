"""
Client-side connection manager.

Keeps one WebSocket open to a session key, reconnects with capped exponential
backoff and fans incoming events out to registered listeners.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.config import Settings
from src.protocol import (
    EVENT_PING,
    EVENT_PONG,
    STATUS_NO_RECONNECT,
    ProtocolError,
    decode_message,
    dispatch,
    encode_message,
    is_timestamp,
    now_ms,
    pong_payload,
)

logger = logging.getLogger(__name__)

RECONNECT_MAX_INTERVAL_SECONDS = 1800.0
RECONNECT_BACKOFF_FACTOR = 1.5
HEALTH_CHECK_TIMEOUT_SECONDS = 200.0

Listener = Callable[[str, Any], None]
Connector = Callable[[str], Awaitable[Any]]

TRANSPORT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


def backoff_delay(
    attempts: int,
    max_interval_seconds: float = RECONNECT_MAX_INTERVAL_SECONDS,
    backoff_factor: float = RECONNECT_BACKOFF_FACTOR,
) -> float:
    """Seconds to wait before reconnection attempt number *attempts*."""
    return min(max_interval_seconds, attempts**backoff_factor)


def build_socket_url(base_url: str, key: str) -> str:
    """Append *key* to *base_url*, mapping http(s) schemes to ws(s).

    A base URL without a scheme is treated as ``ws://``.
    """
    if "//" not in base_url:
        base_url = f"ws://{base_url}"
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme in ("wss", "https") else "ws"
    path = parts.path if parts.path.endswith("/") else f"{parts.path}/"
    return urlunsplit((scheme, parts.netloc, f"{path}{key}", "", ""))


class ConnectionManager:
    """Owns at most one WebSocket to a session endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        max_interval_seconds: float = RECONNECT_MAX_INTERVAL_SECONDS,
        backoff_factor: float = RECONNECT_BACKOFF_FACTOR,
        health_check_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        connector: Connector = websockets.connect,
    ):
        self.base_url = base_url
        self.max_interval_seconds = max_interval_seconds
        self.backoff_factor = backoff_factor
        self.health_check_timeout = health_check_timeout
        self.connector = connector

        self.key: str | None = None
        self.reconnect_attempts = 0
        self.last_message_time: int | None = None
        self.listeners: set[Listener] = set()

        self._connection: Any = None
        self._closing_code: int | None = None
        self._reader_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ConnectionManager":
        return cls(
            settings.socket_base_url,
            max_interval_seconds=settings.reconnect_max_interval_seconds,
            backoff_factor=settings.reconnect_backoff_factor,
            health_check_timeout=settings.client_health_check_timeout_seconds,
            **kwargs,
        )

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc_info):
        await self.disconnect()

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- listeners -----------------------------------------------------------

    def add_listener(self, listener: Listener):
        self.listeners.add(listener)

    def remove_listener(self, listener: Listener):
        self.listeners.discard(listener)

    def _emit(self, event: str, data: Any = None):
        for result in dispatch(self.listeners, event, data):
            if not result.ok:
                logger.error("Error while handling message %s", event, exc_info=result.error)

    # -- public interface ----------------------------------------------------

    async def connect(self, key: str) -> bool:
        """Open the connection for *key*.

        Returns False if the connection could not be established; a retry is
        then scheduled according to the reconnection policy.
        """
        self.key = key
        self._closing_code = None
        if await self._open():
            return True
        self._schedule_reconnect()
        return False

    async def send(self, event: str, data: Any = None) -> bool:
        connection = self._connection
        if connection is None:
            return False
        try:
            await connection.send(encode_message(event, data))
        except TRANSPORT_ERRORS as e:
            logger.warning("WS: send of %s failed: %s", event, e)
            return False
        return True

    async def disconnect(self, code: int = STATUS_NO_RECONNECT):
        """Close the connection and cancel any pending reconnect."""
        self._closing_code = code
        self._cancel_reconnect()

        connection = self._connection
        if connection is None:
            return
        try:
            await connection.close(code)
        except TRANSPORT_ERRORS as e:
            logger.warning("WS: error while closing: %s", e)

        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task():
            await reader

    # -- connection lifecycle ------------------------------------------------

    async def _open(self) -> bool:
        url = build_socket_url(self.base_url, self.key)
        try:
            connection = await self.connector(url)
        except TRANSPORT_ERRORS as e:
            logger.error("WS: connection to %s failed: %s", url, e)
            self._emit("error", e)
            return False

        self._connection = connection
        self._on_open()
        self._reader_task = asyncio.create_task(self._read(connection))
        return True

    def _on_open(self):
        self._cancel_reconnect()
        self._closing_code = None
        self.last_message_time = now_ms()
        if self._health_task is not None:
            self._health_task.cancel()
        self._health_task = asyncio.create_task(self._health_check())
        self._emit("open")

    async def _read(self, connection):
        try:
            async for message in connection:
                await self._handle_message(message)
        except ConnectionClosed as e:
            if self._closing_code is not None:
                logger.debug("WS: closed with code %s", self._closing_code)
            else:
                logger.warning("WS: connection closed abnormally: %s", e)
                self._emit("error", e)
        except TRANSPORT_ERRORS as e:
            logger.warning("WS: transport error: %s", e)
            self._emit("error", e)
        except Exception as e:
            logger.exception("WS: reader stopped unexpectedly")
            self._emit("error", e)
        finally:
            self._on_close(connection)

    def _on_close(self, connection):
        if self._connection is connection:
            self._connection = None
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

        code = self._closing_code
        if code is None:
            code = getattr(connection, "close_code", None)
        self._emit("close", code)

        if code == STATUS_NO_RECONNECT:
            return
        logger.warning("WS: Socket closed (code %s), reconnecting...", code)
        self._schedule_reconnect()

    async def _handle_message(self, message: str | bytes):
        self.last_message_time = now_ms()
        try:
            event, data = decode_message(message)
        except ProtocolError as e:
            logger.error("WS: %s", e)
            return

        if event == EVENT_PING:
            if is_timestamp(data):
                await self.send(EVENT_PONG, pong_payload(data))
            else:
                logger.error("WS: ping without a timestamp: %r", data)
            return
        if event == EVENT_PONG:
            return
        self._emit(event, data)

    async def _health_check(self):
        """Send a keepalive ping when nothing has been heard for a full window."""
        while True:
            await asyncio.sleep(self.health_check_timeout)
            if now_ms() - self.last_message_time > self.health_check_timeout * 1000:
                await self.send(EVENT_PING, now_ms())

    # -- reconnection --------------------------------------------------------

    def _schedule_reconnect(self):
        if self._connection is not None:
            self._cancel_reconnect()
            return
        self.reconnect_attempts += 1
        delay = backoff_delay(
            self.reconnect_attempts, self.max_interval_seconds, self.backoff_factor
        )
        logger.info(
            "WS: Attempting to reconnect %d in %.1fs", self.reconnect_attempts, delay
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        if not await self._open():
            self._schedule_reconnect()

    def _cancel_reconnect(self):
        self.reconnect_attempts = 0
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._reconnect_task = None
