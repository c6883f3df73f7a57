"""
Interval Timer Sync Service

Relays a shared interval-timer state between every client connected to the
same session key. The server holds the last state it received for each key and
rebroadcasts updates to the other observers (last write wins).
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from enum import StrEnum
from typing import Any

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.config import configure_logging, get_settings
from src.protocol import (
    EVENT_PING,
    EVENT_PONG,
    EVENT_SESSION_ACCEPTED,
    EVENT_STATE,
    STATUS_TOO_MANY_CONNECTIONS,
    ProtocolError,
    TimerState,
    decode_message,
    dispatch,
    encode,
    is_timestamp,
    now_ms,
    pong_payload,
)

logger = logging.getLogger(__name__)

# ============================================================
# CONSTANTS
# ============================================================

settings = get_settings()

SESSION_HEALTH_CHECK_INTERVAL_SECONDS = settings.session_health_check_interval_seconds
MAX_SESSIONS_PER_REGISTRY = settings.max_sessions_per_registry
MAX_REGISTRIES = settings.max_registries
REGISTRY_IDLE_TIMEOUT_SECONDS = settings.registry_idle_timeout_seconds

CORS_HEADERS = {
    "Access-Control-Allow-Methods": "OPTIONS, GET, POST",
    "Access-Control-Allow-Headers": "*",
}

MessageHandler = Callable[[str, Any], Awaitable[None]]


# ============================================================
# ERRORS
# ============================================================


class SessionRequestError(Exception):
    """A connection request the registry refuses to accept."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def json_response(data: dict, status_code: int = 200) -> JSONResponse:
    """JSON body with a ``success`` flag derived from the status code."""
    data["success"] = 200 <= status_code < 300
    return JSONResponse(data, status_code=status_code)


def check_request(method: str, headers: Mapping[str, str]) -> None:
    """Validate a session connection request.

    Raises:
        SessionRequestError: 405 for anything but GET, 426 when an Upgrade
            header asks for something other than websocket.
    """
    if method.upper() != "GET":
        raise SessionRequestError(405, "bad method")

    upgrade = headers.get("upgrade")
    if upgrade and upgrade.lower() != "websocket":
        raise SessionRequestError(426, "bad upgrade")


# ============================================================
# SESSION
# ============================================================


class SessionState(StrEnum):
    OPEN = "open"
    TERMINAL = "terminal"


class Session:
    """Server side of one accepted WebSocket connection."""

    def __init__(
        self,
        websocket: WebSocket,
        health_check_interval: float = SESSION_HEALTH_CHECK_INTERVAL_SECONDS,
    ):
        self.websocket = websocket
        self.health_check_interval = health_check_interval
        self.last_message_time = now_ms()

        self._state = SessionState.OPEN
        self._on_message: MessageHandler | None = None
        self._on_close: list[Callable[[], None]] = []
        self._keepalive_task: asyncio.Task | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def quit(self) -> bool:
        return self._state is SessionState.TERMINAL

    def start(self):
        """Start the keepalive loop. Requires a running event loop."""
        if self._keepalive_task is None and not self.quit:
            self._keepalive_task = asyncio.create_task(self._keepalive())

    def on_message(self, callback: MessageHandler):
        self._on_message = callback

    def on_close(self, callback: Callable[[], None]):
        self._on_close.append(callback)

    async def ping(self):
        await self.emit(EVENT_PING, now_ms())

    async def emit(self, event: str, data: Any = None):
        await self.send([event, data])

    async def send(self, data: Any):
        if self.quit:
            return
        if not isinstance(data, str):
            data = encode(data)
        try:
            await self.websocket.send_text(data)
        except Exception as e:
            logger.warning("Failed to send message to socket: %s", e)
            self._terminate()

    async def close(self, code: int = 1000, reason: str = ""):
        if self.quit:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.warning("Error while closing socket: %s", e)
        finally:
            self._terminate()

    async def run(self):
        """Receive messages until the peer disconnects or the session ends."""
        try:
            while not self.quit:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                await self.handle_message(data)
        except WebSocketDisconnect as e:
            logger.debug("Socket disconnected with code %s", e.code)
        except RuntimeError as e:
            # Starlette raises RuntimeError when receiving on a closed socket
            logger.debug("Socket no longer readable: %s", e)
        finally:
            self._terminate()

    async def handle_message(self, message: str | bytes | None):
        if self.quit:
            with contextlib.suppress(Exception):
                await self.websocket.close(code=1011, reason="WebSocket broken.")
            return

        self.last_message_time = now_ms()
        try:
            event, data = decode_message(message)
        except ProtocolError as e:
            logger.warning("Dropping malformed socket message: %s", e)
            return

        if event == EVENT_PING:
            if is_timestamp(data):
                await self.emit(EVENT_PONG, pong_payload(data))
            else:
                logger.warning("Dropping ping with non-numeric timestamp: %r", data)
            return

        if event == EVENT_PONG:
            logger.debug("Received pong: %s", data)
            return

        if self._on_message is not None:
            try:
                await self._on_message(event, data)
            except Exception:
                logger.exception("Error while handling socket message %s", event)

    def _terminate(self):
        """Enter TERMINAL. The only place session state changes."""
        if self.quit:
            return
        self._state = SessionState.TERMINAL

        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

        for result in dispatch(self._on_close):
            if not result.ok:
                logger.error(
                    "Error while calling socket on_close handler", exc_info=result.error
                )

    async def _keepalive(self):
        """Ping the peer whenever it has been silent for a full interval."""
        try:
            while not self.quit:
                await asyncio.sleep(self.health_check_interval)
                if now_ms() - self.last_message_time > self.health_check_interval * 1000:
                    await self.ping()
        except asyncio.CancelledError:
            pass


# ============================================================
# SESSION REGISTRY
# ============================================================


class SessionRegistry:
    """Authoritative timer state and live sessions for one session key."""

    def __init__(self, key: str, max_sessions: int = MAX_SESSIONS_PER_REGISTRY):
        self.key = key
        self.max_sessions = max_sessions
        self.state = TimerState()
        self.sessions: set[Session] = set()
        self.last_active = time.monotonic()

    def current_state(self) -> TimerState:
        """The authoritative state, stamped for sending."""
        return self.state.model_copy(update={"server_sent_timestamp": now_ms()})

    async def accept(self, websocket: WebSocket) -> Session | None:
        """Accept a WebSocket and register it as a live session.

        Returns None when the connection was refused.
        """
        try:
            check_request(websocket.scope.get("method", "GET"), websocket.headers)
        except SessionRequestError as e:
            logger.warning("Refusing session on %s: %s", self.key, e.message)
            await websocket.close(code=1008, reason=e.message)
            return None

        if len(self.sessions) >= self.max_sessions:
            await websocket.close(code=STATUS_TOO_MANY_CONNECTIONS, reason="Too many connections")
            return None

        await websocket.accept()
        session = Session(websocket)
        self.add_session(session)
        session.start()

        await session.emit(EVENT_SESSION_ACCEPTED, None)
        await session.emit(EVENT_STATE, self.current_state())
        return session

    def add_session(self, session: Session):
        self.sessions.add(session)
        self.last_active = time.monotonic()

        async def handle(event: str, data: Any):
            await self.handle_event(session, event, data)

        session.on_message(handle)
        session.on_close(lambda: self.remove_session(session))

    def remove_session(self, session: Session):
        self.sessions.discard(session)
        self.last_active = time.monotonic()

    async def handle_event(self, origin: Session, event: str, data: Any):
        if event == EVENT_STATE:
            await self.update_state(origin, data)
        else:
            logger.debug("Ignoring event %s on %s", event, self.key)

    async def update_state(self, origin: Session | None, data: Any) -> bool:
        """Replace the authoritative state and relay it to every other session."""
        try:
            incoming = TimerState.model_validate(data)
        except ValidationError as e:
            logger.warning("Dropping invalid state on %s: %s", self.key, e)
            return False

        incoming.server_received_timestamp = now_ms()
        self.state = incoming
        self.last_active = time.monotonic()

        await self.broadcast([EVENT_STATE, self.current_state()], exclude=origin)
        return True

    async def broadcast(self, message: Any, exclude: Session | None = None):
        """Send *message* to every live session except *exclude*."""
        data = message if isinstance(message, str) else encode(message)
        for session in list(self.sessions):
            if session is exclude:
                continue
            try:
                await session.send(data)
            except Exception:
                logger.exception("Failed to broadcast to a session on %s", self.key)

    async def close_all(self, code: int = 1001, reason: str = ""):
        for session in list(self.sessions):
            await session.close(code, reason)

    def is_idle(self, now: float, idle_timeout: float = REGISTRY_IDLE_TIMEOUT_SECONDS) -> bool:
        return not self.sessions and now - self.last_active > idle_timeout


# ============================================================
# REGISTRY STORE
# ============================================================


class RegistryStore:
    """Maps session keys to their registries."""

    def __init__(self, max_registries: int = MAX_REGISTRIES):
        self.max_registries = max_registries
        self.registries: dict[str, SessionRegistry] = {}

    def get(self, key: str) -> SessionRegistry | None:
        return self.registries.get(key)

    def get_or_create(self, key: str) -> SessionRegistry:
        registry = self.registries.get(key)
        if registry is None:
            if len(self.registries) >= self.max_registries:
                raise ValueError("Maximum registry limit reached")
            registry = SessionRegistry(key)
            self.registries[key] = registry
        return registry

    def evict_idle(
        self, now: float | None = None, idle_timeout: float = REGISTRY_IDLE_TIMEOUT_SECONDS
    ) -> int:
        """Drop registries with no sessions that have been idle too long."""
        if now is None:
            now = time.monotonic()
        idle = [key for key, r in self.registries.items() if r.is_idle(now, idle_timeout)]
        for key in idle:
            del self.registries[key]
        if idle:
            logger.info("Evicted %d idle session registries", len(idle))
        return len(idle)

    @property
    def session_count(self) -> int:
        return sum(len(r.sessions) for r in self.registries.values())

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down"):
        for registry in list(self.registries.values()):
            await registry.close_all(code, reason)


# Global store
store = RegistryStore()


async def _reap_idle_registries(interval: float):
    while True:
        await asyncio.sleep(interval)
        store.evict_idle()


# ============================================================
# FASTAPI APP
# ============================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Interval Timer Sync Service started")
    reaper = asyncio.create_task(_reap_idle_registries(settings.registry_reap_interval_seconds))
    yield
    reaper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await reaper
    await store.close_all()
    logger.info("Interval Timer Sync Service stopped")


app = FastAPI(
    title="Interval Timer Sync Service",
    description="Shared work/rest interval timers kept in sync over WebSockets",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def cors_and_errors(request: Request, call_next):
    """Answer OPTIONS, trap unexpected errors and add CORS headers."""
    if request.method == "OPTIONS":
        response = Response(status_code=204)
    else:
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Failed to handle request %s %s", request.method, request.url)
            response = json_response({"message": "internal error"}, 500)

    response.headers["Access-Control-Allow-Origin"] = request.headers.get("origin", "*")
    response.headers.update(CORS_HEADERS)
    return response


@app.exception_handler(SessionRequestError)
async def session_request_error_handler(request: Request, exc: SessionRequestError):
    return json_response({"message": exc.message}, exc.status_code)


# ============================================================
# HEALTH CHECK
# ============================================================


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "registries_active": len(store.registries),
        "sessions_active": store.session_count,
    }


# ============================================================
# SESSION ENDPOINTS
# ============================================================


@app.api_route("/{key}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def session_state(request: Request, key: str):
    """Plain HTTP on a session key: a read-only view of its state."""
    check_request(request.method, request.headers)

    registry = store.get(key)
    state = registry.state if registry else TimerState()
    return json_response(
        {
            "key": key,
            "state": state.to_wire(),
            "connected_sessions": len(registry.sessions) if registry else 0,
        }
    )


@app.websocket("/{key}")
async def websocket_endpoint(websocket: WebSocket, key: str):
    """
    WebSocket connection to a shared timer session.

    Frames are JSON ``[event, payload]`` pairs.

    Sent on connect:
    - session:accepted: payload null
    - state: current timer state

    Received:
    - state: replaces the shared state, relayed to every other client
    - ping: answered with pong {then, now, diff}
    """
    try:
        registry = store.get_or_create(key)
    except ValueError:
        await websocket.close(code=STATUS_TOO_MANY_CONNECTIONS, reason="Too many sessions")
        return

    session = await registry.accept(websocket)
    if session is None:
        return

    try:
        await session.run()
    except Exception:
        logger.warning("WebSocket error for session on %s", key)
    finally:
        registry.remove_session(session)


# ============================================================
# MAIN
# ============================================================

if __name__ == "__main__":
    import uvicorn

    configure_logging(settings.log_level)
    uvicorn.run(app, host=settings.host, port=settings.port)
