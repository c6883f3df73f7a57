"""
Wire protocol shared by the server and the client.

Every frame is a JSON text message holding a two-element list:
``[event_name, payload]``.
"""

import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ============================================================
# CONSTANTS
# ============================================================

STATUS_NO_RECONNECT = 4444
STATUS_TOO_MANY_CONNECTIONS = 4029

EVENT_PING = "ping"
EVENT_PONG = "pong"
EVENT_STATE = "state"
EVENT_SESSION_ACCEPTED = "session:accepted"

DEFAULT_WORK_TIME_SECONDS = 45
DEFAULT_REST_TIME_SECONDS = 15


class ProtocolError(ValueError):
    """Raised when an inbound frame is not a valid ``[event, payload]`` pair."""


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


# ============================================================
# MODELS
# ============================================================


class TimerState(BaseModel):
    """Shared interval-timer snapshot.

    Attributes are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    work_time_seconds: int = Field(DEFAULT_WORK_TIME_SECONDS, ge=1)
    rest_time_seconds: int = Field(DEFAULT_REST_TIME_SECONDS, ge=1)
    time: int = Field(1, ge=0)
    laps: int = Field(0, ge=0)
    is_work: bool = False
    is_paused: bool = True

    # Drift compensation only
    client_sent_timestamp: int | None = None
    server_received_timestamp: int | None = None
    server_sent_timestamp: int | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def is_timestamp(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def pong_payload(then: int, now: int | None = None) -> dict[str, int]:
    """Round-trip diagnostics answering a ``ping`` sent at *then*."""
    if now is None:
        now = now_ms()
    return {"then": then, "now": now, "diff": now - then}


# ============================================================
# CODEC
# ============================================================


def _json_default(obj: Any) -> Any:
    if isinstance(obj, TimerState):
        return obj.to_wire()
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def encode(data: Any) -> str:
    return json.dumps(data, default=_json_default, separators=(",", ":"))


def encode_message(event: str, payload: Any = None) -> str:
    return encode([event, payload])


def decode_message(raw: str | bytes) -> tuple[str, Any]:
    """Parse a frame into ``(event, payload)``.

    Raises:
        ProtocolError: if the frame is not JSON or not a two-element list
            whose first element is a string.
    """
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from None

    if not isinstance(parsed, list) or len(parsed) != 2:
        raise ProtocolError("Invalid event payload type, expected [event, payload]")

    event, payload = parsed
    if not isinstance(event, str):
        raise ProtocolError(f"Event name must be a string, got {type(event).__name__}")
    return event, payload


# ============================================================
# CALLBACK DISPATCH
# ============================================================


@dataclass(frozen=True)
class CallbackResult:
    callback: Callable[..., Any]
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def dispatch(callbacks: Iterable[Callable[..., Any]], *args: Any) -> list[CallbackResult]:
    """Invoke every callback with *args*, isolating failures.

    Iterates over a snapshot, so callbacks may add or remove entries from the
    underlying collection while dispatch is in progress.
    """
    results = []
    for callback in list(callbacks):
        try:
            callback(*args)
        except Exception as e:
            results.append(CallbackResult(callback, e))
        else:
            results.append(CallbackResult(callback))
    return results
