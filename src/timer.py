"""
Client-side interval timer.

Runs the local one-second tick loop and reconciles it with state snapshots
received from other observers of the same session.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from src.client import ConnectionManager
from src.protocol import EVENT_SESSION_ACCEPTED, EVENT_STATE, TimerState, now_ms

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0


# ============================================================
# RECONCILIATION
# ============================================================


@dataclass(frozen=True)
class ReconciledState:
    work_time_seconds: int
    rest_time_seconds: int
    time: int
    laps: int
    is_work: bool
    is_paused: bool


def reconcile(data: TimerState, now: int | None = None) -> ReconciledState:
    """Project a received snapshot forward to *now* (milliseconds).

    The snapshot's ``time`` is measured from the start of its own phase. Work
    phase offsets are shifted by ``rest_time_seconds`` so that both phases
    share one lap coordinate starting at the beginning of rest; the position
    within the lap then gives the phase and time, and whole laps passed are
    added to ``laps``.

    A paused snapshot does not advance with the clock. Clock skew that puts
    the send time in the future counts as zero elapsed time.
    """
    if now is None:
        now = now_ms()

    work = data.work_time_seconds
    rest = data.rest_time_seconds

    sent_time = data.client_sent_timestamp
    if sent_time is None:
        sent_time = data.server_sent_timestamp
    if sent_time is None:
        sent_time = now

    drift = 0 if data.is_paused else max(0, (now - sent_time) // 1000)
    seconds_elapsed = data.time + drift + (rest if data.is_work else 0)

    lap_time = work + rest
    new_time = seconds_elapsed % lap_time
    is_work = new_time > rest
    if is_work:
        new_time -= rest

    return ReconciledState(
        work_time_seconds=work,
        rest_time_seconds=rest,
        time=new_time,
        laps=data.laps + seconds_elapsed // lap_time,
        is_work=is_work,
        is_paused=data.is_paused,
    )


# ============================================================
# INTERVAL TIMER
# ============================================================


class IntervalTimer:
    """Work/rest interval timer, optionally synced through a ConnectionManager.

    Owns its tick task and, when given one, the connection manager: ``close()``
    stops the loop and disconnects.
    """

    def __init__(
        self,
        connection: ConnectionManager | None = None,
        work_time_seconds: int | None = None,
        rest_time_seconds: int | None = None,
        tick_seconds: float = TICK_SECONDS,
    ):
        defaults = TimerState()
        self.work_time_seconds = work_time_seconds or defaults.work_time_seconds
        self.rest_time_seconds = rest_time_seconds or defaults.rest_time_seconds
        self.time = defaults.time
        self.laps = defaults.laps
        self.is_work = defaults.is_work
        self.tick_seconds = tick_seconds

        self.connection = connection
        self._tick_task: asyncio.Task | None = None

        if connection is not None:
            connection.add_listener(self.handle_event)

    @property
    def is_paused(self) -> bool:
        return self._tick_task is None

    def snapshot(self) -> TimerState:
        return TimerState(
            work_time_seconds=self.work_time_seconds,
            rest_time_seconds=self.rest_time_seconds,
            time=self.time,
            laps=self.laps,
            is_work=self.is_work,
            is_paused=self.is_paused,
            client_sent_timestamp=now_ms(),
        )

    async def publish(self) -> bool:
        """Send the current state to the other observers."""
        if self.connection is None:
            return False
        return await self.connection.send(EVENT_STATE, self.snapshot())

    # -- controls ------------------------------------------------------------

    async def start(self, broadcast: bool = True):
        self._start_ticking()
        if broadcast:
            await self.publish()

    async def stop(self, broadcast: bool = True):
        self._stop_ticking()
        if broadcast:
            await self.publish()

    async def start_stop(self):
        if self.is_paused:
            await self.start()
        else:
            await self.stop()

    async def reset(self):
        self.time = 0
        self.laps = 0
        self.is_work = True
        await self.publish()

    async def set_durations(self, work_time_seconds: int, rest_time_seconds: int):
        if work_time_seconds < 1 or rest_time_seconds < 1:
            raise ValueError("Work and rest durations must be at least 1 second")
        self.work_time_seconds = work_time_seconds
        self.rest_time_seconds = rest_time_seconds
        await self.publish()

    async def close(self):
        self._stop_ticking()
        if self.connection is not None:
            self.connection.remove_listener(self.handle_event)
            await self.connection.disconnect()

    # -- sync ----------------------------------------------------------------

    def handle_event(self, event: str, data: Any):
        """Connection listener."""
        if event == EVENT_STATE:
            try:
                state = TimerState.model_validate(data)
            except ValidationError as e:
                logger.warning("Ignoring invalid state: %s", e)
                return
            self.apply_state(state)
        elif event == EVENT_SESSION_ACCEPTED:
            logger.debug("Session accepted")

    def apply_state(self, data: TimerState, now: int | None = None):
        """Adopt a received snapshot without sending anything back."""
        reconciled = reconcile(data, now)
        self.work_time_seconds = reconciled.work_time_seconds
        self.rest_time_seconds = reconciled.rest_time_seconds
        self.time = reconciled.time
        self.laps = reconciled.laps
        self.is_work = reconciled.is_work

        if reconciled.is_paused != self.is_paused:
            if reconciled.is_paused:
                self._stop_ticking()
            else:
                self._start_ticking()

    # -- tick loop -----------------------------------------------------------

    def tick(self):
        """Advance one second, flipping phase past the configured boundary."""
        self.time += 1
        if not self.is_work and self.time > self.rest_time_seconds:
            self.is_work = True
            self.time = 1
        elif self.is_work and self.time > self.work_time_seconds:
            self.is_work = False
            self.time = 1
            self.laps += 1

    def _start_ticking(self):
        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._run())

    def _stop_ticking(self):
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    async def _run(self):
        try:
            while True:
                await asyncio.sleep(self.tick_seconds)
                self.tick()
        except asyncio.CancelledError:
            pass
