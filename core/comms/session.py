"""Per-client CZML streaming session.

One SessionBroadcaster runs for each open event-stream connection:

    STARTING   document packet, then a placement packet for the model
    STREAMING  every interval: snapshot the store, append a track
               sample to the trail, push it to the client
    CLOSED     cancelled by server shutdown or client disconnect

A session is single-task, so its records always leave in order. The
store snapshot is an immutable copy; no lock is held while writing to
the client.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from core.data.czml import (
    EncodeError,
    SceneClock,
    SceneStyle,
    TrackSample,
    document_packet,
    encode,
    format_time,
    placement_packet,
    sse_frame,
    track_packet,
    unix_nanos,
)
from core.flight.telemetry import TelemetryStore

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    CLOSED = "closed"


class SessionBroadcaster:
    """Streams one client's growing flight trail."""

    def __init__(
        self,
        store: TelemetryStore,
        write: Callable[[bytes], Awaitable[None]],
        clock: Optional[SceneClock] = None,
        style: Optional[SceneStyle] = None,
        interval_s: float = 1.0,
        name: str = "session",
    ):
        self._store = store
        self._write = write
        self._clock = clock or SceneClock()
        self._style = style or SceneStyle()
        self._interval = interval_s
        self._name = name

        self._state = SessionState.STARTING
        self._cancel = asyncio.Event()
        self._flight_time = 0
        self._trail: list[TrackSample] = []
        self._epoch = ""
        self._sent = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def flight_time(self) -> int:
        return self._flight_time

    @property
    def trail(self) -> tuple[TrackSample, ...]:
        return tuple(self._trail)

    @property
    def records_sent(self) -> int:
        return self._sent

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Ask the session to stop. Observed within one tick interval."""
        self._cancel.set()

    async def run(self) -> None:
        """Drive the session until cancelled or the client goes away."""
        logger.info("%s: stream opened", self._name)
        try:
            await self._start()
            self._state = SessionState.STREAMING
            await self._stream()
        except ConnectionResetError as e:
            logger.debug("%s: client went away: %s", self._name, e)
        finally:
            self._state = SessionState.CLOSED
            logger.info(
                "%s: stream closed after %d ticks (%d records)",
                self._name, self._flight_time, self._sent,
            )

    # ── Internal ──────────────────────────────────────────────

    async def _start(self) -> None:
        now = self._clock.now()
        await self._emit(document_packet(now, self._style), now)

        snapshot = self._store.snapshot()
        now = self._clock.now()
        self._epoch = format_time(now)
        await self._emit(placement_packet(snapshot, now, self._style), now)

    async def _stream(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while not self._cancel.is_set():
            deadline += self._interval
            # After a stalled write, resume the cadence instead of bursting
            deadline = max(deadline, loop.time())
            if await self._wait_cancel(deadline - loop.time()):
                break
            await self._tick()

    async def _wait_cancel(self, timeout: float) -> bool:
        """Sleep until the next tick. True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _tick(self) -> None:
        self._flight_time += 1
        sample = TrackSample.from_snapshot(self._flight_time, self._store.snapshot())
        self._trail.append(sample)
        now = self._clock.now()
        await self._emit(track_packet(sample, self._epoch, self._style), now)

    async def _emit(self, packet, now) -> None:
        if self._cancel.is_set():
            return
        try:
            data = encode(packet)
        except EncodeError as e:
            logger.warning("%s: dropped record: %s", self._name, e)
            return
        if await self._write_or_cancel(sse_frame(unix_nanos(now), data)):
            self._sent += 1

    async def _write_or_cancel(self, frame: bytes) -> bool:
        """Write one frame unless cancelled first. A stalled client must not
        keep the session alive past cancel()."""
        write = asyncio.ensure_future(self._write(frame))
        cancelled = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {write, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for fut in (write, cancelled):
                if not fut.done():
                    fut.cancel()
        if write not in done:
            await asyncio.gather(write, return_exceptions=True)
            logger.debug("%s: cancelled during a blocked write", self._name)
            return False
        write.result()
        return True
