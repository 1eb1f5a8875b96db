"""Telemetry ingestion workers.

One worker per upstream subscription. Each worker drains its stream,
decodes the fields the bridge cares about and writes them into the
shared TelemetryStore.

A worker that loses its stream (end of input or any error) logs once
and stops for good. There is no reconnection: the store keeps the last
value of that field and sessions keep streaming it unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Callable

from core.flight.telemetry import Orientation, Position, TelemetryStore

logger = logging.getLogger(__name__)


class StreamKind(str, Enum):
    POSITION = "position"
    ATTITUDE = "attitude"


def decode_position(message) -> Position:
    """Decode a MAVSDK telemetry.Position message."""
    return Position(
        longitude_deg=float(message.longitude_deg),
        latitude_deg=float(message.latitude_deg),
        altitude_m=float(message.absolute_altitude_m),
    )


def decode_quaternion(message) -> Orientation:
    """Decode a MAVSDK telemetry.Quaternion message."""
    return Orientation(
        x=float(message.x),
        y=float(message.y),
        z=float(message.z),
        w=float(message.w),
    )


class IngestionWorker:
    """Copies one telemetry stream into the store until the stream dies."""

    def __init__(
        self,
        kind: StreamKind,
        subscribe: Callable[[], AsyncIterator],
        store: TelemetryStore,
    ):
        self._kind = kind
        self._subscribe = subscribe
        self._store = store
        self._received = 0
        self._finished = False

    @property
    def kind(self) -> StreamKind:
        return self._kind

    @property
    def received(self) -> int:
        return self._received

    @property
    def finished(self) -> bool:
        return self._finished

    async def run(self) -> None:
        """Consume the subscription. Returns when the stream is gone."""
        logger.info("Subscribing to %s stream", self._kind.value)
        try:
            async for message in self._subscribe():
                self._apply(message)
                self._received += 1
                logger.debug("%s sample #%d received", self._kind.value, self._received)
        except asyncio.CancelledError:
            self._finished = True
            raise
        except Exception as e:
            self._finished = True
            logger.error(
                "%s stream error after %d samples: %s",
                self._kind.value, self._received, e,
            )
            return
        self._finished = True
        logger.warning(
            "%s stream ended after %d samples; last value is kept",
            self._kind.value, self._received,
        )

    def _apply(self, message) -> None:
        if self._kind is StreamKind.POSITION:
            p = decode_position(message)
            self._store.set_position(p.longitude_deg, p.latitude_deg, p.altitude_m)
        else:
            q = decode_quaternion(message)
            self._store.set_orientation(q.x, q.y, q.z, q.w)


def build_workers(source, store: TelemetryStore) -> list[IngestionWorker]:
    """Create the position and attitude workers for a telemetry source."""
    return [
        IngestionWorker(StreamKind.POSITION, source.position, store),
        IngestionWorker(StreamKind.ATTITUDE, source.attitude_quaternion, store),
    ]


def start_workers(workers: list[IngestionWorker]) -> list[asyncio.Task]:
    """Schedule the workers on the running loop. They live until cancelled."""
    return [
        asyncio.create_task(w.run(), name=f"ingest-{w.kind.value}")
        for w in workers
    ]
