"""Telemetry state container.

Holds the latest position and attitude reported by the vehicle.
Updated continuously by the two ingestion workers, read by every
streaming session. Each write swaps in a new immutable snapshot, so a
reader never holds the lock while it encodes or writes to a client.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class Position:
    """Geodetic position of the vehicle."""

    longitude_deg: float
    latitude_deg: float
    altitude_m: float          # absolute (AMSL) altitude

    def as_list(self) -> list[float]:
        return [self.longitude_deg, self.latitude_deg, self.altitude_m]


@dataclass(frozen=True)
class Orientation:
    """Attitude quaternion of the vehicle body frame."""

    x: float
    y: float
    z: float
    w: float

    def as_list(self) -> list[float]:
        return [self.x, self.y, self.z, self.w]


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Latest known state. A field is None until its stream reports once."""

    position: Optional[Position] = None
    orientation: Optional[Orientation] = None


class TelemetryStore:
    """Thread-safe last-value store, one field per upstream stream.

    Position and orientation arrive on independent streams, so a snapshot
    pairs the latest of each; they are not guaranteed to come from the
    same instant.
    """

    def __init__(self):
        self._snapshot = TelemetrySnapshot()
        self._lock = threading.Lock()
        self._updated_at: dict[str, float] = {}

    def set_position(self, lon: float, lat: float, alt: float) -> None:
        position = Position(float(lon), float(lat), float(alt))
        with self._lock:
            self._snapshot = replace(self._snapshot, position=position)
            self._updated_at["position"] = time.monotonic()

    def set_orientation(self, x: float, y: float, z: float, w: float) -> None:
        orientation = Orientation(float(x), float(y), float(z), float(w))
        with self._lock:
            self._snapshot = replace(self._snapshot, orientation=orientation)
            self._updated_at["orientation"] = time.monotonic()

    def snapshot(self) -> TelemetrySnapshot:
        """Return the current snapshot. Immutable, safe to keep after return."""
        with self._lock:
            return self._snapshot

    def freshness(self) -> dict[str, Optional[float]]:
        """Seconds since each field was last written, None if never."""
        now = time.monotonic()
        with self._lock:
            return {
                name: (now - self._updated_at[name]) if name in self._updated_at else None
                for name in ("position", "orientation")
            }
