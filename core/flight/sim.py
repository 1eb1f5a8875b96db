"""Simulated telemetry source.

Produces the same two streams as MavsdkSource from a synthetic flight:
the vehicle orbits a home point at constant altitude with its nose on
the tangent. Useful for running the bridge and the browser client
without SITL or hardware.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import AsyncIterator, Optional

from mavsdk.telemetry import Position, Quaternion

EARTH_RADIUS_M = 6371000


class SimulatedSource:
    """Circular orbit around a home point."""

    def __init__(
        self,
        home_lat: float = 35.681,
        home_lon: float = 139.767,
        altitude_m: float = 50.0,
        radius_m: float = 100.0,
        period_s: float = 60.0,
        rate_hz: float = 10.0,
        position_limit: Optional[int] = None,
        attitude_limit: Optional[int] = None,
    ):
        self._home_lat = home_lat
        self._home_lon = home_lon
        self._alt = altitude_m
        self._radius = radius_m
        self._period = period_s
        self._interval = 1.0 / rate_hz
        # Stream length caps, to rehearse a lost link
        self._position_limit = position_limit
        self._attitude_limit = attitude_limit
        self._t0 = time.monotonic()

    async def connect(self) -> bool:
        return True

    @property
    def endpoint(self) -> str:
        return "simulation"

    def sample_position(self, t: float) -> Position:
        angle = 2 * math.pi * t / self._period
        dlat = self._radius * math.cos(angle) / EARTH_RADIUS_M
        dlon = self._radius * math.sin(angle) / (
            EARTH_RADIUS_M * math.cos(math.radians(self._home_lat))
        )
        return Position(
            latitude_deg=self._home_lat + math.degrees(dlat),
            longitude_deg=self._home_lon + math.degrees(dlon),
            absolute_altitude_m=self._alt,
            relative_altitude_m=self._alt,
        )

    def sample_attitude(self, t: float) -> Quaternion:
        # Yaw about the NED down axis, level flight
        angle = 2 * math.pi * t / self._period
        yaw = angle + math.pi / 2
        return Quaternion(
            w=math.cos(yaw / 2),
            x=0.0,
            y=0.0,
            z=math.sin(yaw / 2),
            timestamp_us=int(t * 1e6),
        )

    async def position(self) -> AsyncIterator[Position]:
        async for t in self._ticks(self._position_limit):
            yield self.sample_position(t)

    async def attitude_quaternion(self) -> AsyncIterator[Quaternion]:
        async for t in self._ticks(self._attitude_limit):
            yield self.sample_attitude(t)

    async def _ticks(self, limit: Optional[int]) -> AsyncIterator[float]:
        count = 0
        while limit is None or count < limit:
            yield time.monotonic() - self._t0
            count += 1
            await asyncio.sleep(self._interval)
