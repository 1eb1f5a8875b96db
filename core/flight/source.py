"""MAVSDK telemetry source.

Talks to a running mavsdk_server over gRPC and exposes the two
subscription streams the bridge consumes: global position and attitude
quaternion. The server itself (and the vehicle link behind it) is
started outside this process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from mavsdk import System

logger = logging.getLogger(__name__)


class MavsdkSource:
    """Position and attitude subscriptions against a local mavsdk_server."""

    def __init__(
        self,
        address: str = "127.0.0.1",
        port: int = 50051,
        connect_timeout: float = 10.0,
    ):
        self._address = address
        self._port = port
        self._connect_timeout = connect_timeout
        self._system: Optional[System] = None

    @property
    def endpoint(self) -> str:
        return f"{self._address}:{self._port}"

    @property
    def is_connected(self) -> bool:
        return self._system is not None

    async def connect(self) -> bool:
        """Open the gRPC channel to mavsdk_server."""
        logger.info("Connecting to telemetry service: %s", self.endpoint)
        system = System(mavsdk_server_address=self._address, port=self._port)
        try:
            await asyncio.wait_for(system.connect(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            logger.error("No answer from %s within %.1fs", self.endpoint, self._connect_timeout)
            return False
        except Exception as e:
            logger.error("Telemetry connection failed: %s", e)
            return False
        self._system = system
        logger.info("Connected to telemetry service at %s", self.endpoint)
        return True

    def position(self) -> AsyncIterator:
        """Subscribe to position updates (lon/lat degrees, absolute altitude)."""
        return self._telemetry().position()

    def attitude_quaternion(self) -> AsyncIterator:
        """Subscribe to attitude quaternion updates (x, y, z, w)."""
        return self._telemetry().attitude_quaternion()

    def _telemetry(self):
        if self._system is None:
            raise RuntimeError("telemetry source is not connected")
        return self._system.telemetry
