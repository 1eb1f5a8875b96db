"""HTTP side of the bridge.

Serves the CZML event stream (one SessionBroadcaster per connection),
a small health endpoint and the static Cesium client. Tracks every open
session so that server shutdown can cancel them instead of leaving them
to the grace timeout.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from aiohttp import web

from core.comms.session import SessionBroadcaster
from core.data.czml import SceneClock, SceneStyle
from core.flight.ingest import IngestionWorker, start_workers
from core.flight.telemetry import TelemetryStore

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


class BridgeServer:
    """aiohttp application streaming telemetry to browser clients."""

    def __init__(
        self,
        store: TelemetryStore,
        workers: Optional[list[IngestionWorker]] = None,
        clock: Optional[SceneClock] = None,
        style: Optional[SceneStyle] = None,
        interval_s: float = 1.0,
        stream_path: str = "/czml",
        static_dir: Optional[str] = None,
    ):
        self._store = store
        self._workers = workers or []
        self._clock = clock or SceneClock()
        self._style = style or SceneStyle()
        self._interval = interval_s
        self._stream_path = stream_path
        self._static_dir = Path(static_dir) if static_dir else None
        self._sessions: set[SessionBroadcaster] = set()
        self._closing = False

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_get(self._stream_path, self.handle_stream)
        if self._static_dir and self._static_dir.is_dir():
            app.router.add_get("/", self.handle_index)
            app.router.add_static("/", self._static_dir)
            logger.info("Serving static files from %s", self._static_dir)
        elif self._static_dir:
            logger.warning("Static directory not found: %s", self._static_dir)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Open an event stream and run a session on it."""
        response = web.StreamResponse(headers=STREAM_HEADERS)
        await response.prepare(request)

        session = SessionBroadcaster(
            store=self._store,
            write=response.write,
            clock=self._clock,
            style=self._style,
            interval_s=self._interval,
            name=f"client {request.remote}",
        )
        self._sessions.add(session)
        if self._closing:
            session.cancel()
        logger.info("Client connected (%d active)", len(self._sessions))
        try:
            await session.run()
        finally:
            self._sessions.discard(session)
            logger.info("Client disconnected (%d active)", len(self._sessions))
        return response

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "sessions": len(self._sessions),
            "workers": {
                w.kind.value: {"received": w.received, "finished": w.finished}
                for w in self._workers
            },
            "age_s": self._store.freshness(),
        })

    async def handle_index(self, request: web.Request) -> web.StreamResponse:
        index = self._static_dir / "index.html"
        if not index.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    async def _on_shutdown(self, app: web.Application) -> None:
        self._closing = True
        if self._sessions:
            logger.info("Cancelling %d open session(s)", len(self._sessions))
        for session in list(self._sessions):
            session.cancel()


async def serve(
    server: BridgeServer,
    workers: list[IngestionWorker],
    stop: asyncio.Event,
    host: str = "0.0.0.0",
    port: int = 8080,
    shutdown_timeout_s: float = 5.0,
) -> None:
    """Run ingestion and the HTTP server until `stop` is set."""
    runner = web.AppRunner(
        server.create_app(),
        handler_cancellation=True,
        shutdown_timeout=shutdown_timeout_s,
    )
    await runner.setup()
    tasks = []
    try:
        site = web.TCPSite(runner, host, port)
        await site.start()
        # Only ingest once the port is ours
        tasks = start_workers(workers)
        logger.info("Streaming CZML on http://%s:%d", host, port)
        await stop.wait()
    finally:
        logger.info("Shutting down (grace %.1fs)", shutdown_timeout_s)
        await runner.cleanup()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Stopped")
