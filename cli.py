"""CZML Bridge CLI — Entry point for the telemetry streaming bridge.

Usage:
    czml-bridge serve            Stream live telemetry from mavsdk_server
    czml-bridge simulate         Stream a simulated orbit (no vehicle needed)
    czml-bridge probe            Show the latest telemetry and exit
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
import yaml

from core.comms.server import BridgeServer, serve
from core.data.czml import SceneClock, SceneStyle
from core.flight.ingest import build_workers, start_workers
from core.flight.sim import SimulatedSource
from core.flight.source import MavsdkSource
from core.flight.telemetry import TelemetryStore


def load_config(config_path: str = None) -> dict:
    """Load configuration from YAML file."""
    paths = [
        config_path,
        "/etc/czml-bridge/config.yaml",
        str(Path(__file__).parent / "config" / "default.yaml"),
    ]
    for p in paths:
        if p and Path(p).exists():
            with open(p) as f:
                return yaml.safe_load(f) or {}
    return {}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)-7s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def resolve_static_dir(static_dir: str) -> str:
    """Find the web client directory; relative paths fall back to the project root."""
    path = Path(static_dir)
    if path.is_absolute() or path.is_dir():
        return str(path)
    bundled = Path(__file__).parent / path
    return str(bundled if bundled.is_dir() else path)


def make_source(config: dict, address: str = None, port: int = None) -> MavsdkSource:
    telem_cfg = config.get("telemetry", {})
    return MavsdkSource(
        address=address or telem_cfg.get("address", "127.0.0.1"),
        port=port or telem_cfg.get("port", 50051),
        connect_timeout=telem_cfg.get("connect_timeout_s", 10.0),
    )


def make_simulation(config: dict) -> SimulatedSource:
    sim_cfg = config.get("simulation", {})
    return SimulatedSource(
        home_lat=sim_cfg.get("home_lat", 35.681),
        home_lon=sim_cfg.get("home_lon", 139.767),
        altitude_m=sim_cfg.get("altitude_m", 50.0),
        radius_m=sim_cfg.get("radius_m", 100.0),
        period_s=sim_cfg.get("period_s", 60.0),
        rate_hz=sim_cfg.get("rate_hz", 10.0),
    )


async def run_bridge(source, config: dict, http_port: int = None, static_dir: str = None) -> int:
    """Connect the source, then stream until SIGINT/SIGTERM."""
    server_cfg = config.get("server", {})
    stream_cfg = config.get("stream", {})

    if not await source.connect():
        click.echo(f"FAILED: Cannot reach telemetry service at {source.endpoint}.")
        return 1

    store = TelemetryStore()
    workers = build_workers(source, store)
    server = BridgeServer(
        store=store,
        workers=workers,
        clock=SceneClock(offset_s=stream_cfg.get("clock_offset_s", 0.0)),
        style=SceneStyle.from_dict(config.get("scene")),
        interval_s=stream_cfg.get("interval_s", 1.0),
        stream_path=server_cfg.get("path", "/czml"),
        static_dir=resolve_static_dir(static_dir or server_cfg.get("static_dir", "static")),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await serve(
        server,
        workers,
        stop,
        host=server_cfg.get("host", "0.0.0.0"),
        port=http_port or server_cfg.get("port", 8080),
        shutdown_timeout_s=server_cfg.get("shutdown_timeout_s", 5.0),
    )
    return 0


async def probe_source(source, seconds: float) -> TelemetryStore:
    """Run both ingestion workers briefly and return the filled store."""
    store = TelemetryStore()
    tasks = start_workers(build_workers(source, store))
    await asyncio.sleep(seconds)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    return store


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Config file path")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, verbose):
    """CZML Bridge — live vehicle telemetry to a Cesium globe."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config_path)
    ctx.obj["verbose"] = verbose


@main.command("serve")
@click.option("--address", default=None, help="mavsdk_server address")
@click.option("--port", type=int, default=None, help="mavsdk_server gRPC port")
@click.option("--http-port", type=int, default=None, help="HTTP listen port")
@click.option("--static-dir", default=None, help="Directory with the web client")
@click.pass_context
def serve_cmd(ctx, address, port, http_port, static_dir):
    """Stream live telemetry from mavsdk_server."""
    config = ctx.obj["config"]
    source = make_source(config, address, port)
    sys.exit(asyncio.run(run_bridge(source, config, http_port, static_dir)))


@main.command()
@click.option("--http-port", type=int, default=None, help="HTTP listen port")
@click.option("--static-dir", default=None, help="Directory with the web client")
@click.pass_context
def simulate(ctx, http_port, static_dir):
    """Stream a simulated orbit instead of a real vehicle."""
    config = ctx.obj["config"]
    source = make_simulation(config)
    click.echo("Simulated telemetry: circular orbit")
    sys.exit(asyncio.run(run_bridge(source, config, http_port, static_dir)))


@main.command()
@click.option("--address", default=None, help="mavsdk_server address")
@click.option("--port", type=int, default=None, help="mavsdk_server gRPC port")
@click.option("--seconds", "-s", default=3.0, help="How long to listen")
@click.pass_context
def probe(ctx, address, port, seconds):
    """Show the latest telemetry from mavsdk_server."""
    config = ctx.obj["config"]
    source = make_source(config, address, port)
    click.echo(f"Connecting to {source.endpoint}...")

    async def _probe():
        if not await source.connect():
            return None
        return await probe_source(source, seconds)

    store = asyncio.run(_probe())
    if store is None:
        click.echo("Could not connect to telemetry service.")
        sys.exit(1)

    snap = store.snapshot()
    age = store.freshness()
    click.echo("")
    click.echo("=== TELEMETRY ===")
    if snap.position:
        p = snap.position
        click.echo(f"  Position:    {p.latitude_deg:.7f}, {p.longitude_deg:.7f}")
        click.echo(f"  Altitude:    {p.altitude_m:.1f}m (AMSL)  age {age['position']:.1f}s")
    else:
        click.echo("  Position:    (no data)")
    if snap.orientation:
        q = snap.orientation
        click.echo(
            f"  Attitude:    x={q.x:.4f} y={q.y:.4f} z={q.z:.4f} w={q.w:.4f}"
            f"  age {age['orientation']:.1f}s"
        )
    else:
        click.echo("  Attitude:    (no data)")


if __name__ == "__main__":
    main()
