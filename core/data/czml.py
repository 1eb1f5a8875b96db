"""CZML packets streamed to the Cesium client.

Wire schema dataclasses plus the pure builders that turn telemetry
snapshots and track samples into packets. Nothing here does I/O or
keeps state: the same inputs always encode to the same JSON.

Optional fields left as None are omitted from the wire document.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from core.flight.telemetry import Orientation, Position, TelemetrySnapshot

_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class EncodeError(ValueError):
    """A packet could not be rendered as strict JSON (e.g. NaN values)."""


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _wire(value: Any) -> Any:
    if hasattr(value, "__dataclass_fields__"):
        return {
            _camel(f.name): _wire(getattr(value, f.name))
            for f in fields(value)
            if getattr(value, f.name) is not None
        }
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    return value


# ── Wire schema ───────────────────────────────────────────────


@dataclass
class ClockProperty:
    interval: str
    current_time: str
    multiplier: float = 1.0
    range: str = "LOOP_STOP"
    step: str = "SYSTEM_CLOCK_MULTIPLIER"


@dataclass
class DocumentPacket:
    """First packet of every CZML stream."""

    id: str = "document"
    version: str = "1.0"
    clock: Optional[ClockProperty] = None

    def to_dict(self) -> dict:
        return _wire(self)


@dataclass
class SolidColor:
    rgba: list[int] = field(default_factory=list)


@dataclass
class Material:
    solid_color: Optional[SolidColor] = None


@dataclass
class PathGraphics:
    show: bool = True
    width: int = 1
    lead_time: Optional[float] = None
    resolution: Optional[float] = None
    material: Optional[Material] = None


@dataclass
class PositionProperty:
    cartographic_degrees: list[float]
    epoch: Optional[str] = None


@dataclass
class OrientationProperty:
    unit_quaternion: list[float]
    epoch: Optional[str] = None


@dataclass
class ModelGraphics:
    gltf: str
    scale: Optional[float] = None
    minimum_pixel_size: Optional[float] = None
    show: Optional[bool] = None


@dataclass
class Packet:
    """An entity packet: the vehicle model and/or its track samples."""

    id: str
    name: Optional[str] = None
    availability: Optional[str] = None
    position: Optional[PositionProperty] = None
    orientation: Optional[OrientationProperty] = None
    path: Optional[PathGraphics] = None
    model: Optional[ModelGraphics] = None

    def to_dict(self) -> dict:
        return _wire(self)


# ── Scene styling and time ────────────────────────────────────


@dataclass(frozen=True)
class SceneStyle:
    """Fixed presentation constants for the streamed scene."""

    entity_id: str = "drone"
    entity_name: str = "Cesium Drone"
    model_gltf: str = "CesiumDrone.gltf"
    model_scale: float = 0.5
    model_minimum_pixel_size: float = 100
    path_width: int = 1
    path_rgba: tuple[int, int, int, int] = (0, 255, 255, 255)
    path_lead_time_s: float = 0
    clock_lead_in_s: float = 3.0           # timeline starts this far before now
    window_hours: float = 5.0              # timeline/availability length
    clock_multiplier: float = 1.0
    clock_range: str = "LOOP_STOP"
    clock_step: str = "SYSTEM_CLOCK_MULTIPLIER"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> SceneStyle:
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown scene settings: {', '.join(sorted(unknown))}")
        if "path_rgba" in data:
            rgba = tuple(int(c) for c in data["path_rgba"])
            if len(rgba) != 4:
                raise ValueError("path_rgba needs exactly 4 components")
            data["path_rgba"] = rgba
        return cls(**data)


class SceneClock:
    """Wall clock for packet timestamps, shifted by a fixed offset.

    The offset is resolved once here rather than at every timestamp.
    """

    def __init__(self, offset_s: float = 0.0):
        self._offset = timedelta(seconds=offset_s)

    @property
    def offset(self) -> timedelta:
        return self._offset

    def now(self) -> datetime:
        return datetime.now(timezone.utc) + self._offset


def format_time(moment: datetime) -> str:
    """ISO 8601 UTC with second precision, as Cesium expects."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_interval(start: datetime, end: datetime) -> str:
    return f"{format_time(start)}/{format_time(end)}"


def unix_nanos(moment: datetime) -> int:
    delta = moment - _UNIX_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


# ── Track samples ─────────────────────────────────────────────


@dataclass(frozen=True)
class TrackSample:
    """One tick of a session's flight trail."""

    flight_time: int
    position: Optional[Position] = None
    orientation: Optional[Orientation] = None

    @classmethod
    def from_snapshot(cls, flight_time: int, snapshot: TelemetrySnapshot) -> TrackSample:
        return cls(flight_time, snapshot.position, snapshot.orientation)

    def cartographic_degrees(self) -> list[float]:
        tail = self.position.as_list() if self.position else []
        return [self.flight_time] + tail

    def unit_quaternion(self) -> list[float]:
        tail = self.orientation.as_list() if self.orientation else []
        return [self.flight_time] + tail


# ── Builders ──────────────────────────────────────────────────


def document_packet(now: datetime, style: SceneStyle = SceneStyle()) -> DocumentPacket:
    """Timeline window: starts shortly before now, runs for the scene window."""
    start = now - timedelta(seconds=style.clock_lead_in_s)
    end = now + timedelta(hours=style.window_hours)
    return DocumentPacket(
        clock=ClockProperty(
            interval=format_interval(start, end),
            current_time=format_time(start),
            multiplier=style.clock_multiplier,
            range=style.clock_range,
            step=style.clock_step,
        ),
    )


def placement_packet(
    snapshot: TelemetrySnapshot,
    now: datetime,
    style: SceneStyle = SceneStyle(),
) -> Packet:
    """Static placement of the vehicle model at the current state."""
    epoch = format_time(now)
    return Packet(
        id=style.entity_id,
        name=style.entity_name,
        availability=format_interval(now, now + timedelta(hours=style.window_hours)),
        position=PositionProperty(
            epoch=epoch,
            cartographic_degrees=snapshot.position.as_list() if snapshot.position else [],
        ),
        orientation=OrientationProperty(
            epoch=epoch,
            unit_quaternion=snapshot.orientation.as_list() if snapshot.orientation else [],
        ),
        model=ModelGraphics(
            gltf=style.model_gltf,
            scale=style.model_scale,
            minimum_pixel_size=style.model_minimum_pixel_size,
            show=True,
        ),
    )


def track_packet(
    sample: TrackSample,
    epoch: str,
    style: SceneStyle = SceneStyle(),
) -> Packet:
    """Incremental trail sample, time-tagged in seconds since epoch."""
    return Packet(
        id=style.entity_id,
        position=PositionProperty(
            epoch=epoch,
            cartographic_degrees=sample.cartographic_degrees(),
        ),
        orientation=OrientationProperty(
            epoch=epoch,
            unit_quaternion=sample.unit_quaternion(),
        ),
        path=PathGraphics(
            show=True,
            width=style.path_width,
            lead_time=style.path_lead_time_s,
            material=Material(solid_color=SolidColor(rgba=list(style.path_rgba))),
        ),
    )


def encode(packet) -> str:
    """Compact strict JSON for one packet."""
    try:
        return json.dumps(packet.to_dict(), separators=(",", ":"), allow_nan=False)
    except ValueError as e:
        raise EncodeError(f"cannot encode packet {packet.id!r}: {e}") from e


def sse_frame(event_id: int, data: str) -> bytes:
    """One event-stream record: id line, data line, blank line."""
    return f"id: {event_id}\ndata: {data}\n\n".encode("utf-8")
