"""Tests for the per-client streaming session."""

import asyncio
import json
import math
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.comms.session import SessionBroadcaster, SessionState
from core.data.czml import SceneClock
from core.flight.telemetry import TelemetryStore

TICK = 0.01


class FixedClock(SceneClock):
    def now(self) -> datetime:
        return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class Recorder:
    """Collects frames written by a session, like a client would see them."""

    def __init__(self, fail_after=None):
        self.frames: list[bytes] = []
        self._fail_after = fail_after

    async def write(self, data: bytes) -> None:
        if self._fail_after is not None and len(self.frames) >= self._fail_after:
            raise ConnectionResetError("client gone")
        self.frames.append(data)

    def records(self) -> list[dict]:
        out = []
        for frame in self.frames:
            text = frame.decode()
            assert text.endswith("\n\n")
            id_line, data_line = text.rstrip("\n").split("\n")
            assert id_line.startswith("id: ") and id_line[4:].isdigit()
            assert data_line.startswith("data: ")
            out.append(json.loads(data_line[6:]))
        return out

    async def wait_for(self, count: int, timeout: float = 2.0) -> None:
        async def _poll():
            while len(self.frames) < count:
                await asyncio.sleep(TICK / 4)
        await asyncio.wait_for(_poll(), timeout)


def _session(store, recorder, **kwargs):
    return SessionBroadcaster(
        store=store,
        write=recorder.write,
        clock=FixedClock(),
        interval_s=kwargs.pop("interval_s", TICK),
        **kwargs,
    )


async def _stop(session, task):
    session.cancel()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_start_sequence_then_ticks():
    store = TelemetryStore()
    store.set_position(139.767, 35.681, 50.0)
    store.set_orientation(0, 0, 0, 1)
    rec = Recorder()
    session = _session(store, rec)
    task = asyncio.create_task(session.run())

    await rec.wait_for(5)
    await _stop(session, task)

    records = rec.records()
    assert records[0]["id"] == "document"
    assert "clock" in records[0]
    assert records[1]["id"] == "drone"
    assert "model" in records[1]
    assert records[1]["position"]["cartographicDegrees"] == [139.767, 35.681, 50.0]

    ticks = records[2:]
    assert all("model" not in r and "path" in r for r in ticks)
    assert sum(1 for r in records if r["id"] == "document") == 1
    assert sum(1 for r in records if "model" in r) == 1

    times = [r["position"]["cartographicDegrees"][0] for r in ticks]
    assert times == list(range(1, len(ticks) + 1))
    assert [r["orientation"]["unitQuaternion"][0] for r in ticks] == times


@pytest.mark.asyncio
async def test_golden_tick_two():
    store = TelemetryStore()
    store.set_position(139.767, 35.681, 50.0)
    store.set_orientation(0, 0, 0, 1)
    rec = Recorder()
    session = _session(store, rec)
    task = asyncio.create_task(session.run())

    await rec.wait_for(4)
    await _stop(session, task)

    tick2 = rec.records()[3]
    assert tick2["position"]["cartographicDegrees"] == [2, 139.767, 35.681, 50.0]
    assert tick2["orientation"]["unitQuaternion"] == [2, 0, 0, 0, 1]
    assert tick2["position"]["epoch"] == rec.records()[1]["position"]["epoch"]


@pytest.mark.asyncio
async def test_empty_store_still_ticks():
    rec = Recorder()
    session = _session(TelemetryStore(), rec)
    task = asyncio.create_task(session.run())

    await rec.wait_for(3)
    await _stop(session, task)

    records = rec.records()
    assert records[1]["position"]["cartographicDegrees"] == []
    assert records[1]["orientation"]["unitQuaternion"] == []
    assert records[2]["position"]["cartographicDegrees"] == [1]
    assert records[2]["orientation"]["unitQuaternion"] == [1]


@pytest.mark.asyncio
async def test_frozen_position_keeps_streaming():
    store = TelemetryStore()
    store.set_position(1, 2, 3)
    rec = Recorder()
    session = _session(store, rec)
    task = asyncio.create_task(session.run())

    await rec.wait_for(2)
    for i in range(4):
        store.set_orientation(0, 0, math.sin(i), math.cos(i))
        await rec.wait_for(len(rec.frames) + 1)
    await _stop(session, task)

    ticks = rec.records()[2:]
    assert all(r["position"]["cartographicDegrees"][1:] == [1, 2, 3] for r in ticks)
    quats = {tuple(r["orientation"]["unitQuaternion"][1:]) for r in ticks}
    assert len(quats) > 1


@pytest.mark.asyncio
async def test_trail_grows_with_flight_time():
    store = TelemetryStore()
    store.set_position(10, 20, 30)
    rec = Recorder()
    session = _session(store, rec)
    task = asyncio.create_task(session.run())

    await rec.wait_for(6)
    await _stop(session, task)

    trail = session.trail
    assert len(trail) == session.flight_time
    assert [s.flight_time for s in trail] == list(range(1, len(trail) + 1))


@pytest.mark.asyncio
async def test_cancel_stops_writes():
    rec = Recorder()
    session = _session(TelemetryStore(), rec)
    task = asyncio.create_task(session.run())

    await rec.wait_for(3)
    await _stop(session, task)
    assert task.done()
    assert session.state is SessionState.CLOSED
    written = len(rec.frames)

    await asyncio.sleep(TICK * 5)
    assert len(rec.frames) == written
    assert session.records_sent == written


@pytest.mark.asyncio
async def test_cancel_observed_within_one_interval():
    rec = Recorder()
    session = _session(TelemetryStore(), rec, interval_s=10.0)
    task = asyncio.create_task(session.run())

    await rec.wait_for(2)
    session.cancel()
    # Far less than the 10s interval
    await asyncio.wait_for(task, timeout=0.5)
    assert len(rec.frames) == 2


@pytest.mark.asyncio
async def test_cancelled_before_start_writes_nothing():
    rec = Recorder()
    session = _session(TelemetryStore(), rec)
    session.cancel()
    await asyncio.wait_for(session.run(), timeout=1.0)
    assert rec.frames == []
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_cancel_unblocks_stalled_write():
    """A client that stops reading must not keep the session alive."""
    stalled = asyncio.Event()
    frames = []

    async def write(data: bytes) -> None:
        if len(frames) >= 2:
            stalled.set()
            await asyncio.Event().wait()
        frames.append(data)

    session = SessionBroadcaster(
        store=TelemetryStore(), write=write, clock=FixedClock(), interval_s=TICK
    )
    task = asyncio.create_task(session.run())
    await asyncio.wait_for(stalled.wait(), timeout=1.0)
    assert session.state is SessionState.STREAMING

    session.cancel()
    await asyncio.wait_for(task, timeout=0.5)
    assert session.state is SessionState.CLOSED
    assert len(frames) == 2
    assert session.records_sent == 2


@pytest.mark.asyncio
async def test_write_reset_closes_session():
    rec = Recorder(fail_after=3)
    session = _session(TelemetryStore(), rec)
    await asyncio.wait_for(session.run(), timeout=1.0)
    assert session.state is SessionState.CLOSED
    assert len(rec.frames) == 3


@pytest.mark.asyncio
async def test_task_cancellation_closes_session():
    rec = Recorder()
    session = _session(TelemetryStore(), rec)
    task = asyncio.create_task(session.run())
    await rec.wait_for(3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_non_finite_sample_is_dropped():
    store = TelemetryStore()
    store.set_position(math.nan, 0, 0)
    rec = Recorder()
    session = _session(store, rec)
    task = asyncio.create_task(session.run())

    # The document goes out; placement and ticks with NaN are dropped
    async def _ticked_twice():
        while session.flight_time < 2:
            await asyncio.sleep(TICK / 4)
    await asyncio.wait_for(_ticked_twice(), timeout=2.0)
    store.set_position(1, 2, 3)
    await rec.wait_for(2)
    await _stop(session, task)

    records = rec.records()
    assert records[0]["id"] == "document"
    assert all("model" not in r for r in records)
    assert records[1]["position"]["cartographicDegrees"][1:] == [1, 2, 3]
    assert records[1]["position"]["cartographicDegrees"][0] > 2
    assert session.records_sent == len(rec.frames)


@pytest.mark.asyncio
async def test_sessions_are_independent():
    store = TelemetryStore()
    store.set_position(1, 2, 3)
    rec_a, rec_b = Recorder(), Recorder()
    a = _session(store, rec_a)
    task_a = asyncio.create_task(a.run())
    await rec_a.wait_for(5)

    b = _session(store, rec_b)
    task_b = asyncio.create_task(b.run())
    await rec_b.wait_for(4)
    await _stop(a, task_a)
    await _stop(b, task_b)

    ticks_a = [r["position"]["cartographicDegrees"][0] for r in rec_a.records()[2:]]
    ticks_b = [r["position"]["cartographicDegrees"][0] for r in rec_b.records()[2:]]
    assert ticks_a == list(range(1, len(ticks_a) + 1))
    assert ticks_b == list(range(1, len(ticks_b) + 1))
    assert a.flight_time > b.flight_time
    assert [s.flight_time for s in a.trail] == list(range(1, a.flight_time + 1))
    assert [s.flight_time for s in b.trail] == list(range(1, b.flight_time + 1))
    assert len(a.trail) != len(b.trail)
