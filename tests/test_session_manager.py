"""Tests for SessionManager."""

import asyncio
import threading

import pytest

from faceproctor import session_manager
from faceproctor.monitor import MonitorConfig, MonitorState
from faceproctor.session_manager import CapacityError, SessionManager, SessionNotFoundError
from faceproctor.testing import descriptor_at_distance, live_frame, reference_image


def test_create_push_and_stop(engine, clock):
    events = []
    engine.default = descriptor_at_distance(1.0)

    async def scenario():
        manager = SessionManager(engine, max_sessions=2, on_status=lambda sid, p: events.append((sid, p)), clock=clock)
        session = await manager.create(
            reference_image(), MonitorConfig(enabled=True, check_interval_ms=1000), label="jane@example.com"
        )
        assert manager.count() == 1
        assert session.monitor.has_reference_image

        # no frames pushed yet: ticks are no-ops
        await clock.advance(5)
        assert engine.detect_calls == 0

        manager.push_frame(session.session_id, live_frame())
        await clock.advance(1)
        assert engine.detect_calls == 1
        assert session.monitor.mismatch_count == 1
        assert session.warnings.visible

        summary = manager.list()[0]
        assert summary["label"] == "jane@example.com"
        assert summary["frames_received"] == 1
        assert summary["status"]["mismatchCount"] == 1
        assert summary["warning"]["severity"] == "mismatch"

        last = events[-1][1]
        assert events[-1][0] == session.session_id
        assert last["status"]["result"]["isMatch"] is False
        assert last["warning"]["severity"] == "mismatch"

        assert manager.stop(session.session_id)
        assert session.monitor.state == MonitorState.TORN_DOWN
        assert not manager.stop(session.session_id)
        assert manager.count() == 0

    asyncio.run(scenario())


def test_capacity(engine, clock):
    async def scenario():
        manager = SessionManager(engine, max_sessions=1, clock=clock)
        await manager.create(reference_image())
        with pytest.raises(CapacityError):
            await manager.create(reference_image())
        await manager.stop_all()
        assert manager.count() == 0

    asyncio.run(scenario())


def test_unknown_session(engine, clock):
    manager = SessionManager(engine, max_sessions=1, clock=clock)
    with pytest.raises(SessionNotFoundError):
        manager.get("missing")
    with pytest.raises(SessionNotFoundError):
        manager.push_frame("missing", live_frame())


def test_enable_toggles_schedule(engine, clock):
    async def scenario():
        manager = SessionManager(engine, max_sessions=1, clock=clock)
        session = await manager.create(reference_image(), MonitorConfig(enabled=False))
        assert not session.monitor.scheduled
        manager.set_enabled(session.session_id, True)
        assert session.monitor.scheduled
        manager.set_enabled(session.session_id, False)
        assert not session.monitor.scheduled
        await manager.stop_all()

    asyncio.run(scenario())


class StuckCapture:
    """Stands in for a VideoCaptureSource whose grab() never returns."""

    def __init__(self, url, sampling_fps=3.0):
        self.url = url
        self.frame_count = 0
        self.error = None
        self.stop_requested = threading.Event()
        self.release_threads = []

    def read(self):
        return None

    def stop(self):
        self.stop_requested.set()

    def release(self, timeout=2.0):
        self.release_threads.append(threading.get_ident())
        self.stop_requested.wait(timeout)


@pytest.fixture
def stuck_captures(monkeypatch):
    made = []

    def factory(url, sampling_fps=3.0):
        cap = StuckCapture(url, sampling_fps)
        made.append(cap)
        return cap

    monkeypatch.setattr(session_manager, "VideoCaptureSource", factory)
    return made


def test_stop_does_not_join_capture(engine, clock, stuck_captures):
    async def scenario():
        manager = SessionManager(engine, max_sessions=2, clock=clock)
        session = await manager.create(reference_image(), stream_url="rtsp://cam.local/stream")
        assert session.summary()["source"] == "stream"
        assert manager.stop(session.session_id)
        cap = stuck_captures[0]
        assert cap.stop_requested.is_set()
        assert cap.release_threads == []

    asyncio.run(scenario())


def test_stop_all_joins_captures_off_the_loop(engine, clock, stuck_captures):
    async def scenario():
        manager = SessionManager(engine, max_sessions=2, clock=clock)
        await manager.create(reference_image(), stream_url="rtsp://cam.local/a")
        await manager.create(reference_image(), stream_url="rtsp://cam.local/b")
        await manager.stop_all()
        assert manager.count() == 0
        loop_thread = threading.get_ident()
        for cap in stuck_captures:
            assert cap.stop_requested.is_set()
            assert len(cap.release_threads) == 1
            assert cap.release_threads[0] != loop_thread

    asyncio.run(scenario())


def test_banner_changes_are_pushed(engine, clock):
    events = []
    engine.default = descriptor_at_distance(1.0)

    def warning_events():
        return [p["warning"] for _, p in events if p["event"] == "warning"]

    async def scenario():
        manager = SessionManager(engine, max_sessions=1, on_status=lambda sid, p: events.append((sid, p)), clock=clock)
        session = await manager.create(reference_image(), MonitorConfig(enabled=False))
        manager.push_frame(session.session_id, live_frame())

        await session.monitor.check_now()
        assert warning_events()[-1]["severity"] == "mismatch"

        # auto dismiss after the display window
        await clock.advance(8)
        assert warning_events()[-1] is None
        assert len(warning_events()) == 2

        await session.monitor.check_now()
        assert warning_events()[-1] is not None
        session.warnings.dismiss()
        assert warning_events()[-1] is None
        await manager.stop_all()

    asyncio.run(scenario())
