import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set

import numpy as np
from fastapi import FastAPI, File, Form, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__, settings
from .engine import FaceEngine
from .images import REMOTE_SCHEMES, ImageDecodeError, decode_image
from .monitor import MonitorConfig
from .session_manager import CapacityError, SessionManager, SessionNotFoundError

logger = logging.getLogger(__name__)

STREAM_SCHEMES = ("rtsp://", "rtsps://", "rtmp://", "http://", "https://")


# ===== WebSocket connections =====
class WSManager:
    def __init__(self):
        self.channels: Dict[str, Set[WebSocket]] = {}

    async def connect(self, key: str, ws: WebSocket):
        await ws.accept()
        self.channels.setdefault(key, set()).add(ws)

    def disconnect(self, key: str, ws: WebSocket):
        self.channels.get(key, set()).discard(ws)

    async def broadcast(self, key: str, data: dict):
        dead = []
        for ws in list(self.channels.get(key, set())):
            try:
                await ws.send_text(json.dumps(data))
            except (RuntimeError, WebSocketDisconnect):
                dead.append(ws)
        for ws in dead:
            self.disconnect(key, ws)


class SessionCfg(BaseModel):
    check_interval_ms: int = Field(settings.CHECK_INTERVAL_MS, gt=0)
    match_threshold: float = Field(settings.MATCH_THRESHOLD, gt=0)
    initial_delay_ms: int = Field(settings.INITIAL_DELAY_MS, ge=0)
    enabled: bool = True

    def to_monitor_config(self) -> MonitorConfig:
        return MonitorConfig(
            check_interval_ms=self.check_interval_ms,
            match_threshold=self.match_threshold,
            initial_delay_ms=self.initial_delay_ms,
            enabled=self.enabled,
        )


# ===== Helpers =====
async def _ensure_img(f: UploadFile) -> np.ndarray:
    if f.content_type not in settings.ALLOWED_IMG_MIMES:
        raise HTTPException(415, "Only JPEG/PNG images are supported")
    raw = await f.read()
    if len(raw) > settings.IMG_MAX_MB * 1024 * 1024:
        raise HTTPException(413, f"Image exceeds {settings.IMG_MAX_MB}MB")
    try:
        return decode_image(raw)
    except ImageDecodeError as e:
        raise HTTPException(400, str(e))


def _default_engine() -> FaceEngine:
    from .insightface_engine import InsightFaceEngine
    return InsightFaceEngine(settings.DEVICE)


def create_app(engine: Optional[FaceEngine] = None, max_sessions: int = settings.MAX_SESSIONS) -> FastAPI:
    engine = engine or _default_engine()
    ws_manager = WSManager()
    broadcasts: Set[asyncio.Task] = set()

    def _broadcast_done(task: asyncio.Task):
        broadcasts.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Status broadcast failed", exc_info=task.exception())

    def _on_status(sid: str, payload: dict):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(ws_manager.broadcast(sid, payload))
        broadcasts.add(task)
        task.add_done_callback(_broadcast_done)

    sessions = SessionManager(engine, max_sessions=max_sessions, on_status=_on_status)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await engine.load_models()
        except Exception:
            # Sessions will report the failure in their status.
            logger.exception("Face models failed to load at startup")
        yield
        await sessions.stop_all()
        if broadcasts:
            await asyncio.gather(*broadcasts, return_exceptions=True)

    app = FastAPI(title="FaceProctor", version=__version__, lifespan=lifespan)
    app.state.sessions = sessions
    app.state.engine = engine
    app.state.broadcasts = broadcasts

    if settings.CORS_ALLOW_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ALLOW_ORIGINS,
            allow_methods=["*"],
            allow_headers=["*"],
            allow_credentials=True,
        )

    prefix = settings.API_PREFIX

    def _session(session_id: str):
        try:
            return sessions.get(session_id)
        except SessionNotFoundError:
            raise HTTPException(404, "Session not found")

    # ===== Health =====
    @app.get(f"{prefix}/healthz")
    def healthz():
        return {"ok": True}

    @app.get(f"{prefix}/readyz")
    def readyz():
        loaded = getattr(engine, "loaded", True)
        if not loaded:
            raise HTTPException(503, "Face models not loaded")
        return {"ok": True}

    @app.get(f"{prefix}/info")
    def api_info():
        info = getattr(engine, "info", None)
        return {
            "api": {
                "version": __version__,
                "max_sessions": sessions.max_sessions,
                "check_interval_ms": settings.CHECK_INTERVAL_MS,
                "match_threshold": settings.MATCH_THRESHOLD,
            },
            "model": info() if callable(info) else {"engine": type(engine).__name__},
        }

    # ===== Sessions =====
    @app.get(f"{prefix}/sessions")
    def list_sessions():
        return {"items": sessions.list(), "capacity": sessions.max_sessions}

    @app.post(f"{prefix}/sessions", status_code=201)
    async def create_session(
        reference_url: str = Form(""),
        reference_image: Optional[UploadFile] = File(None),
        label: str = Form(""),
        stream_url: str = Form(""),
        sampling_fps: float = Form(3.0),
        check_interval_ms: int = Form(settings.CHECK_INTERVAL_MS),
        match_threshold: float = Form(settings.MATCH_THRESHOLD),
        initial_delay_ms: int = Form(settings.INITIAL_DELAY_MS),
        enabled: bool = Form(True),
    ):
        if sessions.count() >= sessions.max_sessions:
            raise HTTPException(409, f"Max sessions ({sessions.max_sessions}) reached. Delete one before adding.")
        if reference_image is not None:
            reference = await _ensure_img(reference_image)
        elif reference_url:
            if not reference_url.startswith(REMOTE_SCHEMES):
                raise HTTPException(422, "reference_url must be an http(s) or data: URL")
            reference = reference_url
        else:
            raise HTTPException(422, "reference_url or reference_image is required")
        if stream_url and not stream_url.lower().startswith(STREAM_SCHEMES):
            raise HTTPException(422, "stream_url must be an rtsp, rtmp or http(s) URL")
        try:
            cfg = SessionCfg(
                check_interval_ms=check_interval_ms,
                match_threshold=match_threshold,
                initial_delay_ms=initial_delay_ms,
                enabled=enabled,
            )
        except ValueError as e:
            raise HTTPException(422, str(e))
        try:
            session = await sessions.create(
                reference,
                cfg.to_monitor_config(),
                label=label,
                stream_url=stream_url or None,
                sampling_fps=sampling_fps,
            )
        except CapacityError as e:
            raise HTTPException(409, str(e))
        return session.summary()

    @app.get(f"{prefix}/sessions/{{session_id}}")
    def get_session(session_id: str):
        return _session(session_id).summary()

    @app.post(f"{prefix}/sessions/{{session_id}}/frames")
    async def push_frame(session_id: str, frame: UploadFile = File(...)):
        _session(session_id)
        img = await _ensure_img(frame)
        session = sessions.push_frame(session_id, img)
        return {"ok": True, "frames_received": session.frames.frame_count}

    @app.post(f"{prefix}/sessions/{{session_id}}/enable")
    async def enable_session(session_id: str):
        _session(session_id)
        return sessions.set_enabled(session_id, True).summary()

    @app.post(f"{prefix}/sessions/{{session_id}}/disable")
    async def disable_session(session_id: str):
        _session(session_id)
        return sessions.set_enabled(session_id, False).summary()

    @app.post(f"{prefix}/sessions/{{session_id}}/check")
    async def check_session(session_id: str):
        session = _session(session_id)
        result = await session.monitor.check_now()
        return {
            "ran": result is not None,
            "status": session.monitor.status().to_dict(),
        }

    @app.get(f"{prefix}/sessions/{{session_id}}/warning")
    def get_warning(session_id: str):
        banner = _session(session_id).warnings.banner
        return {"warning": banner.to_dict() if banner else None}

    @app.post(f"{prefix}/sessions/{{session_id}}/warning/dismiss")
    async def dismiss_warning(session_id: str):
        _session(session_id).warnings.dismiss()
        return {"ok": True}

    @app.delete(f"{prefix}/sessions/{{session_id}}")
    async def del_session(session_id: str):
        if not sessions.stop(session_id):
            raise HTTPException(404, "Session not found")
        return {"ok": True}

    # ===== WebSocket for live status =====
    @app.websocket(f"{prefix}/ws/sessions/{{session_id}}")
    async def ws_session(ws: WebSocket, session_id: str):
        await ws_manager.connect(session_id, ws)
        session = sessions.sessions.get(session_id)
        if session is not None:
            await ws.send_text(json.dumps({"event": "status", "status": session.monitor.status().to_dict()}))
        try:
            while True:
                # Keep-alive: client may send pings; we ignore payload
                await ws.receive_text()
        except WebSocketDisconnect:
            ws_manager.disconnect(session_id, ws)

    return app


def main():
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
