"""
FastAPI app: WebSocket endpoint driving recognition sessions from a browser tab;
HTTP API for completion signals, segment autosave/salvage, transcripts and stats.

Every completion trigger (stop, meeting ended, liveness, tab-close salvage) lands in
the same SessionCoordinator, which saves each session at most once.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, WebSocket

from fluency.config import configure_logging, get_settings
from fluency.schemas import AcceptResponse, FinalTranscriptRequest, SegmentSnapshot, StatsRecord, TranscriptEntry
from fluency.services import IsolatedWorker, SessionCoordinator, WebSocketNotifier, create_language_detector
from fluency.stats import StatsEngine
from fluency.storage import FallbackWriter, create_gateway
from fluency.websocket_manager import SessionSocketManager

logger = logging.getLogger(__name__)


def get_coordinator(app: FastAPI) -> SessionCoordinator:
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        raise RuntimeError("App not initialized (lifespan not run?)")
    return coordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    notifier = WebSocketNotifier()
    app.state.notifier = notifier
    app.state.language_detector = create_language_detector()
    app.state.coordinator = SessionCoordinator(
        gateway=create_gateway(),
        engine=StatsEngine(),
        fallback=FallbackWriter(),
        worker=IsolatedWorker(),
        notifier=notifier,
    )
    logger.info(
        "Started: store=%s worker=%s language detection=%s",
        settings.STORE_BACKEND,
        settings.WORKER_MODE,
        "on" if app.state.language_detector else "client-confirmed",
    )
    yield
    # Let in-flight stats finish before the worker goes away
    await app.state.coordinator.drain()
    app.state.coordinator = None


app = FastAPI(
    title="Meeting Fluency",
    description="Meeting speech transcripts with timing markers and fluency statistics",
    lifespan=lifespan,
)


@app.websocket("/ws/session")
async def websocket_session(websocket: WebSocket) -> None:
    """
    WebSocket: the client forwards speech-engine events as JSON, the server answers
    with session/restart/stop/final/error messages. Query: ?meeting=<code>.
    """
    await websocket.accept()
    manager = SessionSocketManager(
        websocket,
        get_coordinator(websocket.app),
        meeting_code=websocket.query_params.get("meeting"),
        language_detector=websocket.app.state.language_detector,
        notifier=websocket.app.state.notifier,
    )
    try:
        await manager.run()
    except Exception:
        logger.exception("Session socket failed")
        try:
            await websocket.close()
        except Exception:
            pass


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.post("/api/sessions/final", response_model=AcceptResponse)
async def final_transcript(body: FinalTranscriptRequest, request: Request) -> AcceptResponse:
    """Completion signal from any trigger. saved=false means already saved or rejected."""
    entry = await get_coordinator(request.app).accept_final(
        body.session_id,
        body.text,
        meeting_code=body.meeting_code,
        language_confirmed=body.is_english,
        trigger=body.trigger,
    )
    return AcceptResponse(saved=entry is not None, session_id=body.session_id, entry=entry)


@app.post("/api/sessions/segment")
async def save_segment(body: SegmentSnapshot, request: Request) -> dict:
    saved = await get_coordinator(request.app).save_segment(body)
    return {"saved": saved, "session_id": body.session_id}


@app.post("/api/sessions/{session_id}/salvage", response_model=AcceptResponse)
async def salvage_session(session_id: str, request: Request) -> AcceptResponse:
    """Tab-close trigger: save the autosaved segment unless the session already completed."""
    coordinator = get_coordinator(request.app)
    if await coordinator.get_segment(session_id) is None:
        raise HTTPException(status_code=404, detail="No autosaved segment for this session")
    entry = await coordinator.salvage(session_id)
    return AcceptResponse(saved=entry is not None, session_id=session_id, entry=entry)


@app.post("/api/sessions/{session_id}/recover", response_model=AcceptResponse)
async def recover_session(session_id: str, request: Request) -> AcceptResponse:
    coordinator = get_coordinator(request.app)
    if await coordinator.get_segment(session_id) is None:
        raise HTTPException(status_code=404, detail="No autosaved segment for this session")
    entry = await coordinator.recover(session_id)
    return AcceptResponse(saved=entry is not None, session_id=session_id, entry=entry)


@app.get("/api/sessions/unfinished", response_model=list[SegmentSnapshot])
async def unfinished_sessions(request: Request) -> list[SegmentSnapshot]:
    return await get_coordinator(request.app).unfinished_sessions()


@app.get("/api/transcripts", response_model=list[TranscriptEntry])
async def list_transcripts(request: Request) -> list[TranscriptEntry]:
    return await get_coordinator(request.app).list_transcripts()


@app.get("/api/stats/{session_id}", response_model=StatsRecord)
async def get_stats(session_id: str, request: Request) -> StatsRecord:
    if not session_id.strip():
        raise HTTPException(status_code=400, detail="session_id is required")
    record = await get_coordinator(request.app).get_stats(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No stats for this session (not saved or still computing)")
    return record


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
