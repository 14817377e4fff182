import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from backend.config import PUBLIC_BASE_URL
from backend.security import decode_session_token, require_professor, require_session
from backend.services.aggregator import SessionAggregator, SessionView
from backend.services.ledger import AttendanceLedger
from backend.services.links import build_attend_url
from backend.services.providers import get_ledger
from database.db import SessionRecord

logger = logging.getLogger(__name__)

router = APIRouter()

WS_POLICY_VIOLATION = 1008


class SessionCreate(BaseModel):
    department: str
    year: str
    division: str
    subject: str
    lecture_date: str
    lecture_time: str
    latitude: float | None = None
    longitude: float | None = None
    radius_m: float | None = None


def _session_payload(session: SessionRecord) -> dict:
    return {
        **session,
        "attend_url": build_attend_url(session["id"], PUBLIC_BASE_URL),
    }


def _owned_session(ledger: AttendanceLedger, session_id: str, professor_id: str) -> SessionRecord:
    session = ledger.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found.")
    if session["professor_id"] != professor_id:
        raise HTTPException(status_code=403, detail="Not your session.")
    return session


@router.post("/sessions")
def create_session(
    payload: SessionCreate,
    professor: dict = Depends(require_professor),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    fields = {
        "department": payload.department.strip(),
        "year": payload.year.strip(),
        "division": payload.division.strip(),
        "subject": payload.subject.strip(),
        "lecture_date": payload.lecture_date.strip(),
        "lecture_time": payload.lecture_time.strip(),
    }
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing fields: {', '.join(missing)}.")
    if (payload.latitude is None) != (payload.longitude is None):
        raise HTTPException(status_code=400, detail="Latitude and longitude must be given together.")
    if payload.radius_m is not None and payload.radius_m <= 0:
        raise HTTPException(status_code=400, detail="Radius must be positive.")

    session = ledger.create_session(
        professor_id=professor["sub"],
        latitude=payload.latitude,
        longitude=payload.longitude,
        radius_m=payload.radius_m,
        **fields,
    )
    return _session_payload(session)


@router.get("/sessions")
def list_sessions(
    professor: dict = Depends(require_professor),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    return [_session_payload(s) for s in ledger.list_sessions(professor["sub"])]


@router.get("/sessions/{session_id}")
def session_detail(
    session_id: str,
    _session: dict = Depends(require_session),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    session = ledger.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found.")
    return _session_payload(session)


@router.post("/sessions/{session_id}/end")
def end_session(
    session_id: str,
    professor: dict = Depends(require_professor),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    result = ledger.end_session(session_id, professor["sub"])
    if result == "session_not_found":
        raise HTTPException(status_code=404, detail="Session not found.")
    if result == "forbidden":
        raise HTTPException(status_code=403, detail="Not your session.")
    return {
        "ok": True,
        "session_id": session_id,
        "active": False,
        "already_ended": result == "already_ended",
    }


@router.get("/sessions/{session_id}/attendance")
def session_attendance(
    session_id: str,
    professor: dict = Depends(require_professor),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    _owned_session(ledger, session_id, professor["sub"])
    return SessionAggregator(session_id, ledger).snapshot()


@router.websocket("/sessions/{session_id}/live")
async def session_live(
    websocket: WebSocket,
    session_id: str,
    token: str | None = None,
    ledger: AttendanceLedger = Depends(get_ledger),
):
    claims = decode_session_token(token or "")
    if not claims or claims.get("role") != "professor":
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    session = await asyncio.to_thread(ledger.get_session, session_id)
    if not session or session["professor_id"] != claims["sub"]:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[SessionView] = asyncio.Queue()

    async def pump() -> None:
        while True:
            view = await queue.get()
            try:
                await websocket.send_json(view)
            except WebSocketDisconnect:
                logger.debug("live view send failed for session %s: client gone", session_id)
                return

    sender = asyncio.create_task(pump())

    def on_view(view: SessionView) -> None:
        if not sender.done():
            loop.call_soon_threadsafe(queue.put_nowait, view)

    aggregator = SessionAggregator(session_id, ledger)
    unsubscribe = await asyncio.to_thread(aggregator.subscribe, on_view)
    try:
        # Inbound messages are ignored; this only watches for the disconnect.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("live view closed for session %s", session_id)
    finally:
        unsubscribe()
        sender.cancel()
        results = await asyncio.gather(sender, return_exceptions=True)
        error = results[0]
        if isinstance(error, Exception):
            logger.error("live view sender failed for session %s: %r", session_id, error)
