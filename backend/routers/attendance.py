import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from backend.config import MAX_UPLOAD_BYTES
from backend.security import require_session, require_student
from backend.services.capabilities import FaceMatchService, LocationChecker, Position, UploadedFrameCamera
from backend.services.checkin import CheckInContext, CheckInStateMachine, StudentIdentity
from backend.services.ledger import AttendanceLedger
from backend.services.links import parse_attend_url
from backend.services.providers import get_face_match_service, get_ledger, get_location_checker
from database.db import get_enrolled_face, get_user

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png")


class AttendLink(BaseModel):
    url: str


async def read_image_upload(file: UploadFile) -> bytes:
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty image upload.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image is too large.")
    return data


@router.post("/attend/resolve")
def resolve_attend_link(payload: AttendLink, _session: dict = Depends(require_session)):
    session_id = parse_attend_url(payload.url)
    if not session_id:
        raise HTTPException(status_code=400, detail="Not a valid attendance link.")
    return {"session_id": session_id}


@router.post("/attend/check-in")
async def check_in(
    student: dict = Depends(require_student),
    session_id: str = Form(...),
    latitude: float | None = Form(default=None),
    longitude: float | None = Form(default=None),
    accuracy_m: float | None = Form(default=None),
    file: UploadFile = File(...),
    ledger: AttendanceLedger = Depends(get_ledger),
    face_match: FaceMatchService = Depends(get_face_match_service),
    location_checker: LocationChecker = Depends(get_location_checker),
):
    session_id = session_id.strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="Session id is required.")
    if (latitude is None) != (longitude is None):
        raise HTTPException(status_code=400, detail="Latitude and longitude must be given together.")

    frame = await read_image_upload(file)

    user = get_user(student["sub"])
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user.")

    position = None
    if latitude is not None and longitude is not None:
        position = Position(latitude=latitude, longitude=longitude, accuracy_m=accuracy_m)

    context = CheckInContext(
        student=StudentIdentity(
            id=user["id"],
            name=user["display_name"],
            roll_no=user["roll_no"],
            email=user["email"],
        ),
        session_id=session_id,
        enrolled_face=get_enrolled_face(user["id"]),
        position=position,
    )
    machine = CheckInStateMachine(
        context,
        ledger=ledger,
        face_match=face_match,
        location_checker=location_checker,
        camera=UploadedFrameCamera(frame),
    )

    try:
        await machine.start()
        if machine.can_capture:
            await machine.capture()
    finally:
        machine.close()

    logger.info(
        "check-in attempt: session=%s student=%s state=%s reason=%s",
        session_id,
        user["id"],
        machine.state.value,
        machine.reason or "-",
    )
    last = machine.transitions[-1].payload if machine.transitions else {}
    return {
        "session_id": session_id,
        "state": machine.state.value,
        "verified": machine.state.value == "verified_ok",
        "recorded": bool(last.get("recorded", False)),
        "reason": machine.reason,
        "message": last.get("message"),
        "confidence": machine.confidence,
        "transitions": [t.to_dict() for t in machine.transitions],
    }
