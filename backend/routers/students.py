from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from backend.routers.attendance import read_image_upload
from backend.security import require_student
from backend.services.capabilities import FaceMatchService
from backend.services.ledger import AttendanceLedger
from backend.services.providers import get_face_match_service, get_ledger
from database.db import get_user, set_enrolled_face

router = APIRouter(dependencies=[Depends(require_student)])


# Enroll (or re-enroll) the reference face; stored only when the matcher accepts it
@router.post("/students/me/face")
async def enroll_face(
    student: dict = Depends(require_student),
    file: UploadFile = File(...),
    face_match: FaceMatchService = Depends(get_face_match_service),
):
    photo = await read_image_upload(file)

    result = await face_match.enroll(photo, student["sub"])
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message or "Face enrollment failed.")

    if not set_enrolled_face(student["sub"], photo):
        raise HTTPException(status_code=404, detail="Student not found.")

    return {"ok": True, "message": result.message}


@router.get("/students/me")
def student_profile(student: dict = Depends(require_student)):
    user = get_user(student["sub"])
    if not user:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {
        "id": user["id"],
        "email": user["email"],
        "display_name": user["display_name"],
        "roll_no": user["roll_no"],
        "face_enrolled": user["has_face"],
        "face_enrolled_at": user["face_enrolled_at"],
    }


@router.get("/students/me/history")
def attendance_history(
    student: dict = Depends(require_student),
    ledger: AttendanceLedger = Depends(get_ledger),
):
    return ledger.get_history(student["sub"])
