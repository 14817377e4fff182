import asyncio
import logging
from pathlib import Path

import cv2 # type: ignore
import numpy as np # type: ignore

from backend.config import (
    BLUR_THRESHOLD,
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    MATCH_DISTANCE_CEILING,
    MATCH_THRESHOLD,
    MAX_FACES,
    MIN_FACE_SIZE,
)
from backend.services.capabilities import EnrollResult, FaceMatchResult

logger = logging.getLogger(__name__)

# Use Haar cascade for face detection (simple + offline)
CASCADE_PATH = Path(cv2.data.haarcascades) / "haarcascade_frontalface_default.xml"
FACE_CASCADE = cv2.CascadeClassifier(str(CASCADE_PATH))
FACE_SIZE = (200, 200)

ENROLL_MESSAGES = {
    "invalid_image": "The photo could not be read. Upload a JPG or PNG image.",
    "no_face": "No face was detected. Face the camera in good light.",
    "multiple_faces": "More than one face was detected. Make sure you are alone in the frame.",
    "face_too_small": "Your face is too far from the camera.",
    "too_dark": "The photo is too dark.",
    "too_bright": "The photo is too bright.",
    "too_blurry": "The photo is too blurry. Hold the camera still.",
}


def decode_image(data: bytes):
    if not data:
        return None
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)


def extract_face(frame_bgr):
    """
    Returns:
      (face_gray_200x200 | None, reason:str|None)
    """
    gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
    faces = FACE_CASCADE.detectMultiScale(gray, scaleFactor=1.2, minNeighbors=5, minSize=(60, 60))

    if len(faces) == 0:
        return None, "no_face"

    if MAX_FACES > 0 and len(faces) > MAX_FACES:
        return None, "multiple_faces"

    # take largest face
    x, y, w, h = sorted(faces, key=lambda r: r[2]*r[3], reverse=True)[0]

    if w < MIN_FACE_SIZE or h < MIN_FACE_SIZE:
        return None, "face_too_small"

    face = gray[y:y+h, x:x+w]
    face = cv2.resize(face, FACE_SIZE)

    mean_brightness = float(face.mean())
    if mean_brightness < BRIGHTNESS_MIN:
        return None, "too_dark"
    if mean_brightness > BRIGHTNESS_MAX:
        return None, "too_bright"

    blur_score = float(cv2.Laplacian(face, cv2.CV_64F).var())
    if blur_score < BLUR_THRESHOLD:
        return None, "too_blurry"

    return face, None


def distance_to_confidence(distance: float, ceiling: float = MATCH_DISTANCE_CEILING) -> float:
    # LBPH: lower distance = better match
    if ceiling <= 0:
        return 0.0
    return round(min(1.0, max(0.0, 1.0 - distance / ceiling)), 4)


def compare_faces(live_photo: bytes, enrolled_photo: bytes, threshold: float = MATCH_THRESHOLD) -> FaceMatchResult:
    enrolled = decode_image(enrolled_photo)
    if enrolled is None:
        return FaceMatchResult(is_match=False, confidence=0.0, reason="enrolled_face_unusable")
    enrolled_face, _ = extract_face(enrolled)
    if enrolled_face is None:
        return FaceMatchResult(is_match=False, confidence=0.0, reason="enrolled_face_unusable")

    live = decode_image(live_photo)
    if live is None:
        return FaceMatchResult(is_match=False, confidence=0.0, reason="invalid_image")
    live_face, reason = extract_face(live)
    if live_face is None:
        return FaceMatchResult(is_match=False, confidence=0.0, reason=reason or "no_face")

    recognizer = cv2.face.LBPHFaceRecognizer_create()
    recognizer.train([enrolled_face], np.array([0]))
    _, distance = recognizer.predict(live_face)
    distance = float(distance)
    confidence = distance_to_confidence(distance)

    if distance <= threshold:
        return FaceMatchResult(is_match=True, confidence=confidence)
    return FaceMatchResult(is_match=False, confidence=confidence, reason="no_match")


def check_enrollment_photo(photo: bytes) -> EnrollResult:
    frame = decode_image(photo)
    if frame is None:
        return EnrollResult(success=False, message=ENROLL_MESSAGES["invalid_image"])
    face, reason = extract_face(frame)
    if face is None:
        return EnrollResult(success=False, message=ENROLL_MESSAGES.get(reason or "", "Face enrollment failed."))
    return EnrollResult(success=True, message="Face enrolled successfully.")


class OpenCVFaceMatcher:
    """
    FaceMatchService backed by OpenCV: Haar-cascade detection, quality gates
    and a one-sample LBPH model per comparison.
    """

    def __init__(self, threshold: float = MATCH_THRESHOLD):
        self.threshold = threshold

    async def compare(self, live_photo: bytes, enrolled_photo: bytes, subject_label: str) -> FaceMatchResult:
        result = await asyncio.to_thread(compare_faces, live_photo, enrolled_photo, self.threshold)
        logger.debug(
            "face compare for %s: match=%s confidence=%.3f reason=%s",
            subject_label,
            result.is_match,
            result.confidence,
            result.reason or "-",
        )
        return result

    async def enroll(self, photo: bytes, subject_id: str) -> EnrollResult:
        result = await asyncio.to_thread(check_enrollment_photo, photo)
        if not result.success:
            logger.info("enrollment photo rejected for %s: %s", subject_id, result.message)
        return result
