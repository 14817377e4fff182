from fastapi import APIRouter

from backend.config import (
    BLUR_THRESHOLD,
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    DEFAULT_GEOFENCE_RADIUS_M,
    FACE_MATCH_TIMEOUT_SECONDS,
    LOCATION_CHECK_MODE,
    LOCATION_CHECK_TIMEOUT_SECONDS,
    MATCH_THRESHOLD,
    MAX_FACES,
    MAX_UPLOAD_BYTES,
    MIN_FACE_SIZE,
    PUBLIC_BASE_URL,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/check-in")
def check_in_config():
    return {
        "public_base_url": PUBLIC_BASE_URL,
        "match_threshold": MATCH_THRESHOLD,
        "max_faces": MAX_FACES,
        "min_face_size": MIN_FACE_SIZE,
        "blur_threshold": BLUR_THRESHOLD,
        "brightness_min": BRIGHTNESS_MIN,
        "brightness_max": BRIGHTNESS_MAX,
        "max_upload_bytes": MAX_UPLOAD_BYTES,
        "face_match_timeout_seconds": FACE_MATCH_TIMEOUT_SECONDS,
        "location_check_mode": LOCATION_CHECK_MODE,
        "location_check_timeout_seconds": LOCATION_CHECK_TIMEOUT_SECONDS,
        "default_geofence_radius_m": DEFAULT_GEOFENCE_RADIUS_M,
    }
