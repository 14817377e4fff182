import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))
PUBLIC_BASE_URL = os.getenv("ROLLCALL_PUBLIC_BASE_URL", "http://localhost:3000").strip().rstrip("/")
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_location_mode(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized == "geofence":
        return "geofence"
    return "stub"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)

# Face matching (LBPH distance: lower = better)
MATCH_THRESHOLD = float(os.getenv("ROLLCALL_MATCH_THRESHOLD", "60"))
MATCH_DISTANCE_CEILING = float(os.getenv("ROLLCALL_MATCH_DISTANCE_CEILING", "120"))
MAX_FACES = int(os.getenv("ROLLCALL_MAX_FACES", "1"))
MIN_FACE_SIZE = int(os.getenv("ROLLCALL_MIN_FACE_SIZE", "80"))
BLUR_THRESHOLD = float(os.getenv("ROLLCALL_BLUR_THRESHOLD", "40"))
BRIGHTNESS_MIN = float(os.getenv("ROLLCALL_BRIGHTNESS_MIN", "40"))
BRIGHTNESS_MAX = float(os.getenv("ROLLCALL_BRIGHTNESS_MAX", "200"))
MAX_UPLOAD_BYTES = int(os.getenv("ROLLCALL_MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))

# Check-in flow
FACE_MATCH_TIMEOUT_SECONDS = float(os.getenv("ROLLCALL_FACE_MATCH_TIMEOUT_SECONDS", "20"))
LOCATION_CHECK_TIMEOUT_SECONDS = float(os.getenv("ROLLCALL_LOCATION_CHECK_TIMEOUT_SECONDS", "10"))
LOCATION_CHECK_MODE = _parse_location_mode(os.getenv("ROLLCALL_LOCATION_CHECK_MODE"))
DEFAULT_GEOFENCE_RADIUS_M = float(os.getenv("ROLLCALL_DEFAULT_GEOFENCE_RADIUS_M", "150"))
