from backend.config import DEFAULT_GEOFENCE_RADIUS_M, LOCATION_CHECK_MODE
from backend.recognizer import OpenCVFaceMatcher
from backend.services.capabilities import (
    AllowAllLocationChecker,
    FaceMatchService,
    GeofenceLocationChecker,
    LocationChecker,
)
from backend.services.ledger import LEDGER, AttendanceLedger

_FACE_MATCHER = OpenCVFaceMatcher()


def get_ledger() -> AttendanceLedger:
    return LEDGER


def get_face_match_service() -> FaceMatchService:
    return _FACE_MATCHER


def get_location_checker() -> LocationChecker:
    if LOCATION_CHECK_MODE == "geofence":
        return GeofenceLocationChecker(DEFAULT_GEOFENCE_RADIUS_M)
    return AllowAllLocationChecker()
