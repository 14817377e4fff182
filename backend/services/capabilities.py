"""
Capability interfaces consumed by the check-in state machine.

Each capability is a small async protocol so a device client, the HTTP
service and the tests can plug in their own implementation.
"""
import math
from dataclasses import dataclass
from typing import Protocol

from database.db import SessionRecord


@dataclass(frozen=True)
class FaceMatchResult:
    is_match: bool
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class EnrollResult:
    success: bool
    message: str


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float
    accuracy_m: float | None = None


class FaceMatchService(Protocol):
    async def compare(self, live_photo: bytes, enrolled_photo: bytes, subject_label: str) -> FaceMatchResult:
        ...

    async def enroll(self, photo: bytes, subject_id: str) -> EnrollResult:
        ...


class LocationChecker(Protocol):
    async def check(self, position: Position | None, session: SessionRecord) -> bool:
        ...


class Camera(Protocol):
    """Exclusive handle on a capture device. `release` must be idempotent."""

    async def open(self) -> None:
        ...

    async def capture(self) -> bytes:
        ...

    def release(self) -> None:
        ...

    @property
    def is_active(self) -> bool:
        ...


class CameraError(RuntimeError):
    """Device or permission failure while acquiring or reading the camera."""


# -----------------------------
# Location
# -----------------------------
class AllowAllLocationChecker:
    """Accepts every position."""

    async def check(self, position: Position | None, session: SessionRecord) -> bool:
        return True


EARTH_RADIUS_M = 6_371_000


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class GeofenceLocationChecker:
    """
    Allows positions within the session's radius of its anchor point.

    Sessions created without an anchor are not geofenced. A geofenced
    session denies attempts that carry no position.
    """

    def __init__(self, default_radius_m: float):
        self.default_radius_m = default_radius_m

    async def check(self, position: Position | None, session: SessionRecord) -> bool:
        if session["latitude"] is None or session["longitude"] is None:
            return True
        if position is None:
            return False

        radius = session["radius_m"] or self.default_radius_m
        slack = position.accuracy_m or 0.0
        dist = distance_m(position.latitude, position.longitude, session["latitude"], session["longitude"])
        return dist <= radius + slack


# -----------------------------
# Camera
# -----------------------------
class UploadedFrameCamera:
    """
    Camera backed by a frame the device already uploaded.

    `capture` hands the frame over exactly once; `release` drops it.
    """

    def __init__(self, frame: bytes | None):
        self._frame = frame
        self._active = False

    async def open(self) -> None:
        if not self._frame:
            raise CameraError("No camera frame was provided.")
        self._active = True

    async def capture(self) -> bytes:
        if not self._active or self._frame is None:
            raise CameraError("Camera is not active.")
        frame = self._frame
        self._frame = None
        return frame

    def release(self) -> None:
        self._active = False
        self._frame = None

    @property
    def is_active(self) -> bool:
        return self._active
