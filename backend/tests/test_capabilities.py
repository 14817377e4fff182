import asyncio

import pytest

from backend.services.capabilities import (
    AllowAllLocationChecker,
    CameraError,
    GeofenceLocationChecker,
    Position,
    UploadedFrameCamera,
    distance_m,
)
from backend.services.links import build_attend_url, parse_attend_url

CAMPUS = (18.5204, 73.8567)


def _session(lat=None, lon=None, radius=None):
    return {
        "id": "S1",
        "professor_id": "p",
        "department": "CS",
        "year": "FY",
        "division": "A",
        "subject": "Networks",
        "lecture_date": "2026-10-18",
        "lecture_time": "10:00",
        "latitude": lat,
        "longitude": lon,
        "radius_m": radius,
        "active": True,
        "created_at": "2026-10-18 10:00:00",
        "ended_at": None,
    }


def test_attend_url_round_trip():
    url = build_attend_url("abc_123-XY", "https://rollcall.example.edu/")
    assert url == "https://rollcall.example.edu/attend?sessionId=abc_123-XY"
    assert parse_attend_url(url) == "abc_123-XY"


@pytest.mark.parametrize(
    "text",
    [None, "", "hello", "https://example.com/menu?sessionId=x", "https://example.com/attend", "/attend?sessionId=%20"],
)
def test_parse_attend_url_rejects_other_codes(text):
    assert parse_attend_url(text) is None


def test_distance_m():
    assert distance_m(*CAMPUS, *CAMPUS) == 0
    # about 111 m per 0.001 degree of latitude
    assert distance_m(18.5204, 73.8567, 18.5214, 73.8567) == pytest.approx(111.2, abs=1)


def test_allow_all_location():
    assert asyncio.run(AllowAllLocationChecker().check(None, _session())) is True


def test_geofence():
    checker = GeofenceLocationChecker(default_radius_m=150)
    anchored = _session(*CAMPUS, radius=100)

    assert asyncio.run(checker.check(None, _session())) is True
    assert asyncio.run(checker.check(None, anchored)) is False
    assert asyncio.run(checker.check(Position(18.5207, 73.8567), anchored)) is True
    assert asyncio.run(checker.check(Position(18.5224, 73.8567), anchored)) is False
    # reported accuracy widens the fence
    assert asyncio.run(checker.check(Position(18.5224, 73.8567, accuracy_m=150), anchored)) is True
    # default radius when the session sets none
    assert asyncio.run(checker.check(Position(18.5215, 73.8567), _session(*CAMPUS))) is True


def test_uploaded_frame_camera():
    camera = UploadedFrameCamera(b"frame")

    async def run():
        await camera.open()
        assert camera.is_active
        frame = await camera.capture()
        with pytest.raises(CameraError):
            await camera.capture()
        return frame

    assert asyncio.run(run()) == b"frame"
    camera.release()
    camera.release()
    assert not camera.is_active


def test_camera_without_frame_cannot_open():
    with pytest.raises(CameraError):
        asyncio.run(UploadedFrameCamera(None).open())
