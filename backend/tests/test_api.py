import asyncio

import pytest
from fastapi import WebSocketDisconnect

import database.db as db
from backend.routers.sessions import session_live
from backend.services.capabilities import EnrollResult, FaceMatchResult
from backend.services.ledger import AttendanceLedger
from backend.services.session_feed import SessionFeed


def _check_in(client, student, session_id, **form):
    return client.post(
        "/attend/check-in",
        data={"session_id": session_id, **form},
        files={"file": ("frame.jpg", b"live-frame", "image/jpeg")},
        headers=student["headers"],
    )


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_check_in_config_is_public(client):
    res = client.get("/config/check-in")
    assert res.status_code == 200
    payload = res.json()
    assert payload["location_check_mode"] == "stub"
    assert payload["face_match_timeout_seconds"] > 0


def test_register_fills_default_name_and_roll_no(client):
    res = client.post(
        "/auth/register",
        json={"email": "ravi@example.edu", "password": "secret123", "role": "student"},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["display_name"] == "ravi"
    assert body["roll_no"] == f"S{body['id'][:4]}"
    assert body["face_enrolled"] is False


def test_register_rejects_duplicate_email(client, student):
    res = client.post(
        "/auth/register",
        json={"email": "ASHA@example.edu", "password": "secret123", "role": "student"},
    )
    assert res.status_code == 409
    assert res.json()["detail"] == "Email already registered."


def test_register_rejects_unknown_role(client):
    res = client.post(
        "/auth/register",
        json={"email": "x@example.edu", "password": "secret123", "role": "dean"},
    )
    assert res.status_code == 400


def test_login_rejects_invalid_credentials(client, student):
    res = client.post("/auth/login", json={"email": "asha@example.edu", "password": "wrong-password"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."


def test_auth_me(client, student):
    res = client.get("/auth/me", headers=student["headers"])
    assert res.status_code == 200
    assert res.json()["role"] == "student"
    assert res.json()["roll_no"] == "CS-042"


def test_endpoints_require_session(client):
    res = client.get("/sessions")
    assert res.status_code == 401
    assert res.json()["detail"] == "Missing bearer token."

    res = client.post("/attend/check-in", data={"session_id": "x"})
    assert res.status_code == 401


def test_students_cannot_create_sessions(client, student, lecture):
    res = client.post("/sessions", json=lecture, headers=student["headers"])
    assert res.status_code == 403


def test_create_session_copies_metadata_and_builds_attend_url(client, professor, lecture):
    res = client.post("/sessions", json=lecture, headers=professor["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["active"] is True
    assert body["professor_id"] == professor["id"]
    for key, value in lecture.items():
        assert body[key] == value
    assert body["attend_url"].endswith(f"/attend?sessionId={body['id']}")

    listed = client.get("/sessions", headers=professor["headers"]).json()
    assert [s["id"] for s in listed] == [body["id"]]


def test_create_session_requires_every_field(client, professor, lecture):
    lecture["subject"] = "  "
    res = client.post("/sessions", json=lecture, headers=professor["headers"])
    assert res.status_code == 400
    assert "subject" in res.json()["detail"]


def test_session_ids_are_unique(client, professor, lecture):
    ids = {
        client.post("/sessions", json=lecture, headers=professor["headers"]).json()["id"]
        for _ in range(5)
    }
    assert len(ids) == 5


def test_only_owner_can_end_session(client, live_session, make_user):
    other = make_user("other@example.edu", "professor")
    res = client.post(f"/sessions/{live_session['id']}/end", headers=other["headers"])
    assert res.status_code == 403


def test_end_session_is_one_way(client, professor, live_session):
    url = f"/sessions/{live_session['id']}/end"
    first = client.post(url, headers=professor["headers"])
    assert first.status_code == 200
    assert first.json()["already_ended"] is False

    second = client.post(url, headers=professor["headers"])
    assert second.status_code == 200
    assert second.json()["already_ended"] is True

    detail = client.get(f"/sessions/{live_session['id']}", headers=professor["headers"]).json()
    assert detail["active"] is False
    assert detail["ended_at"] is not None


def test_end_unknown_session(client, professor):
    res = client.post("/sessions/nope/end", headers=professor["headers"])
    assert res.status_code == 404


def test_enrollment_gate_rejects_photo(client, student, matcher):
    matcher.enroll_result = EnrollResult(success=False, message="No face was detected.")
    res = client.post(
        "/students/me/face",
        files={"file": ("face.jpg", b"blurry", "image/jpeg")},
        headers=student["headers"],
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "No face was detected."
    assert db.get_enrolled_face(student["id"]) is None


def test_enrollment_rejects_non_image_upload(client, student):
    res = client.post(
        "/students/me/face",
        files={"file": ("face.txt", b"hello", "text/plain")},
        headers=student["headers"],
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Upload JPG/PNG only."


def test_successful_check_in(client, enrolled_student, live_session, professor, matcher):
    res = _check_in(client, enrolled_student, live_session["id"])
    assert res.status_code == 200
    body = res.json()
    assert body["state"] == "verified_ok"
    assert body["verified"] is True
    assert body["recorded"] is True
    assert body["confidence"] == pytest.approx(0.94)
    assert [t["state"] for t in body["transitions"]] == [
        "locating",
        "location_ok",
        "camera_on",
        "verifying",
        "verified_ok",
    ]
    live, enrolled, label = matcher.compare_calls[0]
    assert live == b"live-frame"
    assert enrolled == b"reference-photo"
    assert label == "Asha"

    roster = client.get(f"/sessions/{live_session['id']}/attendance", headers=professor["headers"]).json()
    assert roster["count"] == 1
    assert roster["students"][0]["roll_no"] == "CS-042"
    assert roster["students"][0]["email"] == "asha@example.edu"

    history = client.get("/students/me/history", headers=enrolled_student["headers"]).json()
    assert history == [
        {
            "session_id": live_session["id"],
            "subject": "Data Structures",
            "date": "2026-10-18",
            "status": "Present",
        }
    ]


def test_repeated_check_in_keeps_one_record(client, enrolled_student, live_session):
    for _ in range(3):
        res = _check_in(client, enrolled_student, live_session["id"])
        assert res.json()["state"] == "verified_ok"

    assert len(db.list_check_ins(live_session["id"])) == 1
    assert len(db.get_history(enrolled_student["id"])) == 1


def test_rejected_face_leaves_ledger_untouched(client, enrolled_student, live_session, matcher):
    matcher.result = FaceMatchResult(is_match=False, confidence=0.12, reason="no face detected")
    res = _check_in(client, enrolled_student, live_session["id"])
    body = res.json()
    assert body["state"] == "verified_fail"
    assert body["message"] == "no face detected"
    assert db.list_check_ins(live_session["id"]) == []
    assert db.get_history(enrolled_student["id"]) == []


def test_unenrolled_student_never_reaches_face_match(client, student, live_session, matcher):
    res = _check_in(client, student, live_session["id"])
    body = res.json()
    assert body["state"] == "verified_fail"
    assert body["reason"] == "not_enrolled"
    assert matcher.compare_calls == []


def test_check_in_against_ended_session(client, enrolled_student, live_session, professor, matcher):
    client.post(f"/sessions/{live_session['id']}/end", headers=professor["headers"])

    body = _check_in(client, enrolled_student, live_session["id"]).json()
    assert body["state"] == "verified_fail"
    assert body["reason"] == "session_ended"
    assert matcher.compare_calls == []
    assert db.list_check_ins(live_session["id"]) == []


def test_check_in_unknown_session(client, enrolled_student):
    body = _check_in(client, enrolled_student, "missing-session").json()
    assert body["state"] == "verified_fail"
    assert body["reason"] == "session_not_found"


def test_professors_cannot_check_in(client, professor, live_session):
    res = _check_in(client, professor, live_session["id"])
    assert res.status_code == 403


def test_resolve_attend_link(client, student, live_session):
    res = client.post("/attend/resolve", json={"url": live_session["attend_url"]}, headers=student["headers"])
    assert res.status_code == 200
    assert res.json() == {"session_id": live_session["id"]}

    res = client.post("/attend/resolve", json={"url": "https://example.com/menu"}, headers=student["headers"])
    assert res.status_code == 400


def test_live_view_tracks_roster_and_status(client, professor, enrolled_student, live_session):
    url = f"/sessions/{live_session['id']}/live?token={professor['token']}"
    with client.websocket_connect(url) as ws:
        first = ws.receive_json()
        assert first["status"] == "active"
        assert first["count"] == 0

        assert _check_in(client, enrolled_student, live_session["id"]).json()["state"] == "verified_ok"
        update = ws.receive_json()
        assert update["count"] == 1
        assert update["students"][0]["student_id"] == enrolled_student["id"]

        client.post(f"/sessions/{live_session['id']}/end", headers=professor["headers"])
        ended = ws.receive_json()
        assert ended["active"] is False
        assert ended["status"] == "ended"
        assert ended["count"] == 1


def test_live_view_requires_owner_token(client, student, live_session):
    url = f"/sessions/{live_session['id']}/live?token={student['token']}"
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(url) as ws:
            ws.receive_json()


class DroppedWebSocket:
    """Client that vanishes during the first send."""

    def __init__(self):
        self.sent = 0
        self.gone = asyncio.Event()

    async def accept(self):
        pass

    async def close(self, code: int = 1000):
        raise AssertionError(f"unexpected close {code}")

    async def send_json(self, data):
        self.sent += 1
        self.gone.set()
        raise WebSocketDisconnect(1006)

    async def receive_text(self):
        await self.gone.wait()
        raise WebSocketDisconnect(1006)


def test_live_view_cleans_up_when_send_fails(client, professor, live_session):
    ledger = AttendanceLedger(feed=SessionFeed())
    ws = DroppedWebSocket()

    asyncio.run(session_live(ws, live_session["id"], token=professor["token"], ledger=ledger))

    assert ws.sent == 1
    assert ledger.feed.subscriber_count(live_session["id"]) == 0
