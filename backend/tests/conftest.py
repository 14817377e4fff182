import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.services.capabilities import EnrollResult, FaceMatchResult
from backend.services.providers import get_face_match_service


class FakeFaceMatcher:
    def __init__(self):
        self.result = FaceMatchResult(is_match=True, confidence=0.94)
        self.enroll_result = EnrollResult(success=True, message="Face enrolled successfully.")
        self.compare_calls: list[tuple[bytes, bytes, str]] = []
        self.enroll_calls: list[tuple[bytes, str]] = []

    async def compare(self, live_photo: bytes, enrolled_photo: bytes, subject_label: str) -> FaceMatchResult:
        self.compare_calls.append((live_photo, enrolled_photo, subject_label))
        return self.result

    async def enroll(self, photo: bytes, subject_id: str) -> EnrollResult:
        self.enroll_calls.append((photo, subject_id))
        return self.enroll_result


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def matcher():
    return FakeFaceMatcher()


@pytest.fixture()
def client(temp_db, matcher):
    main.app.dependency_overrides[get_face_match_service] = lambda: matcher
    try:
        with TestClient(main.app) as c:
            yield c
    finally:
        main.app.dependency_overrides.clear()


def register_and_login(client, *, email: str, role: str, **extra) -> dict:
    res = client.post(
        "/auth/register",
        json={"email": email, "password": "secret123", "role": role, **extra},
    )
    assert res.status_code == 200, res.text

    res = client.post("/auth/login", json={"email": email, "password": "secret123"})
    assert res.status_code == 200, res.text
    body = res.json()
    return {
        "id": body["user"]["id"],
        "token": body["access_token"],
        "headers": {"Authorization": f"Bearer {body['access_token']}"},
    }


@pytest.fixture()
def professor(client):
    return register_and_login(client, email="prof@example.edu", role="professor", display_name="Dr. Rao")


@pytest.fixture()
def student(client):
    return register_and_login(
        client,
        email="asha@example.edu",
        role="student",
        display_name="Asha",
        roll_no="CS-042",
    )


@pytest.fixture()
def enrolled_student(client, student):
    res = client.post(
        "/students/me/face",
        files={"file": ("face.jpg", b"reference-photo", "image/jpeg")},
        headers=student["headers"],
    )
    assert res.status_code == 200, res.text
    return student


LECTURE = {
    "department": "Computer Science",
    "year": "Second Year",
    "division": "A",
    "subject": "Data Structures",
    "lecture_date": "2026-10-18",
    "lecture_time": "09:30",
}


@pytest.fixture()
def live_session(client, professor):
    res = client.post("/sessions", json=LECTURE, headers=professor["headers"])
    assert res.status_code == 200, res.text
    return res.json()


@pytest.fixture()
def lecture():
    return dict(LECTURE)


@pytest.fixture()
def make_user(client):
    def _make(email: str, role: str, **extra) -> dict:
        return register_and_login(client, email=email, role=role, **extra)

    return _make
