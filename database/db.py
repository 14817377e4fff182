import hashlib
import hmac
import secrets
import sqlite3
from typing import Literal, TypedDict, cast

from backend.config import DB_PATH


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
BUSY_TIMEOUT_SECONDS = 10.0

AppendCheckInResult = Literal["appended", "duplicate", "already_ended", "session_not_found"]
EndSessionResult = Literal["ended", "already_ended", "session_not_found", "forbidden"]
HistoryStatus = Literal["Present", "Absent"]


class UserRecord(TypedDict):
    id: str
    email: str
    role: str
    display_name: str
    roll_no: str
    has_face: bool
    face_enrolled_at: str | None
    created_at: str


class SessionRecord(TypedDict):
    id: str
    professor_id: str
    department: str
    year: str
    division: str
    subject: str
    lecture_date: str
    lecture_time: str
    latitude: float | None
    longitude: float | None
    radius_m: float | None
    active: bool
    created_at: str
    ended_at: str | None


class CheckInRecord(TypedDict):
    student_id: str
    name: str
    roll_no: str
    email: str
    check_in_time: str


class HistoryEntry(TypedDict):
    session_id: str
    subject: str
    date: str
    status: HistoryStatus


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=BUSY_TIMEOUT_SECONDS)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        role TEXT NOT NULL,                -- student | professor
        display_name TEXT NOT NULL,
        roll_no TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        face_image BLOB,                   -- enrolled reference photo
        face_enrolled_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        professor_id TEXT NOT NULL,
        department TEXT NOT NULL,
        year TEXT NOT NULL,
        division TEXT NOT NULL,
        subject TEXT NOT NULL,
        lecture_date TEXT NOT NULL,
        lecture_time TEXT NOT NULL,
        latitude REAL,
        longitude REAL,
        radius_m REAL,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        ended_at TIMESTAMP,
        FOREIGN KEY (professor_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """)

    # Session ledger: one row per (session, student)
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS check_ins (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        name TEXT NOT NULL,
        roll_no TEXT NOT NULL,
        email TEXT NOT NULL,
        check_in_time TEXT NOT NULL,       -- ISO-8601
        FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
        UNIQUE(session_id, student_id)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        subject TEXT NOT NULL,
        date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Present',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (student_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(student_id, session_id)
    )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_professor ON sessions(professor_id)")

    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def _user_from_row(row) -> UserRecord:
    return {
        "id": row[0],
        "email": row[1],
        "role": row[2],
        "display_name": row[3],
        "roll_no": row[4],
        "has_face": bool(row[5]),
        "face_enrolled_at": row[6],
        "created_at": row[7],
    }


_USER_COLUMNS = """
    id, email, role, display_name, roll_no,
    face_image IS NOT NULL, face_enrolled_at, created_at
"""


def create_user(
    *,
    email: str,
    password: str,
    role: str,
    display_name: str | None = None,
    roll_no: str | None = None,
) -> UserRecord:
    """
    Insert a new user. Raises `sqlite3.IntegrityError` when the email exists.
    """
    user_id = secrets.token_hex(14)
    name = (display_name or "").strip() or email.split("@", 1)[0]
    roll = (roll_no or "").strip() or f"S{user_id[:4]}"

    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO users (id, email, role, display_name, roll_no, password_hash)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (user_id, email, role, name, roll, _hash_password(password)),
        )
        conn.commit()
    finally:
        conn.close()

    return cast(UserRecord, get_user(user_id))


def get_user(user_id: str) -> UserRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row) if row else None


def verify_user_credentials(email: str, password: str) -> UserRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_USER_COLUMNS}, password_hash
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(password, str(row[8])):
        return None
    return _user_from_row(row)


def get_enrolled_face(user_id: str) -> bytes | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT face_image FROM users WHERE id = ?", (user_id,))
    row = cur.fetchone()
    conn.close()
    if not row or row[0] is None:
        return None
    return bytes(row[0])


def set_enrolled_face(user_id: str, photo: bytes) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE users
        SET face_image = ?, face_enrolled_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (sqlite3.Binary(photo), user_id),
    )
    updated = cur.rowcount > 0
    conn.commit()
    conn.close()
    return updated


# -----------------------------
# Sessions
# -----------------------------
_SESSION_COLUMNS = """
    id, professor_id, department, year, division, subject,
    lecture_date, lecture_time, latitude, longitude, radius_m,
    active, created_at, ended_at
"""


def _session_from_row(row) -> SessionRecord:
    return {
        "id": row[0],
        "professor_id": row[1],
        "department": row[2],
        "year": row[3],
        "division": row[4],
        "subject": row[5],
        "lecture_date": row[6],
        "lecture_time": row[7],
        "latitude": row[8],
        "longitude": row[9],
        "radius_m": row[10],
        "active": bool(row[11]),
        "created_at": row[12],
        "ended_at": row[13],
    }


def create_session(
    *,
    session_id: str,
    professor_id: str,
    department: str,
    year: str,
    division: str,
    subject: str,
    lecture_date: str,
    lecture_time: str,
    latitude: float | None = None,
    longitude: float | None = None,
    radius_m: float | None = None,
) -> SessionRecord:
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO sessions (
                id, professor_id, department, year, division, subject,
                lecture_date, lecture_time, latitude, longitude, radius_m
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                professor_id,
                department,
                year,
                division,
                subject,
                lecture_date,
                lecture_time,
                latitude,
                longitude,
                radius_m,
            ),
        )
        conn.commit()
    finally:
        conn.close()

    return cast(SessionRecord, get_session(session_id))


def get_session(session_id: str) -> SessionRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,))
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def list_sessions_for_professor(professor_id: str) -> list[SessionRecord]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM sessions
        WHERE professor_id = ?
        ORDER BY created_at DESC, rowid DESC
        """,
        (professor_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_session_from_row(r) for r in rows]


def end_session(session_id: str, professor_id: str) -> EndSessionResult:
    """
    Flip `active` to false. Only the owning professor may do this and the
    flag never goes back to true.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("BEGIN IMMEDIATE")
        cur.execute("SELECT professor_id, active FROM sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
        if not row:
            conn.rollback()
            return "session_not_found"
        if row[0] != professor_id:
            conn.rollback()
            return "forbidden"
        if not row[1]:
            conn.rollback()
            return "already_ended"

        cur.execute(
            """
            UPDATE sessions
            SET active = 0, ended_at = CURRENT_TIMESTAMP
            WHERE id = ? AND active = 1
            """,
            (session_id,),
        )
        conn.commit()
        return "ended"
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


# -----------------------------
# Ledger
# -----------------------------
def append_check_in(session_id: str, record: CheckInRecord) -> AppendCheckInResult:
    """
    Upsert keyed by (session_id, student_id).

    The session's `active` flag is read again inside the write transaction,
    immediately before the insert; a closed session rejects the write. An
    existing record for the same student is left untouched and reported as
    `duplicate`.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("BEGIN IMMEDIATE")
        cur.execute("SELECT active FROM sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
        if not row:
            conn.rollback()
            return "session_not_found"
        if not row[0]:
            conn.rollback()
            return "already_ended"

        cur.execute(
            """
            INSERT OR IGNORE INTO check_ins (
                session_id, student_id, name, roll_no, email, check_in_time
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                record["student_id"],
                record["name"],
                record["roll_no"],
                record["email"],
                record["check_in_time"],
            ),
        )
        inserted = cur.rowcount > 0
        conn.commit()
        return "appended" if inserted else "duplicate"
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def list_check_ins(session_id: str) -> list[CheckInRecord]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT student_id, name, roll_no, email, check_in_time
        FROM check_ins
        WHERE session_id = ?
        ORDER BY id
        """,
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "student_id": r[0],
            "name": r[1],
            "roll_no": r[2],
            "email": r[3],
            "check_in_time": r[4],
        }
        for r in rows
    ]


def append_history(student_id: str, entry: HistoryEntry) -> bool:
    """
    Record a history entry for the student. Returns False when an entry for
    the same session already exists. Raises `sqlite3.Error` on write failure.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT OR IGNORE INTO attendance_history (student_id, session_id, subject, date, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (student_id, entry["session_id"], entry["subject"], entry["date"], entry["status"]),
        )
        inserted = cur.rowcount > 0
        conn.commit()
        return inserted
    finally:
        conn.close()


def get_history(student_id: str) -> list[HistoryEntry]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT session_id, subject, date, status
        FROM attendance_history
        WHERE student_id = ?
        ORDER BY id DESC
        """,
        (student_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {"session_id": r[0], "subject": r[1], "date": r[2], "status": r[3]}
        for r in rows
    ]
