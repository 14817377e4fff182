import logging
import secrets
import sqlite3

from backend.services.session_feed import SESSION_FEED, SessionFeed
from database import db
from database.db import (
    AppendCheckInResult,
    CheckInRecord,
    EndSessionResult,
    HistoryEntry,
    SessionRecord,
)

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(12)


class AttendanceLedger:
    """
    Durable record of who checked into which session, plus each student's
    attendance history. Every committed change is published on the feed.
    """

    def __init__(self, feed: SessionFeed = SESSION_FEED):
        self.feed = feed

    # -----------------------------
    # Sessions
    # -----------------------------
    def create_session(
        self,
        *,
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
        session = db.create_session(
            session_id=new_session_id(),
            professor_id=professor_id,
            department=department,
            year=year,
            division=division,
            subject=subject,
            lecture_date=lecture_date,
            lecture_time=lecture_time,
            latitude=latitude,
            longitude=longitude,
            radius_m=radius_m,
        )
        logger.info("session %s opened by %s (%s)", session["id"], professor_id, subject)
        return session

    def get_session(self, session_id: str) -> SessionRecord | None:
        return db.get_session(session_id)

    def list_sessions(self, professor_id: str) -> list[SessionRecord]:
        return db.list_sessions_for_professor(professor_id)

    def end_session(self, session_id: str, professor_id: str) -> EndSessionResult:
        result = db.end_session(session_id, professor_id)
        if result == "ended":
            logger.info("session %s ended by %s", session_id, professor_id)
            self.feed.publish(session_id)
        return result

    # -----------------------------
    # Check-ins
    # -----------------------------
    def append_check_in(self, session_id: str, record: CheckInRecord) -> AppendCheckInResult:
        result = db.append_check_in(session_id, record)
        if result == "appended":
            logger.info("check-in recorded: session=%s student=%s", session_id, record["student_id"])
            self.feed.publish(session_id)
        elif result == "duplicate":
            logger.info("check-in already recorded: session=%s student=%s", session_id, record["student_id"])
        else:
            logger.warning(
                "check-in rejected (%s): session=%s student=%s",
                result,
                session_id,
                record["student_id"],
            )
        return result

    def list_check_ins(self, session_id: str) -> list[CheckInRecord]:
        return db.list_check_ins(session_id)

    # -----------------------------
    # History
    # -----------------------------
    def append_history(self, student_id: str, entry: HistoryEntry) -> bool:
        """
        Returns False on a failed (retryable) write. An entry that already
        exists for the session counts as written.
        """
        try:
            db.append_history(student_id, entry)
        except sqlite3.Error:
            logger.exception(
                "history write failed: student=%s session=%s",
                student_id,
                entry["session_id"],
            )
            return False
        return True

    def get_history(self, student_id: str) -> list[HistoryEntry]:
        return db.get_history(student_id)


LEDGER = AttendanceLedger()
