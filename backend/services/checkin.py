"""
Check-in state machine.

One instance drives one student's attempt against one session:

    idle -> locating -> location_ok -> camera_on -> verifying -> verified_ok
                     `-> location_fail  `-> device_fail       `-> verified_fail

The machine emits every `Transition` to an optional listener so a renderer
can follow along without holding any logic of its own. Collaborators
(ledger, face matching, location, camera) are injected.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from backend.config import FACE_MATCH_TIMEOUT_SECONDS, LOCATION_CHECK_TIMEOUT_SECONDS
from backend.services.capabilities import Camera, FaceMatchService, LocationChecker, Position
from backend.services.ledger import AttendanceLedger
from database.db import CheckInRecord, HistoryEntry, SessionRecord

logger = logging.getLogger(__name__)


class CheckInState(str, Enum):
    IDLE = "idle"
    LOCATING = "locating"
    LOCATION_OK = "location_ok"
    LOCATION_FAIL = "location_fail"
    DEVICE_FAIL = "device_fail"
    CAMERA_ON = "camera_on"
    VERIFYING = "verifying"
    VERIFIED_OK = "verified_ok"
    VERIFIED_FAIL = "verified_fail"


FAILURE_STATES = {
    CheckInState.LOCATION_FAIL,
    CheckInState.DEVICE_FAIL,
    CheckInState.VERIFIED_FAIL,
}
TERMINAL_STATES = FAILURE_STATES | {CheckInState.VERIFIED_OK}

REASON_MESSAGES = {
    "session_not_found": "This attendance session does not exist.",
    "session_ended": "This attendance session has ended.",
    "out_of_range": "You are not in the allowed range for this lecture.",
    "location_timeout": "Your location could not be confirmed in time.",
    "location_unavailable": "Your location could not be checked.",
    "camera_unavailable": "Could not access the camera.",
    "capture_failed": "Could not capture a picture from the camera.",
    "not_enrolled": "You have not enrolled your face. Please enroll from your dashboard.",
    "verification_timeout": "Face verification took too long. Please try again.",
    "verification_error": "An error occurred during verification.",
    "ledger_write_failed": "Verified, but your check-in could not be saved. Please try again.",
}


class InvalidTransition(RuntimeError):
    """Raised when an operation is not allowed in the machine's current state."""


@dataclass(frozen=True)
class StudentIdentity:
    id: str
    name: str
    roll_no: str
    email: str


@dataclass(frozen=True)
class CheckInContext:
    student: StudentIdentity
    session_id: str
    enrolled_face: bytes | None
    position: Position | None = None


@dataclass(frozen=True)
class Transition:
    state: CheckInState
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.value, **self.payload}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckInStateMachine:
    def __init__(
        self,
        context: CheckInContext,
        *,
        ledger: AttendanceLedger,
        face_match: FaceMatchService,
        location_checker: LocationChecker,
        camera: Camera,
        listener: Callable[[Transition], None] | None = None,
        verify_timeout: float = FACE_MATCH_TIMEOUT_SECONDS,
        location_timeout: float = LOCATION_CHECK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.context = context
        self.ledger = ledger
        self.face_match = face_match
        self.location_checker = location_checker
        self.camera = camera
        self.listener = listener
        self.verify_timeout = verify_timeout
        self.location_timeout = location_timeout
        self.clock = clock

        self.transitions: list[Transition] = []
        self.attempt = 1
        self._state = CheckInState.IDLE
        self._session: SessionRecord | None = None
        self._reason: str | None = None
        self._confidence: float | None = None
        self._in_flight = False
        self._closed = False
        self._task: asyncio.Task | None = None

    # -----------------------------
    # Introspection
    # -----------------------------
    @property
    def state(self) -> CheckInState:
        return self._state

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def confidence(self) -> float | None:
        return self._confidence

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def can_capture(self) -> bool:
        return self._state == CheckInState.CAMERA_ON and not self._in_flight and not self._closed

    # -----------------------------
    # Operations
    # -----------------------------
    async def start(self) -> CheckInState:
        if self._closed:
            raise InvalidTransition("Check-in view is closed.")
        if self._state != CheckInState.IDLE:
            raise InvalidTransition(f"Cannot start from state '{self._state.value}'.")
        return await self._run(self._locate_and_open_camera())

    async def capture(self) -> CheckInState:
        if not self.can_capture:
            raise InvalidTransition(f"Cannot capture in state '{self._state.value}'.")
        self._in_flight = True
        try:
            return await self._run(self._capture_and_verify())
        finally:
            self._in_flight = False

    async def restart(self) -> CheckInState:
        """Start over from `idle` after a failure; location is checked again."""
        if self._closed:
            raise InvalidTransition("Check-in view is closed.")
        if self._state not in FAILURE_STATES:
            raise InvalidTransition(f"Cannot restart from state '{self._state.value}'.")

        self.camera.release()
        self.attempt += 1
        self._session = None
        self._reason = None
        self._confidence = None
        self._emit(CheckInState.IDLE, attempt=self.attempt)
        return await self.start()

    def close(self) -> None:
        """Unmount: release the camera and abandon any work in flight."""
        self._closed = True
        self.camera.release()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # -----------------------------
    # Internals
    # -----------------------------
    async def _run(self, coro) -> CheckInState:
        self._task = asyncio.ensure_future(coro)
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._closed:
                raise
        finally:
            self._task = None
            if self._closed:
                self.camera.release()
        return self._state

    def _emit(self, state: CheckInState, **payload: Any) -> None:
        if self._closed:
            return
        self._state = state
        transition = Transition(state, payload)
        self.transitions.append(transition)
        if self.listener is not None:
            self.listener(transition)

    def _fail(self, state: CheckInState, reason: str, *, message: str | None = None, **payload: Any) -> None:
        self._reason = reason
        self._emit(
            state,
            reason=reason,
            message=message or REASON_MESSAGES.get(reason, reason),
            **payload,
        )

    async def _load_session(self) -> tuple[SessionRecord | None, str | None]:
        session = await asyncio.to_thread(self.ledger.get_session, self.context.session_id)
        if session is None:
            return None, "session_not_found"
        self._session = session
        if not session["active"]:
            return session, "session_ended"
        return session, None

    async def _locate_and_open_camera(self) -> None:
        session, failure = await self._load_session()
        if session is None or failure:
            self._fail(CheckInState.VERIFIED_FAIL, failure or "session_not_found")
            return

        self._emit(CheckInState.LOCATING)
        try:
            allowed = await asyncio.wait_for(
                self.location_checker.check(self.context.position, session),
                timeout=self.location_timeout,
            )
        except asyncio.TimeoutError:
            self._fail(CheckInState.LOCATION_FAIL, "location_timeout")
            return
        except Exception:
            logger.exception("location check failed for session %s", self.context.session_id)
            self._fail(CheckInState.LOCATION_FAIL, "location_unavailable")
            return

        if not allowed:
            self._fail(CheckInState.LOCATION_FAIL, "out_of_range")
            return

        self._emit(CheckInState.LOCATION_OK)
        try:
            await self.camera.open()
        except Exception as exc:
            self.camera.release()
            logger.warning("camera unavailable for %s: %s", self.context.student.id, exc)
            self._fail(CheckInState.DEVICE_FAIL, "camera_unavailable")
            return

        if self._closed:
            self.camera.release()
            return
        self._emit(CheckInState.CAMERA_ON)

    async def _capture_and_verify(self) -> None:
        try:
            frame = await self.camera.capture()
        except Exception as exc:
            logger.warning("frame capture failed for %s: %s", self.context.student.id, exc)
            self._fail(CheckInState.DEVICE_FAIL, "capture_failed")
            return
        finally:
            self.camera.release()

        self._emit(CheckInState.VERIFYING)

        enrolled_face = self.context.enrolled_face
        if not enrolled_face:
            self._fail(CheckInState.VERIFIED_FAIL, "not_enrolled")
            return

        _, failure = await self._load_session()
        if failure:
            self._fail(CheckInState.VERIFIED_FAIL, failure)
            return

        student = self.context.student
        try:
            result = await asyncio.wait_for(
                self.face_match.compare(frame, enrolled_face, student.name or student.email),
                timeout=self.verify_timeout,
            )
        except asyncio.TimeoutError:
            self._fail(CheckInState.VERIFIED_FAIL, "verification_timeout")
            return
        except Exception:
            logger.exception("face match failed for %s", student.id)
            self._fail(CheckInState.VERIFIED_FAIL, "verification_error")
            return

        self._confidence = result.confidence
        if not result.is_match:
            reason = result.reason or "no_match"
            self._fail(
                CheckInState.VERIFIED_FAIL,
                reason,
                message=result.reason or "Face verification failed.",
                confidence=result.confidence,
            )
            return

        await self._commit(result.confidence)

    async def _commit(self, confidence: float) -> None:
        student = self.context.student
        session_id = self.context.session_id
        record: CheckInRecord = {
            "student_id": student.id,
            "name": student.name,
            "roll_no": student.roll_no,
            "email": student.email,
            "check_in_time": self.clock().isoformat(timespec="seconds"),
        }

        try:
            outcome = await asyncio.to_thread(self.ledger.append_check_in, session_id, record)
        except Exception:
            # Verified but not recorded; a retry hits the keyed upsert.
            logger.exception("ledger write failed: session=%s student=%s", session_id, student.id)
            self._reason = "ledger_write_failed"
            self._emit(
                CheckInState.VERIFIED_OK,
                confidence=confidence,
                recorded=False,
                reason="ledger_write_failed",
                message=REASON_MESSAGES["ledger_write_failed"],
            )
            return

        if outcome == "already_ended":
            self._fail(CheckInState.VERIFIED_FAIL, "session_ended", confidence=confidence)
            return
        if outcome == "session_not_found":
            self._fail(CheckInState.VERIFIED_FAIL, "session_not_found", confidence=confidence)
            return

        session = self._session
        entry: HistoryEntry = {
            "session_id": session_id,
            "subject": session["subject"] if session else "Unknown Subject",
            "date": session["lecture_date"] if session else record["check_in_time"],
            "status": "Present",
        }
        try:
            history_recorded = await asyncio.to_thread(self.ledger.append_history, student.id, entry)
        except Exception:
            logger.exception("history write failed: session=%s student=%s", session_id, student.id)
            history_recorded = False
        if not history_recorded:
            logger.warning("history out of sync: session=%s student=%s", session_id, student.id)

        self._emit(
            CheckInState.VERIFIED_OK,
            confidence=confidence,
            recorded=True,
            duplicate=outcome == "duplicate",
            history_recorded=history_recorded,
            check_in_time=record["check_in_time"],
        )
