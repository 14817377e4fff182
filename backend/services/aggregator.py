import logging
import threading
from collections.abc import Callable
from typing import Literal, TypedDict

from backend.services.ledger import AttendanceLedger
from database.db import CheckInRecord

logger = logging.getLogger(__name__)

SessionStatus = Literal["active", "ended", "not_found"]


class SessionView(TypedDict):
    session_id: str
    found: bool
    subject: str | None
    active: bool
    status: SessionStatus
    count: int
    students: list[CheckInRecord]


ViewListener = Callable[[SessionView], None]


class SessionAggregator:
    """
    Live, read-only view over one session: roster and active/ended status.

    Both facts come from the same feed subscription, so a listener never sees
    a roster that is newer than the status or the other way around.

    Listeners run under the aggregator lock, one view at a time and in the
    order the views were built, so they must return quickly.
    """

    def __init__(self, session_id: str, ledger: AttendanceLedger):
        self.session_id = session_id
        self.ledger = ledger
        self._lock = threading.RLock()
        self._listeners: list[ViewListener] = []
        self._unsubscribe_feed: Callable[[], None] | None = None
        self._view: SessionView | None = None

    def _build_view(self) -> SessionView:
        session = self.ledger.get_session(self.session_id)
        if session is None:
            return {
                "session_id": self.session_id,
                "found": False,
                "subject": None,
                "active": False,
                "status": "not_found",
                "count": 0,
                "students": [],
            }

        students = self.ledger.list_check_ins(self.session_id)
        return {
            "session_id": self.session_id,
            "found": True,
            "subject": session["subject"],
            "active": session["active"],
            "status": "active" if session["active"] else "ended",
            "count": len({s["student_id"] for s in students}),
            "students": students,
        }

    def _deliver(self, listener: ViewListener, view: SessionView) -> None:
        try:
            listener(view)
        except Exception:
            logger.exception("session view listener failed for %s", self.session_id)

    def _on_change(self, _session_id: str) -> None:
        # Build and delivery share the lock so listeners see views in build order.
        with self._lock:
            self._view = self._build_view()
            view = self._view
            for listener in list(self._listeners):
                self._deliver(listener, view)

    def snapshot(self) -> SessionView:
        with self._lock:
            if self._view is None or self._unsubscribe_feed is None:
                self._view = self._build_view()
            return self._view

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """
        Register a listener; it is called at once with the current view and
        again after every change. Returns the unsubscribe callable.
        """
        with self._lock:
            if self._unsubscribe_feed is None:
                self._unsubscribe_feed = self.ledger.feed.subscribe(self.session_id, self._on_change)
                self._view = self._build_view()
            self._listeners.append(listener)
            self._deliver(listener, self._view)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
                if not self._listeners:
                    self.close()

        return unsubscribe

    def close(self) -> None:
        with self._lock:
            self._listeners.clear()
            if self._unsubscribe_feed is not None:
                self._unsubscribe_feed()
                self._unsubscribe_feed = None
