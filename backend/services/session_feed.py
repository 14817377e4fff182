import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

FeedListener = Callable[[str], None]


class SessionFeed:
    """
    In-process change feed keyed by session id.

    Writers call `publish(session_id)` after committing a change to the
    session (ledger append or end). Listeners run synchronously on the
    publishing thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: dict[str, list[FeedListener]] = {}

    def subscribe(self, session_id: str, listener: FeedListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(session_id, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(session_id)
                if not listeners or listener not in listeners:
                    return
                listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(session_id, None)

        return unsubscribe

    def publish(self, session_id: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get(session_id, ()))
        for listener in listeners:
            try:
                listener(session_id)
            except Exception:
                logger.exception("session feed listener failed for %s", session_id)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(session_id, ()))


SESSION_FEED = SessionFeed()
