import threading
from contextlib import contextmanager


class InFlightTracker:
    """
    Process-wide markers for mutating actions that have not resolved yet,
    keyed by (action, user, item). A second submission for the same key is
    refused until the first one finishes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending = set()

    @contextmanager
    def claim(self, action, user_id, item_id):
        key = (action, user_id, item_id)
        with self._lock:
            claimed = key not in self._pending
            if claimed:
                self._pending.add(key)
        try:
            yield claimed
        finally:
            if claimed:
                with self._lock:
                    self._pending.discard(key)

    def is_pending(self, action, user_id, item_id):
        with self._lock:
            return (action, user_id, item_id) in self._pending

    def pending_items(self, action, user_id):
        with self._lock:
            return {item for (a, u, item) in self._pending if a == action and u == user_id}
