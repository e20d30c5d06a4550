"""Short-lived cache of triage pages keyed by (limit, page token)."""
import threading
import time


class TriageCache:
    def __init__(self, ttl_seconds: float = 30, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[int, str], tuple[float, object]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(limit: int, page_token: str | None) -> tuple[int, str]:
        return (limit, page_token or "")

    def get(self, limit: int, page_token: str | None = None):
        key = self.key(limit, page_token)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, limit: int, page_token: str | None, value) -> None:
        with self._lock:
            self._entries[self.key(limit, page_token)] = (self._clock() + self.ttl_seconds, value)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
