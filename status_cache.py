import threading
import time
from typing import Dict, Optional

from config import settings
from job_states import is_terminal

# Fields mirrored from the job record for low-latency polling.
CACHED_FIELDS = (
    "job_id",
    "status",
    "stage",
    "progress",
    "total",
    "message",
    "error",
    "result",
)


class StatusCache:
    """Process-local per-item status mirror.

    Entries are created when a job starts, refreshed on every job write and
    evicted ``ttl`` seconds after the job reaches a terminal state. The job
    record stays the source of truth; a miss means "rebuild from the database".
    """

    def __init__(self, ttl_seconds: float, clock=time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, dict] = {}
        self._expires: Dict[int, float] = {}
        self._lock = threading.Lock()

    def publish(self, item_number: int, fields: dict) -> dict:
        entry = {key: fields.get(key) for key in CACHED_FIELDS}
        entry["item_number"] = item_number
        entry["active"] = not is_terminal(entry["status"]) if entry["status"] else False

        with self._lock:
            self._entries[item_number] = entry
            if entry["active"]:
                self._expires.pop(item_number, None)
            else:
                self._expires[item_number] = self._clock() + self.ttl
        return dict(entry)

    def get(self, item_number: int) -> Optional[dict]:
        with self._lock:
            self._evict_expired()
            entry = self._entries.get(item_number)
            return dict(entry) if entry else None

    def active(self) -> list:
        with self._lock:
            self._evict_expired()
            return [dict(e) for e in self._entries.values() if e["active"]]

    def evict(self, item_number: int) -> None:
        with self._lock:
            self._entries.pop(item_number, None)
            self._expires.pop(item_number, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._expires.clear()

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._clock()
        for item_number in [k for k, at in self._expires.items() if at <= now]:
            self._entries.pop(item_number, None)
            self._expires.pop(item_number, None)


status_cache = StatusCache(settings.status_cache_ttl_seconds)
