"""Server statistics and active-engineer tracking.

Tracks in-memory counters and a sliding window of engineers whose devices
synced recently. No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

RESULT_STATUSES = (
    "created", "already_synced", "updated", "deleted", "conflict", "error", "failed",
)


@dataclass
class EngineerActivity:
    """Tracks a single engineer's recent sync activity."""
    last_seen: float          # time.monotonic() timestamp
    last_action: str          # "push" or "pull"
    operations_sent: int = 0


class SyncStats:
    """Thread-safe sync statistics with active-engineer tracking.

    An engineer is "active" if they pushed or pulled within
    ``active_window_seconds`` (default 120s).
    """

    def __init__(self, active_window_seconds: float = 120.0) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()
        self._active_window = active_window_seconds

        # Counters
        self.pushes_received: int = 0
        self.operations_received: int = 0
        self.pulls_served: int = 0
        self.records_pulled: int = 0
        self.results: dict[str, int] = {status: 0 for status in RESULT_STATUSES}

        # Engineer tracking: engineer_id -> EngineerActivity
        self._engineers: dict[str, EngineerActivity] = {}

    def _touch(self, engineer_id: str, action: str, operations: int, now: float) -> None:
        """Caller holds lock."""
        if engineer_id in self._engineers:
            activity = self._engineers[engineer_id]
            activity.last_seen = now
            activity.last_action = action
            activity.operations_sent += operations
        else:
            self._engineers[engineer_id] = EngineerActivity(
                last_seen=now, last_action=action, operations_sent=operations,
            )

    def record_push(self, engineer_id: str, operations: int) -> None:
        """Record that a push carrying ``operations`` items was received."""
        now = time.monotonic()
        with self._lock:
            self.pushes_received += 1
            self.operations_received += operations
            self._touch(engineer_id, "push", operations, now)

    def record_pull(self, engineer_id: str, records: int) -> None:
        now = time.monotonic()
        with self._lock:
            self.pulls_served += 1
            self.records_pulled += records
            self._touch(engineer_id, "pull", 0, now)

    def record_result(self, status: str) -> None:
        with self._lock:
            self.results[status] = self.results.get(status, 0) + 1

    def _prune_stale_engineers(self, now: float) -> None:
        """Remove engineers not seen within the active window. Caller holds lock."""
        cutoff = now - self._active_window
        stale = [eid for eid, act in self._engineers.items() if act.last_seen < cutoff]
        for eid in stale:
            del self._engineers[eid]

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        now_mono = time.monotonic()
        with self._lock:
            self._prune_stale_engineers(now_mono)

            pushing = sum(1 for act in self._engineers.values() if act.last_action == "push")
            pulling = sum(1 for act in self._engineers.values() if act.last_action == "pull")

            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "pushes_received": self.pushes_received,
                "operations_received": self.operations_received,
                "pulls_served": self.pulls_served,
                "records_pulled": self.records_pulled,
                "results": dict(self.results),
                "active_engineers": {
                    "total": len(self._engineers),
                    "pushing": pushing,
                    "pulling": pulling,
                    "window_seconds": self._active_window,
                },
            }
