import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "REVIEW_STATUS_UPDATE_FAILED": 1,
    "REVIEW_WRITE_FAILED": 5,
    "REVIEW_REASON_FALLBACK": 5,
    "AI_FINANCE_REFINE_FAILED": 10,
}


class AuditAlertTracker:
    """Sliding-window counter that logs an ALERT each time an action hits its threshold."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def _prune(self, action: str, now: float) -> Optional[deque[float]]:
        bucket = self._buckets.get(action)
        if bucket is None:
            return None
        cutoff = now - self._window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if not bucket:
            del self._buckets[action]
            return None
        return bucket

    def record(self, action: str, metadata: Optional[dict] = None) -> None:
        if action not in self._thresholds:
            return
        limit = self._thresholds[action]
        now = time.monotonic()
        with self._lock:
            bucket = self._prune(action, now)
            if bucket is None:
                bucket = deque()
                self._buckets[action] = bucket
            bucket.append(now)
            if len(bucket) % limit == 0:
                logger.warning(
                    "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
                    action,
                    len(bucket),
                    self._window_seconds,
                    metadata or {},
                )

    def count(self, action: str) -> int:
        with self._lock:
            bucket = self._prune(action, time.monotonic())
            return len(bucket) if bucket else 0

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
