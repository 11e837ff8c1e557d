"""
Failed emergency access tracking

Counts failed emergency access attempts per source IP inside a rolling
window (5 minutes by default). Reaching the threshold logs a security
warning and fires ``on_threshold`` once per window. Nothing is blocked here;
blocking belongs to the rate limiter.

State is in-process only and may be lost on restart.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from periodic import PeriodicTask
from security_logger import SecurityLogger

logger = logging.getLogger(__name__)


@dataclass
class FailedAttemptEntry:
    ip: str
    count: int
    first_attempt: float


class FailedAttemptTracker:
    """Per-IP failed attempt counter with a rolling window"""

    def __init__(
        self,
        window_seconds: float = 300,
        threshold: int = 5,
        security_logger: Optional[SecurityLogger] = None,
        on_threshold: Optional[Callable[[FailedAttemptEntry], None]] = None,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.security_logger = security_logger
        self._on_threshold: List[Callable[[FailedAttemptEntry], None]] = []
        if on_threshold is not None:
            self._on_threshold.append(on_threshold)
        self._clock = clock
        self._entries: Dict[str, FailedAttemptEntry] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask(
            "failed-attempt-purge",
            sweep_interval_seconds or window_seconds,
            self.purge_expired
        )

    def add_threshold_callback(self, callback: Callable[[FailedAttemptEntry], None]) -> None:
        self._on_threshold.append(callback)

    def record_failure(self, ip: str) -> FailedAttemptEntry:
        """Count one failed attempt from ``ip`` and return a snapshot"""
        ip = ip or "unknown"
        now = self._clock()

        with self._lock:
            entry = self._entries.get(ip)
            if entry is None or now - entry.first_attempt >= self.window_seconds:
                entry = FailedAttemptEntry(ip=ip, count=0, first_attempt=now)
                self._entries[ip] = entry
            entry.count += 1
            snapshot = FailedAttemptEntry(ip=entry.ip, count=entry.count, first_attempt=entry.first_attempt)

        if snapshot.count >= self.threshold:
            elapsed = now - snapshot.first_attempt
            logger.warning("SECURITY: %d failed emergency access attempts from %s in %ds",
                           snapshot.count, ip, round(elapsed))
            if self.security_logger is not None:
                self.security_logger.log_failed_access_pattern(ip, snapshot.count, elapsed)
            if snapshot.count == self.threshold:
                self._notify(snapshot)

        return snapshot

    def _notify(self, entry: FailedAttemptEntry) -> None:
        for callback in self._on_threshold:
            try:
                callback(entry)
            except Exception:
                logger.exception("Failed-attempt threshold callback raised")

    def get(self, ip: str) -> Optional[FailedAttemptEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(ip)
            if entry is None or now - entry.first_attempt >= self.window_seconds:
                return None
            return FailedAttemptEntry(ip=entry.ip, count=entry.count, first_attempt=entry.first_attempt)

    def purge_expired(self) -> int:
        """Remove entries whose window has closed"""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            expired = [ip for ip, entry in self._entries.items() if entry.first_attempt <= cutoff]
            for ip in expired:
                del self._entries[ip]
        if expired:
            logger.debug("Purged %d failed-attempt entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
