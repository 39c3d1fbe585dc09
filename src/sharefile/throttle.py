from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import BLOCK_DURATION, MAX_ATTEMPTS, SWEEP_INTERVAL_SECONDS, WINDOW_DURATION

logger = logging.getLogger(__name__)


@dataclass
class ThrottleEntry:
    attempts: int
    first_attempt: float
    blocked_until: Optional[float] = None


@dataclass
class ThrottleCheck:
    allowed: bool
    remaining_seconds: Optional[int] = None


@dataclass
class FailureResult:
    blocked: bool
    remaining_attempts: Optional[int] = None


@dataclass
class ThrottleInfo:
    attempts: int
    is_blocked: bool
    blocked_until: Optional[datetime] = None

    def as_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "isBlocked": self.is_blocked,
            "blockedUntil": self.blocked_until.isoformat() if self.blocked_until else None,
        }


class AccessThrottle:
    """Failed-password counter per (client, file) pair.

    Entries live in process memory only. A restart forgets every count, which
    resets protection but loses no history; the audit log is authoritative.

    A failure arriving after the counting window has lapsed restarts the count
    at 1 instead of decaying the old one. This bounds how long a client can be
    locked out; it also means a client pacing failures at the window boundary
    is never blocked.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        block_duration: timedelta = BLOCK_DURATION,
        window: timedelta = WINDOW_DURATION,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.block_seconds = block_duration.total_seconds()
        self.window_seconds = window.total_seconds()
        self._clock = clock
        self._entries: dict[tuple[str, str], ThrottleEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _key(client_id: str, resource_id: str) -> tuple[str, str]:
        return (client_id, resource_id)

    def check(self, client_id: str, resource_id: str) -> ThrottleCheck:
        key = self._key(client_id, resource_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.blocked_until is None:
                return ThrottleCheck(allowed=True)
            if now < entry.blocked_until:
                return ThrottleCheck(
                    allowed=False,
                    remaining_seconds=math.ceil(entry.blocked_until - now),
                )
            del self._entries[key]
        return ThrottleCheck(allowed=True)

    def record_failure(self, client_id: str, resource_id: str) -> FailureResult:
        key = self._key(client_id, resource_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._is_stale(entry, now):
                self._entries[key] = ThrottleEntry(attempts=1, first_attempt=now)
                return self._after_count(self._entries[key], now)

            if entry.blocked_until is not None:
                # Raced past check() while another request set the block.
                entry.attempts += 1
                return FailureResult(blocked=True)

            entry.attempts += 1
            return self._after_count(entry, now)

    def _after_count(self, entry: ThrottleEntry, now: float) -> FailureResult:
        if entry.attempts >= self.max_attempts:
            entry.blocked_until = now + self.block_seconds
            logger.warning("throttle block set attempts=%s", entry.attempts)
            return FailureResult(blocked=True)
        return FailureResult(blocked=False, remaining_attempts=self.max_attempts - entry.attempts)

    def clear(self, client_id: str, resource_id: str) -> None:
        with self._lock:
            self._entries.pop(self._key(client_id, resource_id), None)

    def inspect(self, client_id: str, resource_id: str) -> ThrottleInfo:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(self._key(client_id, resource_id))
            if entry is None:
                return ThrottleInfo(attempts=0, is_blocked=False)
            attempts = entry.attempts
            blocked_until = entry.blocked_until

        return ThrottleInfo(
            attempts=attempts,
            is_blocked=blocked_until is not None and now < blocked_until,
            blocked_until=(
                datetime.fromtimestamp(blocked_until, tz=timezone.utc) if blocked_until is not None else None
            ),
        )

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if self._is_stale(entry, now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def _is_stale(self, entry: ThrottleEntry, now: float) -> bool:
        if entry.blocked_until is not None:
            return entry.blocked_until <= now
        return now - entry.first_attempt > self.window_seconds


class ThrottleSweeper:
    """Background thread that periodically drops stale throttle entries."""

    def __init__(self, throttle: AccessThrottle, interval_seconds: float = SWEEP_INTERVAL_SECONDS) -> None:
        self.throttle = throttle
        self.interval_seconds = max(1.0, float(interval_seconds))
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="throttle-sweeper", daemon=True)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        if not self._thread.is_alive() and not self._stop_event.is_set():
            self._thread.start()

    def stop(self, wait: bool = True) -> None:
        self._stop_event.set()
        if wait and self._thread.is_alive():
            self._thread.join()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                removed = self.throttle.sweep()
            except Exception:
                logger.exception("throttle sweep failed")
                continue
            if removed:
                logger.debug("throttle sweep removed=%s", removed)
