"""
In-memory rate-limit and ban state.

Each store owns its map and a lock; every read-modify-write happens inside
the lock and no lock is held across an ``await``, so the handlers can share
one instance per process.
"""
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from audit_proxy.config import SiteConfig

RATE_LIMIT_WINDOW_SECONDS = 60.0

Clock = Callable[[], float]


@dataclass
class RateLimitCounter:
    count: int
    window_expiry: float


class RateLimiter:
    """Fixed-window request counter, one window per upstream origin."""

    def __init__(self, window_seconds: float = RATE_LIMIT_WINDOW_SECONDS, clock: Clock = time.time):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, RateLimitCounter] = {}

    def try_admit(self, origin: str, limit: int) -> bool:
        if limit == 0:
            return True

        with self._lock:
            now = self._clock()
            counter = self._counters.get(origin)
            if counter is None or counter.window_expiry <= now:
                self._counters[origin] = RateLimitCounter(count=1, window_expiry=now + self.window_seconds)
                return True
            if counter.count < limit:
                counter.count += 1
                return True
            return False

    def get(self, origin: str) -> Optional[RateLimitCounter]:
        with self._lock:
            counter = self._counters.get(origin)
            if counter is None or counter.window_expiry <= self._clock():
                return None
            return RateLimitCounter(counter.count, counter.window_expiry)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, c in self._counters.items() if c.window_expiry <= now]
            for k in expired:
                del self._counters[k]
            return len(expired)

    def __len__(self) -> int:
        return len(self._counters)


@dataclass
class BanRecord:
    violation_count: int
    first_violation_time: float
    window_seconds: float
    banned_until: Optional[float] = None

    def is_banned(self, now: float) -> bool:
        return self.banned_until is not None and self.banned_until > now

    def ban_expired(self, now: float) -> bool:
        return self.banned_until is not None and self.banned_until <= now

    def is_stale(self, now: float) -> bool:
        return self.banned_until is None and (now - self.first_violation_time) > self.window_seconds


BanKey = Tuple[str, str]


class BanTracker:
    """
    Violation counting and temporary bans per (origin, credential).

    A key with no record is clean; a record without ``banned_until`` is a
    warning; a record whose ``banned_until`` lies in the future is a ban.
    Expired bans and stale warnings are dropped, either lazily on the next
    violation or by ``sweep``.
    """

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[BanKey, BanRecord] = {}

    def check_ban(self, origin: str, credential: str, site: SiteConfig) -> Tuple[bool, int]:
        """
        Returns (banned, remaining_minutes). Never mutates state.
        """
        if site.max_violations == 0:
            return False, 0

        with self._lock:
            now = self._clock()
            record = self._records.get((origin, credential))
            if record is None or not record.is_banned(now):
                return False, 0
            return True, max(1, math.ceil((record.banned_until - now) / 60.0))

    def record_violation(self, origin: str, credential: str, site: SiteConfig) -> Tuple[bool, int]:
        """
        Count one confirmed violation.

        Returns (banned_now, violation_count_in_window).
        """
        if site.max_violations == 0:
            return False, 0

        key = (origin, credential)
        window_seconds = site.violation_window_minutes * 60.0

        with self._lock:
            now = self._clock()
            record = self._records.get(key)

            if record is not None and record.ban_expired(now):
                record = None
            if record is not None and not record.is_banned(now) and (now - record.first_violation_time) > window_seconds:
                record = None

            if record is None:
                record = BanRecord(violation_count=1, first_violation_time=now, window_seconds=window_seconds)
                self._records[key] = record
            else:
                record.violation_count += 1

            if record.banned_until is None and record.violation_count >= site.max_violations:
                record.banned_until = now + site.ban_duration_minutes * 60.0

            return record.is_banned(now), record.violation_count

    def get(self, origin: str, credential: str) -> Optional[BanRecord]:
        with self._lock:
            record = self._records.get((origin, credential))
            if record is None:
                return None
            return BanRecord(record.violation_count, record.first_violation_time,
                             record.window_seconds, record.banned_until)

    def sweep(self) -> int:
        # the timestamp is read under the lock so a record refreshed by a
        # concurrent violation is compared against its new state
        with self._lock:
            now = self._clock()
            dead = [k for k, r in self._records.items() if r.ban_expired(now) or r.is_stale(now)]
            for k in dead:
                del self._records[k]
            return len(dead)

    def __len__(self) -> int:
        return len(self._records)
