"""
Expiring State Store — מפה קצרת-חיים של key → (value, expires_at) בזיכרון התהליך.

משמש לתאום קצר טווח (חלונות rate limit של ה-webhook ושל ה-callback)
במקום dict גלובלי. ניקוי רשומות שפג תוקפן נעשה במפורש דרך sweep(),
וגם get() מתעלם מרשומה שפג תוקפה.
"""
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class ExpiringStateStore(Generic[V]):
    """key → value עם TTL. ה-clock מוזרק כדי שבדיקות ישלטו בזמן."""

    def __init__(
        self,
        default_ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[str, _Entry[V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, key: str, value: V, ttl_seconds: float | None = None) -> float:
        """שמירת ערך. מחזיר את זמן התפוגה (לפי ה-clock של ה-store)."""
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self.sweep()
        expires_at = self._clock() + (ttl_seconds or self._default_ttl)
        self._entries[key] = _Entry(value=value, expires_at=expires_at)
        return expires_at

    def get(self, key: str, default: Any = None) -> V | Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return default
        return entry.value

    def expires_at(self, key: str) -> float | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry.expires_at

    def pop(self, key: str, default: Any = None) -> V | Any:
        value = self.get(key, default)
        self._entries.pop(key, None)
        return value

    def sweep(self) -> int:
        """מחיקת כל הרשומות שפג תוקפן. מחזיר כמה נמחקו."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


class FixedWindowRateLimiter:
    """
    מונה בקשות לכל key בחלון קבוע. החלון נפתח בבקשה הראשונה ונסגר אחרי
    window_seconds; בקשה שחורגת מקבלת כמה שניות נשארו עד סוף החלון.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # key → מספר בקשות בחלון הנוכחי
        self._windows: ExpiringStateStore[int] = ExpiringStateStore(window_seconds, clock=clock)

    def hit(self, key: str) -> tuple[bool, int]:
        """
        רישום בקשה.

        Returns:
            (allowed, retry_after_seconds). retry_after הוא 0 כשמותר.
        """
        count = self._windows.get(key)
        if count is None:
            self._windows.put(key, 1)
            return True, 0

        expires_at = self._windows.expires_at(key) or self._clock()
        remaining = max(expires_at - self._clock(), 0.0)
        if count >= self.max_requests:
            return False, max(1, math.ceil(remaining))

        # שומרים על סוף החלון המקורי
        self._windows.put(key, count + 1, ttl_seconds=remaining or None)
        return True, 0

    def reset(self) -> None:
        self._windows.clear()
