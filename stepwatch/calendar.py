"""Business-hours arithmetic over a weekly calendar."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Iterator, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import CalendarConfig
from .utils.timeutil import ensure_aware

# upper bound on calendar days walked when searching for a deadline
_MAX_DAYS = 3660


class BusinessCalendar:
    """Weekly calendar of business windows in a fixed timezone.

    ``workdays`` uses ISO weekday numbers (Monday=1). Each business day has a
    single window ``[open, close)`` in local time. Holidays are skipped
    entirely.
    """

    def __init__(
        self,
        tz: str = "UTC",
        workdays: Iterable[int] = (1, 2, 3, 4, 5),
        open: time = time(9, 0),
        close: time = time(17, 0),
        holidays: Iterable[date] = (),
    ) -> None:
        if open >= close:
            raise ValueError("calendar open time must be before close time")
        self.tz = ZoneInfo(tz)
        self.workdays = frozenset(workdays)
        if not self.workdays:
            raise ValueError("calendar needs at least one workday")
        self.open = open
        self.close = close
        self.holidays = frozenset(holidays)

    @classmethod
    def from_config(cls, config: CalendarConfig) -> "BusinessCalendar":
        return cls(
            tz=config.timezone,
            workdays=config.workdays,
            open=config.open,
            close=config.close,
            holidays=config.holidays,
        )

    # ------------------------------------------------------------------
    def is_business_day(self, day: date) -> bool:
        return day.isoweekday() in self.workdays and day not in self.holidays

    def is_business_time(self, instant: datetime) -> bool:
        """Return ``True`` when ``instant`` falls inside a business window."""
        local = ensure_aware(instant).astimezone(self.tz)
        return (
            self.is_business_day(local.date())
            and self.open <= local.time() < self.close
        )

    def window(self, day: date) -> Optional[Tuple[datetime, datetime]]:
        """UTC bounds of the business window on ``day``, if it has one."""
        if not self.is_business_day(day):
            return None
        start = datetime.combine(day, self.open, tzinfo=self.tz)
        end = datetime.combine(day, self.close, tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def _windows_from(
        self, instant: datetime, last_day: Optional[date] = None
    ) -> Iterator[Tuple[datetime, datetime]]:
        """Business windows from the local day of ``instant`` onwards.

        Without ``last_day`` the walk stops after ``_MAX_DAYS`` and raises.
        """
        day = instant.astimezone(self.tz).date()
        stop = last_day if last_day is not None else day + timedelta(days=_MAX_DAYS - 1)
        while day <= stop:
            bounds = self.window(day)
            if bounds is not None:
                yield bounds
            day += timedelta(days=1)
        if last_day is None:
            raise ValueError("no business time found within calendar search horizon")

    # ------------------------------------------------------------------
    def due_at(self, start: datetime, sla_hours: float) -> datetime:
        """Instant at which ``sla_hours`` of business time have elapsed.

        The result is returned in the timezone of ``start``. Time outside
        business windows does not count. A deadline that is used up exactly
        at closing time lands on the closing instant.
        """

        start = ensure_aware(start)
        remaining = timedelta(minutes=round(sla_hours * 60))
        if remaining <= timedelta(0):
            return start

        cursor = start.astimezone(timezone.utc)
        for window_start, window_end in self._windows_from(cursor):
            if cursor >= window_end:
                continue
            cursor = max(cursor, window_start)
            available = window_end - cursor
            if remaining <= available:
                return (cursor + remaining).astimezone(start.tzinfo)
            remaining -= available
            cursor = window_end
        raise AssertionError("unreachable")  # pragma: no cover

    def elapsed_business_minutes(self, start: datetime, end: datetime) -> int:
        """Whole business minutes between ``start`` and ``end``."""
        start = ensure_aware(start).astimezone(timezone.utc)
        end = ensure_aware(end).astimezone(timezone.utc)
        if end <= start:
            return 0

        total = timedelta(0)
        for window_start, window_end in self._windows_from(
            start, end.astimezone(self.tz).date()
        ):
            if window_start >= end:
                break
            lo = max(start, window_start)
            hi = min(end, window_end)
            if hi > lo:
                total += hi - lo
        return int(total.total_seconds() // 60)


__all__ = ["BusinessCalendar"]
