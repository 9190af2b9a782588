"""
Calendar-aligned usage windows.

All windows are half-open UTC intervals ``[period_start, period_end)``.
Offsets are computed by shifting the current window's boundaries by whole
units, never by re-deriving a shifted "now".
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

# Start of the standing (non-resetting) window used by features with no period
STANDING_PERIOD_START = datetime(1970, 1, 1, tzinfo=timezone.utc)


class UsagePeriod(Enum):
    """Granularity a usage quota is measured over."""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @classmethod
    def parse(cls, value: Union[str, "UsagePeriod", None]) -> Optional["UsagePeriod"]:
        """Parse a period name case-insensitively; ``None`` stays ``None``."""
        if value is None or isinstance(value, UsagePeriod):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            valid = [p.value.lower() for p in cls]
            raise ValueError(f"Unknown usage period {value!r}, expected one of: {valid}")


@dataclass(frozen=True)
class UsageWindow:
    """Half-open UTC interval. ``period_end`` of ``None`` means unbounded."""
    period_start: datetime
    period_end: Optional[datetime]

    @property
    def is_standing(self) -> bool:
        return self.period_end is None

    def contains(self, instant: datetime) -> bool:
        instant = _utc(instant)
        if instant < self.period_start:
            return False
        return self.period_end is None or instant < self.period_end


STANDING_WINDOW = UsageWindow(period_start=STANDING_PERIOD_START, period_end=None)


def _utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _midnight(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _month_start(year: int, month: int) -> datetime:
    """First of a month; ``month`` may run outside 1..12 and carries into the year."""
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def get_window(period: Optional[UsagePeriod], now: Optional[datetime] = None) -> UsageWindow:
    """Return the window containing ``now`` for the given period.

    Args:
        period: Window granularity, or ``None`` for a standing limit
        now: Reference instant (defaults to the current UTC time)

    Returns:
        UsageWindow for the active period
    """
    if period is None:
        return STANDING_WINDOW

    now = _utc(now)
    if period is UsagePeriod.DAILY:
        start = _midnight(now)
        return UsageWindow(start, start + timedelta(days=1))
    if period is UsagePeriod.WEEKLY:
        # ISO week: Monday is weekday() == 0
        start = _midnight(now) - timedelta(days=now.weekday())
        return UsageWindow(start, start + timedelta(days=7))
    if period is UsagePeriod.MONTHLY:
        return UsageWindow(
            _month_start(now.year, now.month),
            _month_start(now.year, now.month + 1),
        )
    if period is UsagePeriod.YEARLY:
        return UsageWindow(
            datetime(now.year, 1, 1, tzinfo=timezone.utc),
            datetime(now.year + 1, 1, 1, tzinfo=timezone.utc),
        )
    raise ValueError(f"Unsupported usage period: {period}")


def get_window_with_offset(
    period: Optional[UsagePeriod],
    periods_back: int,
    now: Optional[datetime] = None
) -> UsageWindow:
    """Return the window ``periods_back`` whole periods before the current one.

    ``periods_back`` is floored and clamped to zero; zero returns the current
    window. The standing window has no predecessors and is returned as is.
    """
    back = max(0, int(periods_back or 0))
    current = get_window(period, now)
    if back == 0 or period is None:
        return current

    if period is UsagePeriod.DAILY:
        shift = timedelta(days=back)
        return UsageWindow(current.period_start - shift, current.period_end - shift)
    if period is UsagePeriod.WEEKLY:
        shift = timedelta(days=7 * back)
        return UsageWindow(current.period_start - shift, current.period_end - shift)
    if period is UsagePeriod.MONTHLY:
        year, month = current.period_start.year, current.period_start.month
        return UsageWindow(
            _month_start(year, month - back),
            _month_start(year, month - back + 1),
        )
    # YEARLY
    year = current.period_start.year
    return UsageWindow(
        datetime(year - back, 1, 1, tzinfo=timezone.utc),
        datetime(year - back + 1, 1, 1, tzinfo=timezone.utc),
    )
