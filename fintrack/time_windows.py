from __future__ import annotations

import calendar
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fintrack.errors import ValidationError

UTC = timezone.utc
DEFAULT_TIME_ZONE = "UTC"
TIME_FILTERS = ("today", "week", "month", "last7", "last30")
DEFAULT_FILTER = "month"
CUSTOM_FILTER = "custom"

# Length in local days of one trend period for the non-month filters.
TREND_PERIOD_DAYS = {
    "today": 1,
    "week": 7,
    "last7": 7,
    "last30": 30,
}
TREND_PERIOD_COUNT = 3
OFFSET_PASSES = 3

_DATE_INPUT = re.compile(r"^\d{4}-\d{2}-\d{2}$")
ONE_MS = timedelta(milliseconds=1)


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive ``[start, end]`` range of UTC instants."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass(frozen=True)
class ResolvedWindow:
    start: datetime
    end: datetime
    filter: str
    is_custom: bool

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start=self.start, end=self.end)


def resolve_timezone(name: str | None) -> str:
    if not name:
        return DEFAULT_TIME_ZONE
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return DEFAULT_TIME_ZONE
    return name


def normalize_filter(value: str | None) -> str:
    if value in TIME_FILTERS:
        return value
    return DEFAULT_FILTER


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def zoned_to_utc(
    year: int,
    month: int,
    day: int,
    hour: int,
    minute: int,
    second: int,
    millisecond: int,
    time_zone: str,
) -> datetime:
    """Convert a wall-clock time in ``time_zone`` to a UTC instant.

    The zone offset is looked up at the candidate instant and the guess is
    refined a few times, which settles on the right side of a DST change.
    """
    zone = ZoneInfo(resolve_timezone(time_zone))
    base = datetime(year, month, day, hour, minute, second, millisecond * 1000, tzinfo=UTC)
    candidate = base
    for _ in range(OFFSET_PASSES):
        offset = candidate.astimezone(zone).utcoffset() or timedelta(0)
        candidate = base - offset
    return candidate


def local_date(instant: datetime, time_zone: str) -> date:
    zone = ZoneInfo(resolve_timezone(time_zone))
    return ensure_utc(instant).astimezone(zone).date()


def local_midnight(value: date, time_zone: str) -> datetime:
    return zoned_to_utc(value.year, value.month, value.day, 0, 0, 0, 0, time_zone)


def local_end_of_day(value: date, time_zone: str) -> datetime:
    return zoned_to_utc(value.year, value.month, value.day, 23, 59, 59, 999, time_zone)


def parse_date_input(
    value: str | None, time_zone: str, end_of_day: bool = False
) -> datetime | None:
    if not value or not _DATE_INPUT.match(value):
        return None
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None
    if end_of_day:
        return local_end_of_day(parsed, time_zone)
    return local_midnight(parsed, time_zone)


def resolve_window(
    filter_name: str, time_zone: str, now: datetime | None = None
) -> TimeWindow:
    end = ensure_utc(now) if now is not None else utc_now()
    today = local_date(end, time_zone)
    if filter_name == "today":
        start_day = today
    elif filter_name == "week":
        start_day = today - timedelta(days=today.weekday())
    elif filter_name == "month":
        start_day = today.replace(day=1)
    elif filter_name == "last7":
        start_day = today - timedelta(days=6)
    elif filter_name == "last30":
        start_day = today - timedelta(days=29)
    else:
        raise ValidationError(f"Invalid time filter: {filter_name}")
    return TimeWindow(start=local_midnight(start_day, time_zone), end=end)


def resolve_custom_window(
    from_value: str | None, to_value: str | None, time_zone: str
) -> TimeWindow | None:
    start = parse_date_input(from_value, time_zone)
    end = parse_date_input(to_value, time_zone, end_of_day=True)
    if start is None or end is None or start > end:
        return None
    return TimeWindow(start=start, end=end)


def resolve_dashboard_window(
    filter_name: str | None,
    from_value: str | None,
    to_value: str | None,
    time_zone: str,
    now: datetime | None = None,
) -> ResolvedWindow:
    custom = resolve_custom_window(from_value, to_value, time_zone)
    if custom is not None:
        return ResolvedWindow(
            start=custom.start, end=custom.end, filter=CUSTOM_FILTER, is_custom=True
        )
    normalized = normalize_filter(filter_name)
    preset = resolve_window(normalized, time_zone, now=now)
    return ResolvedWindow(start=preset.start, end=preset.end, filter=normalized, is_custom=False)


def previous_window(start: datetime, end: datetime) -> TimeWindow:
    previous_end = start - ONE_MS
    return TimeWindow(start=previous_end - (end - start), end=previous_end)


def window_day_count(start: datetime, end: datetime, time_zone: str) -> int:
    span = (local_date(end, time_zone) - local_date(start, time_zone)).days + 1
    return max(1, span)


def bucket_window(
    start: datetime,
    end: datetime,
    target_bucket_count: int,
    time_zone: str = DEFAULT_TIME_ZONE,
) -> list[TimeWindow]:
    if target_bucket_count <= 0:
        raise ValidationError("target_bucket_count must be greater than zero.")
    total_days = window_day_count(start, end, time_zone)
    chunk_size = max(1, math.ceil(total_days / target_bucket_count))
    chunk_count = math.ceil(total_days / chunk_size)
    first_day = local_date(start, time_zone)
    end = ensure_utc(end)

    buckets: list[TimeWindow] = []
    for index in range(chunk_count):
        chunk_first = first_day + timedelta(days=index * chunk_size)
        chunk_last = chunk_first + timedelta(days=chunk_size - 1)
        chunk_end = local_end_of_day(chunk_last, time_zone)
        if chunk_end > end:
            chunk_end = end
        buckets.append(TimeWindow(start=local_midnight(chunk_first, time_zone), end=chunk_end))
    return buckets


def cycle_target_points(total_days: int) -> int:
    if total_days <= 7:
        return total_days
    if total_days <= 20:
        return 6
    return 8


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_window(month_start: date, time_zone: str) -> TimeWindow:
    last_day = calendar.monthrange(month_start.year, month_start.month)[1]
    return TimeWindow(
        start=local_midnight(month_start.replace(day=1), time_zone),
        end=local_end_of_day(month_start.replace(day=last_day), time_zone),
    )


def month_starts(now: datetime, time_zone: str, count: int = 4) -> list[date]:
    current = local_date(now, time_zone).replace(day=1)
    return [shift_month(current, index - (count - 1)) for index in range(count)]


def trend_periods(filter_name: str, window_start: datetime, time_zone: str) -> list[TimeWindow]:
    """Calendar-aligned periods for a named filter, oldest first, ending with the current one."""
    base = local_date(window_start, time_zone)
    if filter_name == "month":
        return [
            month_window(shift_month(base, -offset), time_zone)
            for offset in range(TREND_PERIOD_COUNT - 1, -1, -1)
        ]
    try:
        period_days = TREND_PERIOD_DAYS[filter_name]
    except KeyError as exc:
        raise ValidationError(f"Invalid time filter: {filter_name}") from exc

    periods: list[TimeWindow] = []
    for offset in range(TREND_PERIOD_COUNT - 1, -1, -1):
        first_day = base - timedelta(days=offset * period_days)
        last_day = first_day + timedelta(days=period_days - 1)
        periods.append(
            TimeWindow(
                start=local_midnight(first_day, time_zone),
                end=local_end_of_day(last_day, time_zone),
            )
        )
    return periods
