"""Wall-clock boundary counting for refills and resets.

Every function here is pure. Timestamps are converted to local wall-clock time
(``tz`` or the system zone) and the boundaries are counted on calendar days, so
a daylight-saving shift never adds or loses a reset. Counts are computed from
date ordinals, which keeps a gap of several months as cheap as a gap of one
hour.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import config


def _check_hour(hour: int) -> int:
    value = int(hour)
    if not 0 <= value <= 23:
        raise ValueError(f"Hour of day out of range: {hour}")
    return value


@dataclass(frozen=True)
class DailySchedule:
    """One boundary per calendar day at ``hour``."""

    hour: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "hour", _check_hour(self.hour))


@dataclass(frozen=True)
class WeeklySchedule:
    """One boundary per week on ``weekday`` (Monday=0) at ``hour``."""

    weekday: int
    hour: int

    def __post_init__(self) -> None:
        weekday = int(self.weekday)
        if not 0 <= weekday <= 6:
            raise ValueError(f"Weekday out of range: {self.weekday}")
        object.__setattr__(self, "weekday", weekday)
        object.__setattr__(self, "hour", _check_hour(self.hour))


@dataclass(frozen=True)
class HourlySchedule:
    """Several boundaries per day, one at each listed hour."""

    hours: Tuple[int, ...]

    def __post_init__(self) -> None:
        hours = tuple(sorted({_check_hour(hour) for hour in self.hours}))
        if not hours:
            raise ValueError("An hourly schedule needs at least one hour")
        object.__setattr__(self, "hours", hours)


Schedule = Union[DailySchedule, WeeklySchedule, HourlySchedule]


DAILY_RESET = DailySchedule(config.DAILY_RESET_HOUR)
WEEKLY_RESET = WeeklySchedule(config.WEEKLY_RESET_WEEKDAY, config.WEEKLY_RESET_HOUR)
ENERGY_TICKS = HourlySchedule(config.ENERGY_TICK_HOURS)
EXPEDITION_TICKS = HourlySchedule(config.EXPEDITION_SCHEDULE_HOURS)
TRANSCENDENCE_TICKS = HourlySchedule(config.TRANSCENDENCE_SCHEDULE_HOURS)


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Return the zone called ``name`` or ``None`` for system local time."""

    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def to_wall_clock(moment: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Return the naive local wall-clock reading of ``moment``.

    Naive datetimes are assumed to already be wall-clock readings.
    """

    if moment.tzinfo is None:
        return moment
    local = moment.astimezone(tz) if tz is not None else moment.astimezone()
    return local.replace(tzinfo=None)


def _from_wall_clock(wall: datetime, tz: Optional[tzinfo]) -> datetime:
    if tz is not None:
        return wall.replace(tzinfo=tz)
    return wall.astimezone()


# ---------------------------------------------------------------------------
# Counting


def _first_day_after(wall: datetime, hour: int) -> date:
    day = wall.date()
    if wall >= datetime.combine(day, time(hour)):
        day += timedelta(days=1)
    return day


def _last_day_until(wall: datetime, hour: int) -> date:
    day = wall.date()
    if wall < datetime.combine(day, time(hour)):
        day -= timedelta(days=1)
    return day


def _count_days(first: date, last: date) -> int:
    return max(0, (last - first).days + 1)


def _count_weekdays(first: date, last: date, weekday: int) -> int:
    if last < first:
        return 0
    # date(1, 1, 1) has ordinal 1 and is a Monday.
    residue = (weekday + 1) % 7
    return (last.toordinal() - residue) // 7 - (first.toordinal() - 1 - residue) // 7


def count_boundaries(
    previous: datetime,
    now: datetime,
    schedule: Schedule,
    tz: Optional[tzinfo] = None,
) -> int:
    """Count the boundaries of ``schedule`` inside ``(previous, now]``."""

    if now <= previous:
        return 0
    start = to_wall_clock(previous, tz)
    end = to_wall_clock(now, tz)

    if isinstance(schedule, DailySchedule):
        return _count_days(
            _first_day_after(start, schedule.hour),
            _last_day_until(end, schedule.hour),
        )
    if isinstance(schedule, WeeklySchedule):
        return _count_weekdays(
            _first_day_after(start, schedule.hour),
            _last_day_until(end, schedule.hour),
            schedule.weekday,
        )
    if isinstance(schedule, HourlySchedule):
        return sum(
            _count_days(_first_day_after(start, hour), _last_day_until(end, hour))
            for hour in schedule.hours
        )
    raise TypeError(f"Unsupported schedule: {schedule!r}")


# ---------------------------------------------------------------------------
# Next boundary helpers used by the UI countdowns


def _next_daily_wall(wall: datetime, hour: int) -> datetime:
    candidate = datetime.combine(wall.date(), time(hour))
    if candidate <= wall:
        candidate += timedelta(days=1)
    return candidate


def _next_weekly_wall(wall: datetime, weekday: int, hour: int) -> datetime:
    days_ahead = (weekday - wall.weekday()) % 7
    candidate = datetime.combine(wall.date() + timedelta(days=days_ahead), time(hour))
    if candidate <= wall:
        candidate += timedelta(days=7)
    return candidate


def next_boundary(now: datetime, schedule: Schedule, tz: Optional[tzinfo] = None) -> datetime:
    """Return the first boundary of ``schedule`` strictly after ``now``."""

    wall = to_wall_clock(now, tz)
    if isinstance(schedule, DailySchedule):
        upcoming = _next_daily_wall(wall, schedule.hour)
    elif isinstance(schedule, WeeklySchedule):
        upcoming = _next_weekly_wall(wall, schedule.weekday, schedule.hour)
    elif isinstance(schedule, HourlySchedule):
        upcoming = min(_next_daily_wall(wall, hour) for hour in schedule.hours)
    else:
        raise TypeError(f"Unsupported schedule: {schedule!r}")
    return _from_wall_clock(upcoming, tz)


def next_corridor_refresh(
    now: datetime,
    tz: Optional[tzinfo] = None,
    weekdays: Iterable[int] = config.CORRIDOR_REFRESH_WEEKDAYS,
    hour: int = config.CORRIDOR_REFRESH_HOUR,
) -> datetime:
    """Return the next abyss-corridor refresh shared by every character."""

    return min(
        next_boundary(now, WeeklySchedule(weekday, hour), tz) for weekday in weekdays
    )
