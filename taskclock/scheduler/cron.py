"""Cron expressions — parsing, validation, description, and next-trigger times.

Standard 5-field syntax: minute, hour, day-of-month, month, day-of-week.
Each field accepts ``*``, single values, ``a-b`` ranges, ``,`` lists and
``/n`` steps. Months and weekdays also accept three-letter names. Day-of-week
7 is Sunday, same as 0.

When both day-of-month and day-of-week are restricted (neither starts with
``*``), a date matches if *either* matches, as in Vixie cron.

Time arithmetic (DST gaps, month lengths, leap years) is delegated to
APScheduler's ``CronTrigger``. The expression is normalised into explicit
value lists first so APScheduler's own field conventions never leak through.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from taskclock.config import settings

logger = logging.getLogger(__name__)

MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}
WEEKDAY_NAMES = {
    name: index for index, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

# Cron weekday number (0 = Sunday) -> APScheduler weekday name
_APS_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


class CronParseError(ValueError):
    """Raised for a syntactically or semantically invalid cron expression."""


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression, each field expanded into its allowed values."""

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    @property
    def uses_or_semantics(self) -> bool:
        return self.day_restricted and self.weekday_restricted

    def matches(self, dt: datetime) -> bool:
        """Return True if *dt* (to the minute) satisfies every field."""
        if dt.minute not in self.minutes or dt.hour not in self.hours:
            return False
        if dt.month not in self.months:
            return False
        day_ok = dt.day in self.days
        weekday_ok = (dt.weekday() + 1) % 7 in self.weekdays
        if self.uses_or_semantics:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def can_fire(self) -> bool:
        """False when no calendar date can ever satisfy the date fields."""
        if self.uses_or_semantics:
            return True
        # Leap years supply Feb 29 and every (month, day) pair cycles
        # through all weekdays, so only the day/month pairing can be empty.
        return any(
            day <= calendar.monthrange(2000, month)[1]
            for month in self.months
            for day in self.days
        )


@dataclass(frozen=True)
class CronValidation:
    valid: bool
    description: str | None = None
    error: str | None = None


# -- Parsing -------------------------------------------------------------------


def _is_number(text: str) -> bool:
    # str.isdigit also accepts superscripts and other non-ASCII digits
    return text.isascii() and text.isdigit()


def _parse_value(token: str, field: str, names: dict[str, int] | None) -> int:
    token = token.strip().lower()
    if names and token in names:
        return names[token]
    if not _is_number(token):
        msg = f"Invalid {field} value: {token!r}"
        raise CronParseError(msg)
    return int(token)


def _parse_field(
    text: str,
    field: str,
    low: int,
    high: int,
    names: dict[str, int] | None = None,
) -> set[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            msg = f"Empty element in {field} field: {text!r}"
            raise CronParseError(msg)

        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not _is_number(step_text) or int(step_text) == 0:
                msg = f"Invalid step in {field} field: {part!r}"
                raise CronParseError(msg)
            step = int(step_text)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start = _parse_value(first, field, names)
            end = _parse_value(last, field, names)
            if start > end:
                msg = f"Descending range in {field} field: {part!r}"
                raise CronParseError(msg)
        else:
            start = _parse_value(base, field, names)
            # "5/15" means "from 5 to the end, every 15"
            end = high if step_text else start

        for value in (start, end):
            if not low <= value <= high:
                msg = f"{field} value {value} out of range {low}-{high}"
                raise CronParseError(msg)
        values.update(range(start, end + 1, step))
    return values


@lru_cache(maxsize=512)
def parse_cron(expression: str) -> CronSchedule:
    """Parse *expression* into a CronSchedule. Raises CronParseError."""
    if not isinstance(expression, str) or not expression.strip():
        msg = "Cron expression is empty"
        raise CronParseError(msg)

    parts = expression.split()
    if len(parts) != 5:
        msg = f"Expected 5 fields, got {len(parts)}: {expression!r}"
        raise CronParseError(msg)

    minute, hour, day, month, weekday = parts
    weekdays = _parse_field(weekday, "day-of-week", 0, 7, WEEKDAY_NAMES)
    if 7 in weekdays:
        weekdays.discard(7)
        weekdays.add(0)

    return CronSchedule(
        expression=expression,
        minutes=frozenset(_parse_field(minute, "minute", 0, 59)),
        hours=frozenset(_parse_field(hour, "hour", 0, 23)),
        days=frozenset(_parse_field(day, "day-of-month", 1, 31)),
        months=frozenset(_parse_field(month, "month", 1, 12, MONTH_NAMES)),
        weekdays=frozenset(weekdays),
        day_restricted=not day.startswith("*"),
        weekday_restricted=not weekday.startswith("*"),
    )


def is_valid_cron(expression: str) -> bool:
    try:
        parse_cron(expression)
    except CronParseError:
        return False
    return True


# -- Description ---------------------------------------------------------------


def _clock(hour: str, minute: str) -> str:
    return f"{int(hour):02d}:{int(minute):02d}"


def describe_cron(expression: str) -> str:
    """Best-effort English description of common patterns."""
    parts = expression.split()
    if len(parts) != 5:
        return "Custom schedule"
    minute, hour, dom, month, dow = parts
    rest_wild = dom == "*" and month == "*" and dow == "*"

    if rest_wild:
        if minute == "*" and hour == "*":
            return "Every minute"
        if minute.startswith("*/") and hour == "*":
            return f"Every {minute[2:]} minutes"
        if minute == "0" and hour == "*":
            return "Every hour"
        if minute == "0" and hour.startswith("*/"):
            return f"Every {hour[2:]} hours"
        if minute == "0" and hour == "0":
            return "Daily at midnight"
        if _is_number(minute) and _is_number(hour):
            return f"Daily at {_clock(hour, minute)}"
        return "Custom schedule"

    if not (_is_number(minute) and _is_number(hour)) or month != "*":
        return "Custom schedule"
    at = _clock(hour, minute)

    if dom == "*":
        if dow in ("1-5", "mon-fri"):
            return f"Weekdays at {at}"
        if dow in ("0,6", "6,0", "sat,sun", "sun,sat"):
            return f"Weekends at {at}"
        if _is_number(dow) and int(dow) <= 7:
            return f"Every {DAY_NAMES[int(dow) % 7]} at {at}"
        if dow.lower() in WEEKDAY_NAMES:
            return f"Every {DAY_NAMES[WEEKDAY_NAMES[dow.lower()]]} at {at}"
    elif dow == "*" and _is_number(dom):
        return f"Monthly on day {int(dom)} at {at}"
    return "Custom schedule"


def validate_cron(expression: str) -> CronValidation:
    """Validate *expression*, returning a description when valid."""
    try:
        parse_cron(expression)
    except CronParseError as exc:
        return CronValidation(valid=False, error=str(exc))
    return CronValidation(valid=True, description=describe_cron(expression))


# -- Next trigger ----------------------------------------------------------------


def _values_expr(values: frozenset[int], low: int, high: int) -> str:
    if len(values) == high - low + 1:
        return "*"
    return ",".join(str(v) for v in sorted(values))


def _weekdays_expr(values: frozenset[int]) -> str:
    if len(values) == 7:
        return "*"
    return ",".join(_APS_WEEKDAYS[v] for v in sorted(values))


@lru_cache(maxsize=512)
def _build_triggers(expression: str, timezone: str) -> tuple[CronTrigger, ...]:
    schedule = parse_cron(expression)
    if not schedule.can_fire():
        logger.debug("Cron expression can never fire: %s", expression)
        return ()

    tz = ZoneInfo(timezone)
    common = {
        "second": "0",
        "minute": _values_expr(schedule.minutes, 0, 59),
        "hour": _values_expr(schedule.hours, 0, 23),
        "month": _values_expr(schedule.months, 1, 12),
        "timezone": tz,
    }
    days = _values_expr(schedule.days, 1, 31)
    weekdays = _weekdays_expr(schedule.weekdays)

    if schedule.uses_or_semantics:
        return (
            CronTrigger(day=days, day_of_week="*", **common),
            CronTrigger(day="*", day_of_week=weekdays, **common),
        )
    return (CronTrigger(day=days, day_of_week=weekdays, **common),)


def next_trigger(
    expression: str,
    after: datetime,
    timezone: str | None = None,
) -> datetime | None:
    """Return the earliest matching instant strictly after *after*.

    Naive *after* values are interpreted in *timezone* (default from settings).
    Returns None when the expression can never fire. Raises CronParseError
    for an invalid expression.
    """
    tz_name = timezone or settings.scheduler_timezone
    tz = ZoneInfo(tz_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=tz)

    # CronTrigger returns the first match at or after its start instant
    search_from = after + timedelta(microseconds=1)
    candidates = [
        fire_time
        for trigger in _build_triggers(expression, tz_name)
        if (fire_time := trigger.get_next_fire_time(None, search_from)) is not None
    ]
    if not candidates:
        return None
    return min(candidates).astimezone(tz)
