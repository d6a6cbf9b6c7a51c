"""Five-field cron expressions: minute hour day-of-month month day-of-week."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

_FIELD_BOUNDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 7),
)
_STEP_PATTERN = re.compile(r"^(.+)/(\d+)$")
_DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


class CronParseError(ValueError):
    """Raised for expressions outside the supported syntax."""


@dataclass(frozen=True, slots=True)
class CronExpression:
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]

    def matches(self, moment: datetime) -> bool:
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days_of_month
            and moment.month in self.months
            and (moment.weekday() + 1) % 7 in self.days_of_week
        )


def _parse_field(raw: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in raw.split(","):
        step = 1
        match = _STEP_PATTERN.match(part)
        if match:
            part, step = match.group(1), int(match.group(2))
            if step <= 0:
                raise CronParseError(f"Step must be positive in {name} field: {raw!r}")
        try:
            if part == "*":
                start, end = low, high
            elif "-" in part:
                start_raw, end_raw = part.split("-", 1)
                start, end = int(start_raw), int(end_raw)
            else:
                start = end = int(part)
        except ValueError as error:
            raise CronParseError(f"Invalid {name} field: {raw!r}") from error
        if start < low or end > high or start > end:
            raise CronParseError(f"{name.capitalize()} out of range {low}-{high}: {raw!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def parse_cron(expression: str) -> CronExpression:
    parts = expression.split()
    if len(parts) != len(_FIELD_BOUNDS):
        raise CronParseError(
            f"Invalid cron expression: expected 5 fields, got {len(parts)}: {expression!r}",
        )
    fields = [
        _parse_field(raw, name, low, high)
        for raw, (name, low, high) in zip(parts, _FIELD_BOUNDS, strict=True)
    ]
    # 7 is an alias for Sunday
    fields[4] = frozenset(0 if day == 7 else day for day in fields[4])  # noqa: PLR2004
    return CronExpression(*fields)


def next_cron_run(expression: str, after: datetime, max_days: int = 7) -> datetime | None:
    """First matching minute strictly after ``after``, searched ``max_days`` ahead.

    Matching uses the wall clock of ``after``'s timezone.
    """

    cron = parse_cron(expression)
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = after + timedelta(days=max_days)
    while candidate <= limit:
        if cron.matches(candidate):
            return candidate
        candidate += timedelta(minutes=1)
    return None


def cron_to_human(expression: str) -> str:
    parts = expression.split()
    if len(parts) != len(_FIELD_BOUNDS):
        return expression
    minute, hour, day_of_month, month, day_of_week = parts
    fixed_time = minute.isdigit() and hour.isdigit()
    if fixed_time and day_of_month == "*" and month == "*":
        clock = f"{hour.zfill(2)}:{minute.zfill(2)}"
        if day_of_week == "*":
            return f"Daily at {clock}"
        if day_of_week.isdigit() and int(day_of_week) <= 7:  # noqa: PLR2004
            return f"{_DAY_NAMES[int(day_of_week) % 7]} at {clock}"
        return f"{day_of_week} at {clock}"
    if minute == "0" and hour.startswith("*/"):
        return f"Every {hour[2:]} hours"
    if minute.startswith("*/") and hour == "*":
        return f"Every {minute[2:]} minutes"
    return expression
