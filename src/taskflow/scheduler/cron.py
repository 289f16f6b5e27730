"""Deterministic cron evaluation in UTC for recurring task schedules.

Expressions are parsed and validated here (five fields, or six with a leading
seconds field); fire times are computed by APScheduler's ``CronTrigger``.
When both day fields are restricted a day matches if either one does, so the
schedule is split into one trigger per day field and the earliest fire wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from functools import lru_cache

from apscheduler.triggers.cron import CronTrigger

from taskflow.scheduler.errors import InvalidScheduleExpressionError

MAX_SEARCH_YEARS = 10

_MACROS: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"),
        start=1,
    )
}
_DAY_NAMES = {
    name: index
    for index, name in enumerate(("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"))
}
# CronTrigger numbers weekdays from Monday, so weekdays are handed over by name.
_TRIGGER_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
# Without an explicit start date CronTrigger never fires before its construction time.
_TRIGGER_START = datetime(1970, 1, 1, tzinfo=UTC)
# Longest possible month length, February counted with its leap day.
_MAX_DAYS_IN_MONTH = {
    1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30,
    7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31,
}  # fmt: skip


@dataclass(frozen=True, slots=True)
class _FieldSpec:
    name: str
    minimum: int
    maximum: int
    names: dict[str, int] | None = None
    allow_question_mark: bool = False


_SECOND = _FieldSpec("second", 0, 59)
_MINUTE = _FieldSpec("minute", 0, 59)
_HOUR = _FieldSpec("hour", 0, 23)
_DAY_OF_MONTH = _FieldSpec("day-of-month", 1, 31, allow_question_mark=True)
_MONTH = _FieldSpec("month", 1, 12, names=_MONTH_NAMES)
# 7 is accepted as an alias for Sunday and folded to 0 after parsing.
_DAY_OF_WEEK = _FieldSpec("day-of-week", 0, 7, names=_DAY_NAMES, allow_question_mark=True)


@dataclass(frozen=True, slots=True)
class CronSchedule:
    """Parsed cron expression with each field expanded to its allowed values."""

    expression: str
    seconds: tuple[int, ...]
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    day_of_month_restricted: bool
    day_of_week_restricted: bool
    triggers: tuple[CronTrigger, ...] = field(default=(), compare=False, repr=False)

    def next_after(self, after: datetime) -> datetime:
        """Return the first fire time strictly greater than ``after``."""

        reference = _as_utc(after).replace(microsecond=0) + timedelta(seconds=1)
        last_year = min(reference.year + MAX_SEARCH_YEARS, 9999)
        limit = datetime(last_year, 12, 31, 23, 59, 59, tzinfo=UTC)

        candidates: list[datetime] = []
        for trigger in self.triggers:
            fire = trigger.get_next_fire_time(None, reference)
            if fire is not None:
                candidates.append(fire.astimezone(UTC))
        if not candidates or min(candidates) > limit:
            raise InvalidScheduleExpressionError(
                self.expression,
                f"no fire time within {MAX_SEARCH_YEARS} years after {after.isoformat()}",
            )
        return min(candidates)


def next_fire_time(expression: str, after: datetime) -> datetime:
    """Next UTC fire time of ``expression`` strictly after ``after``."""

    return parse_expression(expression).next_after(after)


def validate_expression(expression: str) -> None:
    """Raise ``InvalidScheduleExpressionError`` if ``expression`` is malformed."""

    parse_expression(expression)


@lru_cache(maxsize=256)
def parse_expression(expression: str) -> CronSchedule:
    """Parse a five-field or six-field (leading seconds) cron expression."""

    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleExpressionError(str(expression), "expression is empty")

    normalized = " ".join(expression.split())
    expanded = _MACROS.get(normalized.lower(), normalized)
    if expanded.startswith("@"):
        raise InvalidScheduleExpressionError(expression, f"unknown macro {expanded!r}")

    fields = expanded.split(" ")
    if len(fields) == 5:
        fields = ["0", *fields]
    elif len(fields) != 6:
        raise InvalidScheduleExpressionError(
            expression,
            f"expected 5 or 6 fields, got {len(fields)}",
        )

    second_raw, minute_raw, hour_raw, dom_raw, month_raw, dow_raw = fields
    seconds = _parse_field(expression, second_raw, _SECOND)
    minutes = _parse_field(expression, minute_raw, _MINUTE)
    hours = _parse_field(expression, hour_raw, _HOUR)
    days_of_month = _parse_field(expression, dom_raw, _DAY_OF_MONTH)
    months = _parse_field(expression, month_raw, _MONTH)
    days_of_week = {
        0 if value == 7 else value
        for value in _parse_field(expression, dow_raw, _DAY_OF_WEEK)
    }

    schedule = CronSchedule(
        expression=expression,
        seconds=tuple(sorted(seconds)),
        minutes=tuple(sorted(minutes)),
        hours=tuple(sorted(hours)),
        days_of_month=frozenset(days_of_month),
        months=frozenset(months),
        days_of_week=frozenset(days_of_week),
        day_of_month_restricted=not dom_raw.startswith(("*", "?")),
        day_of_week_restricted=not dow_raw.startswith(("*", "?")),
    )
    _ensure_reachable(schedule)
    return replace(schedule, triggers=_build_triggers(schedule))


def _build_triggers(schedule: CronSchedule) -> tuple[CronTrigger, ...]:
    common = {
        "second": _join(schedule.seconds),
        "minute": _join(schedule.minutes),
        "hour": _join(schedule.hours),
        "month": _join(schedule.months),
        "start_date": _TRIGGER_START,
        "timezone": UTC,
    }
    day = _join(schedule.days_of_month)
    day_of_week = ",".join(_TRIGGER_DAY_NAMES[value] for value in sorted(schedule.days_of_week))

    if schedule.day_of_month_restricted and schedule.day_of_week_restricted:
        return (
            CronTrigger(day=day, day_of_week="*", **common),
            CronTrigger(day="*", day_of_week=day_of_week, **common),
        )
    return (
        CronTrigger(
            day=day if schedule.day_of_month_restricted else "*",
            day_of_week=day_of_week if schedule.day_of_week_restricted else "*",
            **common,
        ),
    )


def _join(values: tuple[int, ...] | frozenset[int]) -> str:
    return ",".join(str(value) for value in sorted(values))


def _parse_field(expression: str, raw: str, spec: _FieldSpec) -> set[int]:
    values: set[int] = set()
    for part in raw.split(","):
        if not part:
            raise InvalidScheduleExpressionError(expression, f"empty list item in {spec.name}")
        values.update(_parse_part(expression, part, spec))
    return values


def _parse_part(expression: str, part: str, spec: _FieldSpec) -> range:
    base, step_raw = part, None
    if "/" in part:
        base, step_raw = part.split("/", 1)

    step = 1
    if step_raw is not None:
        if not step_raw.isdigit():
            raise InvalidScheduleExpressionError(
                expression,
                f"invalid step {step_raw!r} in {spec.name}",
            )
        step = int(step_raw)
        if step == 0:
            raise InvalidScheduleExpressionError(expression, f"zero step in {spec.name}")

    if base in {"*", "?"}:
        if base == "?" and not spec.allow_question_mark:
            raise InvalidScheduleExpressionError(expression, f"'?' is not allowed in {spec.name}")
        start, end = spec.minimum, spec.maximum
        if spec is _DAY_OF_WEEK:
            end = 6
    elif "-" in base:
        start_raw, end_raw = base.split("-", 1)
        start = _parse_value(expression, start_raw, spec)
        end = _parse_value(expression, end_raw, spec)
        if start > end:
            raise InvalidScheduleExpressionError(
                expression,
                f"inverted range {base!r} in {spec.name}",
            )
    else:
        start = _parse_value(expression, base, spec)
        end = spec.maximum if step_raw is not None else start
        if spec is _DAY_OF_WEEK and step_raw is not None:
            end = 6
    return range(start, end + 1, step)


def _parse_value(expression: str, raw: str, spec: _FieldSpec) -> int:
    token = raw.strip().upper()
    if spec.names is not None and token in spec.names:
        return spec.names[token]
    if not token.isdigit():
        raise InvalidScheduleExpressionError(expression, f"invalid value {raw!r} in {spec.name}")
    value = int(token)
    if value < spec.minimum or value > spec.maximum:
        raise InvalidScheduleExpressionError(
            expression,
            f"{spec.name} value {value} outside {spec.minimum}-{spec.maximum}",
        )
    return value


def _ensure_reachable(schedule: CronSchedule) -> None:
    # Day-of-week alone always matches some date; only a pure day-of-month
    # restriction can be impossible (for example 30 February).
    if schedule.day_of_week_restricted:
        return
    for month in schedule.months:
        if any(day <= _MAX_DAYS_IN_MONTH[month] for day in schedule.days_of_month):
            return
    raise InvalidScheduleExpressionError(
        schedule.expression,
        "day-of-month never occurs in the selected months",
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
