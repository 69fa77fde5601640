"""Occurrence generation for weekly and monthly recurring events.

Weekly rules list weekdays with 0 = Sunday through 6 = Saturday. Monthly rules
list days of the month (1-31). A monthly day that does not exist in a given
month (31 in April, 30 in February) is skipped for that month rather than
clamped to the month end.
"""

import calendar
import math
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, List, Optional, Tuple

from app.config import (
    RECURRING_DEFAULT_HORIZON_MONTHS,
    RECURRING_MAX_END_DAYS,
    RECURRING_MAX_INSTANCES,
)
from app.models import EventTemplate, OccurrencePreview, RecurrenceRule
from app.timeutils import add_months, as_utc

WEEKLY_PERIOD_DAYS = 7
MONTHLY_PERIOD_DAYS = 30
MONTHS_SCANNED_BEFORE_GIVING_UP = 12

DAY_RANGES = {
    "weekly": (0, 6),
    "monthly": (1, 31),
}


class RecurrenceRuleError(ValueError):
    """Raised for malformed or over-sized recurrence rules."""


def sunday_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def next_weekly_date(day: date, days: Iterable[int]) -> date:
    """First day on or after ``day`` whose weekday is listed."""
    listed = list(days)
    if not listed:
        raise RecurrenceRuleError("Weekly recurrence needs at least one weekday")
    selected = set(listed)
    for offset in range(WEEKLY_PERIOD_DAYS):
        candidate = day + timedelta(days=offset)
        if sunday_weekday(candidate) in selected:
            return candidate
    # Wrap to the first listed weekday in the following week.
    offset = (WEEKLY_PERIOD_DAYS - sunday_weekday(day) + listed[0]) % WEEKLY_PERIOD_DAYS
    return day + timedelta(days=offset or WEEKLY_PERIOD_DAYS)


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def next_monthly_date(day: date, days: Iterable[int]) -> date:
    """First listed day-of-month on or after ``day`` that exists in its month."""
    selected = sorted(set(days))
    if not selected:
        raise RecurrenceRuleError("Monthly recurrence needs at least one day of the month")
    cursor = day
    for _ in range(MONTHS_SCANNED_BEFORE_GIVING_UP + 1):
        month_length = calendar.monthrange(cursor.year, cursor.month)[1]
        for day_of_month in selected:
            if cursor.day <= day_of_month <= month_length:
                return cursor.replace(day=day_of_month)
        cursor = _first_of_next_month(cursor)
    raise RecurrenceRuleError(f"Monthly days {selected} never occur in a calendar month")


def check_rule_shape(rule: RecurrenceRule) -> None:
    if not rule.days:
        raise RecurrenceRuleError("Recurring days must not be empty")
    low, high = DAY_RANGES[rule.pattern]
    invalid = sorted({day for day in rule.days if day < low or day > high})
    if invalid:
        if rule.pattern == "weekly":
            raise RecurrenceRuleError(
                f"Weekly recurring days must be between 0 (Sunday) and 6 (Saturday), got {invalid}"
            )
        raise RecurrenceRuleError(f"Monthly recurring days must be between 1 and 31, got {invalid}")


def effective_bounds(
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
) -> Tuple[datetime, datetime]:
    lower = max(as_utc(rule.start_time), as_utc(window_start))
    upper = as_utc(window_end)
    if rule.end_date is not None:
        upper = min(upper, as_utc(rule.end_date))
    return lower, upper


def generate_occurrences(
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
    limit: Optional[int] = None,
) -> Iterator[datetime]:
    """Yield occurrences in ``[max(start, window_start), min(end_date, window_end))``.

    Every occurrence keeps the time of day of ``rule.start_time`` in the
    rule's own timezone. The sequence is ascending and duplicate free.
    """
    check_rule_shape(rule)
    lower, upper = effective_bounds(rule, window_start, window_end)
    if lower >= upper or limit == 0:
        return

    tz = rule.start_time.tzinfo
    time_of_day = rule.start_time.timetz()
    find_next = next_weekly_date if rule.pattern == "weekly" else next_monthly_date
    days = sorted(set(rule.days))

    emitted = 0
    cursor = lower.astimezone(tz).date()
    while True:
        day = find_next(cursor, days)
        occurrence = datetime.combine(day, time_of_day)
        if occurrence >= upper:
            return
        if occurrence >= lower:
            yield occurrence
            emitted += 1
            if limit is not None and emitted >= limit:
                return
        cursor = day + timedelta(days=1)


def default_horizon(rule: RecurrenceRule) -> datetime:
    if rule.end_date is not None:
        return rule.end_date
    return add_months(rule.start_time, RECURRING_DEFAULT_HORIZON_MONTHS)


def eager_window(rule: RecurrenceRule, now: datetime) -> Tuple[datetime, datetime]:
    """Window materialized when a template is created or its rule changes."""
    start = max(as_utc(rule.start_time), as_utc(now))
    if rule.end_date is not None:
        return start, rule.end_date
    return start, add_months(start, RECURRING_DEFAULT_HORIZON_MONTHS)


def estimate_instance_count(rule: RecurrenceRule, since: Optional[datetime] = None) -> int:
    """Approximate count: whole periods times selected days.

    With ``since`` the span is the window that would actually be generated
    from that moment (see ``eager_window``), not the whole rule.
    """
    if since is None:
        start, end = rule.start_time, default_horizon(rule)
    else:
        start, end = eager_window(rule, since)
    day_span = math.ceil((as_utc(end) - as_utc(start)).total_seconds() / 86400)
    if day_span <= 0:
        return 0
    period = WEEKLY_PERIOD_DAYS if rule.pattern == "weekly" else MONTHLY_PERIOD_DAYS
    return math.ceil(day_span / period) * len(set(rule.days))


def validate_rule(
    rule: RecurrenceRule,
    now: datetime,
    max_instances: int = RECURRING_MAX_INSTANCES,
    since: Optional[datetime] = None,
) -> int:
    """Reject rules before anything is generated; returns the estimate.

    Pass ``since`` when re-validating an existing template so only the
    occurrences still to be generated count against the cap.
    """
    check_rule_shape(rule)
    if rule.end_date is not None:
        if rule.end_date <= rule.start_time:
            raise RecurrenceRuleError("Recurring end date must be after the start time")
        if rule.end_date <= now:
            raise RecurrenceRuleError("Recurring end date must be in the future")
        if rule.end_date > now + timedelta(days=RECURRING_MAX_END_DAYS):
            raise RecurrenceRuleError(
                f"Recurring end date cannot be more than {RECURRING_MAX_END_DAYS} days in the future"
            )
    estimate = estimate_instance_count(rule, since=since)
    if estimate > max_instances:
        raise RecurrenceRuleError(
            f"This recurring pattern would create approximately {estimate} instances, "
            f"which exceeds the maximum allowed ({max_instances}). "
            "Please use a shorter recurring period or fewer days per period."
        )
    return estimate


def preview_id(template_id: str, occurrence: datetime) -> str:
    return f"{template_id}_{occurrence.strftime('%Y-%m-%d')}"


def preview_occurrences(
    template: EventTemplate,
    window_start: datetime,
    window_end: datetime,
) -> List[OccurrencePreview]:
    duration = timedelta(milliseconds=template.duration_ms)
    previews: List[OccurrencePreview] = []
    for occurrence in generate_occurrences(template.recurrence, window_start, window_end):
        previews.append(
            OccurrencePreview(
                id=preview_id(template.id, occurrence),
                parent_event_id=template.id,
                title=template.title,
                description=template.description,
                start_time=occurrence,
                end_time=occurrence + duration if template.duration_ms > 0 else None,
            )
        )
    return previews
