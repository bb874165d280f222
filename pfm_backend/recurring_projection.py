from __future__ import annotations

import logging
from calendar import monthrange
from datetime import date, timedelta
from typing import Iterable, List

from pfm_backend.cashflow_models import (
    KIND_TO_EVENT_TYPE,
    CashflowEvent,
    Recurrence,
    RecurringRule,
    signed_amount,
    validate_rule,
    validate_window,
)

logger = logging.getLogger(__name__)

WEEKLY_DAYS = 7
BIWEEKLY_DAYS = 14

INTERVAL_DAYS = {
    Recurrence.WEEKLY: WEEKLY_DAYS,
    Recurrence.BIWEEKLY: BIWEEKLY_DAYS,
}


def project_occurrences(
    rule: RecurringRule,
    window_start: date,
    window_end: date,
) -> List[CashflowEvent]:
    """Expand one rule into its occurrences inside ``[window_start, window_end]``.

    Occurrences never precede ``rule.start_date``. Weekly and biweekly rules
    are anchored to the first day-of-month match on or after the rule's start
    date, so overlapping windows always agree on the dates they share.
    """
    validate_window(window_start, window_end)
    validate_rule(rule)
    if not rule.active or rule.deleted:
        return []

    lower = max(window_start, rule.start_date)
    if lower > window_end:
        return []

    recurrence = Recurrence.parse(rule.recurrence)
    dates = _occurrence_dates(rule, recurrence, lower, window_end)
    return [_to_event(rule, recurrence, occurrence) for occurrence in dates]


def project_rules(
    rules: Iterable[RecurringRule],
    window_start: date,
    window_end: date,
) -> List[CashflowEvent]:
    validate_window(window_start, window_end)
    projections: List[CashflowEvent] = []
    for rule in rules:
        projections.extend(project_occurrences(rule, window_start, window_end))
    logger.debug(
        "projected %d occurrences between %s and %s",
        len(projections),
        window_start,
        window_end,
    )
    return projections


def _occurrence_dates(
    rule: RecurringRule,
    recurrence: Recurrence,
    lower: date,
    upper: date,
) -> List[date]:
    dates: List[date] = []
    if recurrence is Recurrence.MONTHLY:
        current, month_offset = first_monthly_on_or_after(rule.start_date, lower, rule.day)
        while current <= upper:
            dates.append(current)
            month_offset += 1
            current = add_months(rule.start_date, month_offset, rule.day)
    elif recurrence in (Recurrence.WEEKLY, Recurrence.BIWEEKLY):
        interval = INTERVAL_DAYS[recurrence]
        epoch, _ = first_monthly_on_or_after(rule.start_date, rule.start_date, rule.day)
        current = first_occurrence_on_or_after(epoch, lower, interval)
        while current <= upper:
            dates.append(current)
            current += timedelta(days=interval)
    else:
        raise AssertionError(f"unhandled recurrence {recurrence!r}")
    return dates


def _to_event(rule: RecurringRule, recurrence: Recurrence, occurrence: date) -> CashflowEvent:
    event_type = KIND_TO_EVENT_TYPE[rule.kind]
    return CashflowEvent(
        source_type=rule.kind,
        source_id=rule.id,
        name=rule.name,
        amount=signed_amount(rule.amount, event_type),
        event_date=occurrence,
        event_type=event_type,
        processed=False,
        account_id=rule.account_id,
        metadata={
            "recurrence": recurrence.value,
            "original_due_date": rule.day,
        },
    )


def first_occurrence_on_or_after(epoch: date, not_before: date, step_days: int) -> date:
    """Step forward from ``epoch`` in ``step_days`` strides until ``not_before`` is reached."""
    gap = (not_before - epoch).days
    if gap <= 0:
        return epoch
    # Ceiling division: a partial stride still lands past not_before.
    strides = -(-gap // step_days)
    return epoch + timedelta(days=strides * step_days)


def first_monthly_on_or_after(
    start_date: date, minimum_date: date, anchor_day: int
) -> tuple[date, int]:
    """Return the first ``anchor_day`` occurrence on or after ``minimum_date``.

    Months are counted from ``start_date``'s month; the returned offset feeds
    :func:`add_months` so clamping in short months never shifts later dates.
    """
    months_between = max(
        0,
        (minimum_date.year - start_date.year) * 12 + (minimum_date.month - start_date.month),
    )
    candidate = add_months(start_date, months_between, anchor_day)
    while candidate < minimum_date:
        months_between += 1
        candidate = add_months(start_date, months_between, anchor_day)
    return candidate, months_between


def add_months(start_date: date, months: int, anchor_day: int) -> date:
    """Move ``months`` calendar months from ``start_date``, clamping ``anchor_day`` to month end."""
    year, month_index = divmod(start_date.year * 12 + start_date.month - 1 + months, 12)
    month = month_index + 1
    _, days_in_month = monthrange(year, month)
    return date(year, month, min(anchor_day, days_in_month))
