from __future__ import annotations

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from pfm_backend.cashflow_models import (
    EVENT_EXPENSE,
    EVENT_INCOME,
    CashflowEvent,
    CashflowSummary,
    validate_window,
)
from pfm_backend.recurring_projection import add_months

ZERO = Decimal("0")
CENT = Decimal("0.01")


def summarize(
    timeline: Iterable[CashflowEvent],
    window_start: date,
    window_end: date,
) -> CashflowSummary:
    """Reduce the events dated inside the window into totals and monthly averages."""
    validate_window(window_start, window_end)

    income = ZERO
    expense = ZERO
    count_income = 0
    count_expense = 0
    for event in timeline:
        if not window_start <= event.event_date <= window_end:
            continue
        if event.event_type == EVENT_INCOME:
            income += abs(event.amount)
            count_income += 1
        elif event.event_type == EVENT_EXPENSE:
            expense += abs(event.amount)
            count_expense += 1

    total_income = round_currency(income)
    total_expense = round_currency(expense)
    months = whole_months_between(window_start, window_end)
    return CashflowSummary(
        start_date=window_start,
        end_date=window_end,
        total_income=total_income,
        total_expense=total_expense,
        # Both operands already carry two places, so the difference is exact.
        net=total_income - total_expense,
        average_income=round_currency(total_income / months),
        average_expense=round_currency(total_expense / months),
        count_income=count_income,
        count_expense=count_expense,
        months=months,
    )


def whole_months_between(window_start: date, window_end: date) -> int:
    """Count whole months in the inclusive window, never less than one."""
    boundary = window_end + timedelta(days=1)
    months = 0
    while add_months(window_start, months + 1, window_start.day) <= boundary:
        months += 1
    return max(months, 1)


def round_currency(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
