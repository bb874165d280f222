from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, List, Mapping, Set, Tuple

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from pfm_backend import event_store, rule_store, transaction_store
from pfm_backend.cashflow_models import (
    EVENT_EXPENSE,
    EVENT_INCOME,
    SOURCE_TRANSACTION,
    CashflowEvent,
    CashflowSummary,
    PersistedEvent,
    signed_amount,
    validate_kind,
    validate_window,
)
from pfm_backend.cashflow_summary import summarize
from pfm_backend.cashflow_timeline import merge_timeline, to_actual_events
from pfm_backend.config import settings
from pfm_backend.db import cashflow_settings
from pfm_backend.errors import CashflowValidationError
from pfm_backend.recurring_projection import project_occurrences, project_rules

logger = logging.getLogger(__name__)

MIN_PROJECTION_DAYS = 30
MAX_PROJECTION_DAYS = 365
MAX_LOOKAHEAD_DAYS = 365


@dataclass(frozen=True)
class CashflowResult:
    timeline: List[CashflowEvent]
    summary: CashflowSummary
    bills_count: int
    incomes_count: int
    projection_end: date


def get_cashflow_settings(conn: Connection, user_id: int) -> dict[str, Any]:
    row = conn.execute(
        select(cashflow_settings).where(cashflow_settings.c.user_id == user_id)
    ).mappings().first()
    if not row:
        return {
            "auto_categorize": True,
            "show_projections": True,
            "projection_days": settings.projection_days,
        }
    return {
        "auto_categorize": bool(row["auto_categorize"]),
        "show_projections": bool(row["show_projections"]),
        "projection_days": row["projection_days"],
    }


def update_cashflow_settings(
    conn: Connection, user_id: int, changes: Mapping[str, Any]
) -> dict[str, Any]:
    projection_days = changes.get("projection_days")
    if projection_days is not None and not (
        MIN_PROJECTION_DAYS <= projection_days <= MAX_PROJECTION_DAYS
    ):
        raise CashflowValidationError(
            "projection_days", "projection_days must be between 30 and 365."
        )
    current = get_cashflow_settings(conn, user_id)
    merged = {**current, **{key: value for key, value in changes.items() if value is not None}}
    exists = conn.execute(
        select(cashflow_settings.c.user_id).where(cashflow_settings.c.user_id == user_id)
    ).first()
    if exists:
        conn.execute(
            update(cashflow_settings)
            .where(cashflow_settings.c.user_id == user_id)
            .values(**merged, updated_at=func.now())
        )
    else:
        conn.execute(insert(cashflow_settings).values(user_id=user_id, **merged))
    logger.info("updated cashflow settings for user %s", user_id)
    return merged


def resolve_window(
    conn: Connection,
    user_id: int,
    start_date: date | None,
    end_date: date | None,
    today: date | None = None,
) -> tuple[date, date]:
    if start_date is None and end_date is None:
        start = today or date.today()
        days = get_cashflow_settings(conn, user_id)["projection_days"]
        return start, start + timedelta(days=days)
    if start_date is None:
        raise CashflowValidationError("start_date", "start_date is required with end_date.")
    if end_date is None:
        raise CashflowValidationError("end_date", "end_date is required with start_date.")
    validate_window(start_date, end_date)
    return start_date, end_date


def _visible_overrides(
    overrides: Iterable[PersistedEvent],
    *,
    active_keys: Set[Tuple[str, int]],
    stored_keys: Set[Tuple[str, int]],
    show_projections: bool,
) -> List[PersistedEvent]:
    """Drop overrides that should not reach the merger.

    An unprocessed override of a stopped or soft-deleted rule goes with its
    rule. One whose rule row no longer exists at all is kept.
    """
    visible: List[PersistedEvent] = []
    for override in overrides:
        if override.source_type == SOURCE_TRANSACTION or override.is_one_off:
            visible.append(override)
            continue
        if not show_projections:
            continue
        key = (override.source_type, override.source_id)
        if not override.processed and key in stored_keys and key not in active_keys:
            continue
        visible.append(override)
    return visible


def build_cashflow(
    conn: Connection,
    user_id: int,
    start_date: date,
    end_date: date,
    lookahead_days: int | None = None,
    show_projections: bool = True,
) -> CashflowResult:
    """Produce the merged timeline and its summary for one window.

    ``lookahead_days`` widens the range used for rule expansion and persisted
    events only; posted transactions are read for the requested window.
    """
    validate_window(start_date, end_date)
    if lookahead_days is None:
        lookahead_days = settings.projection_lookahead_days
    if lookahead_days < 0 or lookahead_days > MAX_LOOKAHEAD_DAYS:
        raise CashflowValidationError(
            "lookahead_days", "lookahead_days must be between 0 and 365."
        )
    projection_end = end_date + timedelta(days=lookahead_days)

    rules = rule_store.list_active_rules(conn, user_id)
    projected: List[CashflowEvent] = []
    if show_projections:
        projected = project_rules(rules["bills"] + rules["incomes"], start_date, projection_end)

    actual = to_actual_events(
        transaction_store.list_transactions(conn, user_id, start_date, end_date)
    )
    overrides = _visible_overrides(
        event_store.list_overrides(conn, user_id, start_date, projection_end),
        active_keys={(rule.kind, rule.id) for rule in rules["bills"] + rules["incomes"]},
        stored_keys=rule_store.list_rule_keys(conn, user_id),
        show_projections=show_projections,
    )

    timeline = [
        event
        for event in merge_timeline(projected, actual, overrides)
        if start_date <= event.event_date <= projection_end
    ]
    logger.debug(
        "built cashflow for user %s: %d projected, %d actual, %d overrides",
        user_id,
        len(projected),
        len(actual),
        len(overrides),
    )
    return CashflowResult(
        timeline=timeline,
        summary=summarize(timeline, start_date, end_date),
        bills_count=len(rules["bills"]),
        incomes_count=len(rules["incomes"]),
        projection_end=projection_end,
    )


def _with_signed_amount(
    fields: Mapping[str, Any], current_amount, current_type: str
) -> dict[str, Any]:
    values = dict(fields)
    if "amount" not in values and "event_type" not in values:
        return values
    event_type = values.get("event_type") or current_type
    values["amount"] = signed_amount(values.get("amount", current_amount), event_type)
    return values


def _projected_slot(
    conn: Connection, user_id: int, source_type: str, source_id: int, occurrence_date: date
) -> CashflowEvent:
    kind = validate_kind(source_type)
    rule = rule_store.find_rule(conn, user_id, kind, source_id)
    if rule is None:
        raise LookupError(f"{kind.capitalize()} not found")
    for event in project_occurrences(rule, occurrence_date, occurrence_date):
        return event
    raise CashflowValidationError(
        "occurrence_date", "No projected occurrence on that date."
    )


def override_occurrence(
    conn: Connection,
    user_id: int,
    source_type: str,
    source_id: int,
    occurrence_date: date,
    fields: Mapping[str, Any],
) -> Mapping[str, Any]:
    """Record a user edit for one projected occurrence or posted transaction.

    Raises ``LookupError`` when the rule or transaction is not the caller's.
    """
    if source_type == SOURCE_TRANSACTION:
        return _override_transaction(conn, user_id, source_id, fields)

    existing = event_store.find_slot(conn, user_id, source_type, source_id, occurrence_date)
    if existing:
        values = _with_signed_amount(fields, existing["amount"], existing["event_type"])
        return event_store.record_override(
            conn, user_id, source_type, source_id, occurrence_date, values
        )
    projected = _projected_slot(conn, user_id, source_type, source_id, occurrence_date)
    values = {
        "name": projected.name,
        "amount": projected.amount,
        "event_date": projected.event_date,
        "event_type": projected.event_type,
        "account_id": projected.account_id,
        "processed": False,
        "metadata": dict(projected.metadata),
    }
    values.update(fields)
    values = _with_signed_amount(values, values["amount"], values["event_type"])
    return event_store.record_override(
        conn, user_id, source_type, source_id, occurrence_date, values
    )


TRANSACTION_LOCKED_FIELDS = {"amount", "event_date", "event_type", "processed", "suppressed"}


def _check_transaction_fields(fields: Mapping[str, Any]) -> None:
    blocked = TRANSACTION_LOCKED_FIELDS & set(fields)
    if blocked:
        raise CashflowValidationError(
            sorted(blocked)[0], "Only name and metadata can change on a posted transaction."
        )


def _override_transaction(
    conn: Connection, user_id: int, transaction_id: int, fields: Mapping[str, Any]
) -> Mapping[str, Any]:
    txn = transaction_store.get_transaction(conn, user_id, transaction_id)
    if txn is None:
        raise LookupError("Transaction not found")
    _check_transaction_fields(fields)
    values = {
        "name": txn["description"],
        "amount": txn["amount"],
        "event_date": txn["posted_at"],
        "event_type": EVENT_EXPENSE if txn["amount"] < 0 else EVENT_INCOME,
        "account_id": txn["account_id"],
        "processed": True,
    }
    values.update(fields)
    return event_store.record_override(
        conn, user_id, SOURCE_TRANSACTION, transaction_id, txn["posted_at"], values
    )


def suppress_occurrence(
    conn: Connection,
    user_id: int,
    source_type: str,
    source_id: int,
    occurrence_date: date,
) -> Mapping[str, Any]:
    """Mark one projected occurrence as never happening."""
    row = override_occurrence(
        conn, user_id, validate_kind(source_type), source_id, occurrence_date, {"suppressed": True}
    )
    logger.info("suppressed %s %s on %s for user %s", source_type, source_id, occurrence_date, user_id)
    return row


def update_persisted_event(
    conn: Connection, user_id: int, event_id: int, fields: Mapping[str, Any]
) -> Mapping[str, Any] | None:
    existing = event_store.get_event(conn, user_id, event_id)
    if not existing:
        return None
    if existing["source_type"] == SOURCE_TRANSACTION:
        _check_transaction_fields(fields)
        return event_store.update_event(conn, user_id, event_id, fields)
    values = _with_signed_amount(fields, existing["amount"], existing["event_type"])
    return event_store.update_event(conn, user_id, event_id, values)
