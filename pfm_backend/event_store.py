from __future__ import annotations

import logging
from datetime import date
from typing import Any, Mapping

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.engine import Connection

from pfm_backend.cashflow_models import SOURCE_MANUAL, PersistedEvent
from pfm_backend.db import cashflow_events

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "name",
    "amount",
    "event_date",
    "event_type",
    "account_id",
    "processed",
    "suppressed",
    "metadata",
}


def _live(user_id: int, event_id: int | None = None) -> list:
    conditions = [cashflow_events.c.user_id == user_id, cashflow_events.c.deleted_at.is_(None)]
    if event_id is not None:
        conditions.append(cashflow_events.c.id == event_id)
    return conditions


def _db_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values = {key: value for key, value in fields.items() if key in EDITABLE_FIELDS}
    if "metadata" in values:
        values["meta"] = values.pop("metadata") or {}
    return values


def list_overrides(
    conn: Connection, user_id: int, start_date: date, end_date: date
) -> list[PersistedEvent]:
    """Live persisted events shown in, or shadowing a slot in, the range."""
    rows = conn.execute(
        select(cashflow_events)
        .where(
            *_live(user_id),
            or_(
                and_(
                    cashflow_events.c.event_date >= start_date,
                    cashflow_events.c.event_date <= end_date,
                ),
                and_(
                    cashflow_events.c.occurrence_date >= start_date,
                    cashflow_events.c.occurrence_date <= end_date,
                ),
            ),
        )
        .order_by(cashflow_events.c.event_date.asc(), cashflow_events.c.id.asc())
    ).mappings().all()
    return [row_to_event(row) for row in rows]


def get_event(conn: Connection, user_id: int, event_id: int) -> Mapping[str, Any] | None:
    return conn.execute(select(cashflow_events).where(*_live(user_id, event_id))).mappings().first()


def find_slot(
    conn: Connection,
    user_id: int,
    source_type: str,
    source_id: int,
    occurrence_date: date,
) -> Mapping[str, Any] | None:
    return conn.execute(
        select(cashflow_events).where(
            *_live(user_id),
            cashflow_events.c.source_type == source_type,
            cashflow_events.c.source_id == source_id,
            cashflow_events.c.occurrence_date == occurrence_date,
        )
    ).mappings().first()


def create_one_off(conn: Connection, user_id: int, fields: Mapping[str, Any]) -> Mapping[str, Any]:
    values = _db_values(fields)
    values.update(
        user_id=user_id,
        source_type=SOURCE_MANUAL,
        source_id=None,
        occurrence_date=values["event_date"],
    )
    values.setdefault("meta", {})
    row = conn.execute(
        insert(cashflow_events).values(**values).returning(*cashflow_events.c)
    ).mappings().first()
    logger.info("created one-off event %s for user %s", row["id"], user_id)
    return row


def record_override(
    conn: Connection,
    user_id: int,
    source_type: str,
    source_id: int,
    occurrence_date: date,
    fields: Mapping[str, Any],
) -> Mapping[str, Any]:
    """Insert or update the single live override for a projected slot.

    ``fields`` must be complete (name, amount, event_date, event_type) when
    the slot has no override yet.
    """
    existing = find_slot(conn, user_id, source_type, source_id, occurrence_date)
    values = _db_values(fields)
    if existing:
        values["updated_at"] = func.now()
        row = conn.execute(
            update(cashflow_events)
            .where(cashflow_events.c.id == existing["id"])
            .values(**values)
            .returning(*cashflow_events.c)
        ).mappings().first()
        logger.info("updated override %s for %s %s on %s", row["id"], source_type, source_id, occurrence_date)
        return row

    values.update(
        user_id=user_id,
        source_type=source_type,
        source_id=source_id,
        occurrence_date=occurrence_date,
    )
    values.setdefault("event_date", occurrence_date)
    values.setdefault("meta", {})
    row = conn.execute(
        insert(cashflow_events).values(**values).returning(*cashflow_events.c)
    ).mappings().first()
    logger.info("recorded override %s for %s %s on %s", row["id"], source_type, source_id, occurrence_date)
    return row


def update_event(
    conn: Connection, user_id: int, event_id: int, fields: Mapping[str, Any]
) -> Mapping[str, Any] | None:
    values = _db_values(fields)
    existing = get_event(conn, user_id, event_id)
    if not existing:
        return None
    if existing["source_type"] == SOURCE_MANUAL and "event_date" in values:
        values["occurrence_date"] = values["event_date"]
    values["updated_at"] = func.now()
    row = conn.execute(
        update(cashflow_events)
        .where(*_live(user_id, event_id))
        .values(**values)
        .returning(*cashflow_events.c)
    ).mappings().first()
    if row:
        logger.info("updated event %s for user %s", event_id, user_id)
    return row


def soft_delete(conn: Connection, user_id: int, event_id: int) -> bool:
    result = conn.execute(
        update(cashflow_events).where(*_live(user_id, event_id)).values(deleted_at=func.now())
    )
    if result.rowcount:
        logger.info("deleted event %s for user %s", event_id, user_id)
    return result.rowcount > 0


def row_to_event(row: Mapping[str, Any]) -> PersistedEvent:
    return PersistedEvent(
        id=row["id"],
        source_type=row["source_type"],
        source_id=row["source_id"],
        name=row["name"],
        amount=row["amount"],
        event_date=row["event_date"],
        occurrence_date=row["occurrence_date"],
        event_type=row["event_type"],
        processed=bool(row["processed"]),
        suppressed=bool(row["suppressed"]),
        account_id=row["account_id"],
        metadata=row["meta"] or {},
    )
