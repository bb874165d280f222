from __future__ import annotations

import logging
from datetime import date
from typing import Any, Mapping

from sqlalchemy import Table, func, insert, select, update
from sqlalchemy.engine import Connection

from pfm_backend.cashflow_models import (
    KIND_TO_DAY_FIELD,
    SOURCE_BILL,
    SOURCE_INCOME,
    Recurrence,
    RecurringRule,
)
from pfm_backend.db import cashflow_bills, cashflow_incomes

logger = logging.getLogger(__name__)

KIND_TO_TABLE: dict[str, Table] = {
    SOURCE_BILL: cashflow_bills,
    SOURCE_INCOME: cashflow_incomes,
}

MUTABLE_FIELDS = {"name", "amount", "recurrence", "start_date", "category_id", "account_id"}


def _table(kind: str) -> Table:
    return KIND_TO_TABLE[kind]


def _day_column(kind: str):
    return _table(kind).c[KIND_TO_DAY_FIELD[kind]]


def _live(table: Table, user_id: int, rule_id: int | None = None) -> list:
    conditions = [table.c.user_id == user_id, table.c.deleted_at.is_(None)]
    if rule_id is not None:
        conditions.append(table.c.id == rule_id)
    return conditions


def list_rules(conn: Connection, user_id: int, kind: str) -> list[Mapping[str, Any]]:
    table = _table(kind)
    result = conn.execute(
        select(table)
        .where(*_live(table, user_id))
        .order_by(table.c.active.desc(), _day_column(kind).asc(), table.c.id.asc())
    )
    return result.mappings().all()


def get_rule(conn: Connection, user_id: int, kind: str, rule_id: int) -> Mapping[str, Any] | None:
    table = _table(kind)
    return conn.execute(select(table).where(*_live(table, user_id, rule_id))).mappings().first()


def create_rule(
    conn: Connection,
    user_id: int,
    kind: str,
    *,
    name: str,
    amount,
    day: int,
    recurrence: Recurrence,
    start_date: date | None = None,
    category_id: int | None = None,
    account_id: int | None = None,
) -> Mapping[str, Any]:
    table = _table(kind)
    values = {
        "user_id": user_id,
        "name": name,
        "amount": amount,
        KIND_TO_DAY_FIELD[kind]: day,
        "recurrence": recurrence.value,
        "start_date": start_date or date.today(),
        "category_id": category_id,
        "account_id": account_id,
        "active": True,
    }
    row = conn.execute(insert(table).values(**values).returning(*table.c)).mappings().first()
    logger.info("created %s %s for user %s", kind, row["id"], user_id)
    return row


def update_rule(
    conn: Connection,
    user_id: int,
    kind: str,
    rule_id: int,
    changes: Mapping[str, Any],
) -> Mapping[str, Any] | None:
    table = _table(kind)
    day_field = KIND_TO_DAY_FIELD[kind]
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if key == day_field or key in MUTABLE_FIELDS:
            values[key] = value.value if isinstance(value, Recurrence) else value
    values["updated_at"] = func.now()
    row = conn.execute(
        update(table)
        .where(*_live(table, user_id, rule_id))
        .values(**values)
        .returning(*table.c)
    ).mappings().first()
    if row:
        logger.info("updated %s %s for user %s", kind, rule_id, user_id)
    return row


def stop_rule(conn: Connection, user_id: int, kind: str, rule_id: int) -> Mapping[str, Any] | None:
    """Deactivate a rule. Stopping an already stopped rule keeps its first ``stopped_at``."""
    table = _table(kind)
    existing = get_rule(conn, user_id, kind, rule_id)
    if not existing:
        return None
    if not existing["active"]:
        return existing
    row = conn.execute(
        update(table)
        .where(*_live(table, user_id, rule_id))
        .values(active=False, stopped_at=func.now(), updated_at=func.now())
        .returning(*table.c)
    ).mappings().first()
    logger.info("stopped %s %s for user %s", kind, rule_id, user_id)
    return row


def reactivate_rule(
    conn: Connection, user_id: int, kind: str, rule_id: int
) -> Mapping[str, Any] | None:
    table = _table(kind)
    row = conn.execute(
        update(table)
        .where(*_live(table, user_id, rule_id))
        .values(active=True, stopped_at=None, updated_at=func.now())
        .returning(*table.c)
    ).mappings().first()
    if row:
        logger.info("reactivated %s %s for user %s", kind, rule_id, user_id)
    return row


def delete_rule(conn: Connection, user_id: int, kind: str, rule_id: int) -> bool:
    table = _table(kind)
    result = conn.execute(
        update(table).where(*_live(table, user_id, rule_id)).values(deleted_at=func.now())
    )
    if result.rowcount:
        logger.info("deleted %s %s for user %s", kind, rule_id, user_id)
    return result.rowcount > 0


def row_to_rule(row: Mapping[str, Any], kind: str) -> RecurringRule:
    return RecurringRule(
        id=row["id"],
        kind=kind,
        name=row["name"],
        amount=row["amount"],
        day=row[KIND_TO_DAY_FIELD[kind]],
        recurrence=Recurrence.parse(row["recurrence"]),
        start_date=row["start_date"],
        active=bool(row["active"]),
        deleted=row["deleted_at"] is not None,
        account_id=row["account_id"],
        category_id=row["category_id"],
    )


def list_active_rules(conn: Connection, user_id: int) -> dict[str, list[RecurringRule]]:
    active: dict[str, list[RecurringRule]] = {}
    for kind, key in ((SOURCE_BILL, "bills"), (SOURCE_INCOME, "incomes")):
        table = _table(kind)
        rows = conn.execute(
            select(table)
            .where(*_live(table, user_id), table.c.active.is_(True))
            .order_by(table.c.id.asc())
        ).mappings().all()
        active[key] = [row_to_rule(row, kind) for row in rows]
    return active


def list_rule_keys(conn: Connection, user_id: int) -> set[tuple[str, int]]:
    """Every ``(kind, id)`` the user has stored, stopped and soft-deleted rows included."""
    keys: set[tuple[str, int]] = set()
    for kind, table in KIND_TO_TABLE.items():
        rows = conn.execute(select(table.c.id).where(table.c.user_id == user_id)).all()
        keys.update((kind, row.id) for row in rows)
    return keys


def find_rule(conn: Connection, user_id: int, kind: str, rule_id: int) -> RecurringRule | None:
    row = get_rule(conn, user_id, kind, rule_id)
    if not row:
        return None
    return row_to_rule(row, kind)
