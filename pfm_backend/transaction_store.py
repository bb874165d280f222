from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from pfm_backend.cashflow_models import PostedTransaction
from pfm_backend.db import accounts, transactions

logger = logging.getLogger(__name__)

ACCOUNT_TYPES = {"checking", "savings", "credit", "investment", "loan", "other"}


def create_account(conn: Connection, user_id: int, name: str, account_type: str) -> Mapping[str, Any]:
    row = conn.execute(
        insert(accounts)
        .values(user_id=user_id, name=name, account_type=account_type)
        .returning(*accounts.c)
    ).mappings().first()
    logger.info("created account %s for user %s", row["id"], user_id)
    return row


def list_accounts(conn: Connection, user_id: int) -> list[Mapping[str, Any]]:
    return conn.execute(
        select(accounts)
        .where(accounts.c.user_id == user_id, accounts.c.deleted_at.is_(None))
        .order_by(accounts.c.id.asc())
    ).mappings().all()


def account_exists(conn: Connection, user_id: int, account_id: int) -> bool:
    return conn.execute(
        select(accounts.c.id).where(
            accounts.c.id == account_id,
            accounts.c.user_id == user_id,
            accounts.c.deleted_at.is_(None),
        )
    ).first() is not None


def create_transaction(
    conn: Connection,
    user_id: int,
    *,
    account_id: int,
    description: str,
    amount: Decimal,
    posted_at: date,
) -> Mapping[str, Any]:
    row = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            account_id=account_id,
            description=description,
            amount=amount,
            posted_at=posted_at,
        )
        .returning(*transactions.c)
    ).mappings().first()
    logger.info("created transaction %s for user %s", row["id"], user_id)
    return row


def _live_transactions(user_id: int) -> list:
    return [
        transactions.c.user_id == user_id,
        transactions.c.deleted_at.is_(None),
        accounts.c.deleted_at.is_(None),
    ]


def get_transaction(conn: Connection, user_id: int, transaction_id: int) -> Mapping[str, Any] | None:
    return conn.execute(
        select(transactions)
        .join(accounts, accounts.c.id == transactions.c.account_id)
        .where(*_live_transactions(user_id), transactions.c.id == transaction_id)
    ).mappings().first()


def list_transaction_rows(
    conn: Connection,
    user_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[Mapping[str, Any]]:
    conditions = _live_transactions(user_id)
    if start_date is not None:
        conditions.append(transactions.c.posted_at >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.posted_at <= end_date)
    return conn.execute(
        select(transactions)
        .join(accounts, accounts.c.id == transactions.c.account_id)
        .where(*conditions)
        .order_by(transactions.c.posted_at.asc(), transactions.c.id.asc())
    ).mappings().all()


def list_transactions(
    conn: Connection, user_id: int, start_date: date, end_date: date
) -> list[PostedTransaction]:
    return [
        PostedTransaction(
            id=row["id"],
            amount=row["amount"],
            description=row["description"],
            posted_at=row["posted_at"],
            account_id=row["account_id"],
        )
        for row in list_transaction_rows(conn, user_id, start_date, end_date)
    ]


def soft_delete_transaction(conn: Connection, user_id: int, transaction_id: int) -> bool:
    result = conn.execute(
        update(transactions)
        .where(
            transactions.c.id == transaction_id,
            transactions.c.user_id == user_id,
            transactions.c.deleted_at.is_(None),
        )
        .values(deleted_at=func.now())
    )
    if result.rowcount:
        logger.info("deleted transaction %s for user %s", transaction_id, user_id)
    return result.rowcount > 0
