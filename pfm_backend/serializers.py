from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from pydantic import BaseModel

from pfm_backend.cashflow_models import CashflowEvent, CashflowSummary

CENT = Decimal("0.01")


def format_amount(value: Decimal | int | str) -> str:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return str(amount.quantize(CENT, rounding=ROUND_HALF_UP))


def format_id(value: int | None) -> str | None:
    if value is None:
        return None
    return str(value)


class UserOut(BaseModel):
    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


class UserEnvelope(BaseModel):
    user: UserOut


class TokenEnvelope(BaseModel):
    token: str
    user: UserOut


class AccountOut(BaseModel):
    id: str
    name: str
    account_type: str
    created_at: datetime | None = None


class AccountEnvelope(BaseModel):
    account: AccountOut


class AccountsEnvelope(BaseModel):
    accounts: list[AccountOut]


class TransactionLinks(BaseModel):
    account: str | None = None


class TransactionOut(BaseModel):
    id: str
    account_id: str
    description: str
    amount: str
    posted_at: date
    links: TransactionLinks


class TransactionEnvelope(BaseModel):
    transaction: TransactionOut


class TransactionsEnvelope(BaseModel):
    transactions: list[TransactionOut]


class RuleLinks(BaseModel):
    category: str | None = None
    account: str | None = None


class _RuleOut(BaseModel):
    id: str
    name: str
    amount: str
    recurrence: str
    start_date: date
    category_id: str | None = None
    account_id: str | None = None
    active: bool
    stopped_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    links: RuleLinks


class BillOut(_RuleOut):
    due_date: int


class IncomeOut(_RuleOut):
    receive_date: int


class BillEnvelope(BaseModel):
    bill: BillOut


class BillsEnvelope(BaseModel):
    bills: list[BillOut]


class IncomeEnvelope(BaseModel):
    income: IncomeOut


class IncomesEnvelope(BaseModel):
    incomes: list[IncomeOut]


class EventLinks(BaseModel):
    source: str | None = None
    account: str | None = None


class EventOut(BaseModel):
    id: str | None = None
    source_type: str
    source_id: str | None = None
    name: str
    amount: str
    event_date: date
    event_type: str
    account_id: str | None = None
    processed: bool
    metadata: dict[str, Any]
    links: EventLinks


class EventEnvelope(BaseModel):
    event: EventOut


class EventsEnvelope(BaseModel):
    events: list[EventOut]


class CashflowSettingsOut(BaseModel):
    auto_categorize: bool
    show_projections: bool
    projection_days: int


class CashflowSummaryOut(BaseModel):
    total_income: str
    total_bills: str
    net_cashflow: str
    average_income: str
    average_bills: str
    start_date: date
    end_date: date
    bills_count: int
    incomes_count: int
    events_count: int
    income_events_count: int
    expense_events_count: int
    settings: CashflowSettingsOut


class CashflowEnvelope(BaseModel):
    cashflow: CashflowSummaryOut


def serialize_user(row: Mapping[str, Any]) -> UserOut:
    return UserOut(
        id=format_id(row["id"]),
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
    )


def serialize_account(row: Mapping[str, Any]) -> AccountOut:
    return AccountOut(
        id=format_id(row["id"]),
        name=row["name"],
        account_type=row["account_type"],
        created_at=row["created_at"],
    )


def serialize_transaction(row: Mapping[str, Any]) -> TransactionOut:
    return TransactionOut(
        id=format_id(row["id"]),
        account_id=format_id(row["account_id"]),
        description=row["description"],
        amount=format_amount(row["amount"]),
        posted_at=row["posted_at"],
        links=TransactionLinks(account=format_id(row["account_id"])),
    )


def _rule_fields(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": format_id(row["id"]),
        "name": row["name"],
        "amount": format_amount(row["amount"]),
        "recurrence": row["recurrence"],
        "start_date": row["start_date"],
        "category_id": format_id(row["category_id"]),
        "account_id": format_id(row["account_id"]),
        "active": bool(row["active"]),
        "stopped_at": row["stopped_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "links": RuleLinks(
            category=format_id(row["category_id"]),
            account=format_id(row["account_id"]),
        ),
    }


def serialize_bill(row: Mapping[str, Any]) -> BillOut:
    return BillOut(due_date=row["due_date"], **_rule_fields(row))


def serialize_income(row: Mapping[str, Any]) -> IncomeOut:
    return IncomeOut(receive_date=row["receive_date"], **_rule_fields(row))


def serialize_event(event: CashflowEvent) -> EventOut:
    return EventOut(
        id=format_id(event.event_id),
        source_type=event.source_type,
        source_id=format_id(event.source_id),
        name=event.name,
        amount=format_amount(event.amount),
        event_date=event.event_date,
        event_type=event.event_type,
        account_id=format_id(event.account_id),
        processed=event.processed,
        metadata=dict(event.metadata or {}),
        links=EventLinks(
            source=format_id(event.source_id),
            account=format_id(event.account_id),
        ),
    )


def serialize_summary(
    summary: CashflowSummary,
    *,
    bills_count: int,
    incomes_count: int,
    events_count: int,
    settings: Mapping[str, Any],
) -> CashflowSummaryOut:
    return CashflowSummaryOut(
        total_income=format_amount(summary.total_income),
        total_bills=format_amount(summary.total_expense),
        net_cashflow=format_amount(summary.net),
        average_income=format_amount(summary.average_income),
        average_bills=format_amount(summary.average_expense),
        start_date=summary.start_date,
        end_date=summary.end_date,
        bills_count=bills_count,
        incomes_count=incomes_count,
        events_count=events_count,
        income_events_count=summary.count_income,
        expense_events_count=summary.count_expense,
        settings=CashflowSettingsOut(**settings),
    )
