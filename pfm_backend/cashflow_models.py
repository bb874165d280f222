from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional

from pfm_backend.errors import CashflowValidationError

SOURCE_BILL = "bill"
SOURCE_INCOME = "income"
SOURCE_TRANSACTION = "transaction"
SOURCE_MANUAL = "manual"

RULE_KINDS = {SOURCE_BILL, SOURCE_INCOME}

EVENT_INCOME = "income"
EVENT_EXPENSE = "expense"
EVENT_TYPES = {EVENT_INCOME, EVENT_EXPENSE}

KIND_TO_EVENT_TYPE = {
    SOURCE_BILL: EVENT_EXPENSE,
    SOURCE_INCOME: EVENT_INCOME,
}
KIND_TO_DAY_FIELD = {
    SOURCE_BILL: "due_date",
    SOURCE_INCOME: "receive_date",
}

MIN_DAY = 1
MAX_DAY = 31
MAX_NAME_LENGTH = 255

_RULE_AMOUNT_RE = re.compile(r"^\d+(\.\d{2})?$")
_EVENT_AMOUNT_RE = re.compile(r"^-?\d+(\.\d{2})?$")


class Recurrence(str, Enum):
    MONTHLY = "monthly"
    BIWEEKLY = "biweekly"
    WEEKLY = "weekly"

    @classmethod
    def parse(cls, value: "Recurrence | str") -> "Recurrence":
        if isinstance(value, Recurrence):
            return value
        normalized = "".join(ch for ch in str(value).strip().lower() if ch.isalnum())
        if normalized == "byweekly":
            normalized = "biweekly"
        try:
            return cls(normalized)
        except ValueError as exc:
            raise CashflowValidationError(
                "recurrence", "Recurrence must be one of monthly, biweekly, weekly."
            ) from exc


@dataclass(frozen=True)
class RecurringRule:
    """A bill or income the user expects to repeat."""

    id: int
    kind: str
    name: str
    amount: Decimal
    day: int
    recurrence: Recurrence
    start_date: date
    active: bool = True
    deleted: bool = False
    account_id: Optional[int] = None
    category_id: Optional[int] = None


@dataclass(frozen=True)
class CashflowEvent:
    """One entry of the cashflow timeline.

    ``amount`` is signed: incomes are positive, expenses negative.
    Projected events carry ``processed=False``; events backed by a posted
    transaction carry ``processed=True``.
    """

    source_type: str
    source_id: Optional[int]
    name: str
    amount: Decimal
    event_date: date
    event_type: str
    processed: bool
    account_id: Optional[int] = None
    event_id: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_actual(self) -> bool:
        return self.source_type == SOURCE_TRANSACTION


@dataclass(frozen=True)
class PersistedEvent:
    id: int
    source_type: str
    source_id: Optional[int]
    name: str
    amount: Decimal
    event_date: date
    occurrence_date: date
    event_type: str
    processed: bool = False
    suppressed: bool = False
    account_id: Optional[int] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def slot(self) -> tuple[str, Optional[int], date]:
        return (self.source_type, self.source_id, self.occurrence_date)

    @property
    def is_one_off(self) -> bool:
        return self.source_type == SOURCE_MANUAL or self.source_id is None

    def to_event(self) -> CashflowEvent:
        return CashflowEvent(
            source_type=self.source_type,
            source_id=self.source_id,
            name=self.name,
            amount=self.amount,
            event_date=self.event_date,
            event_type=self.event_type,
            processed=self.processed,
            account_id=self.account_id,
            event_id=self.id,
            metadata=dict(self.metadata or {}),
        )


@dataclass(frozen=True)
class PostedTransaction:
    id: int
    amount: Decimal
    description: str
    posted_at: date
    account_id: int


@dataclass(frozen=True)
class CashflowSummary:
    start_date: date
    end_date: date
    total_income: Decimal
    total_expense: Decimal
    net: Decimal
    average_income: Decimal
    average_expense: Decimal
    count_income: int
    count_expense: int
    months: int


def validate_window(start_date: date, end_date: date) -> None:
    if start_date > end_date:
        raise CashflowValidationError("start_date", "start_date must be on or before end_date.")


def validate_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in RULE_KINDS:
        raise CashflowValidationError("source_type", "Source type must be bill or income.")
    return normalized


def validate_day(kind: str, day: int) -> int:
    field_name = KIND_TO_DAY_FIELD[kind]
    if isinstance(day, bool) or not isinstance(day, int) or not MIN_DAY <= day <= MAX_DAY:
        raise CashflowValidationError(field_name, f"{field_name} must be between 1-31.")
    return day


def validate_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise CashflowValidationError("name", "Name is required.")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise CashflowValidationError("name", "Name must be 255 characters or less.")
    return cleaned


def parse_rule_amount(value: Decimal | str) -> Decimal:
    """Parse a rule amount; rules always hold a positive amount."""
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip()
        if not _RULE_AMOUNT_RE.match(text):
            raise CashflowValidationError("amount", "Must be a decimal with 2 places.")
        amount = Decimal(text)
    if amount <= 0:
        raise CashflowValidationError("amount", "Amount must be greater than zero.")
    return amount


def parse_event_amount(value: Decimal | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    text = str(value).strip()
    if not _EVENT_AMOUNT_RE.match(text):
        raise CashflowValidationError("amount", "Must be a decimal with 2 places.")
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise CashflowValidationError("amount", "Must be a decimal with 2 places.") from exc


def validate_event_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in EVENT_TYPES:
        raise CashflowValidationError("event_type", "Event type must be income or expense.")
    return normalized


def signed_amount(amount: Decimal, event_type: str) -> Decimal:
    magnitude = abs(amount)
    if event_type == EVENT_EXPENSE:
        return -magnitude
    return magnitude


def validate_rule(rule: RecurringRule) -> None:
    validate_kind(rule.kind)
    validate_day(rule.kind, rule.day)
    parse_rule_amount(rule.amount)
    Recurrence.parse(rule.recurrence)
