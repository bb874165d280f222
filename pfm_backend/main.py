from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from pfm_backend import cashflow_service, event_store, rule_store, transaction_store
from pfm_backend.auth import (
    create_access_token,
    get_current_user_id,
    hash_password,
    require_user,
    verify_password,
)
from pfm_backend.cashflow_models import (
    KIND_TO_DAY_FIELD,
    SOURCE_BILL,
    SOURCE_INCOME,
    SOURCE_TRANSACTION,
    Recurrence,
    parse_event_amount,
    parse_rule_amount,
    signed_amount,
    validate_day,
    validate_event_type,
    validate_kind,
    validate_name,
)
from pfm_backend.config import settings
from pfm_backend.db import engine, init_db, users
from pfm_backend.errors import CashflowValidationError
from pfm_backend.logging_config import setup_logging
from pfm_backend.serializers import (
    AccountEnvelope,
    AccountsEnvelope,
    BillEnvelope,
    BillsEnvelope,
    CashflowEnvelope,
    EventEnvelope,
    EventsEnvelope,
    IncomeEnvelope,
    IncomesEnvelope,
    TokenEnvelope,
    TransactionEnvelope,
    TransactionsEnvelope,
    UserEnvelope,
    serialize_account,
    serialize_bill,
    serialize_event,
    serialize_income,
    serialize_summary,
    serialize_transaction,
    serialize_user,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="PFM Backend Simulator", version="2.0.0")

API_PREFIX = "/api/v2"
USER_PREFIX = API_PREFIX + "/users/{user_id}"

RULE_NOT_FOUND = {SOURCE_BILL: "Bill not found", SOURCE_INCOME: "Income not found"}


@app.on_event("startup")
def startup() -> None:
    setup_logging(settings.log_level)
    init_db()


def _validation_response(details: list[dict[str, str]]) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "details": details},
    )


@app.exception_handler(CashflowValidationError)
def handle_cashflow_validation(request: Request, exc: CashflowValidationError) -> JSONResponse:
    return _validation_response([exc.as_detail()])


@app.exception_handler(RequestValidationError)
def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(location), "message": error.get("msg", "Invalid value")})
    return _validation_response(details)


@app.exception_handler(StarletteHTTPException)
def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(SQLAlchemyError)
def handle_store_failure(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


class SignupPayload(BaseModel):
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None


class CredentialsPayload(BaseModel):
    email: str
    password: str


class AccountPayload(BaseModel):
    name: str
    account_type: str = "checking"

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = validate_name(payload.name)
        payload.account_type = payload.account_type.strip().lower()
        if payload.account_type not in transaction_store.ACCOUNT_TYPES:
            raise CashflowValidationError("account_type", "Invalid account type.")
        return payload


class TransactionPayload(BaseModel):
    account_id: int
    description: str
    amount: str
    posted_at: date

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> dict[str, Any]:
        description = (payload.description or "").strip()
        if not description:
            raise CashflowValidationError("description", "Description is required.")
        return {
            "account_id": payload.account_id,
            "description": description,
            "amount": parse_event_amount(payload.amount),
            "posted_at": payload.posted_at,
        }


class BillPayload(BaseModel):
    name: str
    amount: str
    due_date: int
    recurrence: str = "monthly"
    start_date: date | None = None
    category_id: int | None = None
    account_id: int | None = None


class BillUpdatePayload(BaseModel):
    name: str | None = None
    amount: str | None = None
    due_date: int | None = None
    recurrence: str | None = None
    start_date: date | None = None
    category_id: int | None = None
    account_id: int | None = None


class IncomePayload(BaseModel):
    name: str
    amount: str
    receive_date: int
    recurrence: str = "monthly"
    start_date: date | None = None
    category_id: int | None = None
    account_id: int | None = None


class IncomeUpdatePayload(BaseModel):
    name: str | None = None
    amount: str | None = None
    receive_date: int | None = None
    recurrence: str | None = None
    start_date: date | None = None
    category_id: int | None = None
    account_id: int | None = None


NULLABLE_RULE_FIELDS = {"category_id", "account_id"}


def _rule_values(kind: str, payload: BaseModel, partial: bool) -> dict[str, Any]:
    """Validate a bill/income body into store values.

    Partial bodies only carry the fields the client sent; of those only
    ``category_id`` and ``account_id`` may be cleared with null.
    """
    day_field = KIND_TO_DAY_FIELD[kind]
    sent = payload.model_fields_set if partial else set(type(payload).model_fields)
    values: dict[str, Any] = {}
    for name in type(payload).model_fields:
        if name not in sent:
            continue
        value = getattr(payload, name)
        if value is None:
            if name in NULLABLE_RULE_FIELDS or (not partial and name == "start_date"):
                values[name] = None
                continue
            raise CashflowValidationError(name, f"{name} cannot be null.")
        if name == "name":
            values[name] = validate_name(value)
        elif name == "amount":
            values[name] = parse_rule_amount(value)
        elif name == day_field:
            values[name] = validate_day(kind, value)
        elif name == "recurrence":
            values[name] = Recurrence.parse(value)
        else:
            values[name] = value
    return values


def _check_account(conn, user_id: int, account_id: int | None) -> None:
    if account_id is not None and not transaction_store.account_exists(conn, user_id, account_id):
        raise HTTPException(status_code=404, detail="Account not found")


class EventCreatePayload(BaseModel):
    name: str
    amount: str
    event_date: date
    event_type: str
    account_id: int | None = None
    processed: bool = False
    metadata: dict[str, Any] | None = None


class EventUpdatePayload(BaseModel):
    name: str | None = None
    amount: str | None = None
    event_date: date | None = None
    event_type: str | None = None
    account_id: int | None = None
    processed: bool | None = None
    suppressed: bool | None = None
    metadata: dict[str, Any] | None = None


class OverridePayload(EventUpdatePayload):
    source_type: str
    source_id: int
    occurrence_date: date


class SuppressPayload(BaseModel):
    source_type: str
    source_id: int
    occurrence_date: date


class CashflowSettingsPayload(BaseModel):
    auto_categorize: bool | None = None
    show_projections: bool | None = None
    projection_days: int | None = None


EVENT_FIELDS = {"name", "amount", "event_date", "event_type", "account_id", "processed", "suppressed", "metadata"}


def _event_values(payload: BaseModel) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in type(payload).model_fields:
        if name not in EVENT_FIELDS or name not in payload.model_fields_set:
            continue
        value = getattr(payload, name)
        if value is None:
            if name in ("account_id", "metadata"):
                values[name] = None
                continue
            raise CashflowValidationError(name, f"{name} cannot be null.")
        if name == "name":
            values[name] = validate_name(value)
        elif name == "amount":
            values[name] = parse_event_amount(value)
        elif name == "event_type":
            values[name] = validate_event_type(value)
        else:
            values[name] = value
    return values


def _event_envelope(row) -> EventEnvelope:
    return EventEnvelope(event=serialize_event(event_store.row_to_event(row).to_event()))


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post(API_PREFIX + "/auth/signup", response_model=UserEnvelope, status_code=201)
def signup(payload: SignupPayload) -> UserEnvelope:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(users)
                .values(
                    email=email,
                    hashed_password=hash_password(payload.password),
                    first_name=payload.first_name,
                    last_name=payload.last_name,
                )
                .returning(*users.c)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists") from exc
    logger.info("signed up user %s", row["id"])
    return UserEnvelope(user=serialize_user(row))


@app.post(API_PREFIX + "/auth/login", response_model=TokenEnvelope)
def login(payload: CredentialsPayload) -> TokenEnvelope:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    with engine.begin() as conn:
        row = conn.execute(
            select(users).where(users.c.email == email, users.c.deleted_at.is_(None))
        ).mappings().first()
    if not row or not verify_password(payload.password, row["hashed_password"]):
        logger.warning("failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    logger.info("user %s logged in", row["id"])
    return TokenEnvelope(
        token=create_access_token(row["id"], row["email"]),
        user=serialize_user(row),
    )


@app.get(API_PREFIX + "/users/current", response_model=UserEnvelope)
def current_user(current_user_id: int = Depends(get_current_user_id)) -> UserEnvelope:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == current_user_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return UserEnvelope(user=serialize_user(row))


@app.get(USER_PREFIX + "/accounts", response_model=AccountsEnvelope)
def list_accounts(
    user_id: int, current_user_id: int = Depends(get_current_user_id)
) -> AccountsEnvelope:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        rows = transaction_store.list_accounts(conn, user_id)
    return AccountsEnvelope(accounts=[serialize_account(row) for row in rows])


@app.post(USER_PREFIX + "/accounts", response_model=AccountEnvelope, status_code=201)
def create_account(
    user_id: int,
    payload: AccountPayload,
    current_user_id: int = Depends(get_current_user_id),
) -> AccountEnvelope:
    require_user(user_id, current_user_id)
    payload = AccountPayload.validate_payload(payload)
    with engine.begin() as conn:
        row = transaction_store.create_account(conn, user_id, payload.name, payload.account_type)
    return AccountEnvelope(account=serialize_account(row))


@app.get(USER_PREFIX + "/transactions", response_model=TransactionsEnvelope)
def list_transactions(
    user_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    current_user_id: int = Depends(get_current_user_id),
) -> TransactionsEnvelope:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        rows = transaction_store.list_transaction_rows(conn, user_id, start_date, end_date)
    return TransactionsEnvelope(transactions=[serialize_transaction(row) for row in rows])


@app.post(USER_PREFIX + "/transactions", response_model=TransactionEnvelope, status_code=201)
def create_transaction(
    user_id: int,
    payload: TransactionPayload,
    current_user_id: int = Depends(get_current_user_id),
) -> TransactionEnvelope:
    require_user(user_id, current_user_id)
    values = TransactionPayload.validate_payload(payload)
    with engine.begin() as conn:
        _check_account(conn, user_id, values["account_id"])
        row = transaction_store.create_transaction(conn, user_id, **values)
    return TransactionEnvelope(transaction=serialize_transaction(row))


@app.delete(USER_PREFIX + "/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    user_id: int,
    transaction_id: int,
    current_user_id: int = Depends(get_current_user_id),
) -> Response:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        if not transaction_store.soft_delete_transaction(conn, user_id, transaction_id):
            raise HTTPException(status_code=404, detail="Transaction not found")
    return Response(status_code=204)


def _cashflow_envelope(
    conn,
    user_id: int,
    start_date: date | None,
    end_date: date | None,
    lookahead_days: int | None,
) -> CashflowEnvelope:
    start, end = cashflow_service.resolve_window(conn, user_id, start_date, end_date)
    cashflow_settings = cashflow_service.get_cashflow_settings(conn, user_id)
    result = cashflow_service.build_cashflow(
        conn,
        user_id,
        start,
        end,
        lookahead_days,
        show_projections=cashflow_settings["show_projections"],
    )
    return CashflowEnvelope(
        cashflow=serialize_summary(
            result.summary,
            bills_count=result.bills_count,
            incomes_count=result.incomes_count,
            events_count=len(result.timeline),
            settings=cashflow_settings,
        )
    )


@app.get(USER_PREFIX + "/cashflow", response_model=CashflowEnvelope)
def get_cashflow_summary(
    user_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    lookahead_days: int | None = Query(None),
    current_user_id: int = Depends(get_current_user_id),
) -> CashflowEnvelope:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        return _cashflow_envelope(conn, user_id, start_date, end_date, lookahead_days)


@app.put(USER_PREFIX + "/cashflow", response_model=CashflowEnvelope)
def update_cashflow_settings(
    user_id: int,
    payload: CashflowSettingsPayload,
    current_user_id: int = Depends(get_current_user_id),
) -> CashflowEnvelope:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        cashflow_service.update_cashflow_settings(conn, user_id, payload.model_dump())
        return _cashflow_envelope(conn, user_id, None, None, None)


def _list_rules(kind: str, user_id: int) -> list:
    with engine.begin() as conn:
        return rule_store.list_rules(conn, user_id, kind)


def _create_rule(kind: str, user_id: int, payload: BaseModel):
    values = _rule_values(kind, payload, partial=False)
    day = values.pop(KIND_TO_DAY_FIELD[kind])
    with engine.begin() as conn:
        _check_account(conn, user_id, values.get("account_id"))
        return rule_store.create_rule(conn, user_id, kind, day=day, **values)


def _update_rule(kind: str, user_id: int, rule_id: int, payload: BaseModel):
    values = _rule_values(kind, payload, partial=True)
    with engine.begin() as conn:
        _check_account(conn, user_id, values.get("account_id"))
        row = rule_store.update_rule(conn, user_id, kind, rule_id, values)
    if not row:
        raise HTTPException(status_code=404, detail=RULE_NOT_FOUND[kind])
    return row


def _change_rule_state(kind: str, user_id: int, rule_id: int, action):
    with engine.begin() as conn:
        row = action(conn, user_id, kind, rule_id)
    if not row:
        raise HTTPException(status_code=404, detail=RULE_NOT_FOUND[kind])
    return row


def _delete_rule(kind: str, user_id: int, rule_id: int) -> Response:
    with engine.begin() as conn:
        if not rule_store.delete_rule(conn, user_id, kind, rule_id):
            raise HTTPException(status_code=404, detail=RULE_NOT_FOUND[kind])
    return Response(status_code=204)


@app.get(USER_PREFIX + "/cashflow/bills", response_model=BillsEnvelope)
def list_bills(user_id: int, current_user_id: int = Depends(get_current_user_id)) -> BillsEnvelope:
    require_user(user_id, current_user_id)
    return BillsEnvelope(bills=[serialize_bill(row) for row in _list_rules(SOURCE_BILL, user_id)])


@app.post(USER_PREFIX + "/cashflow/bills", response_model=BillEnvelope, status_code=201)
def create_bill(
    user_id: int,
    payload: BillPayload,
    current_user_id: int = Depends(get_current_user_id),
) -> BillEnvelope:
    require_user(user_id, current_user_id)
    return BillEnvelope(bill=serialize_bill(_create_rule(SOURCE_BILL, user_id, payload)))


@app.put(USER_PREFIX + "/cashflow/bills/{bill_id}", response_model=BillEnvelope)
def update_bill(
    user_id: int,
    bill_id: int,
    payload: BillUpdatePayload,
    current_user_id: int = Depends(get_current_user_id),
) -> BillEnvelope:
    require_user(user_id, current_user_id)
    return BillEnvelope(bill=serialize_bill(_update_rule(SOURCE_BILL, user_id, bill_id, payload)))


@app.delete(USER_PREFIX + "/cashflow/bills/{bill_id}", status_code=204)
def delete_bill(
    user_id: int, bill_id: int, current_user_id: int = Depends(get_current_user_id)
) -> Response:
    require_user(user_id, current_user_id)
    return _delete_rule(SOURCE_BILL, user_id, bill_id)


@app.put(USER_PREFIX + "/cashflow/bills/{bill_id}/stop", response_model=BillEnvelope)
def stop_bill(
    user_id: int, bill_id: int, current_user_id: int = Depends(get_current_user_id)
) -> BillEnvelope:
    require_user(user_id, current_user_id)
    row = _change_rule_state(SOURCE_BILL, user_id, bill_id, rule_store.stop_rule)
    return BillEnvelope(bill=serialize_bill(row))


@app.put(USER_PREFIX + "/cashflow/bills/{bill_id}/reactivate", response_model=BillEnvelope)
def reactivate_bill(
    user_id: int, bill_id: int, current_user_id: int = Depends(get_current_user_id)
) -> BillEnvelope:
    require_user(user_id, current_user_id)
    row = _change_rule_state(SOURCE_BILL, user_id, bill_id, rule_store.reactivate_rule)
    return BillEnvelope(bill=serialize_bill(row))


@app.get(USER_PREFIX + "/cashflow/incomes", response_model=IncomesEnvelope)
def list_incomes(
    user_id: int, current_user_id: int = Depends(get_current_user_id)
) -> IncomesEnvelope:
    require_user(user_id, current_user_id)
    return IncomesEnvelope(
        incomes=[serialize_income(row) for row in _list_rules(SOURCE_INCOME, user_id)]
    )


@app.post(USER_PREFIX + "/cashflow/incomes", response_model=IncomeEnvelope, status_code=201)
def create_income(
    user_id: int,
    payload: IncomePayload,
    current_user_id: int = Depends(get_current_user_id),
) -> IncomeEnvelope:
    require_user(user_id, current_user_id)
    return IncomeEnvelope(income=serialize_income(_create_rule(SOURCE_INCOME, user_id, payload)))


@app.put(USER_PREFIX + "/cashflow/incomes/{income_id}", response_model=IncomeEnvelope)
def update_income(
    user_id: int,
    income_id: int,
    payload: IncomeUpdatePayload,
    current_user_id: int = Depends(get_current_user_id),
) -> IncomeEnvelope:
    require_user(user_id, current_user_id)
    row = _update_rule(SOURCE_INCOME, user_id, income_id, payload)
    return IncomeEnvelope(income=serialize_income(row))


@app.delete(USER_PREFIX + "/cashflow/incomes/{income_id}", status_code=204)
def delete_income(
    user_id: int, income_id: int, current_user_id: int = Depends(get_current_user_id)
) -> Response:
    require_user(user_id, current_user_id)
    return _delete_rule(SOURCE_INCOME, user_id, income_id)


@app.put(USER_PREFIX + "/cashflow/incomes/{income_id}/stop", response_model=IncomeEnvelope)
def stop_income(
    user_id: int, income_id: int, current_user_id: int = Depends(get_current_user_id)
) -> IncomeEnvelope:
    require_user(user_id, current_user_id)
    row = _change_rule_state(SOURCE_INCOME, user_id, income_id, rule_store.stop_rule)
    return IncomeEnvelope(income=serialize_income(row))


@app.put(USER_PREFIX + "/cashflow/incomes/{income_id}/reactivate", response_model=IncomeEnvelope)
def reactivate_income(
    user_id: int, income_id: int, current_user_id: int = Depends(get_current_user_id)
) -> IncomeEnvelope:
    require_user(user_id, current_user_id)
    row = _change_rule_state(SOURCE_INCOME, user_id, income_id, rule_store.reactivate_rule)
    return IncomeEnvelope(income=serialize_income(row))


@app.get(USER_PREFIX + "/cashflow/events", response_model=EventsEnvelope)
def list_events(
    user_id: int,
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    lookahead_days: int | None = Query(None),
    current_user_id: int = Depends(get_current_user_id),
) -> EventsEnvelope:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        start, end = cashflow_service.resolve_window(conn, user_id, start_date, end_date)
        show_projections = cashflow_service.get_cashflow_settings(conn, user_id)["show_projections"]
        result = cashflow_service.build_cashflow(
            conn, user_id, start, end, lookahead_days, show_projections=show_projections
        )
    return EventsEnvelope(events=[serialize_event(event) for event in result.timeline])


@app.post(USER_PREFIX + "/cashflow/events", response_model=EventEnvelope, status_code=201)
def create_event(
    user_id: int,
    payload: EventCreatePayload,
    current_user_id: int = Depends(get_current_user_id),
) -> EventEnvelope:
    require_user(user_id, current_user_id)
    values = _event_values(payload)
    values["amount"] = signed_amount(values["amount"], values["event_type"])
    with engine.begin() as conn:
        _check_account(conn, user_id, values.get("account_id"))
        row = event_store.create_one_off(conn, user_id, values)
    return _event_envelope(row)


@app.put(USER_PREFIX + "/cashflow/events/override", response_model=EventEnvelope)
def override_event(
    user_id: int,
    payload: OverridePayload,
    current_user_id: int = Depends(get_current_user_id),
) -> EventEnvelope:
    require_user(user_id, current_user_id)
    source_type = payload.source_type.strip().lower()
    if source_type != SOURCE_TRANSACTION:
        source_type = validate_kind(source_type)
    values = _event_values(payload)
    if source_type != SOURCE_TRANSACTION:
        values.setdefault("suppressed", False)
    with engine.begin() as conn:
        _check_account(conn, user_id, values.get("account_id"))
        try:
            row = cashflow_service.override_occurrence(
                conn, user_id, source_type, payload.source_id, payload.occurrence_date, values
            )
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _event_envelope(row)


@app.post(USER_PREFIX + "/cashflow/events/suppress", response_model=EventEnvelope)
def suppress_event(
    user_id: int,
    payload: SuppressPayload,
    current_user_id: int = Depends(get_current_user_id),
) -> EventEnvelope:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        try:
            row = cashflow_service.suppress_occurrence(
                conn, user_id, payload.source_type, payload.source_id, payload.occurrence_date
            )
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _event_envelope(row)


@app.put(USER_PREFIX + "/cashflow/events/{event_id}", response_model=EventEnvelope)
def update_event(
    user_id: int,
    event_id: int,
    payload: EventUpdatePayload,
    current_user_id: int = Depends(get_current_user_id),
) -> EventEnvelope:
    require_user(user_id, current_user_id)
    values = _event_values(payload)
    with engine.begin() as conn:
        _check_account(conn, user_id, values.get("account_id"))
        row = cashflow_service.update_persisted_event(conn, user_id, event_id, values)
    if not row:
        raise HTTPException(status_code=404, detail="Event not found")
    return _event_envelope(row)


@app.delete(USER_PREFIX + "/cashflow/events/{event_id}", status_code=204)
def delete_event(
    user_id: int, event_id: int, current_user_id: int = Depends(get_current_user_id)
) -> Response:
    require_user(user_id, current_user_id)
    with engine.begin() as conn:
        if not event_store.soft_delete(conn, user_id, event_id):
            raise HTTPException(status_code=404, detail="Event not found")
    return Response(status_code=204)
