from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from pfm_backend.cashflow_models import (
    EVENT_EXPENSE,
    EVENT_INCOME,
    RULE_KINDS,
    SOURCE_TRANSACTION,
    CashflowEvent,
    PersistedEvent,
    PostedTransaction,
)

SlotKey = Tuple[str, Optional[int], date]


def to_actual_events(transactions: Iterable[PostedTransaction]) -> List[CashflowEvent]:
    return [
        CashflowEvent(
            source_type=SOURCE_TRANSACTION,
            source_id=txn.id,
            name=txn.description,
            amount=txn.amount,
            event_date=txn.posted_at,
            event_type=EVENT_EXPENSE if txn.amount < 0 else EVENT_INCOME,
            processed=True,
            account_id=txn.account_id,
        )
        for txn in transactions
    ]


def merge_timeline(
    projected: Iterable[CashflowEvent],
    actual: Iterable[CashflowEvent],
    overrides: Iterable[PersistedEvent],
) -> List[CashflowEvent]:
    """Union projected, actual and persisted events into one dated timeline.

    A live override shadows the projected occurrence sharing its
    ``(source_type, source_id, occurrence_date)`` slot; a suppressed one
    removes it. Overrides never hide a posted transaction: a transaction
    override only renames the actual event it points at.
    """
    slot_overrides: Dict[SlotKey, PersistedEvent] = {}
    transaction_overrides: Dict[int, PersistedEvent] = {}
    standalone: List[PersistedEvent] = []
    for override in overrides:
        if override.source_type == SOURCE_TRANSACTION:
            if override.source_id is not None:
                transaction_overrides[override.source_id] = override
        elif override.source_type in RULE_KINDS and override.source_id is not None:
            slot_overrides[override.slot] = override
        else:
            standalone.append(override)

    merged: List[CashflowEvent] = []
    used_slots = set()
    for event in projected:
        key = (event.source_type, event.source_id, event.event_date)
        override = slot_overrides.get(key)
        if override is None:
            merged.append(event)
            continue
        used_slots.add(key)
        if not override.suppressed:
            merged.append(override.to_event())

    # Overrides whose slot no longer projects (rule stopped or removed) stay visible.
    for key, override in slot_overrides.items():
        if key not in used_slots and not override.suppressed:
            merged.append(override.to_event())

    merged.extend(override.to_event() for override in standalone if not override.suppressed)

    for event in actual:
        override = transaction_overrides.get(event.source_id)
        if override is not None:
            event = replace(
                event,
                name=override.name,
                event_id=override.id,
                metadata=dict(override.metadata or {}),
            )
        merged.append(event)

    return sort_timeline(merged)


def sort_timeline(events: Iterable[CashflowEvent]) -> List[CashflowEvent]:
    # sorted() is stable, so insertion order breaks the remaining ties.
    return sorted(
        events,
        key=lambda event: (
            event.event_date,
            0 if event.is_actual else 1,
            event.source_type,
        ),
    )
