from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import OrderKind, ReturnNoteItem, StockReturnNote
from procurement.services.audit_service import log_audit
from procurement.services.fulfillment_math_service import (
    ProposedReceipt,
    ShortfallLine,
    aggregate_history,
    detect_shortfall,
    format_quantity,
    remaining_shortfall,
)
from procurement.services.fulfillment_repository import FulfillmentRepository
from procurement.services.normalization_service import normalize_order_kind, normalize_return_status
from procurement.services.quantity_utils import ZERO, normalize_identity, resolve_item_identity, round_money, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReturnNoteResult:
    note: StockReturnNote
    items: list[ReturnNoteItem]
    remaining_shortfall: list[ShortfallLine]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def outstanding_shortfall(
    repository: FulfillmentRepository,
    *,
    order_uuid: str,
    order_kind: OrderKind,
    exclude_note_uuid: str | None = None,
) -> list[ShortfallLine]:
    """Leftover per order line after every receipt, net of what was already returned."""
    order = repository.get_order(order_uuid, order_kind, fresh=True)
    if order is None:
        return []
    context = aggregate_history(
        repository.list_receipt_records(order.uuid, order.kind),
        order_uuid=order.uuid,
        order_kind=order.kind,
    )
    nothing_received = [
        ProposedReceipt(
            item_identity=line.item_identity,
            received_quantity=ZERO,
            ordered_quantity=line.ordered_quantity,
            item_name=line.item_name,
        )
        for line in order.lines
    ]
    shortfall = detect_shortfall(order.lines, nothing_received, context)
    return remaining_shortfall(
        shortfall,
        repository.list_return_records(order.uuid, order.kind),
        order_uuid=order.uuid,
        order_kind=order.kind,
        exclude_note_uuid=exclude_note_uuid,
    )


def _get_active_note(db: Session, note_uuid: str) -> StockReturnNote:
    note = db.execute(
        select(StockReturnNote).where(StockReturnNote.uuid == note_uuid, StockReturnNote.is_active.is_(True))
    ).scalar_one_or_none()
    if note is None:
        raise ValueError('Return note not found')
    return note


def _retire_items(db: Session, note_uuid: str) -> int:
    rows = db.execute(
        select(ReturnNoteItem).where(
            ReturnNoteItem.return_note_uuid == note_uuid,
            ReturnNoteItem.is_active.is_(True),
        )
    ).scalars().all()
    for row in rows:
        row.is_active = False
    return len(rows)


def _ensure_within_shortfall(parsed: Sequence[tuple[Mapping, str]], outstanding: Sequence[ShortfallLine]) -> None:
    if not outstanding:
        raise ValueError('All shortfall is already covered by existing return notes')
    available = {line.item_identity: line.shortfall_quantity for line in outstanding}
    for raw, identity in parsed:
        quantity = to_decimal(raw.get('return_quantity'))
        limit = available.get(identity, ZERO)
        if quantity > limit:
            raise ValueError(
                f'Return quantity for {identity} exceeds the outstanding shortfall '
                f'(returning {format_quantity(quantity)}, outstanding {format_quantity(limit)})'
            )


def return_order_reference(note: StockReturnNote) -> tuple[str, OrderKind]:
    kind = normalize_order_kind(note.return_type)
    order_uuid = note.change_order_uuid if kind == OrderKind.CHANGE_ORDER else note.purchase_order_uuid
    return order_uuid or '', kind


def save_return_note(
    db: Session,
    repository: FulfillmentRepository,
    *,
    corporation_uuid: str,
    order_uuid: str,
    order_kind: object,
    items: Sequence[Mapping],
    note_uuid: str | None = None,
    project_uuid: str | None = None,
    return_number: str | None = None,
    returned_by: str | None = None,
    entry_date: datetime | None = None,
    notes: str | None = None,
    status: object = None,
    actor: str | None = None,
) -> ReturnNoteResult:
    """
    Create a return note, or replace an existing one when ``note_uuid`` is given.

    Every line must fit inside the shortfall that earlier returns have not
    already covered. When updating, the note's own lines are left out of
    that coverage and its old item rows are retired.
    """
    if normalize_identity(corporation_uuid) is None:
        raise ValueError('corporation_uuid is required')
    if normalize_identity(order_uuid) is None:
        raise ValueError('Order identity is required')
    kind = normalize_order_kind(order_kind)
    existing = _get_active_note(db, note_uuid) if note_uuid else None
    if existing is not None and normalize_identity(existing.corporation_uuid) != normalize_identity(corporation_uuid):
        raise ValueError('Return note not found')
    order = repository.get_order(order_uuid, kind)
    if order is None:
        label = 'Change order' if kind == OrderKind.CHANGE_ORDER else 'Purchase order'
        raise ValueError(f'{label} not found')
    if existing is not None:
        note_order_uuid, note_kind = return_order_reference(existing)
        if note_kind != kind or normalize_identity(note_order_uuid) != normalize_identity(order.uuid):
            raise ValueError('Return note belongs to a different order')

    lines_by_item = {line.item_identity: line for line in order.lines}
    parsed: list[tuple[Mapping, str]] = []
    for raw in items:
        identity = resolve_item_identity(raw.get('item_uuid') or raw.get('uuid'), raw.get('base_item_uuid'))
        if identity is None:
            continue
        if to_decimal(raw.get('return_quantity')) < 0:
            raise ValueError('Return quantity cannot be negative')
        parsed.append((raw, identity))
    if not any(to_decimal(raw.get('return_quantity')) > 0 for raw, _ in parsed):
        raise ValueError('Enter a return quantity for at least one item')
    _ensure_within_shortfall(
        parsed,
        outstanding_shortfall(
            repository,
            order_uuid=order.uuid,
            order_kind=kind,
            exclude_note_uuid=existing.uuid if existing is not None else None,
        ),
    )

    purchase_order_uuid = order.uuid if kind == OrderKind.PURCHASE_ORDER else None
    change_order_uuid = order.uuid if kind == OrderKind.CHANGE_ORDER else None
    now = _now()
    if existing is None:
        note = StockReturnNote(
            corporation_uuid=corporation_uuid,
            return_type=kind,
            purchase_order_uuid=purchase_order_uuid,
            change_order_uuid=change_order_uuid,
            status=normalize_return_status(status),
            created_at=now,
        )
        db.add(note)
    else:
        note = existing
        note.status = normalize_return_status(status if status is not None else existing.status)
        retired = _retire_items(db, note.uuid)
        logger.debug('Retired %s item rows of return note %s', retired, note.uuid)

    note.project_uuid = project_uuid if project_uuid is not None else note.project_uuid
    note.return_number = return_number
    note.returned_by = returned_by
    note.entry_date = entry_date
    note.notes = notes
    note.updated_at = now
    db.flush()

    saved_items: list[ReturnNoteItem] = []
    for raw, identity in parsed:
        quantity = to_decimal(raw.get('return_quantity'))
        order_line = lines_by_item.get(identity)
        unit_price = to_decimal(raw.get('unit_price'))
        if not unit_price and order_line is not None:
            unit_price = order_line.unit_price
        item = ReturnNoteItem(
            return_note_uuid=note.uuid,
            corporation_uuid=corporation_uuid,
            item_type=kind,
            purchase_order_uuid=purchase_order_uuid,
            change_order_uuid=change_order_uuid,
            item_uuid=identity,
            base_item_uuid=normalize_identity(raw.get('base_item_uuid')),
            cost_code_uuid=raw.get('cost_code_uuid') or (order_line.cost_code_uuid if order_line else None),
            return_quantity=quantity,
            unit_price=unit_price,
            return_total=round_money(unit_price * quantity),
            created_at=now,
        )
        db.add(item)
        saved_items.append(item)

    note.total_return_amount = sum((item.return_total for item in saved_items), ZERO)
    log_audit(
        db,
        corporation_uuid=corporation_uuid,
        actor=actor,
        action='RETURN_NOTE_UPDATED' if existing is not None else 'RETURN_NOTE_CREATED',
        entity_uuid=note.uuid,
        metadata={'order_uuid': order.uuid, 'order_kind': kind.value, 'item_count': len(saved_items)},
    )
    db.flush()

    # Read back through the session so the rows just flushed are counted.
    return ReturnNoteResult(
        note=note,
        items=saved_items,
        remaining_shortfall=outstanding_shortfall(repository, order_uuid=order.uuid, order_kind=kind),
    )


def retire_return_note(
    db: Session,
    *,
    note_uuid: str,
    corporation_uuid: str | None = None,
    actor: str | None = None,
) -> StockReturnNote:
    note = _get_active_note(db, note_uuid)
    if corporation_uuid and normalize_identity(corporation_uuid) != normalize_identity(note.corporation_uuid):
        raise ValueError('Return note not found')
    note.is_active = False
    note.updated_at = _now()
    retired = _retire_items(db, note.uuid)
    log_audit(
        db,
        corporation_uuid=note.corporation_uuid,
        actor=actor,
        action='RETURN_NOTE_RETIRED',
        entity_uuid=note.uuid,
        metadata={'retired_items': retired},
    )
    db.flush()
    return note
