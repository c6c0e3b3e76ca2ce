from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import OrderKind, ReceiptNoteItem, StockReceiptNote
from procurement.services.audit_service import log_audit
from procurement.services.fulfillment_math_service import (
    OverReceivedLine,
    ProposedReceipt,
    ShortfallLine,
    aggregate_history,
    detect_shortfall,
    ensure_not_over_received,
    find_over_received,
    remaining_shortfall,
)
from procurement.services.fulfillment_repository import FulfillmentRepository, OrderSnapshot
from procurement.services.normalization_service import (
    normalize_order_kind,
    normalize_receipt_status,
    proposed_receipt_from_mapping,
)
from procurement.services.proration_service import (
    ChargeRates,
    FinancialBreakdown,
    ProrationItem,
    allocate,
    compute_financial_breakdown,
)
from procurement.services.quantity_utils import ZERO, normalize_identity, round_money, to_optional_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiptNotePreview:
    over_received: list[OverReceivedLine]
    shortfall: list[ShortfallLine]
    remaining_shortfall: list[ShortfallLine]


@dataclass(frozen=True)
class ReceiptNoteResult:
    note: StockReceiptNote
    items: list[ReceiptNoteItem]
    financial_breakdown: FinancialBreakdown
    shortfall: list[ShortfallLine]
    remaining_shortfall: list[ShortfallLine]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _load_order(repository: FulfillmentRepository, order_uuid: str, order_kind: OrderKind) -> OrderSnapshot:
    if normalize_identity(order_uuid) is None:
        raise ValueError('Order identity is required')
    order = repository.get_order(order_uuid, order_kind)
    if order is None:
        label = 'Change order' if order_kind == OrderKind.CHANGE_ORDER else 'Purchase order'
        raise ValueError(f'{label} not found')
    return order


def _proposed_lines(order: OrderSnapshot, items: Sequence[Mapping]) -> list[ProposedReceipt]:
    lines_by_item = {line.item_identity: line for line in order.lines}
    proposed: list[ProposedReceipt] = []
    for raw in items:
        receipt = proposed_receipt_from_mapping(raw)
        order_line = lines_by_item.get(receipt.item_identity or '')
        if order_line is not None:
            # The order line is authoritative for what was ordered.
            receipt = replace(
                receipt,
                ordered_quantity=order_line.ordered_quantity,
                item_name=receipt.item_name or order_line.item_name,
                cost_code_uuid=receipt.cost_code_uuid or order_line.cost_code_uuid,
                unit_price=receipt.unit_price if receipt.unit_price else order_line.unit_price,
            )
        proposed.append(receipt)
    return proposed


def _reconcile(
    repository: FulfillmentRepository,
    order: OrderSnapshot,
    proposed: Sequence[ProposedReceipt],
    *,
    exclude_note_uuid: str | None,
) -> tuple[list[ShortfallLine], list[ShortfallLine]]:
    receipts = repository.list_receipt_records(order.uuid, order.kind)
    returns = repository.list_return_records(order.uuid, order.kind)
    context = aggregate_history(
        receipts,
        order_uuid=order.uuid,
        order_kind=order.kind,
        exclude_note_uuid=exclude_note_uuid,
    )
    shortfall = detect_shortfall(order.lines, proposed, context)
    remaining = remaining_shortfall(shortfall, returns, order_uuid=order.uuid, order_kind=order.kind)
    return shortfall, remaining


def preview_receipt_note(
    repository: FulfillmentRepository,
    *,
    order_uuid: str,
    order_kind: object,
    items: Sequence[Mapping],
    exclude_note_uuid: str | None = None,
) -> ReceiptNotePreview:
    kind = normalize_order_kind(order_kind)
    order = _load_order(repository, order_uuid, kind)
    proposed = _proposed_lines(order, items)
    shortfall, remaining = _reconcile(repository, order, proposed, exclude_note_uuid=exclude_note_uuid)
    return ReceiptNotePreview(
        over_received=find_over_received(proposed),
        shortfall=shortfall,
        remaining_shortfall=remaining,
    )


def _get_active_note(db: Session, note_uuid: str) -> StockReceiptNote:
    note = db.execute(
        select(StockReceiptNote).where(StockReceiptNote.uuid == note_uuid, StockReceiptNote.is_active.is_(True))
    ).scalar_one_or_none()
    if note is None:
        raise ValueError('Receipt note not found')
    return note


def _retire_items(db: Session, note_uuid: str) -> int:
    rows = db.execute(
        select(ReceiptNoteItem).where(
            ReceiptNoteItem.receipt_note_uuid == note_uuid,
            ReceiptNoteItem.is_active.is_(True),
        )
    ).scalars().all()
    for row in rows:
        row.is_active = False
    return len(rows)


def save_receipt_note(
    db: Session,
    repository: FulfillmentRepository,
    *,
    corporation_uuid: str,
    order_uuid: str,
    order_kind: object,
    items: Sequence[Mapping],
    note_uuid: str | None = None,
    project_uuid: str | None = None,
    grn_number: str | None = None,
    reference_number: str | None = None,
    received_by: str | None = None,
    entry_date: datetime | None = None,
    notes: str | None = None,
    status: object = None,
    save_as_open: bool = False,
    charges: ChargeRates | None = None,
    grn_total_with_charges_taxes: object = None,
    actor: str | None = None,
) -> ReceiptNoteResult:
    """
    Create a receipt note, or replace an existing one when ``note_uuid`` is given.

    Nothing is written when any line receives more than was ordered. When
    updating, the note's own previous lines are left out of the history so
    the edit is reconciled against every other note only. Replaced item rows
    are retired rather than rewritten.
    """
    if normalize_identity(corporation_uuid) is None:
        raise ValueError('corporation_uuid is required')
    kind = normalize_order_kind(order_kind)
    existing = _get_active_note(db, note_uuid) if note_uuid else None
    if existing is not None and normalize_identity(existing.corporation_uuid) != normalize_identity(corporation_uuid):
        raise ValueError('Receipt note not found')

    order = _load_order(repository, order_uuid, kind)
    # Lines without an item identity are dropped before anything is totalled.
    lines = [
        (raw, receipt)
        for raw, receipt in zip(items, _proposed_lines(order, items))
        if receipt.item_identity is not None
    ]
    proposed = [receipt for _, receipt in lines]
    if not proposed:
        raise ValueError('Add at least one item to the receipt note')
    for receipt in proposed:
        if receipt.received_quantity < 0:
            raise ValueError('Received quantity cannot be negative')
    ensure_not_over_received(proposed)

    shortfall, remaining = _reconcile(
        repository,
        order,
        proposed,
        exclude_note_uuid=existing.uuid if existing is not None else None,
    )

    received_totals = [round_money(receipt.unit_price * receipt.received_quantity) for receipt in proposed]
    item_total = sum(received_totals, ZERO)
    breakdown = compute_financial_breakdown(item_total, charges or ChargeRates())
    header_total = to_optional_decimal(grn_total_with_charges_taxes)
    grand_total = round_money(header_total) if header_total is not None else breakdown.grand_total
    prorated = allocate(
        [ProrationItem(id=str(index), subtotal=total) for index, total in enumerate(received_totals)],
        grand_total,
    )

    purchase_order_uuid = order.uuid if kind == OrderKind.PURCHASE_ORDER else None
    change_order_uuid = order.uuid if kind == OrderKind.CHANGE_ORDER else None
    now = _now()

    if existing is None:
        note = StockReceiptNote(
            corporation_uuid=corporation_uuid,
            receipt_type=kind,
            purchase_order_uuid=purchase_order_uuid,
            change_order_uuid=change_order_uuid,
            created_at=now,
        )
        db.add(note)
    else:
        note = existing
        if note.receipt_type != kind or normalize_identity(
            note.change_order_uuid if kind == OrderKind.CHANGE_ORDER else note.purchase_order_uuid
        ) != normalize_identity(order.uuid):
            raise ValueError('Receipt note belongs to a different order')
        retired = _retire_items(db, note.uuid)
        logger.debug('Retired %s item rows of receipt note %s', retired, note.uuid)

    note.project_uuid = project_uuid if project_uuid is not None else note.project_uuid
    note.grn_number = grn_number
    note.reference_number = reference_number
    note.received_by = received_by
    note.entry_date = entry_date
    note.notes = notes
    note.status = normalize_receipt_status(status)
    note.save_as_open = bool(save_as_open)
    note.total_received_amount = round_money(item_total)
    note.grn_total_with_charges_taxes = grand_total
    note.financial_breakdown = breakdown.as_payload()
    note.updated_at = now
    db.flush()

    saved_items: list[ReceiptNoteItem] = []
    for (raw, receipt), received_total, share in zip(lines, received_totals, prorated):
        item = ReceiptNoteItem(
            receipt_note_uuid=note.uuid,
            corporation_uuid=corporation_uuid,
            item_type=kind,
            purchase_order_uuid=purchase_order_uuid,
            change_order_uuid=change_order_uuid,
            item_uuid=receipt.item_identity,
            base_item_uuid=normalize_identity(raw.get('base_item_uuid')),
            cost_code_uuid=receipt.cost_code_uuid,
            received_quantity=receipt.received_quantity,
            unit_price=receipt.unit_price,
            received_total=received_total,
            grn_total=received_total,
            grn_total_with_charges_taxes=(
                round_money(share.allocated_amount) if share.allocated_amount is not None else None
            ),
            created_at=now,
        )
        db.add(item)
        saved_items.append(item)

    log_audit(
        db,
        corporation_uuid=corporation_uuid,
        actor=actor,
        action='RECEIPT_NOTE_UPDATED' if existing is not None else 'RECEIPT_NOTE_CREATED',
        entity_uuid=note.uuid,
        metadata={
            'order_uuid': order.uuid,
            'order_kind': kind.value,
            'item_count': len(saved_items),
            'shortfall_items': [line.item_identity for line in remaining],
        },
    )
    db.flush()
    return ReceiptNoteResult(
        note=note,
        items=saved_items,
        financial_breakdown=breakdown,
        shortfall=shortfall,
        remaining_shortfall=remaining,
    )


def retire_receipt_note(
    db: Session,
    *,
    note_uuid: str,
    corporation_uuid: str | None = None,
    actor: str | None = None,
) -> StockReceiptNote:
    note = _get_active_note(db, note_uuid)
    if corporation_uuid and normalize_identity(corporation_uuid) != normalize_identity(note.corporation_uuid):
        raise ValueError('Receipt note not found')
    note.is_active = False
    note.updated_at = _now()
    retired = _retire_items(db, note.uuid)
    log_audit(
        db,
        corporation_uuid=note.corporation_uuid,
        actor=actor,
        action='RECEIPT_NOTE_RETIRED',
        entity_uuid=note.uuid,
        metadata={'retired_items': retired},
    )
    db.flush()
    return note


def receipt_order_reference(note: StockReceiptNote) -> tuple[str, OrderKind]:
    kind = normalize_order_kind(note.receipt_type)
    order_uuid = note.change_order_uuid if kind == OrderKind.CHANGE_ORDER else note.purchase_order_uuid
    return order_uuid or '', kind
