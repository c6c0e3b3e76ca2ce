from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Protocol

from procurement.models import OrderKind, OrderStatus, ReturnNoteStatus
from procurement.services.quantity_utils import ZERO, normalize_identity, to_decimal


class Lifecycle(str, Enum):
    ACTIVE = 'ACTIVE'
    RETIRED = 'RETIRED'


@dataclass(frozen=True)
class OrderLine:
    item_identity: str
    ordered_quantity: Decimal
    unit_price: Decimal = ZERO
    cost_code_uuid: str | None = None
    item_name: str | None = None


@dataclass(frozen=True)
class ReceiptRecord:
    note_uuid: str | None
    item_identity: str | None
    received_quantity: Decimal
    receipt_type: OrderKind = OrderKind.PURCHASE_ORDER
    purchase_order_uuid: str | None = None
    change_order_uuid: str | None = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE


@dataclass(frozen=True)
class ReturnRecord:
    note_uuid: str | None
    item_identity: str | None
    return_quantity: Decimal
    return_type: OrderKind = OrderKind.PURCHASE_ORDER
    purchase_order_uuid: str | None = None
    change_order_uuid: str | None = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    status: ReturnNoteStatus = ReturnNoteStatus.RETURNED


@dataclass(frozen=True)
class ProposedReceipt:
    item_identity: str | None
    received_quantity: Decimal
    ordered_quantity: Decimal = ZERO
    item_name: str | None = None
    unit_price: Decimal = ZERO
    cost_code_uuid: str | None = None


@dataclass(frozen=True)
class ReconciliationContext:
    total_received_by_item: dict[str, Decimal] = field(default_factory=dict)
    total_returned_by_item: dict[str, Decimal] = field(default_factory=dict)

    def received(self, item_identity: str | None) -> Decimal:
        return self.total_received_by_item.get(normalize_identity(item_identity) or '', ZERO)

    def returned(self, item_identity: str | None) -> Decimal:
        return self.total_returned_by_item.get(normalize_identity(item_identity) or '', ZERO)


@dataclass(frozen=True)
class ShortfallLine:
    item_identity: str
    ordered_quantity: Decimal
    leftover_quantity: Decimal
    proposed_received_quantity: Decimal
    shortfall_quantity: Decimal
    item_name: str | None = None


@dataclass(frozen=True)
class OverReceivedLine:
    item_identity: str | None
    item_name: str | None
    ordered_quantity: Decimal
    received_quantity: Decimal
    over_received_quantity: Decimal


@dataclass(frozen=True)
class LineFulfillment:
    item_identity: str
    item_name: str | None
    ordered_quantity: Decimal
    received_quantity: Decimal
    returned_quantity: Decimal
    leftover_quantity: Decimal


class _HistoryRecord(Protocol):
    note_uuid: str | None
    item_identity: str | None
    purchase_order_uuid: str | None
    change_order_uuid: str | None
    lifecycle: Lifecycle


def format_quantity(value: Decimal) -> str:
    text = f'{value:f}'
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text or '0'


def format_over_received_message(lines: Sequence[OverReceivedLine]) -> str:
    details = '; '.join(
        f'{line.item_name or line.item_identity or "Unnamed item"} '
        f'(ordered {format_quantity(line.ordered_quantity)}, received {format_quantity(line.received_quantity)})'
        for line in lines
    )
    return f'Received quantity exceeds ordered quantity for: {details}'


class OverReceivedError(ValueError):
    def __init__(self, lines: Sequence[OverReceivedLine]) -> None:
        self.lines = list(lines)
        super().__init__(format_over_received_message(self.lines))


def _require_order_uuid(order_uuid: str | None) -> str:
    normalized = normalize_identity(order_uuid)
    if normalized is None:
        raise ValueError('Order identity is required')
    return normalized


def _matching_history(
    records: Iterable[_HistoryRecord],
    *,
    order_uuid: str,
    order_kind: OrderKind,
    exclude_note_uuid: str | None,
) -> Iterator[_HistoryRecord]:
    excluded = normalize_identity(exclude_note_uuid)
    for record in records:
        if record.lifecycle != Lifecycle.ACTIVE:
            continue
        reference = record.change_order_uuid if order_kind == OrderKind.CHANGE_ORDER else record.purchase_order_uuid
        if normalize_identity(reference) != order_uuid:
            continue
        if excluded is not None and normalize_identity(record.note_uuid) == excluded:
            continue
        if normalize_identity(record.item_identity) is None:
            continue
        yield record


def aggregate_receipts(
    receipts: Iterable[ReceiptRecord],
    *,
    order_uuid: str,
    order_kind: OrderKind,
    exclude_note_uuid: str | None = None,
) -> dict[str, Decimal]:
    normalized_order = _require_order_uuid(order_uuid)
    totals: dict[str, Decimal] = {}
    for record in _matching_history(
        receipts, order_uuid=normalized_order, order_kind=order_kind, exclude_note_uuid=exclude_note_uuid
    ):
        key = normalize_identity(record.item_identity)
        totals[key] = totals.get(key, ZERO) + to_decimal(record.received_quantity)
    return totals


def aggregate_returns(
    returns: Iterable[ReturnRecord],
    *,
    order_uuid: str,
    order_kind: OrderKind,
    exclude_note_uuid: str | None = None,
) -> dict[str, Decimal]:
    normalized_order = _require_order_uuid(order_uuid)
    totals: dict[str, Decimal] = {}
    for record in _matching_history(
        returns, order_uuid=normalized_order, order_kind=order_kind, exclude_note_uuid=exclude_note_uuid
    ):
        key = normalize_identity(record.item_identity)
        totals[key] = totals.get(key, ZERO) + to_decimal(record.return_quantity)
    return totals


def aggregate_history(
    receipts: Iterable[ReceiptRecord],
    returns: Iterable[ReturnRecord] = (),
    *,
    order_uuid: str,
    order_kind: OrderKind,
    exclude_note_uuid: str | None = None,
) -> ReconciliationContext:
    """
    Reduce an order's receipt and return history to per-item totals.
    The note being edited is always skipped so its draft quantities are never
    counted against themselves.
    """
    return ReconciliationContext(
        total_received_by_item=aggregate_receipts(
            receipts, order_uuid=order_uuid, order_kind=order_kind, exclude_note_uuid=exclude_note_uuid
        ),
        total_returned_by_item=aggregate_returns(
            returns, order_uuid=order_uuid, order_kind=order_kind, exclude_note_uuid=exclude_note_uuid
        ),
    )


def leftover(ordered_quantity: object, total_received: object) -> Decimal:
    return max(ZERO, to_decimal(ordered_quantity) - to_decimal(total_received))


def detect_shortfall(
    order_lines: Sequence[OrderLine],
    proposed: Sequence[ProposedReceipt],
    context: ReconciliationContext,
) -> list[ShortfallLine]:
    lines_by_item = {normalize_identity(line.item_identity): line for line in order_lines}
    shortfall: list[ShortfallLine] = []
    for receipt in proposed:
        identity = normalize_identity(receipt.item_identity)
        if identity is None:
            continue
        order_line = lines_by_item.get(identity)
        ordered = to_decimal(order_line.ordered_quantity if order_line else receipt.ordered_quantity)
        remaining = leftover(ordered, context.received(identity))
        proposed_qty = to_decimal(receipt.received_quantity)
        # Fully received elsewhere means there is nothing left to flag.
        if remaining <= 0 or proposed_qty >= remaining:
            continue
        shortfall.append(
            ShortfallLine(
                item_identity=identity,
                ordered_quantity=ordered,
                leftover_quantity=remaining,
                proposed_received_quantity=proposed_qty,
                shortfall_quantity=remaining - proposed_qty,
                item_name=receipt.item_name or (order_line.item_name if order_line else None),
            )
        )
    return shortfall


def find_over_received(proposed: Sequence[ProposedReceipt]) -> list[OverReceivedLine]:
    flagged: list[OverReceivedLine] = []
    for receipt in proposed:
        ordered = to_decimal(receipt.ordered_quantity)
        received = to_decimal(receipt.received_quantity)
        # Zero-ordered lines are ad hoc additions with no baseline.
        if ordered <= 0 or received <= ordered:
            continue
        flagged.append(
            OverReceivedLine(
                item_identity=normalize_identity(receipt.item_identity),
                item_name=receipt.item_name,
                ordered_quantity=ordered,
                received_quantity=received,
                over_received_quantity=received - ordered,
            )
        )
    return flagged


def ensure_not_over_received(proposed: Sequence[ProposedReceipt]) -> None:
    flagged = find_over_received(proposed)
    if flagged:
        raise OverReceivedError(flagged)


def remaining_shortfall(
    shortfall_lines: Sequence[ShortfallLine],
    return_history: Iterable[ReturnRecord],
    *,
    order_uuid: str,
    order_kind: OrderKind,
    exclude_note_uuid: str | None = None,
) -> list[ShortfallLine]:
    # Only goods already sent back cover a shortfall; waiting returns do not.
    returned = aggregate_returns(
        (record for record in return_history if record.status == ReturnNoteStatus.RETURNED),
        order_uuid=order_uuid,
        order_kind=order_kind,
        exclude_note_uuid=exclude_note_uuid,
    )
    remaining_lines: list[ShortfallLine] = []
    for line in shortfall_lines:
        already_returned = returned.get(normalize_identity(line.item_identity) or '', ZERO)
        remaining = max(ZERO, to_decimal(line.shortfall_quantity) - already_returned)
        if remaining <= 0:
            continue
        remaining_lines.append(replace(line, shortfall_quantity=remaining))
    return remaining_lines


def derive_status(
    order_lines: Sequence[OrderLine],
    context: ReconciliationContext,
    *,
    explicit_partial: bool = False,
    current_status: OrderStatus = OrderStatus.APPROVED,
) -> OrderStatus:
    if explicit_partial:
        # Deliberately kept open for a future shipment.
        return OrderStatus.PARTIALLY_RECEIVED
    if not order_lines:
        return current_status

    if all(leftover(line.ordered_quantity, context.received(line.item_identity)) == 0 for line in order_lines):
        return OrderStatus.COMPLETED
    if any(context.received(line.item_identity) > 0 for line in order_lines):
        return OrderStatus.PARTIALLY_RECEIVED
    # Never regresses an order back to Approved.
    return current_status


def is_fully_reconciled(order_lines: Sequence[OrderLine], context: ReconciliationContext) -> bool:
    if not order_lines:
        return False
    return all(
        to_decimal(line.ordered_quantity) - context.received(line.item_identity) - context.returned(line.item_identity) <= 0
        for line in order_lines
    )


def summarize_fulfillment(order_lines: Sequence[OrderLine], context: ReconciliationContext) -> list[LineFulfillment]:
    return [
        LineFulfillment(
            item_identity=line.item_identity,
            item_name=line.item_name,
            ordered_quantity=to_decimal(line.ordered_quantity),
            received_quantity=context.received(line.item_identity),
            returned_quantity=context.returned(line.item_identity),
            leftover_quantity=leftover(line.ordered_quantity, context.received(line.item_identity)),
        )
        for line in order_lines
    ]
