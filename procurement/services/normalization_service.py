from __future__ import annotations

from collections.abc import Mapping

from procurement.models import OrderKind, ReceiptNoteStatus, ReturnNoteStatus
from procurement.services.fulfillment_math_service import (
    Lifecycle,
    OrderLine,
    ProposedReceipt,
    ReceiptRecord,
    ReturnRecord,
)
from procurement.services.quantity_utils import resolve_item_identity, to_decimal


def normalize_order_kind(value: object) -> OrderKind:
    if isinstance(value, OrderKind):
        return value
    normalized = str(value or '').strip().lower()
    if normalized == OrderKind.CHANGE_ORDER.value:
        return OrderKind.CHANGE_ORDER
    return OrderKind.PURCHASE_ORDER


def normalize_receipt_status(value: object) -> ReceiptNoteStatus:
    if isinstance(value, ReceiptNoteStatus):
        return value
    if str(value or '').strip().lower() == 'received':
        return ReceiptNoteStatus.RECEIVED
    return ReceiptNoteStatus.SHIPMENT


def normalize_return_status(value: object) -> ReturnNoteStatus:
    if isinstance(value, ReturnNoteStatus):
        return value
    if str(value or '').strip().lower() == 'returned':
        return ReturnNoteStatus.RETURNED
    return ReturnNoteStatus.WAITING


def lifecycle_from_flag(is_active: object) -> Lifecycle:
    # A missing flag means the row was never retired.
    if is_active is None or is_active is True:
        return Lifecycle.ACTIVE
    if isinstance(is_active, str):
        return Lifecycle.RETIRED if is_active.strip().lower() in {'0', 'false', 'no'} else Lifecycle.ACTIVE
    return Lifecycle.ACTIVE if bool(is_active) else Lifecycle.RETIRED


def _order_references(raw: Mapping, kind: OrderKind) -> tuple[str | None, str | None]:
    purchase_order_uuid = raw.get('purchase_order_uuid') or None
    change_order_uuid = raw.get('change_order_uuid') or None
    if kind == OrderKind.CHANGE_ORDER:
        # Legacy rows stored the change order reference in the purchase order column.
        return None, change_order_uuid or purchase_order_uuid
    return purchase_order_uuid, None


def order_line_from_mapping(raw: Mapping) -> OrderLine | None:
    identity = resolve_item_identity(raw.get('item_identity') or raw.get('uuid'), raw.get('base_item_uuid'))
    if identity is None:
        return None
    ordered = raw.get('ordered_quantity')
    if ordered is None:
        ordered = raw.get('po_quantity', raw.get('co_quantity'))
    return OrderLine(
        item_identity=identity,
        ordered_quantity=to_decimal(ordered),
        unit_price=to_decimal(raw.get('unit_price')),
        cost_code_uuid=raw.get('cost_code_uuid') or None,
        item_name=raw.get('item_name') or raw.get('name') or None,
    )


def receipt_record_from_mapping(raw: Mapping) -> ReceiptRecord:
    kind = normalize_order_kind(raw.get('receipt_type') or raw.get('item_type'))
    purchase_order_uuid, change_order_uuid = _order_references(raw, kind)
    return ReceiptRecord(
        note_uuid=raw.get('receipt_note_uuid') or raw.get('note_uuid') or None,
        item_identity=resolve_item_identity(raw.get('item_uuid') or raw.get('item_identity'), raw.get('base_item_uuid')),
        received_quantity=to_decimal(raw.get('received_quantity')),
        receipt_type=kind,
        purchase_order_uuid=purchase_order_uuid,
        change_order_uuid=change_order_uuid,
        lifecycle=lifecycle_from_flag(raw.get('is_active')),
    )


def return_record_from_mapping(raw: Mapping) -> ReturnRecord:
    kind = normalize_order_kind(raw.get('return_type') or raw.get('item_type'))
    purchase_order_uuid, change_order_uuid = _order_references(raw, kind)
    return ReturnRecord(
        note_uuid=raw.get('return_note_uuid') or raw.get('note_uuid') or None,
        item_identity=resolve_item_identity(raw.get('item_uuid') or raw.get('item_identity'), raw.get('base_item_uuid')),
        return_quantity=to_decimal(raw.get('return_quantity')),
        return_type=kind,
        purchase_order_uuid=purchase_order_uuid,
        change_order_uuid=change_order_uuid,
        lifecycle=lifecycle_from_flag(raw.get('is_active')),
        # Rows without a note status are counted as sent back.
        status=ReturnNoteStatus.RETURNED if raw.get('status') is None else normalize_return_status(raw.get('status')),
    )


def proposed_receipt_from_mapping(raw: Mapping) -> ProposedReceipt:
    ordered = raw.get('ordered_quantity')
    if ordered is None:
        ordered = raw.get('po_quantity', raw.get('co_quantity'))
    return ProposedReceipt(
        item_identity=resolve_item_identity(raw.get('item_uuid') or raw.get('uuid'), raw.get('base_item_uuid')),
        received_quantity=to_decimal(raw.get('received_quantity')),
        ordered_quantity=to_decimal(ordered),
        item_name=raw.get('item_name') or None,
        unit_price=to_decimal(raw.get('unit_price')),
        cost_code_uuid=raw.get('cost_code_uuid') or None,
    )
