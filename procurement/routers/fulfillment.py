from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procurement.db import get_db
from procurement.dependencies import get_repository
from procurement.models import OrderKind
from procurement.services.fulfillment_math_service import (
    OverReceivedError,
    OverReceivedLine,
    ShortfallLine,
    aggregate_history,
    format_quantity,
    summarize_fulfillment,
)
from procurement.services.fulfillment_repository import CachedFulfillmentRepository
from procurement.services.holdback_service import (
    build_holdback_breakdown,
    ensure_releases_within_holdback,
    list_previous_releases,
    resolve_holdback_total,
    visible_rows,
)
from procurement.services.normalization_service import normalize_order_kind
from procurement.services.order_status_service import refresh_order_completion, refresh_order_status
from procurement.services.proration_service import ChargeRates, ProrationItem, allocate
from procurement.services.quantity_utils import to_decimal
from procurement.services.receipt_note_service import (
    ReceiptNoteResult,
    preview_receipt_note,
    receipt_order_reference,
    retire_receipt_note,
    save_receipt_note,
)
from procurement.services.return_note_service import retire_return_note, return_order_reference, save_return_note

router = APIRouter(prefix='/api/fulfillment', tags=['fulfillment'])

Amount = Decimal | float | str | None


class ReceiptItemIn(BaseModel):
    item_uuid: str | None = None
    base_item_uuid: str | None = None
    item_name: str | None = None
    cost_code_uuid: str | None = None
    ordered_quantity: Amount = None
    received_quantity: Amount = None
    unit_price: Amount = None


class ChargesIn(BaseModel):
    freight_percentage: Amount = None
    freight_taxable: bool = False
    packing_percentage: Amount = None
    packing_taxable: bool = False
    custom_duties_percentage: Amount = None
    custom_duties_taxable: bool = False
    other_percentage: Amount = None
    other_taxable: bool = False
    sales_tax_1_percentage: Amount = None
    sales_tax_2_percentage: Amount = None

    def to_rates(self) -> ChargeRates:
        return ChargeRates(
            freight_percentage=to_decimal(self.freight_percentage),
            freight_taxable=self.freight_taxable,
            packing_percentage=to_decimal(self.packing_percentage),
            packing_taxable=self.packing_taxable,
            custom_duties_percentage=to_decimal(self.custom_duties_percentage),
            custom_duties_taxable=self.custom_duties_taxable,
            other_percentage=to_decimal(self.other_percentage),
            other_taxable=self.other_taxable,
            sales_tax_1_percentage=to_decimal(self.sales_tax_1_percentage),
            sales_tax_2_percentage=to_decimal(self.sales_tax_2_percentage),
        )


class ReceiptPreviewIn(BaseModel):
    order_uuid: str
    receipt_type: str = OrderKind.PURCHASE_ORDER.value
    exclude_note_uuid: str | None = None
    items: list[ReceiptItemIn] = Field(default_factory=list)


class ReceiptNoteIn(BaseModel):
    corporation_uuid: str
    order_uuid: str
    receipt_type: str = OrderKind.PURCHASE_ORDER.value
    project_uuid: str | None = None
    grn_number: str | None = None
    reference_number: str | None = None
    received_by: str | None = None
    entry_date: datetime | None = None
    notes: str | None = None
    status: str | None = None
    save_as_open: bool = False
    charges: ChargesIn | None = None
    grn_total_with_charges_taxes: Amount = None
    actor: str | None = None
    items: list[ReceiptItemIn] = Field(default_factory=list)


class ReturnItemIn(BaseModel):
    item_uuid: str | None = None
    base_item_uuid: str | None = None
    cost_code_uuid: str | None = None
    return_quantity: Amount = None
    unit_price: Amount = None


class ReturnNoteIn(BaseModel):
    corporation_uuid: str
    order_uuid: str
    return_type: str = OrderKind.PURCHASE_ORDER.value
    project_uuid: str | None = None
    return_number: str | None = None
    returned_by: str | None = None
    entry_date: datetime | None = None
    notes: str | None = None
    status: str | None = None
    actor: str | None = None
    items: list[ReturnItemIn] = Field(default_factory=list)


class ProrationItemIn(BaseModel):
    id: str
    subtotal: Amount = None


class ProrationIn(BaseModel):
    aggregate_total: Amount = None
    items: list[ProrationItemIn] = Field(default_factory=list)


class HoldbackIn(BaseModel):
    invoice_total: Amount = None
    holdback_amount: Amount = None
    holdback_percentage: Amount = None
    vendor_invoice_uuid: str | None = None
    purchase_order_uuid: str | None = None
    change_order_uuid: str | None = None
    cost_code_amounts: dict[str, Amount] = Field(default_factory=dict)
    current_releases: dict[str, Amount] = Field(default_factory=dict)
    enforce_limit: bool = False


def _http_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    if 'not found' in message.lower():
        return HTTPException(status_code=404, detail=message)
    return HTTPException(status_code=400, detail=message)


def _amount(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _quantity(value: Decimal | None) -> str | None:
    return None if value is None else format_quantity(value)


def _shortfall_payload(lines: list[ShortfallLine]) -> list[dict]:
    return [
        {
            'item_uuid': line.item_identity,
            'item_name': line.item_name,
            'ordered_quantity': _quantity(line.ordered_quantity),
            'leftover_quantity': _quantity(line.leftover_quantity),
            'proposed_received_quantity': _quantity(line.proposed_received_quantity),
            'shortfall_quantity': _quantity(line.shortfall_quantity),
        }
        for line in lines
    ]


def _over_received_payload(lines: list[OverReceivedLine]) -> list[dict]:
    return [
        {
            'item_uuid': line.item_identity,
            'item_name': line.item_name,
            'ordered_quantity': _quantity(line.ordered_quantity),
            'received_quantity': _quantity(line.received_quantity),
            'over_received_quantity': _quantity(line.over_received_quantity),
        }
        for line in lines
    ]


def _receipt_payload(result: ReceiptNoteResult, order_status) -> dict:
    note = result.note
    return {
        'uuid': note.uuid,
        'receipt_type': note.receipt_type.value,
        'purchase_order_uuid': note.purchase_order_uuid,
        'change_order_uuid': note.change_order_uuid,
        'status': note.status.value,
        'total_received_amount': _amount(note.total_received_amount),
        'grn_total_with_charges_taxes': _amount(note.grn_total_with_charges_taxes),
        'financial_breakdown': result.financial_breakdown.as_payload(),
        'items': [
            {
                'uuid': item.uuid,
                'item_uuid': item.item_uuid,
                'received_quantity': _quantity(item.received_quantity),
                'unit_price': _amount(item.unit_price),
                'received_total': _amount(item.received_total),
                'grn_total': _amount(item.grn_total),
                'grn_total_with_charges_taxes': _amount(item.grn_total_with_charges_taxes),
            }
            for item in result.items
        ],
        'shortfall': _shortfall_payload(result.shortfall),
        'remaining_shortfall': _shortfall_payload(result.remaining_shortfall),
        'order_status': order_status.value if order_status is not None else None,
    }


@router.get('/orders/{order_kind}/{order_uuid}')
def order_fulfillment(
    order_kind: str,
    order_uuid: str,
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    kind = normalize_order_kind(order_kind)
    order = repository.get_order(order_uuid, kind)
    if order is None:
        raise HTTPException(status_code=404, detail='Order not found')
    context = aggregate_history(
        repository.list_receipt_records(order.uuid, kind),
        repository.list_return_records(order.uuid, kind),
        order_uuid=order.uuid,
        order_kind=kind,
    )
    return {
        'uuid': order.uuid,
        'kind': kind.value,
        'status': order.status.value,
        'lines': [
            {
                'item_uuid': line.item_identity,
                'item_name': line.item_name,
                'ordered_quantity': _quantity(line.ordered_quantity),
                'received_quantity': _quantity(line.received_quantity),
                'returned_quantity': _quantity(line.returned_quantity),
                'leftover_quantity': _quantity(line.leftover_quantity),
            }
            for line in summarize_fulfillment(order.lines, context)
        ],
    }


@router.post('/receipt-notes/preview')
def preview_receipt(
    payload: ReceiptPreviewIn,
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    try:
        preview = preview_receipt_note(
            repository,
            order_uuid=payload.order_uuid,
            order_kind=payload.receipt_type,
            items=[item.model_dump() for item in payload.items],
            exclude_note_uuid=payload.exclude_note_uuid,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'over_received': _over_received_payload(preview.over_received),
        'shortfall': _shortfall_payload(preview.shortfall),
        'remaining_shortfall': _shortfall_payload(preview.remaining_shortfall),
    }


def _save_receipt(
    payload: ReceiptNoteIn,
    db: Session,
    repository: CachedFulfillmentRepository,
    *,
    note_uuid: str | None,
) -> dict:
    try:
        result = save_receipt_note(
            db,
            repository,
            corporation_uuid=payload.corporation_uuid,
            order_uuid=payload.order_uuid,
            order_kind=payload.receipt_type,
            items=[item.model_dump() for item in payload.items],
            note_uuid=note_uuid,
            project_uuid=payload.project_uuid,
            grn_number=payload.grn_number,
            reference_number=payload.reference_number,
            received_by=payload.received_by,
            entry_date=payload.entry_date,
            notes=payload.notes,
            status=payload.status,
            save_as_open=payload.save_as_open,
            charges=payload.charges.to_rates() if payload.charges is not None else None,
            grn_total_with_charges_taxes=payload.grn_total_with_charges_taxes,
            actor=payload.actor,
        )
    except OverReceivedError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()

    order_status = refresh_order_status(
        repository,
        order_uuid=payload.order_uuid,
        order_kind=result.note.receipt_type,
        note_corporation_uuid=payload.corporation_uuid,
        explicit_partial=payload.save_as_open,
    )
    db.commit()
    return _receipt_payload(result, order_status)


@router.post('/receipt-notes', status_code=201)
def create_receipt_note(
    payload: ReceiptNoteIn,
    db: Session = Depends(get_db),
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    return _save_receipt(payload, db, repository, note_uuid=None)


@router.put('/receipt-notes/{note_uuid}')
def update_receipt_note(
    note_uuid: str,
    payload: ReceiptNoteIn,
    db: Session = Depends(get_db),
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    return _save_receipt(payload, db, repository, note_uuid=note_uuid)


@router.delete('/receipt-notes/{note_uuid}')
def delete_receipt_note(
    note_uuid: str,
    corporation_uuid: str | None = None,
    actor: str | None = None,
    db: Session = Depends(get_db),
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    try:
        note = retire_receipt_note(db, note_uuid=note_uuid, corporation_uuid=corporation_uuid, actor=actor)
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()

    order_uuid, kind = receipt_order_reference(note)
    order_status = refresh_order_status(
        repository,
        order_uuid=order_uuid,
        order_kind=kind,
        note_corporation_uuid=corporation_uuid or note.corporation_uuid,
    )
    db.commit()
    return {
        'uuid': note.uuid,
        'is_active': note.is_active,
        'order_status': order_status.value if order_status is not None else None,
    }


def _save_return(
    payload: ReturnNoteIn,
    db: Session,
    repository: CachedFulfillmentRepository,
    *,
    note_uuid: str | None,
) -> dict:
    try:
        result = save_return_note(
            db,
            repository,
            corporation_uuid=payload.corporation_uuid,
            order_uuid=payload.order_uuid,
            order_kind=payload.return_type,
            items=[item.model_dump() for item in payload.items],
            note_uuid=note_uuid,
            project_uuid=payload.project_uuid,
            return_number=payload.return_number,
            returned_by=payload.returned_by,
            entry_date=payload.entry_date,
            notes=payload.notes,
            status=payload.status,
            actor=payload.actor,
        )
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()

    order_status = refresh_order_completion(
        repository,
        order_uuid=payload.order_uuid,
        order_kind=result.note.return_type,
        note_corporation_uuid=payload.corporation_uuid,
    )
    db.commit()
    note = result.note
    return {
        'uuid': note.uuid,
        'return_type': note.return_type.value,
        'status': note.status.value,
        'total_return_amount': _amount(note.total_return_amount),
        'items': [
            {
                'uuid': item.uuid,
                'item_uuid': item.item_uuid,
                'return_quantity': _quantity(item.return_quantity),
                'unit_price': _amount(item.unit_price),
                'return_total': _amount(item.return_total),
            }
            for item in result.items
        ],
        'remaining_shortfall': _shortfall_payload(result.remaining_shortfall),
        'order_status': order_status.value if order_status is not None else None,
    }


@router.post('/return-notes', status_code=201)
def create_return_note(
    payload: ReturnNoteIn,
    db: Session = Depends(get_db),
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    return _save_return(payload, db, repository, note_uuid=None)


@router.put('/return-notes/{note_uuid}')
def update_return_note(
    note_uuid: str,
    payload: ReturnNoteIn,
    db: Session = Depends(get_db),
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    return _save_return(payload, db, repository, note_uuid=note_uuid)


@router.delete('/return-notes/{note_uuid}')
def delete_return_note(
    note_uuid: str,
    corporation_uuid: str | None = None,
    actor: str | None = None,
    db: Session = Depends(get_db),
    repository: CachedFulfillmentRepository = Depends(get_repository),
):
    try:
        note = retire_return_note(db, note_uuid=note_uuid, corporation_uuid=corporation_uuid, actor=actor)
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()

    order_uuid, kind = return_order_reference(note)
    order_status = refresh_order_completion(
        repository,
        order_uuid=order_uuid,
        order_kind=kind,
        note_corporation_uuid=corporation_uuid or note.corporation_uuid,
    )
    db.commit()
    return {
        'uuid': note.uuid,
        'is_active': note.is_active,
        'order_status': order_status.value if order_status is not None else None,
    }


@router.post('/proration')
def prorate(payload: ProrationIn):
    prorated = allocate(
        [ProrationItem(id=item.id, subtotal=to_decimal(item.subtotal)) for item in payload.items],
        payload.aggregate_total,
    )
    return {
        'items': [
            {'id': item.id, 'subtotal': _quantity(item.subtotal), 'allocated_amount': _quantity(item.allocated_amount)}
            for item in prorated
        ]
    }


@router.post('/holdback-breakdown')
def holdback_breakdown(payload: HoldbackIn, db: Session = Depends(get_db)):
    try:
        holdback_total = resolve_holdback_total(
            invoice_total=payload.invoice_total,
            holdback_amount=payload.holdback_amount,
            holdback_percentage=payload.holdback_percentage,
        )
        previous = []
        if payload.purchase_order_uuid or payload.change_order_uuid:
            previous = list_previous_releases(
                db,
                purchase_order_uuid=payload.purchase_order_uuid,
                change_order_uuid=payload.change_order_uuid,
            )
        rows = build_holdback_breakdown(
            payload.cost_code_amounts,
            holdback_total,
            previous,
            payload.current_releases,
            exclude_invoice_uuid=payload.vendor_invoice_uuid,
        )
        if payload.enforce_limit:
            ensure_releases_within_holdback(rows)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'holdback_total': _amount(holdback_total),
        'rows': [
            {
                'cost_code_uuid': row.cost_code_uuid,
                'invoice_amount': _amount(row.invoice_amount),
                'holdback_amount': _amount(row.holdback_amount),
                'previously_released': _amount(row.previously_released),
                'release_amount': _amount(row.release_amount),
                'remaining': _amount(row.remaining),
            }
            for row in visible_rows(rows)
        ],
    }
