from __future__ import annotations

from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from procurement.models import (
    Base,
    ChangeOrder,
    OrderItem,
    OrderKind,
    OrderStatus,
    PurchaseOrder,
    ReceiptNoteItem,
    ReturnNoteItem,
    ReturnNoteStatus,
    StockReceiptNote,
    StockReturnNote,
)

CORPORATION = 'corp-1'


def make_session_factory() -> sessionmaker:
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_purchase_order(
    db: Session,
    *,
    uuid: str = 'po-1',
    status: OrderStatus = OrderStatus.APPROVED,
    corporation_uuid: str = CORPORATION,
    lines: dict[str, str] | None = None,
    unit_price: str = '10',
) -> PurchaseOrder:
    order = PurchaseOrder(uuid=uuid, corporation_uuid=corporation_uuid, po_number=uuid.upper(), status=status)
    db.add(order)
    db.flush()
    for item_uuid, quantity in (lines or {'item-a': '10'}).items():
        db.add(
            OrderItem(
                uuid=item_uuid,
                item_type=OrderKind.PURCHASE_ORDER,
                purchase_order_uuid=uuid,
                item_name=f'Item {item_uuid}',
                ordered_quantity=Decimal(quantity),
                unit_price=Decimal(unit_price),
            )
        )
    db.flush()
    return order


def add_change_order(
    db: Session,
    *,
    uuid: str = 'co-1',
    status: OrderStatus = OrderStatus.APPROVED,
    lines: dict[str, str] | None = None,
) -> ChangeOrder:
    order = ChangeOrder(uuid=uuid, corporation_uuid=CORPORATION, co_number=uuid.upper(), status=status)
    db.add(order)
    db.flush()
    for item_uuid, quantity in (lines or {'co-item-a': '4'}).items():
        db.add(
            OrderItem(
                uuid=item_uuid,
                item_type=OrderKind.CHANGE_ORDER,
                change_order_uuid=uuid,
                item_name=f'Item {item_uuid}',
                ordered_quantity=Decimal(quantity),
                unit_price=Decimal('5'),
            )
        )
    db.flush()
    return order


def add_receipt(
    db: Session,
    *,
    order_uuid: str = 'po-1',
    item_uuid: str = 'item-a',
    quantity: str = '1',
    note_uuid: str | None = None,
    is_active: bool = True,
) -> StockReceiptNote:
    note = StockReceiptNote(
        corporation_uuid=CORPORATION,
        receipt_type=OrderKind.PURCHASE_ORDER,
        purchase_order_uuid=order_uuid,
    )
    if note_uuid:
        note.uuid = note_uuid
    db.add(note)
    db.flush()
    db.add(
        ReceiptNoteItem(
            receipt_note_uuid=note.uuid,
            corporation_uuid=CORPORATION,
            item_type=OrderKind.PURCHASE_ORDER,
            purchase_order_uuid=order_uuid,
            item_uuid=item_uuid,
            received_quantity=Decimal(quantity),
            unit_price=Decimal('10'),
            is_active=is_active,
        )
    )
    db.flush()
    return note


def add_return(
    db: Session,
    *,
    order_uuid: str = 'po-1',
    item_uuid: str = 'item-a',
    quantity: str = '1',
    note_uuid: str | None = None,
    status: ReturnNoteStatus = ReturnNoteStatus.RETURNED,
) -> StockReturnNote:
    note = StockReturnNote(
        corporation_uuid=CORPORATION,
        return_type=OrderKind.PURCHASE_ORDER,
        purchase_order_uuid=order_uuid,
        status=status,
    )
    if note_uuid:
        note.uuid = note_uuid
    db.add(note)
    db.flush()
    db.add(
        ReturnNoteItem(
            return_note_uuid=note.uuid,
            corporation_uuid=CORPORATION,
            item_type=OrderKind.PURCHASE_ORDER,
            purchase_order_uuid=order_uuid,
            item_uuid=item_uuid,
            return_quantity=Decimal(quantity),
            unit_price=Decimal('10'),
        )
    )
    db.flush()
    return note
