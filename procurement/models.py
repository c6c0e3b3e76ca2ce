from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    DRAFT = 'Draft'
    READY = 'Ready'
    APPROVED = 'Approved'
    PARTIALLY_RECEIVED = 'Partially_Received'
    COMPLETED = 'Completed'
    REJECTED = 'Rejected'


class OrderKind(str, Enum):
    PURCHASE_ORDER = 'purchase_order'
    CHANGE_ORDER = 'change_order'


class ReceiptNoteStatus(str, Enum):
    SHIPMENT = 'Shipment'
    RECEIVED = 'Received'


class ReturnNoteStatus(str, Enum):
    WAITING = 'Waiting'
    RETURNED = 'Returned'


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


ORDER_STATUS_ENUM = SQLEnum(OrderStatus, name='order_status', values_callable=_enum_values)
ORDER_KIND_ENUM = SQLEnum(OrderKind, name='order_kind', values_callable=_enum_values)


class PurchaseOrder(Base):
    __tablename__ = 'purchase_orders'

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_uuid: Mapped[str | None] = mapped_column(String(36))
    vendor_uuid: Mapped[str | None] = mapped_column(String(36))
    po_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[OrderStatus] = mapped_column(
        ORDER_STATUS_ENUM,
        nullable=False,
        default=OrderStatus.DRAFT,
        server_default='Draft',
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ChangeOrder(Base):
    __tablename__ = 'change_orders'

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_uuid: Mapped[str | None] = mapped_column(String(36))
    vendor_uuid: Mapped[str | None] = mapped_column(String(36))
    original_purchase_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('purchase_orders.uuid'))
    co_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[OrderStatus] = mapped_column(
        ORDER_STATUS_ENUM,
        nullable=False,
        default=OrderStatus.DRAFT,
        server_default='Draft',
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OrderItem(Base):
    __tablename__ = 'order_items'
    __table_args__ = (
        Index('order_items_purchase_order_idx', 'purchase_order_uuid'),
        Index('order_items_change_order_idx', 'change_order_uuid'),
    )

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    item_type: Mapped[OrderKind] = mapped_column(
        ORDER_KIND_ENUM,
        nullable=False,
    )
    purchase_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('purchase_orders.uuid', ondelete='CASCADE'))
    change_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('change_orders.uuid', ondelete='CASCADE'))
    base_item_uuid: Mapped[str | None] = mapped_column(String(36))
    cost_code_uuid: Mapped[str | None] = mapped_column(String(36))
    item_name: Mapped[str | None] = mapped_column(Text)
    ordered_quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockReceiptNote(Base):
    __tablename__ = 'stock_receipt_notes'

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_uuid: Mapped[str | None] = mapped_column(String(36))
    receipt_type: Mapped[OrderKind] = mapped_column(
        ORDER_KIND_ENUM,
        nullable=False,
        default=OrderKind.PURCHASE_ORDER,
    )
    purchase_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('purchase_orders.uuid'))
    change_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('change_orders.uuid'))
    grn_number: Mapped[str | None] = mapped_column(Text)
    reference_number: Mapped[str | None] = mapped_column(Text)
    received_by: Mapped[str | None] = mapped_column(Text)
    entry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ReceiptNoteStatus] = mapped_column(
        SQLEnum(ReceiptNoteStatus, name='receipt_note_status', values_callable=_enum_values),
        nullable=False,
        default=ReceiptNoteStatus.SHIPMENT,
    )
    total_received_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    grn_total_with_charges_taxes: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    financial_breakdown: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    save_as_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReceiptNoteItem(Base):
    __tablename__ = 'receipt_note_items'
    __table_args__ = (
        Index('receipt_note_items_purchase_order_idx', 'purchase_order_uuid'),
        Index('receipt_note_items_change_order_idx', 'change_order_uuid'),
    )

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    receipt_note_uuid: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('stock_receipt_notes.uuid', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False)
    item_type: Mapped[OrderKind] = mapped_column(
        ORDER_KIND_ENUM,
        nullable=False,
    )
    purchase_order_uuid: Mapped[str | None] = mapped_column(String(36))
    change_order_uuid: Mapped[str | None] = mapped_column(String(36))
    item_uuid: Mapped[str | None] = mapped_column(String(36))
    base_item_uuid: Mapped[str | None] = mapped_column(String(36))
    cost_code_uuid: Mapped[str | None] = mapped_column(String(36))
    received_quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    received_total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    grn_total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    grn_total_with_charges_taxes: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockReturnNote(Base):
    __tablename__ = 'stock_return_notes'

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    project_uuid: Mapped[str | None] = mapped_column(String(36))
    return_type: Mapped[OrderKind] = mapped_column(
        ORDER_KIND_ENUM,
        nullable=False,
        default=OrderKind.PURCHASE_ORDER,
    )
    purchase_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('purchase_orders.uuid'))
    change_order_uuid: Mapped[str | None] = mapped_column(String(36), ForeignKey('change_orders.uuid'))
    return_number: Mapped[str | None] = mapped_column(Text)
    returned_by: Mapped[str | None] = mapped_column(Text)
    entry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ReturnNoteStatus] = mapped_column(
        SQLEnum(ReturnNoteStatus, name='return_note_status', values_callable=_enum_values),
        nullable=False,
        default=ReturnNoteStatus.WAITING,
    )
    total_return_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReturnNoteItem(Base):
    __tablename__ = 'return_note_items'
    __table_args__ = (
        Index('return_note_items_purchase_order_idx', 'purchase_order_uuid'),
        Index('return_note_items_change_order_idx', 'change_order_uuid'),
    )

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    return_note_uuid: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('stock_return_notes.uuid', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False)
    item_type: Mapped[OrderKind] = mapped_column(
        ORDER_KIND_ENUM,
        nullable=False,
    )
    purchase_order_uuid: Mapped[str | None] = mapped_column(String(36))
    change_order_uuid: Mapped[str | None] = mapped_column(String(36))
    item_uuid: Mapped[str | None] = mapped_column(String(36))
    base_item_uuid: Mapped[str | None] = mapped_column(String(36))
    cost_code_uuid: Mapped[str | None] = mapped_column(String(36))
    return_quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    return_total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class HoldbackRelease(Base):
    __tablename__ = 'holdback_releases'

    uuid: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    corporation_uuid: Mapped[str] = mapped_column(String(36), nullable=False)
    vendor_invoice_uuid: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    holdback_invoice_uuid: Mapped[str | None] = mapped_column(String(36))
    purchase_order_uuid: Mapped[str | None] = mapped_column(String(36))
    change_order_uuid: Mapped[str | None] = mapped_column(String(36))
    cost_code_uuid: Mapped[str] = mapped_column(String(36), nullable=False)
    release_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    corporation_uuid: Mapped[str | None] = mapped_column(String(36))
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_uuid: Mapped[str | None] = mapped_column(String(36))
    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
