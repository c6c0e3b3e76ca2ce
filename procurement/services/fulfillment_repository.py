from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.config import settings
from procurement.models import (
    ChangeOrder,
    OrderItem,
    OrderKind,
    OrderStatus,
    PurchaseOrder,
    ReceiptNoteItem,
    ReturnNoteItem,
    StockReturnNote,
)
from procurement.services.fulfillment_math_service import OrderLine, ReceiptRecord, ReturnRecord
from procurement.services.normalization_service import (
    order_line_from_mapping,
    receipt_record_from_mapping,
    return_record_from_mapping,
)
from procurement.services.quantity_utils import normalize_identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    uuid: str
    kind: OrderKind
    corporation_uuid: str
    status: OrderStatus
    lines: tuple[OrderLine, ...]


class FulfillmentRepository(Protocol):
    def get_order(self, order_uuid: str, order_kind: OrderKind, *, fresh: bool = False) -> OrderSnapshot | None: ...

    def list_receipt_records(self, order_uuid: str, order_kind: OrderKind) -> list[ReceiptRecord]: ...

    def list_return_records(self, order_uuid: str, order_kind: OrderKind) -> list[ReturnRecord]: ...

    def update_order_status(self, order_uuid: str, order_kind: OrderKind, status: OrderStatus) -> OrderSnapshot | None: ...


def _order_model(order_kind: OrderKind) -> type[PurchaseOrder] | type[ChangeOrder]:
    return ChangeOrder if order_kind == OrderKind.CHANGE_ORDER else PurchaseOrder


def _order_column(model, order_kind: OrderKind):
    return model.change_order_uuid if order_kind == OrderKind.CHANGE_ORDER else model.purchase_order_uuid


class SqlFulfillmentRepository:
    """Reads orders and note history through a SQLAlchemy session.

    Retired rows are filtered here, once; everything handed back is already
    normalized to Decimal quantities and case-folded identities.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_order(self, order_uuid: str, order_kind: OrderKind, *, fresh: bool = False) -> OrderSnapshot | None:
        model = _order_model(order_kind)
        order = self.db.execute(
            select(model).where(model.uuid == order_uuid, model.is_active.is_(True))
        ).scalar_one_or_none()
        if order is None:
            return None
        if fresh:
            self.db.refresh(order)

        items = self.db.execute(
            select(OrderItem)
            .where(_order_column(OrderItem, order_kind) == order_uuid, OrderItem.is_active.is_(True))
            .order_by(OrderItem.created_at.asc(), OrderItem.uuid.asc())
        ).scalars().all()
        lines = []
        for item in items:
            line = order_line_from_mapping(
                {
                    'uuid': item.uuid,
                    'base_item_uuid': item.base_item_uuid,
                    'ordered_quantity': item.ordered_quantity,
                    'unit_price': item.unit_price,
                    'cost_code_uuid': item.cost_code_uuid,
                    'item_name': item.item_name,
                }
            )
            if line is not None:
                lines.append(line)
        return OrderSnapshot(
            uuid=order.uuid,
            kind=order_kind,
            corporation_uuid=order.corporation_uuid,
            status=order.status,
            lines=tuple(lines),
        )

    def list_receipt_records(self, order_uuid: str, order_kind: OrderKind) -> list[ReceiptRecord]:
        rows = self.db.execute(
            select(ReceiptNoteItem).where(
                _order_column(ReceiptNoteItem, order_kind) == order_uuid,
                ReceiptNoteItem.is_active.is_(True),
            )
        ).scalars().all()
        return [
            receipt_record_from_mapping(
                {
                    'receipt_note_uuid': row.receipt_note_uuid,
                    'item_uuid': row.item_uuid,
                    'base_item_uuid': row.base_item_uuid,
                    'received_quantity': row.received_quantity,
                    'receipt_type': row.item_type,
                    'purchase_order_uuid': row.purchase_order_uuid,
                    'change_order_uuid': row.change_order_uuid,
                    'is_active': row.is_active,
                }
            )
            for row in rows
        ]

    def list_return_records(self, order_uuid: str, order_kind: OrderKind) -> list[ReturnRecord]:
        rows = self.db.execute(
            select(ReturnNoteItem, StockReturnNote.status)
            .join(StockReturnNote, StockReturnNote.uuid == ReturnNoteItem.return_note_uuid)
            .where(
                _order_column(ReturnNoteItem, order_kind) == order_uuid,
                ReturnNoteItem.is_active.is_(True),
                StockReturnNote.is_active.is_(True),
            )
        ).all()
        return [
            return_record_from_mapping(
                {
                    'return_note_uuid': row.return_note_uuid,
                    'item_uuid': row.item_uuid,
                    'base_item_uuid': row.base_item_uuid,
                    'return_quantity': row.return_quantity,
                    'return_type': row.item_type,
                    'purchase_order_uuid': row.purchase_order_uuid,
                    'change_order_uuid': row.change_order_uuid,
                    'is_active': row.is_active,
                    'status': status,
                }
            )
            for row, status in rows
        ]

    def update_order_status(self, order_uuid: str, order_kind: OrderKind, status: OrderStatus) -> OrderSnapshot | None:
        model = _order_model(order_kind)
        order = self.db.execute(select(model).where(model.uuid == order_uuid)).scalar_one_or_none()
        if order is None:
            return None
        order.status = status
        order.updated_at = datetime.now(tz=timezone.utc)
        self.db.flush()
        return self.get_order(order_uuid, order_kind)


class OrderSnapshotCache:
    """Process-local TTL cache of order snapshots keyed by kind and identity."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[tuple[OrderKind, str], tuple[float, OrderSnapshot]] = OrderedDict()
        self._lock = Lock()

    @staticmethod
    def _key(order_uuid: str, order_kind: OrderKind) -> tuple[OrderKind, str]:
        return order_kind, normalize_identity(order_uuid) or ''

    def get(self, order_uuid: str, order_kind: OrderKind) -> OrderSnapshot | None:
        if self.ttl_seconds <= 0:
            return None
        key = self._key(order_uuid, order_kind)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, snapshot = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return snapshot

    def put(self, snapshot: OrderSnapshot) -> None:
        if self.ttl_seconds <= 0:
            return
        key = self._key(snapshot.uuid, snapshot.kind)
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, snapshot)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, order_uuid: str, order_kind: OrderKind | None = None) -> None:
        kinds = [order_kind] if order_kind is not None else list(OrderKind)
        with self._lock:
            for kind in kinds:
                self._entries.pop(self._key(order_uuid, kind), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class CachedFulfillmentRepository:
    """Read-through for order snapshots, write-through for status updates.

    Note history is never cached: receipt and return flows each need their
    own fresh view of the rows.
    """

    def __init__(self, inner: FulfillmentRepository, cache: OrderSnapshotCache) -> None:
        self.inner = inner
        self.cache = cache

    def get_order(self, order_uuid: str, order_kind: OrderKind, *, fresh: bool = False) -> OrderSnapshot | None:
        if not fresh:
            cached = self.cache.get(order_uuid, order_kind)
            if cached is not None:
                return cached
        snapshot = self.inner.get_order(order_uuid, order_kind, fresh=fresh)
        if snapshot is None:
            self.cache.invalidate(order_uuid, order_kind)
            return None
        self.cache.put(snapshot)
        return snapshot

    def list_receipt_records(self, order_uuid: str, order_kind: OrderKind) -> list[ReceiptRecord]:
        return self.inner.list_receipt_records(order_uuid, order_kind)

    def list_return_records(self, order_uuid: str, order_kind: OrderKind) -> list[ReturnRecord]:
        return self.inner.list_return_records(order_uuid, order_kind)

    def update_order_status(self, order_uuid: str, order_kind: OrderKind, status: OrderStatus) -> OrderSnapshot | None:
        snapshot = self.inner.update_order_status(order_uuid, order_kind, status)
        if snapshot is None:
            self.cache.invalidate(order_uuid, order_kind)
            return None
        self.cache.put(snapshot)
        logger.debug('Cached order %s status refreshed to %s', order_uuid, status.value)
        return snapshot

    def invalidate(self, order_uuid: str, order_kind: OrderKind | None = None) -> None:
        self.cache.invalidate(order_uuid, order_kind)


@lru_cache(maxsize=1)
def get_order_snapshot_cache() -> OrderSnapshotCache:
    return OrderSnapshotCache(
        ttl_seconds=settings.order_cache_ttl_seconds,
        max_entries=settings.order_cache_max_entries,
    )


def get_fulfillment_repository(db: Session) -> CachedFulfillmentRepository:
    return CachedFulfillmentRepository(SqlFulfillmentRepository(db), get_order_snapshot_cache())
