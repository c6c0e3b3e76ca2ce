from __future__ import annotations

import logging

from procurement.models import OrderKind, OrderStatus
from procurement.services.fulfillment_math_service import aggregate_history, derive_status, is_fully_reconciled
from procurement.services.fulfillment_repository import FulfillmentRepository
from procurement.services.quantity_utils import normalize_identity

logger = logging.getLogger(__name__)


def _same_corporation(note_corporation_uuid: str | None, order_corporation_uuid: str | None) -> bool:
    return normalize_identity(note_corporation_uuid) == normalize_identity(order_corporation_uuid)


def refresh_order_status(
    repository: FulfillmentRepository,
    *,
    order_uuid: str,
    order_kind: OrderKind,
    note_corporation_uuid: str | None,
    explicit_partial: bool = False,
) -> OrderStatus | None:
    """
    Re-derive an order's status from its committed receipt history.

    Runs after the receipt note write is committed. Failures never propagate:
    the note is already saved, so a stale status is logged and left for the
    next save to correct.
    """
    try:
        order = repository.get_order(order_uuid, order_kind, fresh=True)
        if order is None:
            logger.warning('Status refresh skipped: %s %s not found', order_kind.value, order_uuid)
            return None
        if not _same_corporation(note_corporation_uuid, order.corporation_uuid):
            logger.warning(
                'Status refresh skipped: note corporation %s does not own %s %s',
                note_corporation_uuid,
                order_kind.value,
                order_uuid,
            )
            return None

        context = aggregate_history(
            repository.list_receipt_records(order_uuid, order_kind),
            order_uuid=order_uuid,
            order_kind=order_kind,
        )
        status = derive_status(
            order.lines,
            context,
            explicit_partial=explicit_partial,
            current_status=order.status,
        )
        if status == order.status:
            return status
        repository.update_order_status(order_uuid, order_kind, status)
        logger.info('%s %s status %s -> %s', order_kind.value, order_uuid, order.status.value, status.value)
        return status
    except Exception:
        logger.exception('Status refresh failed for %s %s', order_kind.value, order_uuid)
        return None


def refresh_order_completion(
    repository: FulfillmentRepository,
    *,
    order_uuid: str,
    order_kind: OrderKind,
    note_corporation_uuid: str | None,
) -> OrderStatus | None:
    # Returned quantities count towards closing the order, never reopening it.
    try:
        order = repository.get_order(order_uuid, order_kind, fresh=True)
        if order is None:
            logger.warning('Completion check skipped: %s %s not found', order_kind.value, order_uuid)
            return None
        if not _same_corporation(note_corporation_uuid, order.corporation_uuid):
            logger.warning(
                'Completion check skipped: note corporation %s does not own %s %s',
                note_corporation_uuid,
                order_kind.value,
                order_uuid,
            )
            return None

        context = aggregate_history(
            repository.list_receipt_records(order_uuid, order_kind),
            repository.list_return_records(order_uuid, order_kind),
            order_uuid=order_uuid,
            order_kind=order_kind,
        )
        if not is_fully_reconciled(order.lines, context) or order.status == OrderStatus.COMPLETED:
            return order.status
        repository.update_order_status(order_uuid, order_kind, OrderStatus.COMPLETED)
        logger.info('%s %s completed after return', order_kind.value, order_uuid)
        return OrderStatus.COMPLETED
    except Exception:
        logger.exception('Completion check failed for %s %s', order_kind.value, order_uuid)
        return None
