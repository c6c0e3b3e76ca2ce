from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.models import HoldbackRelease
from procurement.services.fulfillment_math_service import Lifecycle, format_quantity
from procurement.services.proration_service import HUNDRED, ProrationItem, allocate
from procurement.services.quantity_utils import ZERO, normalize_identity, round_money, to_decimal


@dataclass(frozen=True)
class ReleaseRecord:
    vendor_invoice_uuid: str | None
    cost_code_uuid: str | None
    release_amount: Decimal
    lifecycle: Lifecycle = Lifecycle.ACTIVE


@dataclass(frozen=True)
class HoldbackRow:
    cost_code_uuid: str
    invoice_amount: Decimal
    holdback_amount: Decimal
    previously_released: Decimal
    release_amount: Decimal
    remaining: Decimal


def resolve_holdback_total(
    *,
    invoice_total: object,
    holdback_amount: object = None,
    holdback_percentage: object = None,
) -> Decimal:
    if holdback_amount is not None and str(holdback_amount).strip() != '':
        return to_decimal(holdback_amount)
    return to_decimal(invoice_total) * to_decimal(holdback_percentage) / HUNDRED


def _released_by_cost_code(
    releases: Iterable[ReleaseRecord],
    *,
    exclude_invoice_uuid: str | None,
) -> dict[str, Decimal]:
    excluded = normalize_identity(exclude_invoice_uuid)
    totals: dict[str, Decimal] = {}
    for release in releases:
        if release.lifecycle != Lifecycle.ACTIVE:
            continue
        if excluded is not None and normalize_identity(release.vendor_invoice_uuid) == excluded:
            continue
        key = normalize_identity(release.cost_code_uuid)
        if key is None:
            continue
        totals[key] = totals.get(key, ZERO) + to_decimal(release.release_amount)
    return totals


def build_holdback_breakdown(
    cost_code_amounts: Mapping[str, object],
    holdback_total: object,
    previous_releases: Iterable[ReleaseRecord] = (),
    current_releases: Mapping[str, object] | None = None,
    *,
    exclude_invoice_uuid: str | None = None,
) -> list[HoldbackRow]:
    """
    Split a holdback total across cost codes by their share of the invoice and
    net off what other invoices (and the current one) already released.
    """
    prorated = allocate(
        [ProrationItem(id=cost_code, subtotal=to_decimal(amount)) for cost_code, amount in cost_code_amounts.items()],
        holdback_total,
    )
    released = _released_by_cost_code(previous_releases, exclude_invoice_uuid=exclude_invoice_uuid)
    current = {normalize_identity(key): to_decimal(value) for key, value in (current_releases or {}).items()}

    rows: list[HoldbackRow] = []
    for item in prorated:
        key = normalize_identity(item.id) or ''
        holdback_amount = round_money(item.allocated_amount) if item.allocated_amount is not None else ZERO
        previously_released = released.get(key, ZERO)
        release_amount = current.get(key, ZERO)
        rows.append(
            HoldbackRow(
                cost_code_uuid=item.id,
                invoice_amount=item.subtotal,
                holdback_amount=holdback_amount,
                previously_released=previously_released,
                release_amount=release_amount,
                remaining=holdback_amount - previously_released - release_amount,
            )
        )
    return rows


def visible_rows(rows: Iterable[HoldbackRow]) -> list[HoldbackRow]:
    # Negative remainders stay visible so the over-release can be shown.
    return [row for row in rows if row.remaining != 0]


def ensure_releases_within_holdback(rows: Iterable[HoldbackRow]) -> None:
    over = [row for row in rows if row.remaining < 0]
    if over:
        details = '; '.join(
            f'{row.cost_code_uuid} (over by {format_quantity(-row.remaining)})' for row in over
        )
        raise ValueError(f'Release amount exceeds available holdback for: {details}')


def list_previous_releases(
    db: Session,
    *,
    purchase_order_uuid: str | None = None,
    change_order_uuid: str | None = None,
) -> list[ReleaseRecord]:
    if not purchase_order_uuid and not change_order_uuid:
        raise ValueError('Order identity is required')
    query = select(HoldbackRelease).where(HoldbackRelease.is_active.is_(True), HoldbackRelease.release_amount > 0)
    if purchase_order_uuid:
        query = query.where(HoldbackRelease.purchase_order_uuid == purchase_order_uuid)
    if change_order_uuid:
        query = query.where(HoldbackRelease.change_order_uuid == change_order_uuid)
    rows = db.execute(query.order_by(HoldbackRelease.created_at.asc())).scalars().all()
    return [
        ReleaseRecord(
            vendor_invoice_uuid=row.vendor_invoice_uuid,
            cost_code_uuid=row.cost_code_uuid,
            release_amount=to_decimal(row.release_amount),
        )
        for row in rows
    ]
