from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal('0')
CENT = Decimal('0.01')


def to_decimal(value: object) -> Decimal:
    """Coerce a loosely typed quantity or amount into a Decimal.

    Missing, blank and non-numeric values all collapse to zero so that one
    corrupt history row cannot block reconciliation for a whole order.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, int):
        return Decimal(value)
    elif isinstance(value, float):
        parsed = Decimal(str(value))
    else:
        raw = str(value).strip()
        if not raw:
            return ZERO
        try:
            parsed = Decimal(raw)
        except InvalidOperation:
            return ZERO
    if not parsed.is_finite():
        return ZERO
    return parsed


def to_optional_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return to_decimal(value)


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_identity(value: object) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().casefold()
    return normalized or None


def resolve_item_identity(item_uuid: object, base_item_uuid: object = None) -> str | None:
    return normalize_identity(item_uuid) or normalize_identity(base_item_uuid)
