from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass
from decimal import Decimal

from procurement.services.quantity_utils import ZERO, round_money, to_decimal

HUNDRED = Decimal('100')


@dataclass(frozen=True)
class ProrationItem:
    id: str
    subtotal: Decimal


@dataclass(frozen=True)
class ProratedItem:
    id: str
    subtotal: Decimal
    allocated_amount: Decimal | None


@dataclass(frozen=True)
class ChargeRates:
    freight_percentage: Decimal = ZERO
    freight_taxable: bool = False
    packing_percentage: Decimal = ZERO
    packing_taxable: bool = False
    custom_duties_percentage: Decimal = ZERO
    custom_duties_taxable: bool = False
    other_percentage: Decimal = ZERO
    other_taxable: bool = False
    sales_tax_1_percentage: Decimal = ZERO
    sales_tax_2_percentage: Decimal = ZERO


@dataclass(frozen=True)
class FinancialBreakdown:
    item_total: Decimal
    freight_charges_amount: Decimal
    packing_charges_amount: Decimal
    custom_duties_charges_amount: Decimal
    other_charges_amount: Decimal
    charges_total: Decimal
    taxable_base: Decimal
    sales_tax_1_amount: Decimal
    sales_tax_2_amount: Decimal
    tax_total: Decimal
    grand_total: Decimal

    def as_payload(self) -> dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}


def allocate(items: Sequence[ProrationItem], aggregate_total: object) -> list[ProratedItem]:
    """
    Spread an aggregate amount across items in proportion to their subtotals.

    Without a positive base there is nothing to prorate and every item comes
    back with ``allocated_amount=None``. Amounts are left unrounded, so their
    sum can differ from the aggregate by a tiny remainder.
    """
    base = sum((to_decimal(item.subtotal) for item in items), ZERO)
    if not items or base == 0:
        return [ProratedItem(id=item.id, subtotal=to_decimal(item.subtotal), allocated_amount=None) for item in items]

    total = to_decimal(aggregate_total)
    return [
        ProratedItem(
            id=item.id,
            subtotal=to_decimal(item.subtotal),
            # Multiply first so exact shares stay exact.
            allocated_amount=to_decimal(item.subtotal) * total / base,
        )
        for item in items
    ]


def _percent_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return amount * to_decimal(percentage) / HUNDRED


def compute_financial_breakdown(item_total: object, rates: ChargeRates) -> FinancialBreakdown:
    total = to_decimal(item_total)
    freight = _percent_of(total, rates.freight_percentage)
    packing = _percent_of(total, rates.packing_percentage)
    custom_duties = _percent_of(total, rates.custom_duties_percentage)
    other = _percent_of(total, rates.other_percentage)

    taxable_charges = sum(
        (
            amount
            for amount, taxable in (
                (freight, rates.freight_taxable),
                (packing, rates.packing_taxable),
                (custom_duties, rates.custom_duties_taxable),
                (other, rates.other_taxable),
            )
            if taxable
        ),
        ZERO,
    )
    taxable_base = total + taxable_charges
    tax_1 = _percent_of(taxable_base, rates.sales_tax_1_percentage)
    tax_2 = _percent_of(taxable_base, rates.sales_tax_2_percentage)

    charges_total = freight + packing + custom_duties + other
    tax_total = tax_1 + tax_2
    return FinancialBreakdown(
        item_total=round_money(total),
        freight_charges_amount=round_money(freight),
        packing_charges_amount=round_money(packing),
        custom_duties_charges_amount=round_money(custom_duties),
        other_charges_amount=round_money(other),
        charges_total=round_money(charges_total),
        taxable_base=round_money(taxable_base),
        sales_tax_1_amount=round_money(tax_1),
        sales_tax_2_amount=round_money(tax_2),
        tax_total=round_money(tax_total),
        grand_total=round_money(total + charges_total + tax_total),
    )
