from __future__ import annotations

import unittest
from decimal import Decimal

from procurement.services.proration_service import (
    ChargeRates,
    ProrationItem,
    allocate,
    compute_financial_breakdown,
)


class AllocateTests(unittest.TestCase):
    def test_allocates_in_proportion_to_subtotals(self) -> None:
        prorated = allocate(
            [ProrationItem(id='a', subtotal=Decimal('500')), ProrationItem(id='b', subtotal=Decimal('600'))],
            Decimal('1331'),
        )
        self.assertEqual(prorated[0].allocated_amount, Decimal('605'))
        self.assertEqual(prorated[1].allocated_amount, Decimal('726'))
        self.assertEqual(sum(item.allocated_amount for item in prorated), Decimal('1331'))

    def test_sum_matches_aggregate_within_tolerance(self) -> None:
        items = [ProrationItem(id=str(i), subtotal=Decimal(value)) for i, value in enumerate(('1', '2', '3', '7.77'))]
        prorated = allocate(items, '100')
        total = sum(item.allocated_amount for item in prorated)
        self.assertLess(abs(total - Decimal('100')), Decimal('1e-6'))

    def test_no_base_leaves_items_unallocated(self) -> None:
        prorated = allocate([ProrationItem(id='a', subtotal=Decimal('0'))], Decimal('50'))
        self.assertIsNone(prorated[0].allocated_amount)
        self.assertEqual(allocate([], Decimal('50')), [])


class FinancialBreakdownTests(unittest.TestCase):
    def test_taxable_charges_feed_the_tax_base(self) -> None:
        breakdown = compute_financial_breakdown(
            Decimal('1100'),
            ChargeRates(
                freight_percentage=Decimal('10'),
                freight_taxable=True,
                packing_percentage=Decimal('10'),
                packing_taxable=True,
                custom_duties_percentage=Decimal('10'),
                custom_duties_taxable=False,
                sales_tax_1_percentage=Decimal('10'),
            ),
        )
        self.assertEqual(breakdown.charges_total, Decimal('330.00'))
        self.assertEqual(breakdown.taxable_base, Decimal('1320.00'))
        self.assertEqual(breakdown.sales_tax_1_amount, Decimal('132.00'))
        self.assertEqual(breakdown.sales_tax_2_amount, Decimal('0.00'))
        self.assertEqual(breakdown.grand_total, Decimal('1562.00'))

    def test_no_charges_returns_item_total(self) -> None:
        breakdown = compute_financial_breakdown('99.999', ChargeRates())
        self.assertEqual(breakdown.grand_total, Decimal('100.00'))
        self.assertEqual(breakdown.as_payload()['item_total'], '100.00')


if __name__ == '__main__':
    unittest.main()
