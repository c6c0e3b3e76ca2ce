from __future__ import annotations

import unittest
from decimal import Decimal

from procurement.models import OrderKind, ReceiptNoteStatus, ReturnNoteStatus
from procurement.services.fulfillment_math_service import Lifecycle
from procurement.services.normalization_service import (
    lifecycle_from_flag,
    normalize_order_kind,
    normalize_receipt_status,
    normalize_return_status,
    order_line_from_mapping,
    proposed_receipt_from_mapping,
    receipt_record_from_mapping,
    return_record_from_mapping,
)
from procurement.services.quantity_utils import (
    normalize_identity,
    resolve_item_identity,
    round_money,
    to_decimal,
    to_optional_decimal,
)


class QuantityUtilsTests(unittest.TestCase):
    def test_to_decimal_collapses_unusable_values_to_zero(self) -> None:
        for value in (None, '', '   ', 'abc', True, float('nan'), float('inf'), 'Infinity'):
            self.assertEqual(to_decimal(value), Decimal('0'), value)

    def test_to_decimal_converts_numbers_exactly(self) -> None:
        self.assertEqual(to_decimal(3), Decimal('3'))
        self.assertEqual(to_decimal(0.1), Decimal('0.1'))
        self.assertEqual(to_decimal(' 12.50 '), Decimal('12.50'))
        self.assertEqual(to_decimal(Decimal('7.25')), Decimal('7.25'))

    def test_to_optional_decimal_keeps_missing_values_missing(self) -> None:
        self.assertIsNone(to_optional_decimal(None))
        self.assertIsNone(to_optional_decimal('  '))
        self.assertEqual(to_optional_decimal('0'), Decimal('0'))

    def test_round_money_rounds_half_up(self) -> None:
        self.assertEqual(round_money(Decimal('2.345')), Decimal('2.35'))
        self.assertEqual(round_money(Decimal('2.344')), Decimal('2.34'))

    def test_identity_is_trimmed_and_case_folded(self) -> None:
        self.assertEqual(normalize_identity('  AbC-1 '), 'abc-1')
        self.assertIsNone(normalize_identity('   '))
        self.assertEqual(normalize_identity('Stra\u00dfe-1'), 'strasse-1')
        self.assertEqual(resolve_item_identity(None, 'BASE-1'), 'base-1')
        self.assertEqual(resolve_item_identity('Item-1', 'base-1'), 'item-1')


class NormalizationServiceTests(unittest.TestCase):
    def test_unknown_order_kind_defaults_to_purchase_order(self) -> None:
        self.assertEqual(normalize_order_kind(None), OrderKind.PURCHASE_ORDER)
        self.assertEqual(normalize_order_kind('something'), OrderKind.PURCHASE_ORDER)
        self.assertEqual(normalize_order_kind(' Change_Order '), OrderKind.CHANGE_ORDER)
        self.assertEqual(normalize_order_kind(OrderKind.CHANGE_ORDER), OrderKind.CHANGE_ORDER)

    def test_note_statuses_fall_back_to_open_states(self) -> None:
        self.assertEqual(normalize_receipt_status('received'), ReceiptNoteStatus.RECEIVED)
        self.assertEqual(normalize_receipt_status('bogus'), ReceiptNoteStatus.SHIPMENT)
        self.assertEqual(normalize_return_status('RETURNED'), ReturnNoteStatus.RETURNED)
        self.assertEqual(normalize_return_status(None), ReturnNoteStatus.WAITING)

    def test_lifecycle_from_flag(self) -> None:
        self.assertEqual(lifecycle_from_flag(None), Lifecycle.ACTIVE)
        self.assertEqual(lifecycle_from_flag(True), Lifecycle.ACTIVE)
        self.assertEqual(lifecycle_from_flag(False), Lifecycle.RETIRED)
        self.assertEqual(lifecycle_from_flag('false'), Lifecycle.RETIRED)
        self.assertEqual(lifecycle_from_flag(0), Lifecycle.RETIRED)

    def test_order_line_requires_identity_and_reads_legacy_quantity_keys(self) -> None:
        self.assertIsNone(order_line_from_mapping({'ordered_quantity': 4}))
        line = order_line_from_mapping({'uuid': 'ITEM-1', 'po_quantity': '4', 'unit_price': '2.5'})
        self.assertEqual(line.item_identity, 'item-1')
        self.assertEqual(line.ordered_quantity, Decimal('4'))
        self.assertEqual(line.unit_price, Decimal('2.5'))

    def test_receipt_record_maps_legacy_change_order_reference(self) -> None:
        record = receipt_record_from_mapping(
            {
                'receipt_note_uuid': 'note-1',
                'item_uuid': None,
                'base_item_uuid': 'BASE-1',
                'received_quantity': 'n/a',
                'receipt_type': 'change_order',
                'purchase_order_uuid': 'co-9',
                'is_active': False,
            }
        )
        self.assertEqual(record.item_identity, 'base-1')
        self.assertEqual(record.received_quantity, Decimal('0'))
        self.assertEqual(record.receipt_type, OrderKind.CHANGE_ORDER)
        self.assertIsNone(record.purchase_order_uuid)
        self.assertEqual(record.change_order_uuid, 'co-9')
        self.assertEqual(record.lifecycle, Lifecycle.RETIRED)

    def test_return_record_defaults(self) -> None:
        record = return_record_from_mapping(
            {'return_note_uuid': 'r-1', 'item_uuid': 'item-1', 'return_quantity': 2, 'purchase_order_uuid': 'po-1'}
        )
        self.assertEqual(record.return_type, OrderKind.PURCHASE_ORDER)
        self.assertEqual(record.lifecycle, Lifecycle.ACTIVE)
        self.assertEqual(record.return_quantity, Decimal('2'))
        self.assertEqual(record.status, ReturnNoteStatus.RETURNED)

    def test_return_record_carries_note_status(self) -> None:
        record = return_record_from_mapping({'item_uuid': 'item-1', 'return_quantity': 2, 'status': 'Waiting'})
        self.assertEqual(record.status, ReturnNoteStatus.WAITING)

    def test_proposed_receipt_from_mapping(self) -> None:
        receipt = proposed_receipt_from_mapping(
            {'item_uuid': 'Item-1', 'received_quantity': '3', 'co_quantity': 5, 'item_name': 'Pipe'}
        )
        self.assertEqual(receipt.item_identity, 'item-1')
        self.assertEqual(receipt.received_quantity, Decimal('3'))
        self.assertEqual(receipt.ordered_quantity, Decimal('5'))
        self.assertEqual(receipt.item_name, 'Pipe')


if __name__ == '__main__':
    unittest.main()
