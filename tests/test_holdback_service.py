from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from procurement.models import Base, HoldbackRelease
from procurement.services.fulfillment_math_service import Lifecycle
from procurement.services.holdback_service import (
    ReleaseRecord,
    build_holdback_breakdown,
    ensure_releases_within_holdback,
    list_previous_releases,
    resolve_holdback_total,
    visible_rows,
)

COST_CODES = {'cc-1': Decimal('10000'), 'cc-2': Decimal('5000'), 'cc-3': Decimal('3000')}


class HoldbackBreakdownTests(unittest.TestCase):
    def test_resolve_total_prefers_explicit_amount(self) -> None:
        self.assertEqual(resolve_holdback_total(invoice_total='18000', holdback_percentage='10'), Decimal('1800'))
        self.assertEqual(
            resolve_holdback_total(invoice_total='18000', holdback_amount='1500', holdback_percentage='10'),
            Decimal('1500'),
        )

    def test_prorates_holdback_across_cost_codes(self) -> None:
        rows = build_holdback_breakdown(COST_CODES, Decimal('1800'))
        self.assertEqual([row.holdback_amount for row in rows], [Decimal('1000.00'), Decimal('500.00'), Decimal('300.00')])
        self.assertEqual([row.remaining for row in rows], [Decimal('1000.00'), Decimal('500.00'), Decimal('300.00')])

    def test_previous_releases_exclude_current_invoice(self) -> None:
        previous = [
            ReleaseRecord(vendor_invoice_uuid='inv-old', cost_code_uuid='cc-1', release_amount=Decimal('400')),
            ReleaseRecord(vendor_invoice_uuid='inv-now', cost_code_uuid='cc-1', release_amount=Decimal('999')),
            ReleaseRecord(
                vendor_invoice_uuid='inv-gone',
                cost_code_uuid='cc-2',
                release_amount=Decimal('500'),
                lifecycle=Lifecycle.RETIRED,
            ),
        ]
        rows = build_holdback_breakdown(
            COST_CODES,
            Decimal('1800'),
            previous,
            {'cc-1': '100', 'cc-3': '300'},
            exclude_invoice_uuid='INV-NOW',
        )
        by_code = {row.cost_code_uuid: row for row in rows}
        self.assertEqual(by_code['cc-1'].previously_released, Decimal('400'))
        self.assertEqual(by_code['cc-1'].remaining, Decimal('500.00'))
        self.assertEqual(by_code['cc-2'].previously_released, Decimal('0'))
        self.assertEqual(by_code['cc-3'].remaining, Decimal('0.00'))

        shown = [row.cost_code_uuid for row in visible_rows(rows)]
        self.assertEqual(shown, ['cc-1', 'cc-2'])

    def test_over_release_stays_visible_and_fails_validation(self) -> None:
        rows = build_holdback_breakdown(COST_CODES, Decimal('1800'), current_releases={'cc-3': '450'})
        by_code = {row.cost_code_uuid: row for row in visible_rows(rows)}
        self.assertEqual(by_code['cc-3'].remaining, Decimal('-150.00'))
        with self.assertRaises(ValueError) as ctx:
            ensure_releases_within_holdback(rows)
        self.assertIn('cc-3 (over by 150)', str(ctx.exception))


class ListPreviousReleasesTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()

    def tearDown(self) -> None:
        self.db.close()

    def test_lists_active_positive_releases_for_order(self) -> None:
        self.db.add_all(
            [
                HoldbackRelease(
                    corporation_uuid='corp-1',
                    vendor_invoice_uuid='inv-1',
                    purchase_order_uuid='po-1',
                    cost_code_uuid='cc-1',
                    release_amount=Decimal('250.00'),
                ),
                HoldbackRelease(
                    corporation_uuid='corp-1',
                    vendor_invoice_uuid='inv-2',
                    purchase_order_uuid='po-1',
                    cost_code_uuid='cc-1',
                    release_amount=Decimal('0.00'),
                ),
                HoldbackRelease(
                    corporation_uuid='corp-1',
                    vendor_invoice_uuid='inv-3',
                    purchase_order_uuid='po-1',
                    cost_code_uuid='cc-2',
                    release_amount=Decimal('80.00'),
                    is_active=False,
                ),
                HoldbackRelease(
                    corporation_uuid='corp-1',
                    vendor_invoice_uuid='inv-4',
                    purchase_order_uuid='po-2',
                    cost_code_uuid='cc-1',
                    release_amount=Decimal('70.00'),
                ),
            ]
        )
        self.db.commit()

        releases = list_previous_releases(self.db, purchase_order_uuid='po-1')
        self.assertEqual(len(releases), 1)
        self.assertEqual(releases[0].vendor_invoice_uuid, 'inv-1')
        self.assertEqual(releases[0].release_amount, Decimal('250.00'))

    def test_requires_an_order(self) -> None:
        with self.assertRaises(ValueError):
            list_previous_releases(self.db)


if __name__ == '__main__':
    unittest.main()
