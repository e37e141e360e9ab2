"""
Tests for product stock counters and the bin stock ledger.

Test Cases:
1. Reservation arithmetic and insufficient stock rejection
2. All-or-nothing reservation with compensation
3. Randomized operation run keeping the counter invariant
4. Bin ledger merge, removal, capacity and expiry ordering
5. Transfers are all or nothing
6. Movement history is append-only
7. Reconciliation of counters against bin contents
8. Bin endpoints enforce the picker and admin roles
"""
import random
from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db.models import F
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group

from core.exceptions import CapacityExceeded, InsufficientStock, NotFound, ValidationError
from inventory import ledger, services
from inventory.models import Bin, BinMovement, BinStock, Product


def make_product(sku, price='10.00', **kwargs):
    return Product.objects.create(sku=sku, name=f'Product {sku}', selling_price=Decimal(price), **kwargs)


def make_bin(code, max_items=500, **kwargs):
    return Bin.objects.create(bin_code=code, zone='A', aisle='01', shelf='S1', max_items=max_items, **kwargs)


class ProductCounterTestCase(TestCase):
    """Test cases for reservation arithmetic on product counters."""

    def setUp(self):
        self.bin = make_bin('A-01')
        self.product = make_product('MILK-1')
        self.other = make_product('BREAD-1')
        ledger.add_stock(self.bin.pk, self.product.pk, 100, 'staff-1')
        ledger.add_stock(self.bin.pk, self.other.pk, 5, 'staff-1')

    def assertCounters(self, product, total, available, reserved):
        product.refresh_from_db()
        self.assertEqual(
            (product.total_stock, product.available_stock, product.reserved_stock),
            (total, available, reserved)
        )

    def test_reserve_moves_available_to_reserved(self):
        """
        Test: Reserving keeps total stock and shifts available to reserved.

        Given: 100 units available
        When: Reserving 30
        Then: 70 available, 30 reserved, total 100
        """
        services.reserve(self.product.pk, 30)

        self.assertCounters(self.product, 100, 70, 30)

    def test_reserve_rejects_more_than_available(self):
        """
        Test: Reserving more than available fails and changes nothing.
        """
        with self.assertRaises(InsufficientStock) as ctx:
            services.reserve(self.product.pk, 101)

        self.assertEqual(ctx.exception.requested, 101)
        self.assertEqual(ctx.exception.available, 100)
        self.assertCounters(self.product, 100, 100, 0)

    def test_reserve_exact_available_stock(self):
        services.reserve(self.product.pk, 100)

        self.assertCounters(self.product, 100, 0, 100)
        self.assertFalse(Product.objects.get(pk=self.product.pk).in_stock)

    def test_release_returns_reservation(self):
        services.reserve(self.product.pk, 30)
        services.release(self.product.pk, 10)

        self.assertCounters(self.product, 100, 80, 20)

    def test_release_more_than_reserved_fails(self):
        """
        Test: A second release of the same reservation is rejected.
        """
        services.reserve(self.product.pk, 10)
        services.release(self.product.pk, 10)

        with self.assertRaises(InsufficientStock):
            services.release(self.product.pk, 10)
        self.assertCounters(self.product, 100, 100, 0)

    def test_confirm_consumption_reduces_total_and_reserved(self):
        services.reserve(self.product.pk, 30)
        services.confirm_consumption(self.product.pk, 30)

        self.assertCounters(self.product, 70, 70, 0)

    def test_confirm_consumption_requires_reservation(self):
        with self.assertRaises(InsufficientStock):
            services.confirm_consumption(self.product.pk, 1)
        self.assertCounters(self.product, 100, 100, 0)

    def test_write_off_cannot_touch_reserved_stock(self):
        services.reserve(self.product.pk, 95)

        with self.assertRaises(InsufficientStock):
            services.write_off(self.product.pk, 10)
        self.assertCounters(self.product, 100, 5, 95)

    def test_invalid_quantity(self):
        for quantity in (0, -3, 1.5, True):
            with self.assertRaises(ValidationError):
                services.reserve(self.product.pk, quantity)
        self.assertCounters(self.product, 100, 100, 0)

    def test_unknown_product(self):
        with self.assertRaises(NotFound):
            services.reserve(999999, 1)

    def test_reserve_all_compensates_on_failure(self):
        """
        Test: A failing line releases every reservation made before it.

        Given: 100 units of product, 5 units of other
        When: Reserving 10 of product and 6 of other together
        Then: InsufficientStock, both products unchanged
        """
        with self.assertRaises(InsufficientStock):
            services.reserve_all([(self.product.pk, 10), (self.other.pk, 6)])

        self.assertCounters(self.product, 100, 100, 0)
        self.assertCounters(self.other, 5, 5, 0)

    def test_reserve_all_success(self):
        applied = services.reserve_all([(self.other.pk, 5), (self.product.pk, 10)])

        self.assertEqual(len(applied), 2)
        self.assertCounters(self.product, 100, 90, 10)
        self.assertCounters(self.other, 5, 0, 5)

    def test_randomized_operations_keep_counters_balanced(self):
        """
        Test: Counters never go negative or unbalance under any sequence.

        Given: A seeded random sequence of 1000 counter operations
        When: Applying each one, some of which are rejected
        Then: total == available + reserved after every step, and the
              final counters match a shadow model of accepted operations
        """
        rng = random.Random(20240611)
        total, available, reserved = 100, 100, 0
        for _ in range(1000):
            op = rng.choice(['reserve', 'release', 'consume', 'receive', 'write_off'])
            quantity = rng.randint(1, 25)
            try:
                if op == 'reserve':
                    services.reserve(self.product.pk, quantity)
                    available, reserved = available - quantity, reserved + quantity
                elif op == 'release':
                    services.release(self.product.pk, quantity)
                    available, reserved = available + quantity, reserved - quantity
                elif op == 'consume':
                    services.confirm_consumption(self.product.pk, quantity)
                    total, reserved = total - quantity, reserved - quantity
                elif op == 'receive':
                    services.receive(self.product.pk, quantity)
                    total, available = total + quantity, available + quantity
                else:
                    services.write_off(self.product.pk, quantity)
                    total, available = total - quantity, available - quantity
            except InsufficientStock:
                pass

            self.assertGreaterEqual(available, 0)
            self.assertGreaterEqual(reserved, 0)
            self.assertEqual(total, available + reserved)

        self.assertCounters(self.product, total, available, reserved)


class BinLedgerTestCase(TestCase):
    """Test cases for bin stock operations."""

    def setUp(self):
        self.bin = make_bin('A-01', max_items=100)
        self.other_bin = make_bin('A-02', max_items=50)
        self.product = make_product('MILK-1')

    def quantities(self, bin_obj):
        return ledger.product_quantity(bin_obj, self.product.pk)

    def test_add_stock_merges_same_batch(self):
        """
        Test: Adding to an existing batch merges into one entry.
        """
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1', batch_number='LOT-1')
        movement = ledger.add_stock(self.bin.pk, self.product.pk, 15, 'staff-1', batch_number='LOT-1')

        entries = BinStock.objects.filter(bin=self.bin, product=self.product)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().quantity, 25)
        self.assertEqual(movement.action, BinMovement.Action.STOCK_IN)
        self.assertEqual((movement.previous_quantity, movement.new_quantity), (10, 25))

        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 25)
        self.assertEqual(self.product.available_stock, 25)

    def test_add_stock_keeps_batches_separate(self):
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1', batch_number='LOT-1')
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1', batch_number='LOT-2')

        self.assertEqual(BinStock.objects.filter(bin=self.bin).count(), 2)
        self.assertEqual(self.quantities(self.bin), 20)

    def test_add_stock_over_capacity_rejected(self):
        """
        Test: Capacity is enforced and a rejected add changes nothing.

        Given: A bin of 100 items holding 90
        When: Adding 11 more
        Then: CapacityExceeded, bin, counters and history unchanged
        """
        ledger.add_stock(self.bin.pk, self.product.pk, 90, 'staff-1')

        with self.assertRaises(CapacityExceeded) as ctx:
            ledger.add_stock(self.bin.pk, self.product.pk, 11, 'staff-1')

        self.assertEqual(ctx.exception.field, 'quantity')
        self.assertEqual(self.quantities(self.bin), 90)
        self.assertEqual(self.bin.movements.count(), 1)
        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 90)

    def test_add_stock_fills_bin_exactly(self):
        ledger.add_stock(self.bin.pk, self.product.pk, 100, 'staff-1')

        self.bin.refresh_from_db()
        self.assertTrue(self.bin.is_full)
        self.assertEqual(self.bin.available_capacity, 0)

    def test_add_stock_to_inactive_bin_rejected(self):
        Bin.objects.filter(pk=self.bin.pk).update(is_active=False)

        with self.assertRaises(ValidationError):
            ledger.add_stock(self.bin.pk, self.product.pk, 5, 'staff-1')
        self.assertEqual(self.quantities(self.bin), 0)

    def test_add_stock_unknown_bin(self):
        with self.assertRaises(NotFound):
            ledger.add_stock(999999, self.product.pk, 5, 'staff-1')

    def test_add_stock_bumps_version(self):
        ledger.add_stock(self.bin.pk, self.product.pk, 5, 'staff-1')

        self.bin.refresh_from_db()
        self.assertEqual(self.bin.version, 1)

    def test_remove_stock_earliest_expiry_first(self):
        """
        Test: Removal consumes the batch expiring first and deletes empty entries.
        """
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1',
                         batch_number='LATE', expiry_date=date(2031, 6, 1))
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1',
                         batch_number='EARLY', expiry_date=date(2030, 1, 1))

        movement = ledger.remove_stock(self.bin.pk, self.product.pk, 14, 'staff-1', reason='Damaged')

        remaining = BinStock.objects.get(bin=self.bin, product=self.product)
        self.assertEqual(remaining.batch_number, 'LATE')
        self.assertEqual(remaining.quantity, 6)
        self.assertEqual(movement.action, BinMovement.Action.STOCK_OUT)
        self.assertEqual((movement.previous_quantity, movement.new_quantity), (20, 6))

        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 6)
        self.assertEqual(self.product.available_stock, 6)

    def test_remove_stock_more_than_bin_holds(self):
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1')

        with self.assertRaises(InsufficientStock) as ctx:
            ledger.remove_stock(self.bin.pk, self.product.pk, 11, 'staff-1')

        self.assertEqual(ctx.exception.bin_code, 'A-01')
        self.assertEqual(self.quantities(self.bin), 10)
        self.assertEqual(self.bin.movements.count(), 1)

    def test_remove_stock_cannot_take_reserved_units(self):
        """
        Test: A stock-out only covers unreserved stock; the bin is left intact.
        """
        ledger.add_stock(self.bin.pk, self.product.pk, 20, 'staff-1')
        services.reserve(self.product.pk, 15)

        with self.assertRaises(InsufficientStock):
            ledger.remove_stock(self.bin.pk, self.product.pk, 10, 'staff-1')

        self.assertEqual(self.quantities(self.bin), 20)
        self.product.refresh_from_db()
        self.assertEqual(
            (self.product.total_stock, self.product.available_stock, self.product.reserved_stock),
            (20, 5, 15)
        )

    def test_transfer_carries_batches(self):
        """
        Test: Transfer moves units with their batch and expiry.

        Given: 30 units of LOT-1 in bin A-01
        When: Transferring 12 to A-02
        Then: 18 and 12 units, one transfer movement per bin, counters unchanged
        """
        ledger.add_stock(self.bin.pk, self.product.pk, 30, 'staff-1',
                         batch_number='LOT-1', expiry_date=date(2030, 3, 1))

        outgoing, incoming = ledger.transfer(self.bin.pk, self.other_bin.pk, self.product.pk, 12, 'staff-1')

        self.assertEqual(self.quantities(self.bin), 18)
        moved = BinStock.objects.get(bin=self.other_bin, product=self.product)
        self.assertEqual((moved.batch_number, moved.expiry_date, moved.quantity), ('LOT-1', date(2030, 3, 1), 12))
        self.assertEqual((outgoing.previous_quantity, outgoing.new_quantity), (30, 18))
        self.assertEqual((incoming.previous_quantity, incoming.new_quantity), (0, 12))
        self.assertEqual(self.bin.movements.filter(action=BinMovement.Action.TRANSFER).count(), 1)
        self.assertEqual(self.other_bin.movements.filter(action=BinMovement.Action.TRANSFER).count(), 1)

        self.product.refresh_from_db()
        self.assertEqual(self.product.total_stock, 30)
        self.assertEqual(self.product.available_stock, 30)

    def test_failed_transfer_leaves_both_bins_unchanged(self):
        """
        Test: A destination over capacity rolls the whole transfer back.

        Given: 80 units in A-01, A-02 holds 45 of 50
        When: Transferring 10 units to A-02
        Then: CapacityExceeded, both bins and their histories unchanged
        """
        other = make_product('EGGS-1')
        ledger.add_stock(self.bin.pk, self.product.pk, 80, 'staff-1')
        ledger.add_stock(self.other_bin.pk, other.pk, 45, 'staff-1')

        with self.assertRaises(CapacityExceeded):
            ledger.transfer(self.bin.pk, self.other_bin.pk, self.product.pk, 10, 'staff-1')

        self.assertEqual(self.quantities(self.bin), 80)
        self.assertEqual(self.quantities(self.other_bin), 0)
        self.assertEqual(ledger.product_quantity(self.other_bin, other.pk), 45)
        self.assertEqual(self.bin.movements.count(), 1)
        self.assertEqual(self.other_bin.movements.count(), 1)

    def test_transfer_to_same_bin_rejected(self):
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1')

        with self.assertRaises(ValidationError):
            ledger.transfer(self.bin.pk, self.bin.pk, self.product.pk, 5, 'staff-1')

    def test_movements_are_append_only(self):
        """
        Test: Movement history entries cannot be edited or deleted.
        """
        movement = ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1')

        movement.reason = 'rewritten'
        with self.assertRaises(TypeError):
            movement.save()
        with self.assertRaises(TypeError):
            movement.delete()
        self.assertEqual(BinMovement.objects.get(pk=movement.pk).reason, 'Stock replenishment')


class ReconciliationTestCase(TestCase):
    """Test cases for comparing counters with bin contents."""

    def setUp(self):
        self.bin = make_bin('B-01')
        self.product = make_product('RICE-5', min_stock_level=10)
        ledger.add_stock(self.bin.pk, self.product.pk, 40, 'staff-1')

    def drift(self, units=5):
        Product.objects.filter(pk=self.product.pk).update(
            total_stock=F('total_stock') + units,
            available_stock=F('available_stock') + units
        )

    def test_ledger_operations_stay_consistent(self):
        services.reserve(self.product.pk, 10)
        ledger.remove_stock(self.bin.pk, self.product.pk, 5, 'staff-1')

        report = services.reconcile(self.product)

        self.assertTrue(report['consistent'])
        self.assertEqual(report['ledger_total'], 35)
        self.assertEqual(services.reconcile_all(), [])

    def test_drift_is_reported(self):
        self.drift()

        report = services.reconcile(self.product)

        self.assertFalse(report['consistent'])
        self.assertEqual(report['total_stock'], 45)
        self.assertEqual(report['ledger_total'], 40)
        self.assertEqual([r['sku'] for r in services.reconcile_all()], ['RICE-5'])

    def test_reconcile_command(self):
        out = StringIO()
        call_command('reconcile_inventory', stdout=out)
        self.assertIn('All product counters match', out.getvalue())

        self.drift()
        with self.assertRaises(CommandError):
            call_command('reconcile_inventory', '--strict', stdout=StringIO())

    def test_low_stock_and_summary(self):
        ledger.remove_stock(self.bin.pk, self.product.pk, 31, 'staff-1')

        self.assertEqual(list(services.low_stock_products()), [self.product])
        summary = services.inventory_summary()
        self.assertEqual(summary['active_products'], 1)
        self.assertEqual(summary['low_stock'], 1)
        self.assertEqual(summary['total_stock'], 9)


class BinAPITestCase(APITestCase):
    """Test cases for the bin endpoints."""

    def setUp(self):
        self.user = get_user_model().objects.create_user(username='stocker', password='pw')
        self.user.groups.add(Group.objects.create(name='pickers'))
        self.client.force_authenticate(self.user)
        self.bin = make_bin('C-01', max_items=20)
        self.other_bin = make_bin('C-02', max_items=20)
        self.product = make_product('OIL-1')

    def test_add_stock(self):
        response = self.client.post(
            f'/api/bins/{self.bin.pk}/add-stock/',
            {'product_id': self.product.pk, 'quantity': 12, 'batch_number': 'L1'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['current_quantity'], 12)
        self.assertEqual(response.data['stock'][0]['added_by'], str(self.user.pk))

    def test_add_stock_over_capacity(self):
        response = self.client.post(
            f'/api/bins/{self.bin.pk}/add-stock/',
            {'product_id': self.product.pk, 'quantity': 21},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'ValidationError')
        self.assertEqual(response.data['capacity'], 20)

    def test_remove_stock_requires_reason(self):
        response = self.client.post(
            f'/api/bins/{self.bin.pk}/remove-stock/',
            {'product_id': self.product.pk, 'quantity': 1},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_transfer_and_history(self):
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1')

        response = self.client.post(
            f'/api/bins/{self.bin.pk}/transfer/{self.other_bin.pk}/',
            {'product_id': self.product.pk, 'quantity': 4, 'reason': 'Rebalance'},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['current_quantity'], 6)

        history = self.client.get(f'/api/bins/{self.other_bin.pk}/history/')
        self.assertEqual(history.status_code, status.HTTP_200_OK)
        self.assertEqual(history.data['count'], 1)
        self.assertEqual(history.data['results'][0]['action'], 'transfer')

    def test_unknown_bin(self):
        response = self.client.post(
            '/api/bins/999999/add-stock/',
            {'product_id': self.product.pk, 'quantity': 1},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error'], 'NotFound')

    def test_ledger_operations_require_picker_role(self):
        """
        Test: Only pickers and admins may move bin stock.

        Given: 10 units in a bin
        When: A user without the picker role removes stock
        Then: 403 and the bin is untouched
        """
        ledger.add_stock(self.bin.pk, self.product.pk, 10, 'staff-1')
        outsider = get_user_model().objects.create_user(username='outsider', password='pw')
        self.client.force_authenticate(outsider)

        response = self.client.post(
            f'/api/bins/{self.bin.pk}/remove-stock/',
            {'product_id': self.product.pk, 'quantity': 4, 'reason': 'Damaged'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(ledger.product_quantity(self.bin, self.product.pk), 10)
        self.assertEqual(self.client.get('/api/bins/').status_code, status.HTTP_200_OK)

    def test_bin_provisioning_requires_admin(self):
        payload = {'bin_code': 'D-09', 'zone': 'D', 'aisle': '09', 'shelf': 'S1', 'max_items': 50}

        response = self.client.post('/api/bins/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        admin = get_user_model().objects.create_user(username='admin', password='pw', is_staff=True)
        self.client.force_authenticate(admin)
        response = self.client.post('/api/bins/', payload, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(Bin.objects.filter(bin_code='D-09').exists())
