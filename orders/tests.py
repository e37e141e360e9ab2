"""
Tests for order placement and fulfillment.

Test Cases:
1. Placement reserves stock atomically (confirmed) or changes nothing
2. Picker and rider claims: first claimant wins
3. Item picking consumes bin stock and auto-completes the order once
4. Cash on delivery requires the customer's OTP
5. Cancellation rolls inventory back, refunds follow payment
6. Order events are queued after commit and never fail a transition
7. Concurrent claims and picks never double-assign an order or overdraw a bin
"""
import re
import threading
from decimal import Decimal
from unittest.mock import patch

from django.conf import settings
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase

from core.exceptions import (
    AlreadyClaimed,
    AuthorizationMismatch,
    IllegalTransition,
    InsufficientStock,
    NotFound,
    ValidationError,
)
from inventory import ledger
from inventory.models import Bin, BinMovement, Product
from orders import fulfillment
from orders.models import Order, OrderItem, generate_order_number
from orders.services import calculate_pricing, place_order
from orders.tasks import deliver_order_event, reconcile_inventory, scan_low_stock

ADDRESS = {'street': '12 MG Road', 'city': 'Bengaluru', 'state': 'KA', 'zipCode': '560001'}

recorded_events = []


def recording_sink(event):
    recorded_events.append(event)


class FulfillmentTestCase(TestCase):
    """Shared fixtures: one bin stocked with three products."""

    def setUp(self):
        self.bin = Bin.objects.create(bin_code='A-01-S1-1', zone='A', aisle='01', shelf='S1', max_items=500)
        self.milk = Product.objects.create(sku='MILK-1', name='Whole Milk', selling_price=Decimal('60.00'))
        self.bread = Product.objects.create(sku='BREAD-1', name='Brown Bread', selling_price=Decimal('45.00'))
        self.eggs = Product.objects.create(sku='EGGS-12', name='Eggs (12)', selling_price=Decimal('90.00'))
        for product, quantity in ((self.milk, 5), (self.bread, 20), (self.eggs, 20)):
            ledger.add_stock(self.bin.pk, product.pk, quantity, 'staff-1')

    def place(self, *lines, payment_method='upi', customer='cust-1'):
        items = [{'product_id': product.pk, 'quantity': quantity} for product, quantity in lines]
        return place_order(customer, items, dict(ADDRESS), payment_method)

    def stock(self, product):
        product.refresh_from_db()
        return product.total_stock, product.available_stock, product.reserved_stock

    def statuses(self, order):
        return list(order.timeline.values_list('status', flat=True))

    def pick_all(self, order, picker='picker-1'):
        fulfillment.claim_for_picking(order.pk, picker)
        for item in order.items.all():
            order = fulfillment.pick_item(order.pk, item.line_number, picker, self.bin.pk)
        return order

    def to_out_for_delivery(self, order, rider='rider-1'):
        self.pick_all(order)
        fulfillment.claim_for_delivery(order.pk, rider)
        return fulfillment.confirm_pickup(order.pk, rider)


class OrderPlacementTestCase(FulfillmentTestCase):
    """Test cases for atomic order placement."""

    def test_order_confirmed_with_sufficient_stock(self):
        """
        Test: Scenario A, reservation on placement.

        Given: 5 units of milk available
        When: Placing an order for 3
        Then: Order is confirmed, 2 available and 3 reserved
        """
        order = self.place((self.milk, 3))

        self.assertEqual(order.order_status, Order.Status.CONFIRMED)
        self.assertEqual(self.stock(self.milk), (5, 2, 3))
        self.assertEqual(order.items.count(), 1)
        self.assertEqual(order.items.get().price, Decimal('60.00'))
        self.assertEqual(self.statuses(order), ['confirmed'])
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)

    def test_order_rejected_with_insufficient_stock(self):
        """
        Test: Scenario B, insufficient stock rejects the whole order.

        Given: 5 units of milk available
        When: Ordering 10 milk together with bread
        Then: InsufficientStock reporting 5 available; nothing reserved, no order
        """
        with self.assertRaises(InsufficientStock) as ctx:
            self.place((self.bread, 2), (self.milk, 10))

        self.assertEqual(ctx.exception.available, 5)
        self.assertEqual(self.stock(self.milk), (5, 5, 0))
        self.assertEqual(self.stock(self.bread), (20, 20, 0))
        self.assertFalse(Order.objects.exists())

    def test_order_with_exact_stock(self):
        self.place((self.milk, 5))

        self.assertEqual(self.stock(self.milk), (5, 0, 5))

    def test_pricing_is_frozen(self):
        """
        Test: Pricing is computed at placement and does not follow price changes.

        Given: 3 x 60.00 milk (subtotal 180.00, under the free delivery threshold)
        Then: 5% tax, 40.00 delivery fee
        """
        order = self.place((self.milk, 3))
        Product.objects.filter(pk=self.milk.pk).update(selling_price=Decimal('99.00'))
        order.refresh_from_db()

        self.assertEqual(order.subtotal, Decimal('180.00'))
        self.assertEqual(order.tax, Decimal('9.00'))
        self.assertEqual(order.delivery_fee, Decimal('40.00'))
        self.assertEqual(order.total, Decimal('229.00'))
        self.assertEqual(order.items.get().price, Decimal('60.00'))

    def test_free_delivery_above_threshold(self):
        pricing = calculate_pricing(Decimal('600.00'))

        self.assertEqual(pricing['delivery_fee'], Decimal('0.00'))
        self.assertEqual(pricing['total'], Decimal('630.00'))

    def test_cash_on_delivery_gets_otp(self):
        order = self.place((self.milk, 1), payment_method='cod')
        prepaid = self.place((self.bread, 1))

        self.assertRegex(order.delivery_otp, r'^\d{6}$')
        self.assertEqual(prepaid.delivery_otp, '')

    def test_order_number_format(self):
        order = self.place((self.milk, 1))

        self.assertRegex(order.order_number, r'^ORD\d{16}$')
        self.assertIsNotNone(re.match(r'^ORD\d+$', generate_order_number()))

    def test_validation_error_empty_items(self):
        with self.assertRaises(ValidationError) as ctx:
            place_order('cust-1', [], dict(ADDRESS), 'upi')
        self.assertEqual(ctx.exception.field, 'items')

    def test_validation_error_invalid_quantity(self):
        with self.assertRaises(ValidationError):
            place_order('cust-1', [{'product_id': self.milk.pk, 'quantity': 0}], dict(ADDRESS), 'upi')

    def test_validation_error_duplicate_products(self):
        with self.assertRaises(ValidationError):
            self.place((self.milk, 1), (self.milk, 2))

    def test_validation_error_missing_address_field(self):
        address = dict(ADDRESS)
        del address['zipCode']

        with self.assertRaises(ValidationError) as ctx:
            place_order('cust-1', [{'product_id': self.milk.pk, 'quantity': 1}], address, 'upi')
        self.assertEqual(ctx.exception.field, 'delivery_address.zipCode')

    def test_validation_error_payment_method(self):
        with self.assertRaises(ValidationError):
            self.place((self.milk, 1), payment_method='barter')

    def test_order_invalid_product(self):
        Product.objects.filter(pk=self.eggs.pk).update(is_active=False)

        with self.assertRaises(NotFound):
            self.place((self.milk, 1), (self.eggs, 1))
        self.assertEqual(self.stock(self.milk), (5, 5, 0))


class PickingTestCase(FulfillmentTestCase):
    """Test cases for picker claims and item picking."""

    def setUp(self):
        super().setUp()
        self.order = self.place((self.milk, 2), (self.bread, 3), (self.eggs, 1))

    def test_claim_assigns_order_and_items(self):
        order, error = fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        self.assertIsNone(error)
        self.assertEqual(order.order_status, Order.Status.PICKING)
        self.assertEqual(order.picker, 'picker-1')
        self.assertEqual(
            set(order.items.values_list('picker_assigned', 'picking_status')),
            {('picker-1', 'assigned')}
        )

    def test_claim_race_first_picker_wins(self):
        """
        Test: Two pickers claiming from the same stale read.

        Given: Both pickers read the order while it is unassigned
        When: Both claim it
        Then: The first wins, the second gets AlreadyClaimed, one timeline entry
        """
        seen_by_first = Order.objects.get(pk=self.order.pk)
        seen_by_second = Order.objects.get(pk=self.order.pk)
        self.assertIsNone(seen_by_first.picker)
        self.assertIsNone(seen_by_second.picker)

        _, first_error = fulfillment.claim_for_picking(seen_by_first.pk, 'picker-1')
        order, second_error = fulfillment.claim_for_picking(seen_by_second.pk, 'picker-2')

        self.assertIsNone(first_error)
        self.assertIsInstance(second_error, AlreadyClaimed)
        self.assertEqual(order.picker, 'picker-1')
        self.assertFalse(order.items.filter(picker_assigned='picker-2').exists())
        self.assertEqual(self.statuses(order).count('picking'), 1)

    def test_reclaim_by_same_picker_is_noop(self):
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')
        order, error = fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        self.assertIsNone(error)
        self.assertEqual(self.statuses(order), ['confirmed', 'picking'])

    def test_available_for_picking(self):
        other = self.place((self.bread, 1))
        fulfillment.claim_for_picking(other.pk, 'picker-2')

        self.assertEqual(list(fulfillment.available_for_picking('picker-1')), [self.order])
        self.assertEqual(
            set(fulfillment.available_for_picking('picker-2')),
            {self.order, other}
        )

    def test_start_item_picking(self):
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        item = fulfillment.start_item_picking(self.order.pk, 0, 'picker-1')

        self.assertEqual(item.picking_status, OrderItem.PickingStatus.PICKING)
        with self.assertRaises(IllegalTransition):
            fulfillment.start_item_picking(self.order.pk, 0, 'picker-1')

    def test_rejected_start_reports_current_item_status(self):
        """
        Test: A rejected start reports the item's status after the change.

        Given: An item read as assigned, then picked by a concurrent request
        When: The picker starts picking it from the stale read
        Then: IllegalTransition names 'picked' as the current status
        """
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')
        stale = self.order.items.get(line_number=0)
        OrderItem.objects.filter(pk=stale.pk).update(picking_status=OrderItem.PickingStatus.PICKED)

        with patch('orders.fulfillment._get_item', return_value=stale):
            with self.assertRaises(IllegalTransition) as ctx:
                fulfillment.start_item_picking(self.order.pk, 0, 'picker-1')

        self.assertEqual(ctx.exception.current, 'picked')
        self.assertEqual(ctx.exception.to_dict()['current'], 'picked')

    def test_pick_requires_assigned_picker(self):
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        with self.assertRaises(AuthorizationMismatch):
            fulfillment.pick_item(self.order.pk, 0, 'picker-2', self.bin.pk)
        self.assertEqual(self.stock(self.milk), (5, 3, 2))

    def test_pick_invalid_item_index(self):
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        with self.assertRaises(ValidationError):
            fulfillment.pick_item(self.order.pk, 7, 'picker-1', self.bin.pk)

    def test_pick_consumes_reservation_and_bin_stock(self):
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        order = fulfillment.pick_item(self.order.pk, 0, 'picker-1', self.bin.pk, notes='top shelf')

        item = order.items.get(line_number=0)
        self.assertEqual(item.picking_status, OrderItem.PickingStatus.PICKED)
        self.assertEqual(item.bin_location_id, self.bin.pk)
        self.assertEqual(item.notes, 'top shelf')
        self.assertEqual(self.stock(self.milk), (3, 3, 0))
        self.assertEqual(ledger.product_quantity(self.bin, self.milk.pk), 3)

        movement = BinMovement.objects.get(action=BinMovement.Action.PICK)
        self.assertEqual(movement.order_id, order.pk)
        self.bin.refresh_from_db()
        self.assertEqual(self.bin.picking_frequency, 1)
        self.assertIsNotNone(self.bin.last_picked_at)
        self.assertEqual(order.order_status, Order.Status.PICKING)

    def test_insufficient_bin_stock_keeps_item_assigned(self):
        """
        Test: Picking from a bin that runs short leaves everything as it was.

        Given: The bread is moved out of the bin the picker uses
        When: Picking 3 bread from it
        Then: InsufficientStock; item stays assigned, reservation intact
        """
        spare = Bin.objects.create(bin_code='B-01-S1-1', zone='B', aisle='01', shelf='S1')
        ledger.transfer(self.bin.pk, spare.pk, self.bread.pk, 19, 'staff-1')
        fulfillment.claim_for_picking(self.order.pk, 'picker-1')

        with self.assertRaises(InsufficientStock) as ctx:
            fulfillment.pick_item(self.order.pk, 1, 'picker-1', self.bin.pk)

        self.assertEqual(ctx.exception.bin_code, self.bin.bin_code)
        item = OrderItem.objects.get(order=self.order, line_number=1)
        self.assertEqual(item.picking_status, OrderItem.PickingStatus.ASSIGNED)
        self.assertEqual(self.stock(self.bread), (20, 17, 3))

        order = fulfillment.pick_item(self.order.pk, 1, 'picker-1', spare.pk)
        self.assertEqual(order.items.get(line_number=1).bin_location_id, spare.pk)

    def test_last_pick_completes_order_once(self):
        """
        Test: Scenario C, automatic picking -> picked transition.

        Given: An order with three items claimed by one picker
        When: All items are picked
        Then: The order is picked with exactly one 'picked' timeline entry
        """
        order = self.pick_all(self.order)

        self.assertEqual(order.order_status, Order.Status.PICKED)
        self.assertIsNotNone(order.picking_completed_at)
        self.assertEqual(self.statuses(order), ['confirmed', 'picking', 'picked'])
        self.assertEqual(order.picked_items, 3)

        with self.assertRaises(IllegalTransition):
            fulfillment.pick_item(order.pk, 0, 'picker-1', self.bin.pk)
        self.assertEqual(self.statuses(order).count('picked'), 1)

    def test_claim_picked_order_rejected(self):
        self.pick_all(self.order)

        with self.assertRaises(IllegalTransition):
            fulfillment.claim_for_picking(self.order.pk, 'picker-2')


class DeliveryTestCase(FulfillmentTestCase):
    """Test cases for rider claims, pickup and delivery."""

    def test_delivery_flow(self):
        order = self.place((self.bread, 2))
        self.pick_all(order)

        self.assertEqual(list(fulfillment.available_for_delivery()), [order])
        order, error = fulfillment.claim_for_delivery(order.pk, 'rider-1')
        self.assertIsNone(error)
        self.assertEqual(order.order_status, Order.Status.READY_FOR_DELIVERY)
        self.assertEqual(list(fulfillment.available_for_delivery()), [])

        order = fulfillment.confirm_pickup(order.pk, 'rider-1')
        self.assertEqual(order.order_status, Order.Status.OUT_FOR_DELIVERY)

        order = fulfillment.confirm_delivery(order.pk, 'rider-1', notes='Handed to customer')
        self.assertEqual(order.order_status, Order.Status.DELIVERED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertIsNotNone(order.delivered_at)
        self.assertEqual(order.delivery_notes, 'Handed to customer')
        self.assertEqual(
            self.statuses(order),
            ['confirmed', 'picking', 'picked', 'ready_for_delivery', 'out_for_delivery', 'delivered']
        )

    def test_second_rider_gets_already_claimed(self):
        order = self.place((self.bread, 1))
        self.pick_all(order)

        fulfillment.claim_for_delivery(order.pk, 'rider-1')
        order, error = fulfillment.claim_for_delivery(order.pk, 'rider-2')

        self.assertIsInstance(error, AlreadyClaimed)
        self.assertEqual(order.rider, 'rider-1')

    def test_claim_before_picking_rejected(self):
        order = self.place((self.bread, 1))

        with self.assertRaises(IllegalTransition):
            fulfillment.claim_for_delivery(order.pk, 'rider-1')

    def test_pickup_by_other_rider_rejected(self):
        order = self.place((self.bread, 1))
        self.pick_all(order)
        fulfillment.claim_for_delivery(order.pk, 'rider-1')

        with self.assertRaises(AuthorizationMismatch):
            fulfillment.confirm_pickup(order.pk, 'rider-2')

    def test_rejected_transition_appends_no_timeline_entry(self):
        order = self.place((self.bread, 1))

        with self.assertRaises(IllegalTransition):
            fulfillment.confirm_pickup(order.pk, 'rider-1')
        with self.assertRaises(IllegalTransition):
            fulfillment.confirm_delivery(order.pk, 'rider-1')

        self.assertEqual(self.statuses(order), ['confirmed'])

    def test_cod_wrong_otp_rejected(self):
        """
        Test: Scenario E, wrong OTP on a cash on delivery order.

        Given: A COD order out for delivery
        When: The rider presents a wrong OTP
        Then: AuthorizationMismatch; order stays out_for_delivery, payment pending
        """
        order = self.place((self.bread, 1), payment_method='cod')
        self.to_out_for_delivery(order)
        wrong = '000000' if order.delivery_otp != '000000' else '111111'

        with self.assertRaises(AuthorizationMismatch):
            fulfillment.confirm_delivery(order.pk, 'rider-1', otp=wrong)
        with self.assertRaises(AuthorizationMismatch):
            fulfillment.confirm_delivery(order.pk, 'rider-1')

        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.Status.OUT_FOR_DELIVERY)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertNotIn('delivered', self.statuses(order))

    def test_cod_non_ascii_otp_rejected(self):
        """
        Test: An OTP typed with non-ASCII digits is a wrong OTP, not a crash.

        Given: A COD order out for delivery
        When: The rider presents the OTP in Arabic-Indic digits
        Then: AuthorizationMismatch; order stays out_for_delivery
        """
        order = self.place((self.bread, 1), payment_method='cod')
        self.to_out_for_delivery(order)

        with self.assertRaises(AuthorizationMismatch):
            fulfillment.confirm_delivery(order.pk, 'rider-1', otp='١٢٣٤٥٦')

        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.Status.OUT_FOR_DELIVERY)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)

    def test_cod_correct_otp_delivers(self):
        order = self.place((self.bread, 1), payment_method='cod')
        self.to_out_for_delivery(order)

        order = fulfillment.confirm_delivery(order.pk, 'rider-1', otp=order.delivery_otp)

        self.assertEqual(order.order_status, Order.Status.DELIVERED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertIsNotNone(order.paid_at)


class CancellationTestCase(FulfillmentTestCase):
    """Test cases for cancellation and refunds."""

    def test_cancel_confirmed_order_releases_reservation(self):
        order = self.place((self.milk, 3), (self.bread, 2))

        order = fulfillment.cancel_order(order.pk, 'cust-1', 'Changed my mind')

        self.assertEqual(order.order_status, Order.Status.CANCELLED)
        self.assertEqual(order.cancelled_by, 'cust-1')
        self.assertEqual(self.stock(self.milk), (5, 5, 0))
        self.assertEqual(self.stock(self.bread), (20, 20, 0))

    def test_cancel_partially_picked_order(self):
        """
        Test: Scenario D, cancelling with 2 of 3 items already picked.

        Given: An order in picking with milk and bread picked, eggs not
        When: Cancelling it
        Then: Available stock is restored for all three, picked units are
              back in their bin, the timeline records the reason
        """
        order = self.place((self.milk, 2), (self.bread, 3), (self.eggs, 1))
        fulfillment.claim_for_picking(order.pk, 'picker-1')
        fulfillment.pick_item(order.pk, 0, 'picker-1', self.bin.pk)
        fulfillment.pick_item(order.pk, 1, 'picker-1', self.bin.pk)

        order = fulfillment.cancel_order(order.pk, 'support-1', 'Customer unreachable')

        self.assertEqual(order.order_status, Order.Status.CANCELLED)
        self.assertEqual(self.stock(self.milk), (5, 5, 0))
        self.assertEqual(self.stock(self.bread), (20, 20, 0))
        self.assertEqual(self.stock(self.eggs), (20, 20, 0))
        self.assertEqual(ledger.product_quantity(self.bin, self.milk.pk), 5)

        entry = order.timeline.last()
        self.assertEqual(entry.status, Order.Status.CANCELLED)
        self.assertEqual(entry.notes, 'Order cancelled: Customer unreachable')

    def test_cancel_keeps_stock_consumed_when_bin_cannot_take_it_back(self):
        order = self.place((self.milk, 2), (self.bread, 1))
        fulfillment.claim_for_picking(order.pk, 'picker-1')
        fulfillment.pick_item(order.pk, 0, 'picker-1', self.bin.pk)
        Bin.objects.filter(pk=self.bin.pk).update(is_active=False)

        order = fulfillment.cancel_order(order.pk, 'support-1', 'Out of area')

        self.assertEqual(order.order_status, Order.Status.CANCELLED)
        self.assertEqual(self.stock(self.milk), (3, 3, 0))
        self.assertEqual(self.stock(self.bread), (20, 20, 0))
        self.assertIn('2x MILK-1', order.timeline.last().notes)

    def test_cancel_without_returning_picked_stock(self):
        order = self.place((self.milk, 2))
        self.pick_all(order)

        config = {**settings.FULFILLMENT, 'RETURN_PICKED_STOCK_ON_CANCEL': False}
        with self.settings(FULFILLMENT=config):
            fulfillment.cancel_order(order.pk, 'support-1', 'Damaged in packing')

        self.assertEqual(self.stock(self.milk), (3, 3, 0))

    def test_cancel_requires_reason(self):
        order = self.place((self.milk, 1))

        with self.assertRaises(ValidationError):
            fulfillment.cancel_order(order.pk, 'cust-1', '   ')
        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.Status.CONFIRMED)

    def test_cancel_terminal_order_rejected(self):
        order = self.place((self.bread, 1))
        fulfillment.cancel_order(order.pk, 'cust-1', 'Duplicate order')

        with self.assertRaises(IllegalTransition):
            fulfillment.cancel_order(order.pk, 'cust-1', 'Again')
        self.assertEqual(self.stock(self.bread), (20, 20, 0))
        self.assertEqual(self.statuses(order), ['confirmed', 'cancelled'])

    def test_refund_delivered_order(self):
        order = self.place((self.bread, 1))
        self.to_out_for_delivery(order)
        fulfillment.confirm_delivery(order.pk, 'rider-1')

        order = fulfillment.refund_order(order.pk, 'support-1', notes='Item damaged')

        self.assertEqual(order.order_status, Order.Status.REFUNDED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(order.timeline.last().notes, 'Item damaged')

    def test_refund_open_order_rejected(self):
        order = self.place((self.bread, 1))

        with self.assertRaises(IllegalTransition):
            fulfillment.refund_order(order.pk, 'support-1')


class OrderEventTestCase(FulfillmentTestCase):
    """Test cases for order event publication."""

    def setUp(self):
        super().setUp()
        recorded_events.clear()

    @patch('orders.tasks.deliver_order_event')
    def test_event_queued_after_commit(self, task):
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            order = self.place((self.milk, 1))

        task.delay.assert_not_called()
        for callback in callbacks:
            callback()

        task.delay.assert_called_once()
        event = task.delay.call_args[0][0]
        self.assertEqual(event['type'], 'order_placed')
        self.assertEqual(event['orderNumber'], order.order_number)
        self.assertEqual(event['recipientHint'], 'pickers')
        self.assertEqual(event['priority'], 'high')

    @patch('orders.tasks.deliver_order_event')
    def test_rejected_transition_publishes_nothing(self, task):
        order = self.place((self.milk, 1))

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(IllegalTransition):
                fulfillment.confirm_pickup(order.pk, 'rider-1')

        self.assertEqual(len(callbacks), 0)
        task.delay.assert_not_called()

    @patch('orders.tasks.deliver_order_event')
    def test_enqueue_failure_does_not_fail_transition(self, task):
        task.delay.side_effect = ConnectionError('broker unavailable')

        with self.assertLogs('orders.events', level='ERROR'):
            with self.captureOnCommitCallbacks(execute=True):
                order = self.place((self.milk, 1))

        order.refresh_from_db()
        self.assertEqual(order.order_status, Order.Status.CONFIRMED)

    def test_delivery_task_calls_configured_sink(self):
        order = self.place((self.milk, 1))
        event = {
            'orderId': order.pk, 'orderNumber': order.order_number, 'type': 'order_placed',
            'status': 'confirmed', 'message': 'test', 'recipientHint': 'pickers', 'priority': 'high',
        }

        config = {**settings.FULFILLMENT, 'EVENT_SINK': 'orders.tests.recording_sink'}
        with self.settings(FULFILLMENT=config):
            result = deliver_order_event(event)

        self.assertEqual(result['status'], 'delivered')
        self.assertEqual(recorded_events, [event])


class MaintenanceTaskTestCase(FulfillmentTestCase):
    """Test cases for periodic inventory tasks."""

    def test_reconcile_inventory_task(self):
        self.place((self.milk, 2))
        self.assertEqual(reconcile_inventory(), {'drifted': []})

    def test_scan_low_stock_task(self):
        # Milk: 5 available with a minimum of 10
        self.assertEqual(scan_low_stock(), {'low_stock': 1})


class ConcurrentFulfillmentTestCase(TransactionTestCase):
    """
    Test concurrent claims and picks against one database.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        # Events are queued on real commits here; keep them off the broker
        patcher = patch('orders.tasks.deliver_order_event')
        patcher.start()
        self.addCleanup(patcher.stop)

        self.shelf = Bin.objects.create(bin_code='B-01-S1-1', zone='B', aisle='01', shelf='S1', max_items=100)
        self.overflow = Bin.objects.create(bin_code='B-01-S2-1', zone='B', aisle='01', shelf='S2', max_items=100)
        self.rice = Product.objects.create(sku='RICE-1', name='Basmati Rice 1kg', selling_price=Decimal('120.00'))
        # 6 units overall, but only 3 on the shelf both pickers will use
        ledger.add_stock(self.shelf.pk, self.rice.pk, 3, 'staff-1')
        ledger.add_stock(self.overflow.pk, self.rice.pk, 3, 'staff-1')

    def place(self, quantity):
        items = [{'product_id': self.rice.pk, 'quantity': quantity}]
        return place_order('cust-1', items, dict(ADDRESS), 'upi')

    def run_together(self, *calls):
        """Run each call in its own thread; return what each returned or raised."""
        barrier = threading.Barrier(len(calls))
        results = [None] * len(calls)

        def worker(index, call):
            try:
                barrier.wait()
                results[index] = call()
            except Exception as e:
                results[index] = e
            finally:
                connection.close()

        threads = [
            threading.Thread(target=worker, args=(index, call))
            for index, call in enumerate(calls)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_concurrent_claims_single_winner(self):
        """
        Test: Two pickers claim the same order at the same time.

        Given: A confirmed, unassigned order
        When: Two threads claim it concurrently
        Then: At most one claim wins; the other sees AlreadyClaimed (or a
              database lock error on SQLite); one picking timeline entry
        """
        order = self.place(2)

        results = self.run_together(
            lambda: fulfillment.claim_for_picking(order.pk, 'picker-1'),
            lambda: fulfillment.claim_for_picking(order.pk, 'picker-2'),
        )

        winners = []
        for picker, result in zip(('picker-1', 'picker-2'), results):
            if isinstance(result, Exception):
                self.assertIsInstance(result, DatabaseError)
                continue
            _, error = result
            if error is None:
                winners.append(picker)
            else:
                self.assertIsInstance(error, AlreadyClaimed)

        # At most one picker may own the order
        self.assertLessEqual(len(winners), 1)

        order.refresh_from_db()
        if winners:
            self.assertEqual(order.picker, winners[0])
            self.assertEqual(
                set(order.items.values_list('picker_assigned', flat=True)),
                {winners[0]}
            )
            self.assertEqual(
                list(order.timeline.values_list('status', flat=True)),
                ['confirmed', 'picking']
            )
        else:
            self.assertIsNone(order.picker)
            self.assertEqual(order.order_status, Order.Status.CONFIRMED)

    def test_concurrent_picks_do_not_overdraw_bin(self):
        """
        Test: Two pickers take from a bin that covers only one of them.

        Given: 3 units on the shelf, two orders of 3 units each claimed
               by different pickers
        When: Both pick from the shelf concurrently
        Then: At most one pick succeeds; the shelf never goes negative and
              total = available + reserved still holds
        """
        first = self.place(3)
        second = self.place(3)
        fulfillment.claim_for_picking(first.pk, 'picker-1')
        fulfillment.claim_for_picking(second.pk, 'picker-2')

        results = self.run_together(
            lambda: fulfillment.pick_item(first.pk, 0, 'picker-1', self.shelf.pk),
            lambda: fulfillment.pick_item(second.pk, 0, 'picker-2', self.shelf.pk),
        )

        picked = [r for r in results if isinstance(r, Order)]
        for result in results:
            if not isinstance(result, Order):
                self.assertIsInstance(result, (InsufficientStock, DatabaseError))
        self.assertLessEqual(len(picked), 1)

        self.assertEqual(ledger.product_quantity(self.shelf, self.rice.pk), 3 - 3 * len(picked))
        self.rice.refresh_from_db()
        self.assertEqual(self.rice.total_stock, 6 - 3 * len(picked))
        self.assertEqual(self.rice.reserved_stock, 6 - 3 * len(picked))
        self.assertEqual(self.rice.available_stock, 0)
        self.assertEqual(
            self.rice.total_stock,
            self.rice.available_stock + self.rice.reserved_stock
        )
        self.assertEqual(
            OrderItem.objects.filter(picking_status=OrderItem.PickingStatus.PICKED).count(),
            len(picked)
        )
