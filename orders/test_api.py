"""
Tests for the order HTTP endpoints.
"""
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from rest_framework import status
from rest_framework.test import APITestCase

from inventory import ledger
from inventory.models import Bin, Product
from orders.models import Order

ADDRESS = {'street': '12 MG Road', 'city': 'Bengaluru', 'state': 'KA', 'zipCode': '560001'}


class OrderAPITestCase(APITestCase):
    """Test cases for placement and fulfillment endpoints."""

    def setUp(self):
        User = get_user_model()
        self.customer = User.objects.create_user(username='customer', password='pw')
        self.picker = User.objects.create_user(username='picker', password='pw')
        self.other_picker = User.objects.create_user(username='picker2', password='pw')
        self.rider = User.objects.create_user(username='rider', password='pw')
        self.stranger = User.objects.create_user(username='stranger', password='pw')
        self.admin = User.objects.create_user(username='admin', password='pw', is_staff=True)

        pickers = Group.objects.create(name='pickers')
        riders = Group.objects.create(name='riders')
        self.picker.groups.add(pickers)
        self.other_picker.groups.add(pickers)
        self.rider.groups.add(riders)

        self.bin = Bin.objects.create(bin_code='A-01-S1-1', zone='A', aisle='01', shelf='S1', max_items=200)
        self.product = Product.objects.create(sku='ATTA-5', name='Wheat Flour 5kg', selling_price=Decimal('250.00'))
        ledger.add_stock(self.bin.pk, self.product.pk, 5, 'staff-1')

    def as_user(self, user):
        self.client.force_authenticate(user)

    def place(self, quantity=2, payment_method='upi'):
        self.as_user(self.customer)
        return self.client.post('/api/orders/', {
            'items': [{'product_id': self.product.pk, 'quantity': quantity}],
            'delivery_address': ADDRESS,
            'payment_method': payment_method,
        }, format='json')

    def test_requires_authentication(self):
        response = self.client.get('/api/orders/')
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_place_order(self):
        response = self.place(quantity=2, payment_method='cod')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['order_status'], 'confirmed')
        self.assertEqual(response.data['customer'], str(self.customer.pk))
        self.assertEqual(response.data['pricing']['subtotal'], '500.00')
        self.assertEqual(len(response.data['items']), 1)
        self.assertRegex(response.data['delivery_otp'], r'^\d{6}$')

        self.product.refresh_from_db()
        self.assertEqual(self.product.available_stock, 3)
        self.assertEqual(self.product.reserved_stock, 2)

    def test_place_order_insufficient_stock(self):
        response = self.place(quantity=6)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'InsufficientStock')
        self.assertEqual(response.data['available'], 5)
        self.assertFalse(Order.objects.exists())

    def test_place_order_invalid_payload(self):
        self.as_user(self.customer)
        response = self.client.post('/api/orders/', {
            'items': [{'product_id': self.product.pk, 'quantity': 1}],
            'payment_method': 'upi',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('delivery_address', response.data)

    def test_place_order_unknown_product(self):
        self.as_user(self.customer)
        response = self.client.post('/api/orders/', {
            'items': [{'product_id': 999999, 'quantity': 1}],
            'delivery_address': ADDRESS,
            'payment_method': 'upi',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_claim_for_picking(self):
        order_id = self.place().data['id']

        self.as_user(self.picker)
        first = self.client.post(f'/api/orders/{order_id}/accept-picking/')
        self.as_user(self.other_picker)
        second = self.client.post(f'/api/orders/{order_id}/accept-picking/')

        self.assertEqual(first.status_code, status.HTTP_200_OK)
        self.assertEqual(first.data['order_status'], 'picking')
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(second.data['error'], 'AlreadyClaimed')
        self.assertEqual(second.data['picker'], str(self.picker.pk))

    def test_pick_item(self):
        order_id = self.place().data['id']
        self.as_user(self.picker)
        self.client.post(f'/api/orders/{order_id}/accept-picking/')

        response = self.client.post(
            f'/api/orders/{order_id}/items/0/picked/',
            {'bin_id': self.bin.pk},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_status'], 'picked')
        self.assertEqual(response.data['items'][0]['bin_code'], 'A-01-S1-1')
        self.assertIsNone(response.data['delivery_otp'])

    def test_pick_item_by_other_picker_forbidden(self):
        order_id = self.place().data['id']
        self.as_user(self.picker)
        self.client.post(f'/api/orders/{order_id}/accept-picking/')

        self.as_user(self.other_picker)
        response = self.client.post(
            f'/api/orders/{order_id}/items/0/picked/',
            {'bin_id': self.bin.pk},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_deliver_with_wrong_otp(self):
        placed = self.place(payment_method='cod').data
        order_id = placed['id']
        wrong = '000000' if placed['delivery_otp'] != '000000' else '111111'

        self.as_user(self.picker)
        self.client.post(f'/api/orders/{order_id}/accept-picking/')
        self.client.post(f'/api/orders/{order_id}/items/0/picked/', {'bin_id': self.bin.pk}, format='json')
        self.as_user(self.rider)
        self.assertEqual(
            self.client.post(f'/api/orders/{order_id}/accept-delivery/').status_code,
            status.HTTP_200_OK
        )
        self.assertEqual(
            self.client.post(f'/api/orders/{order_id}/pickup/').status_code,
            status.HTTP_200_OK
        )

        response = self.client.post(
            f'/api/orders/{order_id}/deliver/',
            {'delivery_otp': wrong},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error'], 'AuthorizationMismatch')
        self.assertNotIn(placed['delivery_otp'], str(response.data))

        response = self.client.post(
            f'/api/orders/{order_id}/deliver/',
            {'delivery_otp': '١٢٣٤٥٦'},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['error'], 'AuthorizationMismatch')

        response = self.client.post(
            f'/api/orders/{order_id}/deliver/',
            {'delivery_otp': placed['delivery_otp']},
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_status'], 'delivered')

    def test_cancel_and_refund(self):
        order_id = self.place().data['id']

        response = self.client.post(f'/api/orders/{order_id}/cancel/', {'reason': 'Ordered twice'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_status'], 'cancelled')

        response = self.client.post(f'/api/orders/{order_id}/cancel/', {'reason': 'Again'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'IllegalTransition')

        self.as_user(self.admin)
        response = self.client.post(f'/api/orders/{order_id}/refund/', {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_status'], 'refunded')

    def test_available_lists(self):
        order_id = self.place().data['id']

        self.as_user(self.picker)
        response = self.client.get('/api/orders/picking/available/')
        self.assertEqual([o['id'] for o in response.data['results']], [order_id])

        self.as_user(self.rider)
        response = self.client.get('/api/orders/delivery/available/')
        self.assertEqual(response.data['count'], 0)

    def test_order_stats(self):
        self.place()

        self.as_user(self.admin)
        response = self.client.get('/api/orders/stats/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_orders'], 1)
        self.assertEqual(response.data['open_orders'], 1)
        self.assertEqual(response.data['total_revenue'], '0.00')

    def test_customer_cannot_cancel_another_customers_order(self):
        """
        Test: Cancellation is limited to the order's own customer and staff roles.

        Given: An order placed by one customer
        When: An unrelated user tries to cancel it
        Then: 403 and the order stays confirmed; a picker may still cancel it
        """
        order_id = self.place().data['id']

        self.as_user(self.stranger)
        response = self.client.post(f'/api/orders/{order_id}/cancel/', {'reason': 'Not mine'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(Order.objects.get(pk=order_id).order_status, Order.Status.CONFIRMED)

        self.as_user(self.picker)
        response = self.client.post(f'/api/orders/{order_id}/cancel/', {'reason': 'Damaged stock'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_status'], 'cancelled')

    def test_cancel_unknown_order(self):
        self.as_user(self.stranger)
        response = self.client.post('/api/orders/999999/cancel/', {'reason': 'Typo'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error'], 'NotFound')

    def test_refund_requires_admin(self):
        order_id = self.place().data['id']
        self.client.post(f'/api/orders/{order_id}/cancel/', {'reason': 'Ordered twice'}, format='json')

        response = self.client.post(f'/api/orders/{order_id}/refund/', {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(Order.objects.get(pk=order_id).order_status, Order.Status.CANCELLED)

    def test_picking_endpoints_require_picker_role(self):
        order_id = self.place().data['id']

        for user in (self.customer, self.rider):
            self.as_user(user)
            self.assertEqual(
                self.client.get('/api/orders/picking/available/').status_code,
                status.HTTP_403_FORBIDDEN
            )
            self.assertEqual(
                self.client.post(f'/api/orders/{order_id}/accept-picking/').status_code,
                status.HTTP_403_FORBIDDEN
            )
        self.assertIsNone(Order.objects.get(pk=order_id).picker)

    def test_delivery_endpoints_require_rider_role(self):
        order_id = self.place().data['id']
        self.as_user(self.picker)
        self.client.post(f'/api/orders/{order_id}/accept-picking/')
        self.client.post(f'/api/orders/{order_id}/items/0/picked/', {'bin_id': self.bin.pk}, format='json')

        response = self.client.post(f'/api/orders/{order_id}/accept-delivery/')

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertIsNone(Order.objects.get(pk=order_id).rider)

    def test_admin_passes_role_checks(self):
        order_id = self.place().data['id']

        self.as_user(self.admin)
        response = self.client.post(f'/api/orders/{order_id}/accept-picking/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['picker'], str(self.admin.pk))

    def test_orders_visible_to_their_customer(self):
        order_id = self.place().data['id']

        self.assertEqual(self.client.get('/api/orders/').data['count'], 1)
        self.assertEqual(self.client.get(f'/api/orders/{order_id}/').status_code, status.HTTP_200_OK)

        self.as_user(self.stranger)
        self.assertEqual(self.client.get('/api/orders/').data['count'], 0)
        self.assertEqual(self.client.get(f'/api/orders/{order_id}/').status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.client.get('/api/orders/stats/').status_code, status.HTTP_403_FORBIDDEN)

        self.as_user(self.admin)
        self.assertEqual(self.client.get('/api/orders/').data['count'], 1)

    def test_health_check(self):
        response = self.client.get('/health/')
        self.assertEqual(response.json()['status'], 'healthy')
