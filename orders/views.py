"""
Order API Views.

Implements:
- GET /orders/ - List orders with optimized queries
- POST /orders/ - Place order with atomic stock reservation
- GET /orders/{id}/ - Order detail with items and timeline
- GET /orders/stats/ - Order statistics
- Picker endpoints: available orders, claim, start and confirm item picks
- Rider endpoints: available orders, claim, pickup and delivery
- Cancellation and refunds
"""
import logging
from django.db import models
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import FulfillmentError, NotFound, actor_id, error_response, server_error_response
from core.permissions import IsAdmin, IsOrderCustomerOrStaff, IsPicker, IsRider, is_admin
from core.rate_limiting import rate_limit
from . import fulfillment
from .models import Order
from .serializers import (
    CancelSerializer,
    DeliverySerializer,
    OrderCreateSerializer,
    OrderItemSerializer,
    OrderListSerializer,
    OrderSerializer,
    PickItemSerializer,
    RefundSerializer,
)
from .services import place_order

logger = logging.getLogger(__name__)


def _detail(order, request, status_code=status.HTTP_200_OK):
    order = Order.objects.prefetch_related(
        'items__product', 'items__bin_location', 'timeline'
    ).get(pk=order.pk)
    return Response(OrderSerializer(order, context={'request': request}).data, status=status_code)


# =============================================================================
# Orders
# =============================================================================

class OrderListCreateView(generics.ListCreateAPIView):
    """
    GET: List orders with optimized queries
    POST: Place a new order with atomic stock reservation

    Customers only see their own orders; admins see all of them.

    Query Parameters (GET):
        - status: Filter by order status
        - customer: Filter by customer id
        - mine: Only orders placed by the requesting user (true/false)

    Request Body (POST):
    {
        "items": [
            {"product_id": 1, "quantity": 2},
            {"product_id": 3, "quantity": 1}
        ],
        "delivery_address": {"street": "...", "city": "...", "state": "...", "zipCode": "..."},
        "payment_method": "cod"
    }
    """

    def get_serializer_class(self):
        if self.request.method == 'POST':
            return OrderCreateSerializer
        return OrderListSerializer

    def get_queryset(self):
        queryset = Order.objects.prefetch_related('items')

        status_filter = self.request.query_params.get('status', '').lower()
        if status_filter in Order.Status.values:
            queryset = queryset.filter(order_status=status_filter)

        if not is_admin(self.request.user):
            queryset = queryset.filter(customer=actor_id(self.request))

        customer = self.request.query_params.get('customer')
        if customer:
            queryset = queryset.filter(customer=customer)

        if self.request.query_params.get('mine', '').lower() == 'true':
            queryset = queryset.filter(customer=actor_id(self.request))

        return queryset.order_by('-created_at')

    @rate_limit('place_order', max_requests=20, window_seconds=60)
    def create(self, request, *args, **kwargs):
        """
        Place order with atomic transaction handling.

        Returns:
            - 201: Order confirmed
            - 400: Validation error
            - 404: Product not found
            - 409: Insufficient stock (nothing reserved)
        """
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            order = place_order(
                actor_id(request),
                [dict(item) for item in data['items']],
                dict(data['delivery_address']),
                data['payment_method'],
                customer_notes=data['customer_notes'],
                special_instructions=data['special_instructions']
            )
        except FulfillmentError as e:
            logger.warning(f"Order placement failed: {e}")
            return error_response(e)
        except Exception as e:
            return server_error_response(e)

        return _detail(order, request, status.HTTP_201_CREATED)


class OrderDetailView(generics.RetrieveAPIView):
    """
    GET: Retrieve order details with items and timeline.

    Uses prefetch_related for optimized item loading.
    """
    serializer_class = OrderSerializer
    permission_classes = [permissions.IsAuthenticated, IsOrderCustomerOrStaff]

    def get_queryset(self):
        return Order.objects.prefetch_related(
            'items__product', 'items__bin_location', 'timeline'
        )


class OrderStatsView(APIView):
    """
    GET: Order statistics, overall or for one customer.

    Query Parameters:
        - customer: Filter stats by customer (optional)
    """
    permission_classes = [IsAdmin]

    def get(self, request):
        from django.db.models import Sum, Count, Avg

        queryset = Order.objects.all()

        customer = request.query_params.get('customer')
        if customer:
            queryset = queryset.filter(customer=customer)

        delivered = models.Q(order_status=Order.Status.DELIVERED)
        open_statuses = [
            s for s in Order.CANCELLABLE_STATUSES if s != Order.Status.PENDING
        ]
        stats = queryset.aggregate(
            total_orders=Count('id'),
            open_orders=Count('id', filter=models.Q(order_status__in=open_statuses)),
            delivered_orders=Count('id', filter=delivered),
            cancelled_orders=Count('id', filter=models.Q(order_status=Order.Status.CANCELLED)),
            refunded_orders=Count('id', filter=models.Q(order_status=Order.Status.REFUNDED)),
            total_revenue=Sum('total', filter=delivered),
            avg_order_value=Avg('total', filter=delivered)
        )

        # Handle None values
        stats['total_revenue'] = str(stats['total_revenue'] or '0.00')
        stats['avg_order_value'] = str(round(stats['avg_order_value'] or 0, 2))

        return Response(stats)


class OrderActionView(APIView):
    """
    Base for POST endpoints running one fulfillment step on an order.

    Subclasses may set ``input_serializer_class`` and implement ``perform``,
    which returns the Response to send. With ``check_order_access`` the
    order's object permissions are checked before ``perform`` runs.
    """
    input_serializer_class = None
    check_order_access = False

    @rate_limit('order_action')
    def post(self, request, pk, **kwargs):
        data = {}
        if self.input_serializer_class is not None:
            serializer = self.input_serializer_class(data=request.data)
            serializer.is_valid(raise_exception=True)
            data = serializer.validated_data

        if self.check_order_access:
            order = Order.objects.filter(pk=pk).first()
            if order is None:
                return error_response(NotFound('Order', pk))
            self.check_object_permissions(request, order)

        try:
            return self.perform(request, pk, actor_id(request), data, **kwargs)
        except FulfillmentError as e:
            logger.warning(f"{type(self).__name__} on order {pk} rejected: {e}")
            return error_response(e)
        except Exception as e:
            return server_error_response(e)


def _claim_response(order, error, request, role):
    if error is not None:
        body = error.to_dict()
        body[role] = getattr(order, role)
        return Response(body, status=error.status_code)
    return _detail(order, request)


# =============================================================================
# Picking
# =============================================================================

class PickingAvailableView(generics.ListAPIView):
    """
    GET: Orders the requesting picker can work on.
    """
    permission_classes = [IsPicker]
    serializer_class = OrderListSerializer

    def get_queryset(self):
        return fulfillment.available_for_picking(actor_id(self.request))


class AcceptPickingView(OrderActionView):
    """
    POST: Claim an order for picking.

    Returns 200 with the order, or 409 with the current picker when
    another picker got there first.
    """
    permission_classes = [IsPicker]

    def perform(self, request, pk, actor, data):
        order, error = fulfillment.claim_for_picking(pk, actor)
        return _claim_response(order, error, request, 'picker')


class StartItemPickingView(OrderActionView):
    permission_classes = [IsPicker]

    def perform(self, request, pk, actor, data, index):
        item = fulfillment.start_item_picking(pk, index, actor)
        return Response(OrderItemSerializer(item).data)


class ItemPickedView(OrderActionView):
    """
    POST: Confirm an item was picked from a bin.

    Request Body:
    {
        "bin_id": 4,
        "notes": "optional"
    }
    """
    permission_classes = [IsPicker]
    input_serializer_class = PickItemSerializer

    def perform(self, request, pk, actor, data, index):
        order = fulfillment.pick_item(pk, index, actor, data['bin_id'], notes=data['notes'])
        return _detail(order, request)


# =============================================================================
# Delivery
# =============================================================================

class DeliveryAvailableView(generics.ListAPIView):
    """
    GET: Picked orders no rider has claimed.
    """
    permission_classes = [IsRider]
    serializer_class = OrderListSerializer

    def get_queryset(self):
        return fulfillment.available_for_delivery()


class AcceptDeliveryView(OrderActionView):
    permission_classes = [IsRider]

    def perform(self, request, pk, actor, data):
        order, error = fulfillment.claim_for_delivery(pk, actor)
        return _claim_response(order, error, request, 'rider')


class PickupView(OrderActionView):
    permission_classes = [IsRider]

    def perform(self, request, pk, actor, data):
        return _detail(fulfillment.confirm_pickup(pk, actor), request)


class DeliverView(OrderActionView):
    """
    POST: Confirm delivery. Cash on delivery orders need the customer's OTP.

    Request Body:
    {
        "delivery_otp": "123456",
        "delivery_notes": "Left with security"
    }
    """
    permission_classes = [IsRider]
    input_serializer_class = DeliverySerializer

    def perform(self, request, pk, actor, data):
        order = fulfillment.confirm_delivery(
            pk, actor,
            otp=data['delivery_otp'],
            notes=data['delivery_notes']
        )
        return _detail(order, request)


# =============================================================================
# Cancellation and refunds
# =============================================================================

class CancelOrderView(OrderActionView):
    """
    POST: Cancel an order. Customers may only cancel their own orders.
    """
    permission_classes = [permissions.IsAuthenticated, IsOrderCustomerOrStaff]
    check_order_access = True
    input_serializer_class = CancelSerializer

    def perform(self, request, pk, actor, data):
        return _detail(fulfillment.cancel_order(pk, actor, data['reason']), request)


class RefundOrderView(OrderActionView):
    permission_classes = [IsAdmin]
    input_serializer_class = RefundSerializer

    def perform(self, request, pk, actor, data):
        return _detail(fulfillment.refund_order(pk, actor, notes=data['notes']), request)
