"""
Serializers for order models.
"""
from rest_framework import serializers

from inventory.serializers import ProductMinimalSerializer
from .models import Order, OrderItem, OrderTimelineEntry


class OrderItemSerializer(serializers.ModelSerializer):
    """Serializer for OrderItem with product details."""
    index = serializers.IntegerField(source='line_number', read_only=True)
    product = ProductMinimalSerializer(read_only=True)
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        read_only=True
    )
    bin_code = serializers.CharField(source='bin_location.bin_code', read_only=True, default=None)

    class Meta:
        model = OrderItem
        fields = [
            'index', 'product', 'quantity', 'price', 'subtotal',
            'picker_assigned', 'picking_status', 'bin_location', 'bin_code',
            'picked_at', 'notes'
        ]


class TimelineEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderTimelineEntry
        fields = ['status', 'notes', 'updated_by', 'timestamp']


class OrderSerializer(serializers.ModelSerializer):
    """
    Serializer for Order model with nested items and timeline.

    The delivery OTP is only shown to the customer who placed the order.
    """
    items = OrderItemSerializer(many=True, read_only=True)
    timeline = TimelineEntrySerializer(many=True, read_only=True)
    pricing = serializers.SerializerMethodField()
    total_items = serializers.IntegerField(read_only=True)
    picked_items = serializers.IntegerField(read_only=True)
    delivery_otp = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer', 'order_status',
            'payment_method', 'payment_status', 'paid_at',
            'delivery_address', 'pricing', 'items', 'total_items', 'picked_items',
            'picker', 'picking_started_at', 'picking_completed_at',
            'rider', 'assigned_for_delivery_at', 'picked_up_at', 'delivered_at',
            'delivery_notes', 'delivery_otp',
            'customer_notes', 'special_instructions',
            'cancellation_reason', 'cancelled_by', 'cancelled_at',
            'timeline', 'version', 'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_pricing(self, obj):
        return {key: str(value) for key, value in obj.pricing.items()}

    def get_delivery_otp(self, obj):
        request = self.context.get('request')
        if request is None or not obj.delivery_otp:
            return None
        if str(request.user.pk) != obj.customer:
            return None
        return obj.delivery_otp


class OrderListSerializer(serializers.ModelSerializer):
    """
    Optimized serializer for listing orders.
    """
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'order_number', 'customer', 'order_status', 'payment_method',
            'payment_status', 'total', 'item_count', 'picker', 'rider', 'created_at'
        ]

    def get_item_count(self, obj):
        # Use prefetched items count if available
        if hasattr(obj, '_prefetched_objects_cache') and 'items' in obj._prefetched_objects_cache:
            return len(obj.items.all())
        return obj.items.count()


class OrderItemCreateSerializer(serializers.Serializer):
    """Serializer for creating order items in order creation request."""
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class DeliveryAddressSerializer(serializers.Serializer):
    street = serializers.CharField(max_length=255)
    city = serializers.CharField(max_length=100)
    state = serializers.CharField(max_length=100)
    zipCode = serializers.CharField(max_length=20)
    country = serializers.CharField(max_length=100, required=False, default='India')
    landmark = serializers.CharField(max_length=255, required=False, allow_blank=True)
    coordinates = serializers.DictField(child=serializers.FloatField(), required=False)


class OrderCreateSerializer(serializers.Serializer):
    """
    Serializer for creating orders via POST /orders/

    Request format:
    {
        "items": [
            {"product_id": 1, "quantity": 2},
            {"product_id": 3, "quantity": 1}
        ],
        "delivery_address": {"street": "...", "city": "...", "state": "...", "zipCode": "..."},
        "payment_method": "upi"
    }
    """
    items = OrderItemCreateSerializer(many=True)
    delivery_address = DeliveryAddressSerializer()
    payment_method = serializers.ChoiceField(choices=Order.PaymentMethod.choices)
    customer_notes = serializers.CharField(required=False, allow_blank=True, default='')
    special_instructions = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")

        # Check for duplicate products
        product_ids = [item['product_id'] for item in value]
        if len(product_ids) != len(set(product_ids)):
            raise serializers.ValidationError("Duplicate products in order items")

        return value


class PickItemSerializer(serializers.Serializer):
    bin_id = serializers.IntegerField(min_value=1)
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class DeliverySerializer(serializers.Serializer):
    delivery_otp = serializers.CharField(required=False, allow_blank=True, default='')
    delivery_notes = serializers.CharField(required=False, allow_blank=True, default='')


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500)


class RefundSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default='')
