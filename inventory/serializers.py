"""
Serializers for inventory models.
Provides data validation and JSON conversion for API endpoints.
"""
from rest_framework import serializers

from .models import Bin, BinMovement, BinStock, Product


class ProductSerializer(serializers.ModelSerializer):
    """Product with its stock counters (read-only, owned by the services)."""
    is_low_stock = serializers.BooleanField(read_only=True)

    class Meta:
        model = Product
        fields = [
            'id', 'sku', 'name', 'selling_price',
            'total_stock', 'available_stock', 'reserved_stock',
            'min_stock_level', 'is_low_stock', 'is_active',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields


class ProductMinimalSerializer(serializers.ModelSerializer):
    """Minimal serializer for nested representations."""
    class Meta:
        model = Product
        fields = ['id', 'sku', 'name', 'selling_price']


class BinStockSerializer(serializers.ModelSerializer):
    product = ProductMinimalSerializer(read_only=True)

    class Meta:
        model = BinStock
        fields = ['product', 'quantity', 'batch_number', 'expiry_date', 'added_by', 'added_at']


class BinSerializer(serializers.ModelSerializer):
    """Serializer for provisioning and listing bins."""
    current_quantity = serializers.IntegerField(read_only=True)
    available_capacity = serializers.IntegerField(read_only=True)
    utilization = serializers.FloatField(read_only=True)

    class Meta:
        model = Bin
        fields = [
            'id', 'bin_code', 'bin_type', 'zone', 'aisle', 'section', 'shelf', 'level',
            'max_items', 'is_active', 'is_accessible',
            'current_quantity', 'available_capacity', 'utilization',
            'picking_frequency', 'last_picked_at', 'version',
            'created_at', 'updated_at'
        ]
        read_only_fields = [
            'id', 'picking_frequency', 'last_picked_at', 'version',
            'created_at', 'updated_at'
        ]


class BinDetailSerializer(BinSerializer):
    """Bin with its current stock entries."""
    stock = BinStockSerializer(many=True, read_only=True)
    location = serializers.DictField(read_only=True)

    class Meta(BinSerializer.Meta):
        fields = BinSerializer.Meta.fields + ['location', 'stock']


class BinMovementSerializer(serializers.ModelSerializer):
    product_sku = serializers.CharField(source='product.sku', read_only=True)
    order_number = serializers.CharField(source='order.order_number', read_only=True, default=None)

    class Meta:
        model = BinMovement
        fields = [
            'id', 'action', 'product', 'product_sku', 'quantity',
            'previous_quantity', 'new_quantity', 'performed_by',
            'reason', 'order', 'order_number', 'timestamp'
        ]


class AddStockSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)
    batch_number = serializers.CharField(max_length=64, required=False, allow_blank=True, default='')
    expiry_date = serializers.DateField(required=False, allow_null=True, default=None)


class RemoveStockSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)
    reason = serializers.CharField(max_length=255, trim_whitespace=True)


class TransferSerializer(RemoveStockSerializer):
    """Same payload as a removal; the bins come from the URL."""
