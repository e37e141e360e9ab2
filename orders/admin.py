"""
Django Admin configuration for order models.
"""
from django.contrib import admin
from .models import Order, OrderItem, OrderTimelineEntry


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = [
        'line_number', 'product', 'quantity', 'price', 'subtotal',
        'picker_assigned', 'picking_status', 'bin_location', 'picked_at'
    ]
    can_delete = False

    def subtotal(self, obj):
        return f"₹{obj.subtotal}"
    subtotal.short_description = 'Subtotal'


class OrderTimelineInline(admin.TabularInline):
    model = OrderTimelineEntry
    extra = 0
    readonly_fields = ['status', 'notes', 'updated_by', 'timestamp']
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['id', 'order_number', 'customer', 'order_status', 'payment_status', 'total', 'item_count', 'created_at']
    list_filter = ['order_status', 'payment_method', 'payment_status', 'created_at']
    search_fields = ['order_number', 'customer', 'picker', 'rider']
    ordering = ['-created_at']
    readonly_fields = [
        'order_number', 'order_status', 'subtotal', 'tax', 'delivery_fee',
        'discount', 'total', 'picker', 'rider', 'delivery_otp', 'version',
        'created_at', 'updated_at'
    ]
    inlines = [OrderItemInline, OrderTimelineInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'


@admin.register(OrderItem)
class OrderItemAdmin(admin.ModelAdmin):
    list_display = ['id', 'order', 'line_number', 'product', 'quantity', 'price', 'picking_status', 'picker_assigned']
    list_filter = ['picking_status', 'order__order_status']
    search_fields = ['product__sku', 'order__order_number']
    ordering = ['order', 'line_number']
    raw_id_fields = ['order', 'product', 'bin_location']
