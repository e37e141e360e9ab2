"""
Django Admin configuration for inventory models.

Stock counters and bin contents are read-only here: they only change
through the inventory services and the bin ledger.
"""
from django.contrib import admin
from .models import Bin, BinMovement, BinStock, Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'sku', 'name', 'selling_price', 'total_stock',
        'available_stock', 'reserved_stock', 'is_low_stock', 'is_active'
    ]
    list_filter = ['is_active', 'created_at']
    search_fields = ['sku', 'name']
    ordering = ['name']
    readonly_fields = ['total_stock', 'available_stock', 'reserved_stock', 'created_at', 'updated_at']

    def is_low_stock(self, obj):
        return obj.is_low_stock
    is_low_stock.boolean = True
    is_low_stock.short_description = 'Low Stock'


class BinStockInline(admin.TabularInline):
    model = BinStock
    extra = 0
    readonly_fields = ['product', 'batch_number', 'expiry_date', 'quantity', 'added_by', 'added_at']
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Bin)
class BinAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'bin_code', 'bin_type', 'zone', 'aisle', 'shelf', 'level',
        'current_quantity', 'max_items', 'is_active', 'picking_frequency'
    ]
    list_filter = ['bin_type', 'zone', 'is_active', 'is_accessible']
    search_fields = ['bin_code']
    ordering = ['zone', 'aisle', 'shelf', 'level']
    readonly_fields = ['picking_frequency', 'last_picked_at', 'version', 'created_at', 'updated_at']
    inlines = [BinStockInline]

    def current_quantity(self, obj):
        return obj.current_quantity
    current_quantity.short_description = 'Items'


@admin.register(BinMovement)
class BinMovementAdmin(admin.ModelAdmin):
    list_display = ['id', 'bin', 'action', 'product', 'quantity', 'previous_quantity', 'new_quantity', 'performed_by', 'timestamp']
    list_filter = ['action', 'timestamp']
    search_fields = ['bin__bin_code', 'product__sku', 'reason']
    ordering = ['-timestamp']
    raw_id_fields = ['bin', 'product', 'order']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
