"""
Inventory Models - Product counters and the bin-level stock ledger.

Models:
    - Product: Sellable item with total/available/reserved stock counters
    - Bin: Physical storage location with an item capacity
    - BinStock: Quantity of one product batch held in a bin (currentStock)
    - BinMovement: Append-only movement history of a bin (movementHistory)

The Product counters are a cache of the ledger: ``total_stock`` always equals
the sum of BinStock quantities for the product, and
``total_stock == available_stock + reserved_stock``.
"""
from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q, Sum


class Product(models.Model):
    """
    Product referenced by orders and bins.

    Counters are mutated only through inventory.services.
    """
    sku = models.CharField(
        max_length=64,
        unique=True,
        help_text="Stock keeping unit"
    )
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display"
    )
    selling_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Current selling price (must be positive)"
    )
    total_stock = models.PositiveIntegerField(
        default=0,
        help_text="Units physically held across all bins"
    )
    available_stock = models.PositiveIntegerField(
        default=0,
        help_text="Units that can still be ordered"
    )
    reserved_stock = models.PositiveIntegerField(
        default=0,
        help_text="Units held for placed orders, not yet picked"
    )
    min_stock_level = models.PositiveIntegerField(
        default=10,
        help_text="Threshold for low stock alerts"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        constraints = [
            models.CheckConstraint(
                condition=Q(total_stock=F('available_stock') + F('reserved_stock')),
                name='product_stock_counters_balanced'
            ),
        ]
        indexes = [
            models.Index(fields=['is_active', 'available_stock']),
        ]

    def __str__(self):
        return f"{self.name} ({self.sku})"

    @property
    def in_stock(self) -> bool:
        return self.available_stock > 0

    @property
    def is_low_stock(self) -> bool:
        """Check if available stock is at or below the minimum level."""
        return self.available_stock <= self.min_stock_level


class Bin(models.Model):
    """
    Physical storage location holding finite quantities of product batches.

    Mutated only through inventory.ledger, which locks the row and bumps
    ``version`` on every change.
    """

    class BinType(models.TextChoices):
        STORAGE = 'storage', 'Storage'
        PICKING = 'picking', 'Picking'
        PACKING = 'packing', 'Packing'
        SHIPPING = 'shipping', 'Shipping'
        RETURNS = 'returns', 'Returns'

    bin_code = models.CharField(
        max_length=50,
        unique=True,
        help_text="Unique, human-readable bin code"
    )
    bin_type = models.CharField(
        max_length=20,
        choices=BinType.choices,
        default=BinType.STORAGE
    )
    zone = models.CharField(max_length=20)
    aisle = models.CharField(max_length=20)
    section = models.CharField(max_length=20, blank=True, default='')
    shelf = models.CharField(max_length=20)
    level = models.PositiveIntegerField(default=1)
    max_items = models.PositiveIntegerField(
        default=100,
        validators=[MinValueValidator(1)],
        help_text="Maximum number of units the bin can hold"
    )
    is_active = models.BooleanField(default=True, db_index=True)
    is_accessible = models.BooleanField(default=True)
    picking_frequency = models.PositiveIntegerField(default=0)
    last_picked_at = models.DateTimeField(null=True, blank=True)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Bin'
        verbose_name_plural = 'Bins'
        ordering = ['zone', 'aisle', 'shelf', 'level']
        indexes = [
            models.Index(fields=['zone', 'aisle']),
            models.Index(fields=['bin_type']),
        ]

    def __str__(self):
        return f"{self.bin_code} ({self.zone}-{self.aisle}-{self.shelf}-{self.level})"

    @property
    def location(self) -> dict:
        return {
            'zone': self.zone,
            'aisle': self.aisle,
            'section': self.section,
            'shelf': self.shelf,
            'level': self.level,
        }

    @property
    def current_quantity(self) -> int:
        return self.stock.aggregate(total=Sum('quantity'))['total'] or 0

    @property
    def available_capacity(self) -> int:
        return max(0, self.max_items - self.current_quantity)

    @property
    def is_full(self) -> bool:
        return self.current_quantity >= self.max_items

    @property
    def utilization(self) -> float:
        """Percentage of item capacity in use."""
        return round(self.current_quantity * 100 / self.max_items, 2)


class BinStock(models.Model):
    """
    One (product, batch) entry of a bin's current stock.

    Rows are deleted when their quantity reaches zero.
    """
    bin = models.ForeignKey(
        Bin,
        on_delete=models.CASCADE,
        related_name='stock'
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='bin_stock'
    )
    batch_number = models.CharField(max_length=64, blank=True, default='')
    expiry_date = models.DateField(null=True, blank=True)
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    added_by = models.CharField(max_length=64, blank=True, default='')
    added_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Bin Stock'
        verbose_name_plural = 'Bin Stock'
        ordering = ['bin', 'product', 'expiry_date']
        constraints = [
            models.UniqueConstraint(
                fields=['bin', 'product', 'batch_number'],
                name='unique_bin_product_batch'
            ),
            models.CheckConstraint(
                condition=Q(quantity__gt=0),
                name='bin_stock_quantity_positive'
            ),
        ]

    def __str__(self):
        batch = f" [{self.batch_number}]" if self.batch_number else ""
        return f"{self.quantity}x {self.product.sku}{batch} @ {self.bin.bin_code}"


class AppendOnlyModel(models.Model):
    """Rows can be inserted but never edited or deleted individually."""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise TypeError(f"{type(self).__name__} entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise TypeError(f"{type(self).__name__} entries are append-only")


class BinMovement(AppendOnlyModel):
    """
    Movement history entry. Exactly one is appended per ledger operation.

    ``previous_quantity``/``new_quantity`` are the product's totals within
    the bin before and after the operation.
    """

    class Action(models.TextChoices):
        STOCK_IN = 'stock_in', 'Stock In'
        STOCK_OUT = 'stock_out', 'Stock Out'
        TRANSFER = 'transfer', 'Transfer'
        PICK = 'pick', 'Pick'

    bin = models.ForeignKey(
        Bin,
        on_delete=models.CASCADE,
        related_name='movements'
    )
    action = models.CharField(max_length=20, choices=Action.choices, db_index=True)
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='bin_movements'
    )
    quantity = models.PositiveIntegerField()
    previous_quantity = models.PositiveIntegerField()
    new_quantity = models.PositiveIntegerField()
    performed_by = models.CharField(max_length=64)
    reason = models.CharField(max_length=255, blank=True, default='')
    order = models.ForeignKey(
        'orders.Order',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='bin_movements'
    )
    timestamp = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        verbose_name = 'Bin Movement'
        verbose_name_plural = 'Bin Movements'
        ordering = ['timestamp', 'id']
        indexes = [
            models.Index(fields=['bin', 'timestamp']),
            models.Index(fields=['product', 'action']),
        ]

    def __str__(self):
        return (
            f"{self.action} {self.quantity}x {self.product_id} @ {self.bin_id} "
            f"({self.previous_quantity} -> {self.new_quantity})"
        )
