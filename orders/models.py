"""
Order Models - Order, OrderItem and the order timeline.

Order Status Flow:
    (placement)        -> CONFIRMED
    CONFIRMED|PICKING  -> PICKING             (picker claims the order)
    PICKING            -> PICKED              (automatic, last item picked)
    PICKED             -> READY_FOR_DELIVERY  (rider claims the order)
    READY_FOR_DELIVERY -> OUT_FOR_DELIVERY    (rider confirms pickup)
    OUT_FOR_DELIVERY   -> DELIVERED           (rider confirms delivery)
    any non-terminal   -> CANCELLED
    CANCELLED|DELIVERED -> REFUNDED

Items, prices and pricing are frozen at placement; only status, assignment
and item picking fields change afterwards.
"""
import secrets
import time
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models

from inventory.models import AppendOnlyModel, Bin, Product


class Order(models.Model):
    """
    Order placed by a customer and fulfilled by a picker and a rider.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        CONFIRMED = 'confirmed', 'Confirmed'
        PICKING = 'picking', 'Picking'
        PICKED = 'picked', 'Picked'
        READY_FOR_DELIVERY = 'ready_for_delivery', 'Ready for delivery'
        OUT_FOR_DELIVERY = 'out_for_delivery', 'Out for delivery'
        DELIVERED = 'delivered', 'Delivered'
        CANCELLED = 'cancelled', 'Cancelled'
        REFUNDED = 'refunded', 'Refunded'

    class PaymentMethod(models.TextChoices):
        CARD = 'card', 'Card'
        UPI = 'upi', 'UPI'
        WALLET = 'wallet', 'Wallet'
        COD = 'cod', 'Cash on delivery'

    class PaymentStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PAID = 'paid', 'Paid'
        FAILED = 'failed', 'Failed'
        REFUNDED = 'refunded', 'Refunded'

    TERMINAL_STATUSES = (Status.DELIVERED, Status.CANCELLED, Status.REFUNDED)
    CANCELLABLE_STATUSES = (
        Status.PENDING,
        Status.CONFIRMED,
        Status.PICKING,
        Status.PICKED,
        Status.READY_FOR_DELIVERY,
        Status.OUT_FOR_DELIVERY,
    )

    order_number = models.CharField(
        max_length=32,
        unique=True,
        help_text="Human-readable unique order code"
    )
    customer = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Customer identity issued by the auth service"
    )
    order_status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True
    )
    payment_method = models.CharField(max_length=10, choices=PaymentMethod.choices)
    payment_status = models.CharField(
        max_length=10,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING
    )
    delivery_address = models.JSONField(help_text="Address snapshot taken at placement")

    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    delivery_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    total = models.DecimalField(max_digits=12, decimal_places=2)

    picker = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    picking_started_at = models.DateTimeField(null=True, blank=True)
    picking_completed_at = models.DateTimeField(null=True, blank=True)

    rider = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    assigned_for_delivery_at = models.DateTimeField(null=True, blank=True)
    picked_up_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    delivery_notes = models.TextField(blank=True, default='')
    delivery_otp = models.CharField(max_length=10, blank=True, default='')
    paid_at = models.DateTimeField(null=True, blank=True)

    customer_notes = models.TextField(blank=True, default='')
    special_instructions = models.TextField(blank=True, default='')

    cancellation_reason = models.TextField(blank=True, default='')
    cancelled_by = models.CharField(max_length=64, blank=True, default='')
    cancelled_at = models.DateTimeField(null=True, blank=True)

    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['customer', 'created_at']),
            models.Index(fields=['order_status', 'created_at']),
        ]

    def __str__(self):
        return f"Order {self.order_number} ({self.order_status})"

    @property
    def pricing(self) -> dict:
        return {
            'subtotal': self.subtotal,
            'tax': self.tax,
            'delivery_fee': self.delivery_fee,
            'discount': self.discount,
            'total': self.total,
        }

    @property
    def is_cash_on_delivery(self) -> bool:
        return self.payment_method == self.PaymentMethod.COD

    @property
    def is_terminal(self) -> bool:
        return self.order_status in self.TERMINAL_STATUSES

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items.all())

    @property
    def picked_items(self) -> int:
        return sum(1 for item in self.items.all() if item.picking_status == OrderItem.PickingStatus.PICKED)

    @property
    def pending_items(self) -> int:
        open_states = (OrderItem.PickingStatus.PENDING, OrderItem.PickingStatus.ASSIGNED)
        return sum(1 for item in self.items.all() if item.picking_status in open_states)


class OrderItem(models.Model):
    """
    Line item of an order with its own picking sub-state.

    ``price`` is the product's selling price at placement time.
    """

    class PickingStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        ASSIGNED = 'assigned', 'Assigned'
        PICKING = 'picking', 'Picking'
        PICKED = 'picked', 'Picked'
        UNAVAILABLE = 'unavailable', 'Unavailable'

    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items'
    )
    line_number = models.PositiveIntegerField(help_text="Zero-based item index within the order")
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,  # Prevent deletion of products with orders
        related_name='order_items'
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        help_text="Price per unit at time of order"
    )
    picker_assigned = models.CharField(max_length=64, null=True, blank=True)
    picking_status = models.CharField(
        max_length=20,
        choices=PickingStatus.choices,
        default=PickingStatus.PENDING
    )
    bin_location = models.ForeignKey(
        Bin,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='picked_items'
    )
    picked_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default='')

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['order', 'line_number']
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'line_number'],
                name='unique_order_line_number'
            ),
        ]

    def __str__(self):
        return f"{self.quantity}x {self.product.sku} @ {self.price} ({self.picking_status})"

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.price


class OrderTimelineEntry(AppendOnlyModel):
    """Audit trail entry; one per order status transition."""
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='timeline'
    )
    status = models.CharField(max_length=20, choices=Order.Status.choices)
    notes = models.TextField(blank=True, default='')
    updated_by = models.CharField(max_length=64, blank=True, default='')
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Timeline Entry'
        verbose_name_plural = 'Timeline Entries'
        ordering = ['timestamp', 'id']

    def __str__(self):
        return f"{self.order_id}: {self.status} at {self.timestamp}"


def generate_order_number() -> str:
    """
    Build a candidate order number: prefix, millisecond timestamp and three
    random digits. Uniqueness is checked by the caller.
    """
    prefix = settings.FULFILLMENT.get('ORDER_NUMBER_PREFIX', 'ORD')
    return f"{prefix}{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def generate_delivery_otp() -> str:
    length = int(settings.FULFILLMENT.get('OTP_LENGTH', 6))
    return ''.join(str(secrets.randbelow(10)) for _ in range(length))
