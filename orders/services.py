"""
Order Service Layer - Atomic order placement.

Placement is all-or-nothing:
1. Validate items, delivery address and payment method
2. Snapshot product prices and compute frozen pricing
3. Reserve stock for every line (compensating on partial failure)
4. Create the order in CONFIRMED status with its first timeline entry
5. Queue the order_placed event once the transaction commits
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction

from core.exceptions import NotFound, ValidationError
from inventory import services as inventory
from inventory.models import Product
from .events import publish_order_event
from .models import (
    Order,
    OrderItem,
    OrderTimelineEntry,
    generate_delivery_otp,
    generate_order_number,
)

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
REQUIRED_ADDRESS_FIELDS = ('street', 'city', 'state', 'zipCode')


def validate_order_items(items: List[Dict]) -> List[Tuple[int, int]]:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id' and 'quantity'

    Returns:
        List of (product_id, quantity) in request order

    Raises:
        ValidationError: If validation fails
    """
    if not items:
        raise ValidationError("Order must contain at least one item", field='items')

    lines = []
    seen_products = set()
    for idx, item in enumerate(items):
        if 'product_id' not in item:
            raise ValidationError(f"Item {idx}: missing 'product_id'", field=f'items[{idx}].product_id')
        if 'quantity' not in item:
            raise ValidationError(f"Item {idx}: missing 'quantity'", field=f'items[{idx}].quantity')

        product_id = item['product_id']
        quantity = item['quantity']

        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(
                f"Item {idx}: quantity must be a positive integer",
                field=f'items[{idx}].quantity'
            )

        if product_id in seen_products:
            raise ValidationError(
                f"Item {idx}: duplicate product_id {product_id}",
                field=f'items[{idx}].product_id'
            )
        seen_products.add(product_id)
        lines.append((product_id, quantity))
    return lines


def validate_delivery_address(address: Optional[Dict]) -> Dict:
    """Return a detached snapshot of the delivery address."""
    if not isinstance(address, dict):
        raise ValidationError("Delivery address is required", field='delivery_address')

    snapshot = dict(address)
    for name in REQUIRED_ADDRESS_FIELDS:
        value = snapshot.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Delivery address {name} is required", field=f'delivery_address.{name}')
        snapshot[name] = value.strip()
    snapshot.setdefault('country', 'India')
    return snapshot


def calculate_pricing(subtotal: Decimal, discount: Decimal = Decimal('0.00')) -> Dict[str, Decimal]:
    """
    Compute the frozen pricing block for a subtotal.

    Tax is a flat rate on the subtotal; delivery is free above the
    configured threshold.
    """
    config = settings.FULFILLMENT
    subtotal = Decimal(subtotal).quantize(CENTS, rounding=ROUND_HALF_UP)
    tax = (subtotal * Decimal(str(config['TAX_RATE']))).quantize(CENTS, rounding=ROUND_HALF_UP)
    if subtotal > Decimal(str(config['FREE_DELIVERY_THRESHOLD'])):
        delivery_fee = Decimal('0.00')
    else:
        delivery_fee = Decimal(str(config['DELIVERY_FEE'])).quantize(CENTS)
    discount = Decimal(discount).quantize(CENTS)
    return {
        'subtotal': subtotal,
        'tax': tax,
        'delivery_fee': delivery_fee,
        'discount': discount,
        'total': subtotal - discount + tax + delivery_fee,
    }


def record_transition(order: Order, status: str, notes: str, actor: str) -> OrderTimelineEntry:
    """Append a timeline entry and queue its event."""
    entry = OrderTimelineEntry.objects.create(
        order=order,
        status=status,
        notes=notes,
        updated_by=actor or ''
    )
    publish_order_event(order, entry)
    return entry


def _create_with_unique_number(**fields) -> Order:
    """Insert the order, retrying on order number collisions."""
    attempts = int(settings.FULFILLMENT.get('ORDER_NUMBER_MAX_ATTEMPTS', 5))
    for _ in range(attempts):
        number = generate_order_number()
        if Order.objects.filter(order_number=number).exists():
            continue
        try:
            with transaction.atomic():
                return Order.objects.create(order_number=number, **fields)
        except IntegrityError:
            logger.warning(f"Order number collision on {number}, retrying")
    raise RuntimeError(f"Could not allocate a unique order number after {attempts} attempts")


def place_order(customer_id: str, items: List[Dict], delivery_address: Dict,
                payment_method: str, customer_notes: Optional[str] = None,
                special_instructions: Optional[str] = None) -> Order:
    """
    Place an order with stock reservation.

    Either every line is reserved and the order exists in CONFIRMED status,
    or nothing changed.

    Args:
        customer_id: Customer identity
        items: List of dicts with 'product_id' and 'quantity'
        delivery_address: Address dict (street, city, state, zipCode, ...)
        payment_method: One of card, upi, wallet, cod

    Returns:
        The confirmed Order

    Raises:
        ValidationError: Malformed input
        NotFound: Unknown or inactive product
        InsufficientStock: A line cannot be reserved
    """
    if not customer_id:
        raise ValidationError("Customer is required", field='customer_id')
    lines = validate_order_items(items)
    address = validate_delivery_address(delivery_address)
    if payment_method not in Order.PaymentMethod.values:
        raise ValidationError(f"Invalid payment method '{payment_method}'", field='payment_method')

    product_ids = [product_id for product_id, _ in lines]
    products = {
        p.id: p for p in Product.objects.filter(id__in=product_ids, is_active=True)
    }
    for product_id in product_ids:
        if product_id not in products:
            raise NotFound('Product', product_id)

    subtotal = sum(
        (products[product_id].selling_price * quantity for product_id, quantity in lines),
        Decimal('0.00')
    )
    pricing = calculate_pricing(subtotal)

    with transaction.atomic():
        inventory.reserve_all(lines)

        order = _create_with_unique_number(
            customer=str(customer_id),
            order_status=Order.Status.CONFIRMED,
            payment_method=payment_method,
            delivery_address=address,
            customer_notes=customer_notes or '',
            special_instructions=special_instructions or '',
            delivery_otp=generate_delivery_otp() if payment_method == Order.PaymentMethod.COD else '',
            **pricing
        )
        OrderItem.objects.bulk_create([
            OrderItem(
                order=order,
                line_number=idx,
                product=products[product_id],
                quantity=quantity,
                price=products[product_id].selling_price
            )
            for idx, (product_id, quantity) in enumerate(lines)
        ])
        record_transition(order, Order.Status.CONFIRMED, "Order placed and confirmed", str(customer_id))

    logger.info(
        f"Order {order.order_number} confirmed for customer {customer_id}: "
        f"{len(lines)} items, total {order.total}"
    )
    return order
