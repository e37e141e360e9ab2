"""
Inventory Service Layer - Product stock counters.

Every mutation is a single conditional UPDATE guarded on the pre-state, so
concurrent workers can never drive a counter negative or unbalance
``total_stock == available_stock + reserved_stock``:

    reserve              available -q, reserved +q   (requires available >= q)
    release              available +q, reserved -q   (requires reserved >= q)
    confirm_consumption  total -q,     reserved -q   (requires reserved >= q)
    receive              total +q,     available +q
    write_off            total -q,     available -q  (requires available >= q)
"""
import logging
from typing import Dict, Iterable, List, Tuple

from django.db.models import F, Sum
from django.utils import timezone

from core.exceptions import InsufficientStock, NotFound, ValidationError
from .models import BinStock, Product

logger = logging.getLogger(__name__)


def _check_quantity(quantity) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError("Quantity must be a positive integer", field='quantity')


def _current(product_id) -> Product:
    try:
        return Product.objects.get(pk=product_id)
    except Product.DoesNotExist:
        raise NotFound('Product', product_id)


def reserve(product_id, quantity: int) -> None:
    """
    Hold ``quantity`` units of available stock for an order.

    Raises:
        InsufficientStock: If fewer than ``quantity`` units are available
        NotFound: If the product does not exist
    """
    _check_quantity(quantity)
    updated = Product.objects.filter(
        pk=product_id,
        available_stock__gte=quantity
    ).update(
        available_stock=F('available_stock') - quantity,
        reserved_stock=F('reserved_stock') + quantity,
        updated_at=timezone.now()
    )
    if not updated:
        product = _current(product_id)
        logger.warning(
            f"Reservation rejected for {product.sku}: "
            f"requested {quantity}, available {product.available_stock}"
        )
        raise InsufficientStock(product_id, quantity, product.available_stock)
    logger.debug(f"Reserved {quantity} of product {product_id}")


def release(product_id, quantity: int) -> None:
    """
    Return a reservation to available stock.

    The guard on ``reserved_stock`` makes an accidental second release fail
    loudly instead of inflating available stock.
    """
    _check_quantity(quantity)
    updated = Product.objects.filter(
        pk=product_id,
        reserved_stock__gte=quantity
    ).update(
        available_stock=F('available_stock') + quantity,
        reserved_stock=F('reserved_stock') - quantity,
        updated_at=timezone.now()
    )
    if not updated:
        product = _current(product_id)
        raise InsufficientStock(product_id, quantity, product.reserved_stock)
    logger.debug(f"Released {quantity} of product {product_id}")


def confirm_consumption(product_id, quantity: int) -> None:
    """Reserved units were physically picked and leave the system."""
    _check_quantity(quantity)
    updated = Product.objects.filter(
        pk=product_id,
        reserved_stock__gte=quantity,
        total_stock__gte=quantity
    ).update(
        total_stock=F('total_stock') - quantity,
        reserved_stock=F('reserved_stock') - quantity,
        updated_at=timezone.now()
    )
    if not updated:
        product = _current(product_id)
        raise InsufficientStock(product_id, quantity, product.reserved_stock)
    logger.debug(f"Consumed {quantity} of product {product_id}")


def receive(product_id, quantity: int) -> None:
    """New physical stock entered a bin."""
    _check_quantity(quantity)
    updated = Product.objects.filter(pk=product_id).update(
        total_stock=F('total_stock') + quantity,
        available_stock=F('available_stock') + quantity,
        updated_at=timezone.now()
    )
    if not updated:
        raise NotFound('Product', product_id)


def write_off(product_id, quantity: int) -> None:
    """Unreserved physical stock left a bin outside of order picking."""
    _check_quantity(quantity)
    updated = Product.objects.filter(
        pk=product_id,
        available_stock__gte=quantity
    ).update(
        total_stock=F('total_stock') - quantity,
        available_stock=F('available_stock') - quantity,
        updated_at=timezone.now()
    )
    if not updated:
        product = _current(product_id)
        raise InsufficientStock(product_id, quantity, product.available_stock)


def reserve_all(lines: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """
    Reserve every (product_id, quantity) line or none of them.

    Lines are reserved in product id order so concurrent placements touch
    rows in the same sequence. On the first failure every reservation
    already applied is released before the error propagates.

    Returns:
        The reserved lines, in the order they were applied
    """
    applied = []
    for product_id, quantity in sorted(lines):
        try:
            reserve(product_id, quantity)
        except Exception:
            for done_id, done_qty in reversed(applied):
                release(done_id, done_qty)
            if applied:
                logger.info(f"Compensated {len(applied)} reservation(s) after failure")
            raise
        applied.append((product_id, quantity))
    return applied


def reconcile(product: Product) -> Dict:
    """
    Compare a product's counters against the bin ledger.

    Returns:
        Dict describing counters, ledger total and whether they agree
    """
    product.refresh_from_db()
    ledger_total = BinStock.objects.filter(product=product).aggregate(
        total=Sum('quantity')
    )['total'] or 0
    balanced = product.total_stock == product.available_stock + product.reserved_stock
    return {
        'product_id': product.id,
        'sku': product.sku,
        'total_stock': product.total_stock,
        'available_stock': product.available_stock,
        'reserved_stock': product.reserved_stock,
        'ledger_total': ledger_total,
        'consistent': balanced and ledger_total == product.total_stock,
    }


def reconcile_all() -> List[Dict]:
    """Reconciliation reports for products that drifted from the ledger."""
    drifted = []
    for product in Product.objects.all().iterator():
        report = reconcile(product)
        if not report['consistent']:
            logger.warning(
                f"Inventory drift for {report['sku']}: counters total "
                f"{report['total_stock']}, ledger {report['ledger_total']}"
            )
            drifted.append(report)
    return drifted


def low_stock_products():
    """Active products whose available stock is at or below the minimum."""
    return Product.objects.filter(
        is_active=True,
        available_stock__lte=F('min_stock_level')
    ).order_by('available_stock', 'name')


def inventory_summary() -> Dict:
    """Counts used by the inventory summary endpoint."""
    products = Product.objects.filter(is_active=True)
    totals = products.aggregate(
        total_stock=Sum('total_stock'),
        available_stock=Sum('available_stock'),
        reserved_stock=Sum('reserved_stock'),
    )
    return {
        'active_products': products.count(),
        'out_of_stock': products.filter(available_stock=0).count(),
        'low_stock': low_stock_products().count(),
        'total_stock': totals['total_stock'] or 0,
        'available_stock': totals['available_stock'] or 0,
        'reserved_stock': totals['reserved_stock'] or 0,
    }
