"""
Stock Ledger - physical stock held in bins.

Each operation runs in one transaction that:
    1. Locks the bin row(s) with select_for_update() (primary key order)
    2. Re-checks quantities/capacity against the locked state
    3. Mutates BinStock and appends exactly one BinMovement per bin
    4. Updates the Product counters so they keep mirroring the ledger
    5. Bumps the bin version
"""
import logging
from datetime import date
from typing import List, Optional, Tuple

from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone

from core.exceptions import CapacityExceeded, InsufficientStock, NotFound, ValidationError
from . import services
from .models import Bin, BinMovement, BinStock, Product

logger = logging.getLogger(__name__)

# (batch_number, expiry_date, quantity) taken out of a bin
Portion = Tuple[str, Optional[date], int]


def _lock_bin(bin_id) -> Bin:
    try:
        return Bin.objects.select_for_update().get(pk=bin_id)
    except Bin.DoesNotExist:
        raise NotFound('Bin', bin_id)


def _get_product(product_id) -> Product:
    try:
        return Product.objects.get(pk=product_id)
    except Product.DoesNotExist:
        raise NotFound('Product', product_id)


def _bin_total(bin_obj: Bin) -> int:
    return BinStock.objects.filter(bin=bin_obj).aggregate(total=Sum('quantity'))['total'] or 0


def _touch(bin_obj: Bin, picked: bool = False) -> None:
    changes = {'version': F('version') + 1, 'updated_at': timezone.now()}
    if picked:
        changes['picking_frequency'] = F('picking_frequency') + 1
        changes['last_picked_at'] = timezone.now()
    Bin.objects.filter(pk=bin_obj.pk).update(**changes)


def product_quantity(bin_obj, product_id) -> int:
    """Total units of a product in a bin, across batches."""
    return BinStock.objects.filter(bin=bin_obj, product_id=product_id).aggregate(
        total=Sum('quantity')
    )['total'] or 0


def _validate_quantity(quantity) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError("Quantity must be a positive integer", field='quantity')


def _put(bin_obj: Bin, product: Product, portions: List[Portion], actor: str) -> None:
    """Merge portions into the bin, enforcing its item capacity."""
    if not bin_obj.is_active:
        raise ValidationError(f"Bin {bin_obj.bin_code} is not active", field='bin')

    incoming = sum(qty for _, _, qty in portions)
    current = _bin_total(bin_obj)
    if current + incoming > bin_obj.max_items:
        raise CapacityExceeded(bin_obj.bin_code, bin_obj.max_items, current, incoming)

    for batch_number, expiry_date, qty in portions:
        merged = BinStock.objects.filter(
            bin=bin_obj,
            product=product,
            batch_number=batch_number
        ).update(quantity=F('quantity') + qty)
        if merged:
            if expiry_date is not None:
                BinStock.objects.filter(
                    bin=bin_obj, product=product, batch_number=batch_number,
                    expiry_date__isnull=True
                ).update(expiry_date=expiry_date)
            continue
        BinStock.objects.create(
            bin=bin_obj,
            product=product,
            batch_number=batch_number,
            expiry_date=expiry_date,
            quantity=qty,
            added_by=actor
        )


def _take(bin_obj: Bin, product: Product, quantity: int) -> List[Portion]:
    """
    Remove ``quantity`` units of a product, earliest expiry first.

    Entries reaching zero are deleted.
    """
    available = product_quantity(bin_obj, product.pk)
    if available < quantity:
        logger.warning(
            f"Bin {bin_obj.bin_code} holds {available} of {product.sku}, "
            f"{quantity} requested"
        )
        raise InsufficientStock(product.pk, quantity, available, bin_code=bin_obj.bin_code)

    entries = BinStock.objects.filter(bin=bin_obj, product=product).order_by(
        F('expiry_date').asc(nulls_last=True), 'added_at', 'id'
    )
    portions = []
    remaining = quantity
    for entry in entries:
        if remaining == 0:
            break
        taken = min(entry.quantity, remaining)
        if taken == entry.quantity:
            BinStock.objects.filter(pk=entry.pk).delete()
        else:
            BinStock.objects.filter(pk=entry.pk).update(quantity=F('quantity') - taken)
        portions.append((entry.batch_number, entry.expiry_date, taken))
        remaining -= taken
    return portions


def _record(bin_obj, action, product, quantity, previous, actor, reason, order=None) -> BinMovement:
    new = product_quantity(bin_obj, product.pk)
    return BinMovement.objects.create(
        bin=bin_obj,
        action=action,
        product=product,
        quantity=quantity,
        previous_quantity=previous,
        new_quantity=new,
        performed_by=actor,
        reason=reason,
        order=order
    )


@transaction.atomic
def add_stock(bin_id, product_id, quantity: int, actor: str,
              batch_number: str = '', expiry_date: Optional[date] = None,
              reason: str = 'Stock replenishment', order=None) -> BinMovement:
    """
    Put stock into a bin.

    Merges into the existing (product, batch) entry or creates one, then
    raises the product's total and available counters.

    Raises:
        CapacityExceeded: If the bin would hold more than ``max_items``
        ValidationError: If the bin is inactive or the quantity is invalid
        NotFound: If the bin or product does not exist
    """
    _validate_quantity(quantity)
    bin_obj = _lock_bin(bin_id)
    product = _get_product(product_id)

    previous = product_quantity(bin_obj, product.pk)
    _put(bin_obj, product, [(batch_number or '', expiry_date, quantity)], actor)
    movement = _record(
        bin_obj, BinMovement.Action.STOCK_IN, product, quantity, previous,
        actor, reason, order
    )
    services.receive(product.pk, quantity)
    _touch(bin_obj)

    logger.info(
        f"Bin {bin_obj.bin_code}: +{quantity} {product.sku} "
        f"({previous} -> {movement.new_quantity}) by {actor}"
    )
    return movement


@transaction.atomic
def remove_stock(bin_id, product_id, quantity: int, actor: str,
                 order=None, reason: str = 'Stock removal') -> BinMovement:
    """
    Take stock out of a bin.

    With an ``order`` the removal is a pick: the reservation held for the
    order is consumed. Without one it is a stock-out that only unreserved
    stock can cover.

    Raises:
        InsufficientStock: If the bin (or, for stock-outs, the unreserved
            product stock) holds less than ``quantity``
    """
    _validate_quantity(quantity)
    bin_obj = _lock_bin(bin_id)
    product = _get_product(product_id)

    previous = product_quantity(bin_obj, product.pk)
    _take(bin_obj, product, quantity)

    if order is not None:
        action = BinMovement.Action.PICK
        services.confirm_consumption(product.pk, quantity)
    else:
        action = BinMovement.Action.STOCK_OUT
        services.write_off(product.pk, quantity)

    movement = _record(bin_obj, action, product, quantity, previous, actor, reason, order)
    _touch(bin_obj, picked=order is not None)

    logger.info(
        f"Bin {bin_obj.bin_code}: -{quantity} {product.sku} ({action}) "
        f"({previous} -> {movement.new_quantity}) by {actor}"
    )
    return movement


@transaction.atomic
def transfer(from_bin_id, to_bin_id, product_id, quantity: int, actor: str,
             reason: str = 'Stock transfer') -> Tuple[BinMovement, BinMovement]:
    """
    Move stock between two bins, all or nothing.

    Batches and expiry dates travel with the units. Product counters are
    unchanged because the stock never leaves the warehouse. If the
    destination cannot take the stock the transaction rolls back and the
    source is left untouched.

    Returns:
        (source movement, destination movement)
    """
    _validate_quantity(quantity)
    if str(from_bin_id) == str(to_bin_id):
        raise ValidationError("Source and destination bins must differ", field='to_bin')

    locked = {
        b.pk: b for b in Bin.objects.select_for_update().filter(
            pk__in=[from_bin_id, to_bin_id]
        ).order_by('pk')
    }
    source = locked.get(int(from_bin_id))
    destination = locked.get(int(to_bin_id))
    if source is None:
        raise NotFound('Bin', from_bin_id)
    if destination is None:
        raise NotFound('Bin', to_bin_id)
    product = _get_product(product_id)

    source_previous = product_quantity(source, product.pk)
    destination_previous = product_quantity(destination, product.pk)

    portions = _take(source, product, quantity)
    _put(destination, product, portions, actor)

    outgoing = _record(
        source, BinMovement.Action.TRANSFER, product, quantity, source_previous,
        actor, f"Transfer to {destination.bin_code}: {reason}"
    )
    incoming = _record(
        destination, BinMovement.Action.TRANSFER, product, quantity, destination_previous,
        actor, f"Transfer from {source.bin_code}: {reason}"
    )
    _touch(source)
    _touch(destination)

    logger.info(
        f"Transferred {quantity} {product.sku} from {source.bin_code} "
        f"to {destination.bin_code} by {actor}"
    )
    return outgoing, incoming
