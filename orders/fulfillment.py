"""
Fulfillment orchestration - the order state machine after placement.

Every transition is one conditional UPDATE on the order row guarded by the
expected pre-state (status, and the assignee where claims are involved),
run inside a transaction together with the inventory/ledger changes it
triggers and the timeline entry it appends. A rejected transition changes
nothing and appends no timeline entry.

Claims return ``(order, AlreadyClaimed | None)``: losing a claim race is an
expected outcome, not an error.
"""
import hmac
import logging
from typing import List, Optional, Tuple

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from core.exceptions import (
    AlreadyClaimed,
    AuthorizationMismatch,
    IllegalTransition,
    NotFound,
    ValidationError,
)
from inventory import ledger
from inventory import services as inventory
from .models import Order, OrderItem
from .services import record_transition

logger = logging.getLogger(__name__)

Status = Order.Status
PickingStatus = OrderItem.PickingStatus

ClaimResult = Tuple[Order, Optional[AlreadyClaimed]]


def _get_order(order_id, lock: bool = False) -> Order:
    queryset = Order.objects.select_for_update() if lock else Order.objects
    try:
        return queryset.get(pk=order_id)
    except Order.DoesNotExist:
        raise NotFound('Order', order_id)


def _get_item(order: Order, item_index) -> OrderItem:
    try:
        index = int(item_index)
    except (TypeError, ValueError):
        raise ValidationError("Item index must be an integer", field='item_index')
    item = OrderItem.objects.filter(order=order, line_number=index).first() if index >= 0 else None
    if item is None:
        raise ValidationError(f"Invalid item index {item_index}", field='item_index')
    return item


def _advance(order_id, from_statuses, to_status, guards=None, **changes) -> bool:
    """Move the order to ``to_status`` only if it is still in ``from_statuses``."""
    now = timezone.now()
    updated = Order.objects.filter(
        pk=order_id,
        order_status__in=list(from_statuses),
        **(guards or {})
    ).update(
        order_status=to_status,
        version=F('version') + 1,
        updated_at=now,
        **changes
    )
    return updated == 1


# =============================================================================
# Picking
# =============================================================================

def claim_for_picking(order_id, picker_id: str) -> ClaimResult:
    """
    Assign an unassigned order, and all its unassigned items, to a picker.

    The first picker wins; later claimants get AlreadyClaimed back. A picker
    re-claiming their own order is a no-op.
    """
    with transaction.atomic():
        claimed = _advance(
            order_id,
            (Status.CONFIRMED, Status.PICKING),
            Status.PICKING,
            guards={'picker__isnull': True},
            picker=picker_id,
            picking_started_at=timezone.now()
        )
        if not claimed:
            order = _get_order(order_id)
            if order.order_status not in (Status.CONFIRMED, Status.PICKING):
                raise IllegalTransition(order.order_status, Status.PICKING)
            if order.picker == picker_id:
                return order, None
            logger.warning(
                f"Picker {picker_id} lost claim on order {order.order_number} "
                f"to {order.picker}"
            )
            return order, AlreadyClaimed(order.order_number, 'picker')

        OrderItem.objects.filter(
            order_id=order_id,
            picker_assigned__isnull=True,
            picking_status=PickingStatus.PENDING
        ).update(
            picker_assigned=picker_id,
            picking_status=PickingStatus.ASSIGNED
        )
        order = _get_order(order_id)
        record_transition(order, Status.PICKING, f"Order accepted for picking by {picker_id}", picker_id)

    logger.info(f"Order {order.order_number} claimed by picker {picker_id}")
    return order, None


@transaction.atomic
def start_item_picking(order_id, item_index, picker_id: str) -> OrderItem:
    """Item ``assigned -> picking`` for the picker assigned to it."""
    order = _get_order(order_id, lock=True)
    if order.order_status != Status.PICKING:
        raise IllegalTransition(order.order_status, Status.PICKING)

    item = _get_item(order, item_index)
    if item.picker_assigned != picker_id:
        raise AuthorizationMismatch("You are not assigned to pick this item")

    updated = OrderItem.objects.filter(
        pk=item.pk,
        picking_status=PickingStatus.ASSIGNED,
        picker_assigned=picker_id
    ).update(picking_status=PickingStatus.PICKING)
    if not updated:
        item.refresh_from_db()
        raise IllegalTransition(item.picking_status, PickingStatus.PICKING)

    item.refresh_from_db()
    return item


@transaction.atomic
def pick_item(order_id, item_index, picker_id: str, bin_id, notes: Optional[str] = None) -> Order:
    """
    Pick one item out of a bin.

    Removes the item's quantity from the bin (consuming the reservation) and
    marks the item picked. Picking the last item moves the order to PICKED.

    Raises:
        InsufficientStock: The bin no longer holds enough; the item keeps
            its current status
        AuthorizationMismatch: The item is assigned to another picker
        IllegalTransition: Order not in picking, or item already picked
    """
    order = _get_order(order_id, lock=True)
    if order.order_status != Status.PICKING:
        raise IllegalTransition(order.order_status, Status.PICKED)

    item = _get_item(order, item_index)
    if item.picker_assigned != picker_id:
        raise AuthorizationMismatch("You are not assigned to pick this item")
    if item.picking_status not in (PickingStatus.ASSIGNED, PickingStatus.PICKING):
        raise IllegalTransition(item.picking_status, PickingStatus.PICKED)

    ledger.remove_stock(
        bin_id,
        item.product_id,
        item.quantity,
        picker_id,
        order=order,
        reason=f"Order picking {order.order_number}"
    )

    now = timezone.now()
    updated = OrderItem.objects.filter(
        pk=item.pk,
        picker_assigned=picker_id,
        picking_status__in=[PickingStatus.ASSIGNED, PickingStatus.PICKING]
    ).update(
        picking_status=PickingStatus.PICKED,
        bin_location_id=bin_id,
        picked_at=now,
        notes=notes or ''
    )
    if not updated:
        item.refresh_from_db()
        raise IllegalTransition(item.picking_status, PickingStatus.PICKED)

    logger.info(f"Order {order.order_number}: item {item.line_number} picked from bin {bin_id}")

    if not order.items.exclude(picking_status=PickingStatus.PICKED).exists():
        if _advance(order.pk, (Status.PICKING,), Status.PICKED, picking_completed_at=now):
            order.refresh_from_db()
            record_transition(order, Status.PICKED, "All items picked, ready for delivery", picker_id)
            logger.info(f"Order {order.order_number} fully picked")

    order.refresh_from_db()
    return order


def available_for_picking(picker_id: str):
    """Confirmed/picking orders that are unassigned or already this picker's."""
    return Order.objects.filter(
        order_status__in=[Status.CONFIRMED, Status.PICKING]
    ).filter(
        Q(picker__isnull=True) | Q(picker=picker_id)
    ).prefetch_related('items__product').order_by('created_at')


# =============================================================================
# Delivery
# =============================================================================

def claim_for_delivery(order_id, rider_id: str) -> ClaimResult:
    """Assign a picked order to the first rider who claims it."""
    with transaction.atomic():
        claimed = _advance(
            order_id,
            (Status.PICKED,),
            Status.READY_FOR_DELIVERY,
            guards={'rider__isnull': True},
            rider=rider_id,
            assigned_for_delivery_at=timezone.now()
        )
        if not claimed:
            order = _get_order(order_id)
            if order.order_status not in (Status.PICKED, Status.READY_FOR_DELIVERY):
                raise IllegalTransition(order.order_status, Status.READY_FOR_DELIVERY)
            if order.rider == rider_id:
                return order, None
            logger.warning(
                f"Rider {rider_id} lost claim on order {order.order_number} "
                f"to {order.rider}"
            )
            return order, AlreadyClaimed(order.order_number, 'rider')

        order = _get_order(order_id)
        record_transition(
            order, Status.READY_FOR_DELIVERY,
            f"Order accepted for delivery by {rider_id}", rider_id
        )

    logger.info(f"Order {order.order_number} claimed by rider {rider_id}")
    return order, None


@transaction.atomic
def confirm_pickup(order_id, rider_id: str) -> Order:
    """Rider collected the order: ``ready_for_delivery -> out_for_delivery``."""
    if not _advance(
        order_id,
        (Status.READY_FOR_DELIVERY,),
        Status.OUT_FOR_DELIVERY,
        guards={'rider': rider_id},
        picked_up_at=timezone.now()
    ):
        order = _get_order(order_id)
        if order.order_status != Status.READY_FOR_DELIVERY:
            raise IllegalTransition(order.order_status, Status.OUT_FOR_DELIVERY)
        raise AuthorizationMismatch("Order is not assigned to you")

    order = _get_order(order_id)
    record_transition(order, Status.OUT_FOR_DELIVERY, "Order picked up by rider", rider_id)
    logger.info(f"Order {order.order_number} out for delivery with rider {rider_id}")
    return order


@transaction.atomic
def confirm_delivery(order_id, rider_id: str, otp: Optional[str] = None,
                     notes: Optional[str] = None) -> Order:
    """
    Rider handed the order over: ``out_for_delivery -> delivered``.

    Cash-on-delivery orders require the OTP presented by the customer. The
    payment is recorded as paid on success.
    """
    order = _get_order(order_id, lock=True)
    if order.order_status != Status.OUT_FOR_DELIVERY:
        raise IllegalTransition(order.order_status, Status.DELIVERED)
    if order.rider != rider_id:
        raise AuthorizationMismatch("Order is not assigned to you")
    if order.is_cash_on_delivery:
        presented = str(otp or '')
        if not presented or not hmac.compare_digest(presented.encode(), order.delivery_otp.encode()):
            logger.warning(f"Invalid delivery OTP for order {order.order_number}")
            raise AuthorizationMismatch("Invalid delivery OTP")

    now = timezone.now()
    if not _advance(
        order.pk,
        (Status.OUT_FOR_DELIVERY,),
        Status.DELIVERED,
        guards={'rider': rider_id},
        delivered_at=now,
        delivery_notes=notes or '',
        payment_status=Order.PaymentStatus.PAID,
        paid_at=now
    ):
        order.refresh_from_db()
        raise IllegalTransition(order.order_status, Status.DELIVERED)

    order.refresh_from_db()
    record_transition(order, Status.DELIVERED, "Order delivered", rider_id)
    logger.info(f"Order {order.order_number} delivered by rider {rider_id}")
    return order


def available_for_delivery():
    """Picked orders no rider has claimed yet, oldest pick first."""
    return Order.objects.filter(
        order_status=Status.PICKED,
        rider__isnull=True
    ).prefetch_related('items__product').order_by('picking_completed_at')


# =============================================================================
# Cancellation and refunds
# =============================================================================

def _rollback_inventory(order: Order, actor: str) -> List[str]:
    """
    Undo the inventory effect of an order being cancelled.

    Unpicked items release their reservation. Picked items were already
    consumed, so they go back into the bin they came from; units the bin
    cannot take back stay consumed and are returned as descriptions.
    """
    return_picked = settings.FULFILLMENT.get('RETURN_PICKED_STOCK_ON_CANCEL', True)
    not_returned = []
    for item in order.items.select_related('product', 'bin_location'):
        if item.picking_status != PickingStatus.PICKED:
            inventory.release(item.product_id, item.quantity)
            continue
        if not return_picked or item.bin_location_id is None:
            not_returned.append(f"{item.quantity}x {item.product.sku}")
            continue
        try:
            ledger.add_stock(
                item.bin_location_id,
                item.product_id,
                item.quantity,
                actor,
                batch_number=f"RET-{order.order_number}",
                reason=f"Returned from cancelled order {order.order_number}",
                order=order
            )
        except (ValidationError, NotFound) as e:
            logger.warning(
                f"Order {order.order_number}: could not return {item.quantity}x "
                f"{item.product.sku} to bin {item.bin_location_id}: {e}"
            )
            not_returned.append(f"{item.quantity}x {item.product.sku}")
    return not_returned


@transaction.atomic
def cancel_order(order_id, actor_id: str, reason: str) -> Order:
    """
    Cancel an order that is not yet delivered, cancelled or refunded.

    Raises:
        ValidationError: Empty reason
        IllegalTransition: Order already in a terminal state
    """
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError("Cancellation reason is required", field='reason')

    if not _advance(
        order_id,
        Order.CANCELLABLE_STATUSES,
        Status.CANCELLED,
        cancellation_reason=reason,
        cancelled_by=actor_id,
        cancelled_at=timezone.now()
    ):
        order = _get_order(order_id)
        raise IllegalTransition(order.order_status, Status.CANCELLED)

    order = _get_order(order_id)
    not_returned = _rollback_inventory(order, actor_id)

    notes = f"Order cancelled: {reason}"
    if not_returned:
        notes += f" (picked stock kept as consumed: {', '.join(not_returned)})"
    record_transition(order, Status.CANCELLED, notes, actor_id)

    logger.info(f"Order {order.order_number} cancelled by {actor_id}: {reason}")
    return order


@transaction.atomic
def refund_order(order_id, actor_id: str, notes: Optional[str] = None) -> Order:
    """Payment-driven ``cancelled|delivered -> refunded``."""
    if not _advance(order_id, (Status.CANCELLED, Status.DELIVERED), Status.REFUNDED):
        order = _get_order(order_id)
        raise IllegalTransition(order.order_status, Status.REFUNDED)

    Order.objects.filter(
        pk=order_id,
        payment_status=Order.PaymentStatus.PAID
    ).update(payment_status=Order.PaymentStatus.REFUNDED)

    order = _get_order(order_id)
    record_transition(order, Status.REFUNDED, notes or "Order refunded", actor_id)
    logger.info(f"Order {order.order_number} refunded by {actor_id}")
    return order
