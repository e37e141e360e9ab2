"""
Order domain events.

One event is produced per timeline entry and handed to Celery once the
surrounding transaction commits. Delivery is best-effort: a broker outage
is logged and never fails the transition that produced the event.
"""
import logging
from typing import Dict

from django.db import transaction

from .models import Order, OrderTimelineEntry

logger = logging.getLogger(__name__)

# status -> (event type, recipient hint, priority, message template)
EVENT_TYPES = {
    Order.Status.CONFIRMED.value: (
        'order_placed', 'pickers', 'high',
        "Order {number} needs picking - {items} items"
    ),
    Order.Status.PICKING.value: (
        'picking_started', 'customer', 'medium',
        "Your order {number} is being picked"
    ),
    Order.Status.PICKED.value: (
        'order_ready', 'riders', 'high',
        "Order {number} is picked and ready for pickup"
    ),
    Order.Status.READY_FOR_DELIVERY.value: (
        'delivery_assigned', 'customer', 'medium',
        "Your order {number} has been assigned to a delivery partner"
    ),
    Order.Status.OUT_FOR_DELIVERY.value: (
        'out_for_delivery', 'customer', 'high',
        "Your order {number} is on its way"
    ),
    Order.Status.DELIVERED.value: (
        'delivered', 'customer', 'high',
        "Your order {number} has been delivered"
    ),
    Order.Status.CANCELLED.value: (
        'order_cancelled', 'customer', 'high',
        "Your order {number} has been cancelled"
    ),
    Order.Status.REFUNDED.value: (
        'order_refunded', 'customer', 'medium',
        "Your order {number} has been refunded"
    ),
}


def build_event(order: Order, entry: OrderTimelineEntry) -> Dict:
    """Shape a timeline entry into the event handed to the notification sink."""
    event_type, recipient, priority, template = EVENT_TYPES.get(
        str(entry.status),
        ('order_updated', 'customer', 'low', "Order {number} is now {status}")
    )
    return {
        'orderId': order.pk,
        'orderNumber': order.order_number,
        'type': event_type,
        'status': str(entry.status),
        'message': template.format(
            number=order.order_number,
            items=order.items.count(),
            status=str(entry.status)
        ),
        'recipientHint': recipient,
        'priority': priority,
    }


def _enqueue(event: Dict) -> None:
    try:
        from .tasks import deliver_order_event
        deliver_order_event.delay(event)
        logger.debug(f"Queued {event['type']} event for order {event['orderNumber']}")
    except Exception as e:
        # Don't fail the transition if the broker is unavailable
        logger.error(f"Failed to queue {event['type']} event for order {event['orderNumber']}: {e}")


def publish_order_event(order: Order, entry: OrderTimelineEntry) -> Dict:
    """
    Queue the event for ``entry`` after the current transaction commits.

    Returns:
        The event payload
    """
    event = build_event(order, entry)
    transaction.on_commit(lambda: _enqueue(event))
    return event


def log_event_sink(event: Dict) -> None:
    """Default sink: write the event to the log."""
    logger.info(
        f"[{event['priority']}] {event['type']} -> {event['recipientHint']}: "
        f"{event['message']}"
    )
