"""
Celery tasks for order event delivery and inventory maintenance.

Tasks:
    - deliver_order_event: Hand an order event to the notification sink
    - reconcile_inventory: Periodic check of product counters against bins
    - scan_low_stock: Periodic low-stock report
"""
import logging

from celery import shared_task
from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


def get_event_sink():
    """Resolve the configured event sink callable."""
    return import_string(
        settings.FULFILLMENT.get('EVENT_SINK', 'orders.events.log_event_sink')
    )


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def deliver_order_event(self, event: dict):
    """
    Deliver one order event to the notification sink.

    The order may have moved on by the time this runs; the event describes
    the transition that produced it, not the current state.

    Args:
        event: Payload built by orders.events.build_event

    Returns:
        Dict with delivery details
    """
    sink = get_event_sink()
    sink(event)
    logger.info(f"[CELERY] Delivered {event['type']} for order {event['orderNumber']}")
    return {
        'status': 'delivered',
        'order_number': event['orderNumber'],
        'type': event['type'],
    }


@shared_task
def reconcile_inventory():
    """
    Periodic task comparing product counters with the bin ledger.

    Drift is only reported; correcting it is an operator decision.
    """
    from inventory.services import reconcile_all

    drifted = reconcile_all()
    if drifted:
        logger.error(f"Inventory reconciliation found {len(drifted)} drifting product(s)")
    return {'drifted': [report['sku'] for report in drifted]}


@shared_task
def scan_low_stock():
    """Report active products at or below their minimum stock level."""
    from inventory.services import low_stock_products

    products = list(low_stock_products().values('sku', 'available_stock', 'min_stock_level'))
    for product in products:
        logger.warning(
            f"Low stock: {product['sku']} has {product['available_stock']} available "
            f"(minimum {product['min_stock_level']})"
        )
    return {'low_stock': len(products)}
