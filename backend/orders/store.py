"""
Durable order store.

The only write path into the ``orders`` table. Used by the REST API and by
the Celery task that records completed trips.
"""

import logging
from typing import Optional

from django.db.models import QuerySet

from .models import Order

logger = logging.getLogger(__name__)


def create_record(
    vendor_id: str,
    pickup_location: str,
    drop_location: str,
    load_type: str,
    load_weight_kg=None,
    **extra,
) -> Order:
    """
    Persist a new order.

    Args:
        vendor_id: Customer/vendor that placed the order
        pickup_location: Pickup address
        drop_location: Drop address
        load_type: Description of the load
        load_weight_kg: Optional load weight
        **extra: Other Order fields (status, driver_id, booking_id, fare_amount,
            distance_travelled_m)

    Returns:
        The saved Order (status defaults to ``pending``)
    """
    order = Order.objects.create(
        vendor_id=vendor_id,
        pickup_location=pickup_location,
        drop_location=drop_location,
        load_type=load_type,
        load_weight_kg=load_weight_kg,
        **extra,
    )
    logger.info("Order %s created for vendor %s (%s)", order.id, vendor_id, order.status)
    return order


def list_by_status(status: str = "pending") -> QuerySet:
    """Orders in ``status``, newest first."""
    return Order.objects.filter(status=status).order_by("-created_at")


def get_by_id(order_id) -> Optional[Order]:
    return Order.objects.filter(id=order_id).first()
