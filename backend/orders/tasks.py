"""Celery tasks for order persistence."""

import logging
from decimal import Decimal

from celery import shared_task

logger = logging.getLogger(__name__)


def _decimal(value):
    return None if value is None else Decimal(str(value))


@shared_task
def persist_trip_summary_task(summary: dict):
    """
    Celery task to record a completed trip in the durable order store.

    Queued by the dispatch coordinator when a trip reaches ``delivered``.
    A booking id that was already recorded is skipped, so task retries and
    duplicate deliveries never create a second order.
    """
    from orders.models import Order
    from orders.store import create_record

    booking_id = summary.get("booking_id")
    try:
        existing = Order.objects.filter(booking_id=booking_id).first() if booking_id else None
        if existing:
            logger.info("Trip %s already recorded as order %s", booking_id, existing.id)
            return existing.id

        order = create_record(
            vendor_id=summary.get("vendor_id") or "",
            pickup_location=summary["pickup_location"],
            drop_location=summary["drop_location"],
            load_type=summary.get("load_type") or "",
            load_weight_kg=_decimal(summary.get("load_weight_kg")),
            status=summary.get("status", "delivered"),
            driver_id=summary.get("driver_id"),
            booking_id=booking_id,
            fare_amount=_decimal(summary.get("fare")),
            distance_travelled_m=summary.get("distance_travelled_m"),
        )
        return order.id
    except Exception as e:
        logger.error(f"Error recording trip {booking_id}: {e}")
        return None
