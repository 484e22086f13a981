"""
Open booking board.

A booking id is always in exactly one of three states:

    absent  --create-->  open  --claim-->  claimed (an ActiveTrip exists)
                          |
                          +--cancel / expire-->  absent

``claim`` checks and mutates without suspending, so under the coordinator's
run-to-completion handling the first accept executed is the only winner.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from django.utils import timezone

from .events import (
    BOOKING_ACCEPTED,
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_EXPIRED,
    BOOKING_NEW,
    BOOKING_TAKEN,
)
from .exceptions import DuplicateBookingError
from .models import ActiveTrip, Booking

logger = logging.getLogger(__name__)

ABSENT = "absent"
OPEN = "open"
CLAIMED = "claimed"


class BookingBoard:
    """Holds open bookings and mediates their lifecycle."""

    def __init__(self, registry, presence, trips):
        self.registry = registry
        self.presence = presence
        self.trips = trips
        self._open: Dict[str, Booking] = {}

    def state_of(self, booking_id: str) -> str:
        if booking_id in self._open:
            return OPEN
        if self.trips.has(booking_id):
            return CLAIMED
        return ABSENT

    def get(self, booking_id: str) -> Optional[Booking]:
        return self._open.get(booking_id)

    def open_bookings(self) -> List[Booking]:
        """Open bookings, oldest first."""
        return sorted(self._open.values(), key=lambda b: b.created_at)

    def count(self) -> int:
        return len(self._open)

    # ---------------------- Transitions ----------------------

    async def create(self, booking_id: str, booking_data: Dict[str, Any], requester: str) -> Booking:
        """
        Open a booking, broadcast it to online drivers and acknowledge the requester.

        Args:
            booking_id: Client-generated booking id
            booking_data: Validated ``booking:new`` payload
            requester: Connection id of the customer that submitted it

        Returns:
            The open Booking

        Raises:
            DuplicateBookingError: If the id is already open or claimed
        """
        state = self.state_of(booking_id)
        if state != ABSENT:
            raise DuplicateBookingError(
                f"Booking {booking_id} already exists ({state})", booking_id=booking_id
            )

        booking = Booking(
            booking_id=booking_id,
            pickup_location=booking_data["pickup_location"],
            drop_location=booking_data["drop_location"],
            load_type=booking_data["load_type"],
            fare=booking_data["fare"],
            requester=requester,
            customer_name=booking_data.get("customer_name") or "",
            customer_phone=booking_data.get("customer_phone") or "",
            vehicle_type=booking_data.get("vehicle_type") or "",
            customer_id=booking_data.get("customer_id"),
            load_weight_kg=booking_data.get("load_weight_kg"),
        )
        self._open[booking_id] = booking
        drivers_notified = self.presence.count()
        logger.info("New booking %s, notifying %d drivers", booking_id, drivers_notified)

        await self.presence.broadcast_to_all(BOOKING_NEW, booking.to_payload())
        await self.registry.send_to(requester, BOOKING_CONFIRMED, {
            "bookingId": booking_id,
            "driversNotified": drivers_notified,
        })
        return booking

    async def claim(
        self,
        booking_id: str,
        driver_id: str,
        driver_profile: Optional[Dict[str, Any]] = None,
        driver_connection: Optional[str] = None,
    ) -> Optional[ActiveTrip]:
        """
        Hand an open booking to the first driver that accepts it.

        Returns:
            The new ActiveTrip, or None if the booking was not open (already
            claimed, cancelled or never existed)
        """
        booking = self._open.pop(booking_id, None)
        if booking is None:
            logger.info(
                "Driver %s lost booking %s (%s)", driver_id, booking_id, self.state_of(booking_id)
            )
            if driver_connection:
                await self.registry.send_to(driver_connection, BOOKING_TAKEN, {"bookingId": booking_id})
            return None

        trip = self.trips.open_trip(booking, driver_id, driver_profile or {}, driver_connection)
        logger.info("Driver %s accepted booking %s", driver_id, booking_id)

        await self.trips.notify_customer(trip, BOOKING_ACCEPTED, {
            "bookingId": booking_id,
            "driver": trip.driver_profile,
        })
        await self.presence.broadcast_to_all(
            BOOKING_TAKEN,
            {"bookingId": booking_id},
            exclude={driver_connection, self.presence.connection_for(driver_id)},
        )
        return trip

    async def cancel(self, booking_id: str) -> Optional[Booking]:
        """Withdraw an open booking. Claimed or unknown bookings are left alone."""
        booking = self._open.pop(booking_id, None)
        if booking is None:
            logger.debug("Cancel for booking %s ignored (%s)", booking_id, self.state_of(booking_id))
            return None

        logger.info("Booking %s cancelled", booking_id)
        await self.presence.broadcast_to_all(BOOKING_CANCELLED, {"bookingId": booking_id})
        return booking

    def reject(self, booking_id: str, driver_id: str) -> None:
        """A driver declined; the booking stays open for everyone else."""
        logger.info("Driver %s rejected booking %s", driver_id, booking_id)

    async def expire_stale(self, ttl_seconds: float, now=None) -> List[Booking]:
        """
        Remove open bookings older than ``ttl_seconds``.

        Drivers are told the booking is cancelled; the customer is told it expired.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(seconds=ttl_seconds)
        stale = [b for b in self._open.values() if b.created_at <= cutoff]
        for booking in stale:
            del self._open[booking.booking_id]

        for booking in stale:
            logger.info("Booking %s expired unclaimed", booking.booking_id)
            await self.presence.broadcast_to_all(BOOKING_CANCELLED, {"bookingId": booking.booking_id})
            await self.registry.send_to(booking.requester, BOOKING_EXPIRED, {"bookingId": booking.booking_id})
        return stale
