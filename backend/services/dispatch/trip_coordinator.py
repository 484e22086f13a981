"""
Active trip tracking: live location relay and status progression.

A trip exists from the moment a booking is claimed until the driver reports
``delivered``. Events for unknown trips are dropped silently, which covers
late GPS pings after delivery and retries from stale sessions.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from django.utils import timezone

from common.utils import calculate_distance
from .events import DRIVER_LOCATION, TRIP_STATUS
from .exceptions import InvalidStatusTransitionError
from .models import ActiveTrip, Booking, TripStatus

logger = logging.getLogger(__name__)


def customer_channel(customer_id: str) -> str:
    """Private channel for a single customer (all of their connections)."""
    return f"customer_{customer_id}"


class TripCoordinator:
    """Owns the active trip map and relays trip events to the customer."""

    def __init__(
        self,
        registry,
        archiver: Optional[Callable[[Dict[str, Any]], Awaitable[Any]]] = None,
        enforce_forward_status: bool = True,
    ):
        self.registry = registry
        self.archiver = archiver
        self.enforce_forward_status = enforce_forward_status
        self._trips: Dict[str, ActiveTrip] = {}
        self._pending_archives: Set[asyncio.Task] = set()

    def open_trip(
        self,
        booking: Booking,
        driver_id: str,
        driver_profile: Dict[str, Any],
        driver_connection: Optional[str] = None,
    ) -> ActiveTrip:
        """Create the trip for a freshly claimed booking. Never suspends."""
        trip = ActiveTrip(
            booking_id=booking.booking_id,
            driver_id=driver_id,
            driver_profile=dict(driver_profile or {}),
            customer_connection=booking.requester,
            customer_id=booking.customer_id,
            customer_phone=booking.customer_phone,
            driver_connection=driver_connection,
            pickup_location=booking.pickup_location,
            drop_location=booking.drop_location,
            load_type=booking.load_type,
            fare=booking.fare,
            load_weight_kg=booking.load_weight_kg,
        )
        self._trips[trip.booking_id] = trip
        return trip

    def get(self, booking_id: str) -> Optional[ActiveTrip]:
        return self._trips.get(booking_id)

    def has(self, booking_id: str) -> bool:
        return booking_id in self._trips

    def count(self) -> int:
        return len(self._trips)

    # ---------------------- Driver events ----------------------

    async def report_location(self, booking_id: str, location: Dict[str, float]) -> Optional[ActiveTrip]:
        """Record the driver's position and relay it to the customer."""
        trip = self._trips.get(booking_id)
        if trip is None:
            logger.debug("Location for unknown trip %s ignored", booking_id)
            return None

        if trip.driver_location:
            trip.distance_travelled_m += calculate_distance(
                trip.driver_location["latitude"],
                trip.driver_location["longitude"],
                location["latitude"],
                location["longitude"],
            )
        trip.driver_location = dict(location)
        trip.updated_at = timezone.now()

        await self.notify_customer(trip, DRIVER_LOCATION, {
            "bookingId": booking_id,
            "location": trip.driver_location,
            "status": trip.status.value,
        })
        logger.debug(
            "Driver location update for booking %s: %.4f, %.4f",
            booking_id, location["latitude"], location["longitude"],
        )
        return trip

    async def update_status(self, booking_id: str, new_status) -> Optional[ActiveTrip]:
        """
        Move a trip to ``new_status`` and relay it to the customer.

        On ``delivered`` the trip is evicted after the relay and its summary is
        handed to the archiver in a background task, so a slow store never holds
        up other events. Archiving is best effort: a failure is logged and the
        trip stays delivered.

        Raises:
            InvalidStatusTransitionError: If forward-only enforcement is on and
                the update goes backward
        """
        trip = self._trips.get(booking_id)
        if trip is None:
            logger.debug("Status for unknown trip %s ignored", booking_id)
            return None

        status = TripStatus(new_status)
        if self.enforce_forward_status:
            if status is trip.status:
                logger.debug("Duplicate status %s for trip %s ignored", status.value, booking_id)
                return trip
            if status.rank < trip.status.rank:
                raise InvalidStatusTransitionError(
                    f"Cannot move trip from {trip.status.value} to {status.value}",
                    booking_id=booking_id,
                )

        trip.status = status
        trip.updated_at = timezone.now()
        logger.info("Trip %s status: %s", booking_id, status.value)

        await self.notify_customer(trip, TRIP_STATUS, {
            "bookingId": booking_id,
            "status": status.value,
        })

        if status.is_terminal:
            self._trips.pop(booking_id, None)
            logger.info("Trip %s completed", booking_id)
            self._schedule_archive(trip)
        return trip

    # ---------------------- Helpers ----------------------

    async def notify_customer(self, trip: ActiveTrip, event: str, payload: Dict[str, Any]):
        """Relay to every connection of the customer, including the one that booked."""
        reached = set()
        if trip.customer_id:
            channel = customer_channel(trip.customer_id)
            reached = self.registry.members(channel)
            await self.registry.publish(channel, event, payload)
        if trip.customer_connection not in reached:
            await self.registry.send_to(trip.customer_connection, event, payload)

    async def flush_archives(self):
        """Wait for every queued archive to finish."""
        if self._pending_archives:
            await asyncio.gather(*list(self._pending_archives), return_exceptions=True)

    def _schedule_archive(self, trip: ActiveTrip):
        if self.archiver is None:
            return
        task = asyncio.get_running_loop().create_task(self._archive(trip))
        self._pending_archives.add(task)
        task.add_done_callback(self._archive_done)

    def _archive_done(self, task: asyncio.Task):
        self._pending_archives.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Archive task crashed", exc_info=task.exception())

    async def _archive(self, trip: ActiveTrip):
        try:
            result = await self.archiver(trip.summary())
        except Exception:
            logger.exception("Failed to archive trip %s", trip.booking_id)
            return
        logger.info("Archived trip %s: %s", trip.booking_id, result)
