"""
Dispatch coordinator: the single owner of presence, bookings and trips.

Every inbound event and every disconnect runs through ``handle`` /
``connection_closed`` under one asyncio lock, so handlers run to completion one
at a time across all connections. That is what makes "first accept wins" hold
without any locking at the call sites.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils.module_loading import import_string

from . import events
from .booking_board import BookingBoard
from .exceptions import DispatchError, InvalidEventError
from .presence import PresenceTracker
from .trip_coordinator import TripCoordinator, customer_channel

logger = logging.getLogger(__name__)

DRIVER = "driver"
CUSTOMER = "customer"


class DispatchCoordinator:
    """Routes validated client events to the presence, booking and trip components."""

    def __init__(
        self,
        registry,
        archiver=None,
        booking_ttl_seconds: Optional[float] = None,
        enforce_forward_status: bool = True,
    ):
        self.registry = registry
        self.presence = PresenceTracker(registry)
        self.trips = TripCoordinator(
            registry, archiver=archiver, enforce_forward_status=enforce_forward_status
        )
        self.bookings = BookingBoard(registry, self.presence, self.trips)
        self.booking_ttl_seconds = booking_ttl_seconds
        self._lock = asyncio.Lock()

        self._handlers = {
            events.DRIVER_ONLINE: self._on_driver_online,
            events.DRIVER_OFFLINE: self._on_driver_offline,
            events.CUSTOMER_JOIN: self._on_customer_join,
            events.BOOKING_NEW: self._on_booking_new,
            events.BOOKING_ACCEPT: self._on_booking_accept,
            events.BOOKING_REJECT: self._on_booking_reject,
            events.BOOKING_CANCEL: self._on_booking_cancel,
            events.DRIVER_LOCATION: self._on_driver_location,
            events.TRIP_STATUS: self._on_trip_status,
        }

    # ---------------------- Entry points ----------------------

    def connection_opened(self, connection_id: str) -> str:
        return self.registry.on_connect(connection_id)

    async def connection_closed(self, connection_id: str):
        """Transport drop: clean up presence like any other serialised event."""
        async with self._lock:
            drivers = await self.presence.on_connection_closed(connection_id)
            await self.registry.on_disconnect(connection_id)
        logger.info("Client disconnected: %s (drivers removed: %s)", connection_id, drivers or "none")

    async def handle(self, connection_id: str, event: str, data: Any) -> bool:
        """
        Validate and apply one client event.

        Returns:
            True if the event was applied, False if it was rejected (the client
            has been sent an ``error`` event in that case)
        """
        try:
            payload = events.parse_event(event, data)
        except DispatchError as exc:
            await self._send_error(connection_id, event, exc)
            return False

        async with self._lock:
            await self._expire_stale_bookings()
            try:
                await self._handlers[event](connection_id, payload)
            except DispatchError as exc:
                await self._send_error(connection_id, event, exc)
                return False
        return True

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self.registry),
            "online_drivers": self.presence.count(),
            "open_bookings": self.bookings.count(),
            "active_trips": self.trips.count(),
        }

    # ---------------------- Driver events ----------------------

    async def _on_driver_online(self, connection_id: str, payload: Dict[str, Any]):
        driver_id = payload["driverId"]
        self.registry.bind(connection_id, DRIVER, driver_id)
        await self.presence.mark_online(driver_id, connection_id)

        snapshot = [booking.to_payload() for booking in self.bookings.open_bookings()]
        await self.registry.send_to(connection_id, events.BOOKINGS_LIST, snapshot)

    async def _on_driver_offline(self, connection_id: str, payload: Dict[str, Any]):
        await self.presence.mark_offline(payload["driverId"])

    async def _on_booking_accept(self, connection_id: str, payload: Dict[str, Any]):
        self.registry.bind(connection_id, DRIVER, payload["driverId"])
        await self.bookings.claim(
            payload["bookingId"],
            payload["driverId"],
            payload.get("driverInfo") or {},
            driver_connection=connection_id,
        )

    async def _on_booking_reject(self, connection_id: str, payload: Dict[str, Any]):
        self.bookings.reject(payload["bookingId"], payload["driverId"])

    async def _on_driver_location(self, connection_id: str, payload: Dict[str, Any]):
        await self.trips.report_location(payload["bookingId"], payload["location"])

    async def _on_trip_status(self, connection_id: str, payload: Dict[str, Any]):
        await self.trips.update_status(payload["bookingId"], payload["status"])

    # ---------------------- Customer events ----------------------

    async def _on_customer_join(self, connection_id: str, payload: Dict[str, Any]):
        customer_id = payload["customerId"]
        self.registry.bind(connection_id, CUSTOMER, customer_id)
        await self.registry.subscribe(connection_id, customer_channel(customer_id))
        logger.info("Customer %s joined for updates", customer_id)

    async def _on_booking_new(self, connection_id: str, payload: Dict[str, Any]):
        conn = self.registry.get(connection_id)
        if conn is not None and conn.role is None:
            self.registry.bind(connection_id, CUSTOMER)
        if not payload.get("customer_id") and conn is not None and conn.role == CUSTOMER:
            payload["customer_id"] = conn.entity_id

        await self.bookings.create(payload["id"], payload, requester=connection_id)

    async def _on_booking_cancel(self, connection_id: str, payload: Dict[str, Any]):
        await self.bookings.cancel(payload["bookingId"])

    # ---------------------- Helpers ----------------------

    async def _expire_stale_bookings(self):
        if not self.booking_ttl_seconds:
            return
        await self.bookings.expire_stale(self.booking_ttl_seconds)

    async def _send_error(self, connection_id: str, event: str, exc: DispatchError):
        logger.warning("Rejected %s from %s: %s", event, connection_id, exc.message)
        payload = {"event": event, "message": exc.message}
        if exc.booking_id:
            payload["bookingId"] = exc.booking_id
        if isinstance(exc, InvalidEventError) and exc.errors:
            payload["errors"] = events.plain(exc.errors)
        await self.registry.send_to(connection_id, events.ERROR, payload)


# ---------------------- Process-wide instance ----------------------

_dispatch_coordinator: Optional[DispatchCoordinator] = None


def build_dispatch_coordinator(registry=None) -> DispatchCoordinator:
    """Build a coordinator from Django settings."""
    from realtime.registry import ConnectionRegistry

    archiver_path = getattr(settings, "DISPATCH_TRIP_ARCHIVER", None)
    return DispatchCoordinator(
        registry or ConnectionRegistry(),
        archiver=import_string(archiver_path) if archiver_path else None,
        booking_ttl_seconds=getattr(settings, "DISPATCH_BOOKING_TTL_SECONDS", None),
        enforce_forward_status=getattr(settings, "DISPATCH_ENFORCE_FORWARD_STATUS", True),
    )


def get_dispatch_coordinator() -> DispatchCoordinator:
    """Get singleton DispatchCoordinator instance."""
    global _dispatch_coordinator
    if _dispatch_coordinator is None:
        _dispatch_coordinator = build_dispatch_coordinator()
    return _dispatch_coordinator


def reset_dispatch_coordinator():
    """Drop the process-wide coordinator (all in-memory dispatch state is lost)."""
    global _dispatch_coordinator
    _dispatch_coordinator = None
