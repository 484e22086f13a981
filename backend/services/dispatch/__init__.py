"""
Booking dispatch service - real-time coordination of drivers, bookings and trips.

This package handles:
    - Driver presence (who is online, fan-out to all drivers)
    - The open booking board (create, first-accept-wins claim, cancel)
    - Active trips (location relay, forward-only status progression)
    - Event validation and serialised event handling
"""

from .coordinator import (
    DispatchCoordinator,
    build_dispatch_coordinator,
    get_dispatch_coordinator,
    reset_dispatch_coordinator,
)
from .booking_board import BookingBoard
from .presence import PresenceTracker
from .trip_coordinator import TripCoordinator
from .models import ActiveTrip, Booking, TripStatus
from .exceptions import (
    DispatchError,
    DuplicateBookingError,
    InvalidEventError,
    InvalidStatusTransitionError,
    UnknownEventError,
)

__all__ = [
    # Coordinator
    "DispatchCoordinator",
    "build_dispatch_coordinator",
    "get_dispatch_coordinator",
    "reset_dispatch_coordinator",
    # Components
    "BookingBoard",
    "PresenceTracker",
    "TripCoordinator",
    # Records
    "ActiveTrip",
    "Booking",
    "TripStatus",
    # Exceptions
    "DispatchError",
    "DuplicateBookingError",
    "InvalidEventError",
    "InvalidStatusTransitionError",
    "UnknownEventError",
]
