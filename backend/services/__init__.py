"""
Services package - Business logic layer.

This package contains the business logic that is decoupled from the
HTTP/WebSocket layer.

Modules:
    - dispatch: In-memory booking dispatch and trip lifecycle coordination
"""

from .dispatch import (
    DispatchCoordinator,
    get_dispatch_coordinator,
    reset_dispatch_coordinator,
    TripStatus,
    DispatchError,
    DuplicateBookingError,
    InvalidEventError,
    InvalidStatusTransitionError,
    UnknownEventError,
)

__all__ = [
    # Dispatch
    "DispatchCoordinator",
    "get_dispatch_coordinator",
    "reset_dispatch_coordinator",
    "TripStatus",
    # Exceptions
    "DispatchError",
    "DuplicateBookingError",
    "InvalidEventError",
    "InvalidStatusTransitionError",
    "UnknownEventError",
]
