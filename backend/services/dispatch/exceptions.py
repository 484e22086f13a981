"""Custom exceptions for booking dispatch."""


class DispatchError(Exception):
    """Base class for errors reported back to the client that sent the event."""

    def __init__(self, message: str, booking_id=None):
        super().__init__(message)
        self.message = message
        self.booking_id = booking_id


class UnknownEventError(DispatchError):
    """Raised when a client sends an event name the coordinator does not handle."""
    pass


class InvalidEventError(DispatchError):
    """Raised when an event payload is malformed or missing required fields."""

    def __init__(self, message: str, errors=None, booking_id=None):
        super().__init__(message, booking_id=booking_id)
        self.errors = errors or {}


class DuplicateBookingError(DispatchError):
    """Raised when a booking id is already open or claimed."""
    pass


class InvalidStatusTransitionError(DispatchError):
    """Raised when a trip status update would move a trip backward."""
    pass
