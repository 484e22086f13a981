"""
Event names and payload schemas for the dispatch WebSocket channel.

Every inbound event has exactly one serializer. Payloads are validated before
they reach the coordinator, so handlers only ever see clean dicts. Events that
carry a bare identifier (``driver:online``, ``booking:cancel`` ...) may be sent
either as the raw string or wrapped in an object.
"""

from typing import Any, Dict

from rest_framework import serializers

from .exceptions import InvalidEventError, UnknownEventError
from .models import TripStatus

# ---------------------- Inbound (client -> server) ----------------------

DRIVER_ONLINE = "driver:online"
DRIVER_OFFLINE = "driver:offline"
CUSTOMER_JOIN = "customer:join"
BOOKING_NEW = "booking:new"
BOOKING_ACCEPT = "booking:accept"
BOOKING_REJECT = "booking:reject"
BOOKING_CANCEL = "booking:cancel"
DRIVER_LOCATION = "driver:location"
TRIP_STATUS = "trip:status"

# ---------------------- Outbound (server -> client) ----------------------

BOOKINGS_LIST = "bookings:list"
BOOKING_CONFIRMED = "booking:confirmed"
BOOKING_ACCEPTED = "booking:accepted"
BOOKING_TAKEN = "booking:taken"
BOOKING_CANCELLED = "booking:cancelled"
BOOKING_EXPIRED = "booking:expired"
ERROR = "error"


class DriverIdSerializer(serializers.Serializer):
    driverId = serializers.CharField(max_length=64)


class CustomerIdSerializer(serializers.Serializer):
    customerId = serializers.CharField(max_length=64)


class BookingIdSerializer(serializers.Serializer):
    bookingId = serializers.CharField(max_length=64)


class BookingNewSerializer(serializers.Serializer):
    """Booking as submitted by the customer app."""
    id = serializers.CharField(max_length=64)
    pickup_location = serializers.CharField()
    drop_location = serializers.CharField()
    load_type = serializers.CharField(max_length=100)
    fare = serializers.FloatField(min_value=0)
    customer_name = serializers.CharField(required=False, allow_blank=True, default="")
    customer_phone = serializers.CharField(required=False, allow_blank=True, default="")
    vehicle_type = serializers.CharField(required=False, allow_blank=True, default="")
    customer_id = serializers.CharField(required=False, allow_null=True, default=None, max_length=64)
    load_weight_kg = serializers.FloatField(required=False, allow_null=True, default=None, min_value=0)


class BookingAcceptSerializer(serializers.Serializer):
    bookingId = serializers.CharField(max_length=64)
    driverId = serializers.CharField(max_length=64)
    driverInfo = serializers.DictField(required=False, default=dict)


class BookingRejectSerializer(serializers.Serializer):
    bookingId = serializers.CharField(max_length=64)
    driverId = serializers.CharField(max_length=64)


class LocationSerializer(serializers.Serializer):
    latitude = serializers.FloatField(min_value=-90, max_value=90)
    longitude = serializers.FloatField(min_value=-180, max_value=180)


class DriverLocationSerializer(serializers.Serializer):
    bookingId = serializers.CharField(max_length=64)
    location = LocationSerializer()


class TripStatusSerializer(serializers.Serializer):
    bookingId = serializers.CharField(max_length=64)
    status = serializers.ChoiceField(choices=[s.value for s in TripStatus])


EVENT_SCHEMAS = {
    DRIVER_ONLINE: DriverIdSerializer,
    DRIVER_OFFLINE: DriverIdSerializer,
    CUSTOMER_JOIN: CustomerIdSerializer,
    BOOKING_NEW: BookingNewSerializer,
    BOOKING_ACCEPT: BookingAcceptSerializer,
    BOOKING_REJECT: BookingRejectSerializer,
    BOOKING_CANCEL: BookingIdSerializer,
    DRIVER_LOCATION: DriverLocationSerializer,
    TRIP_STATUS: TripStatusSerializer,
}

# Events whose payload may be a bare identifier instead of an object
SCALAR_EVENTS = {
    DRIVER_ONLINE: "driverId",
    DRIVER_OFFLINE: "driverId",
    CUSTOMER_JOIN: "customerId",
    BOOKING_CANCEL: "bookingId",
}


def parse_event(event: str, data: Any) -> Dict[str, Any]:
    """
    Validate an inbound payload against the schema registered for ``event``.

    Returns:
        The validated payload as a plain dict

    Raises:
        UnknownEventError: If no schema exists for the event name
        InvalidEventError: If the payload does not match the schema
    """
    schema = EVENT_SCHEMAS.get(event)
    if schema is None:
        raise UnknownEventError(f"Unknown event: {event}")

    field_name = SCALAR_EVENTS.get(event)
    if field_name and isinstance(data, (str, int)) and not isinstance(data, bool):
        data = {field_name: data}

    if not isinstance(data, dict):
        raise InvalidEventError(f"{event} payload must be an object")

    serializer = schema(data=data)
    if not serializer.is_valid():
        booking_id = data.get("bookingId") or data.get("id")
        raise InvalidEventError(
            f"Invalid {event} payload",
            errors=serializer.errors,
            booking_id=booking_id if isinstance(booking_id, str) else None,
        )
    return plain(serializer.validated_data)


def plain(value):
    """Convert DRF's OrderedDicts into plain dicts so payloads stay JSON friendly."""
    if isinstance(value, dict):
        return {key: plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [plain(item) for item in value]
    if isinstance(value, str):
        return str(value)
    return value
