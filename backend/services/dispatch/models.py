"""In-memory records held by the dispatch coordinator."""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from django.utils import timezone


class TripStatus(str, enum.Enum):
    """Trip status, in the only order a trip may progress through."""
    ACCEPTED = "accepted"
    REACHED_PICKUP = "reached_pickup"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"

    @classmethod
    def sequence(cls):
        return list(cls)

    @property
    def rank(self) -> int:
        return self.sequence().index(self)

    @property
    def is_terminal(self) -> bool:
        return self is TripStatus.DELIVERED


@dataclass
class Booking:
    """An open delivery request waiting for a driver."""
    booking_id: str
    pickup_location: str
    drop_location: str
    load_type: str
    fare: float
    requester: str
    customer_name: str = ""
    customer_phone: str = ""
    vehicle_type: str = ""
    customer_id: Optional[str] = None
    load_weight_kg: Optional[float] = None
    created_at: datetime = field(default_factory=timezone.now)

    def to_payload(self) -> Dict[str, Any]:
        """Booking object as drivers see it. The requester connection is never exposed."""
        payload = {
            "id": self.booking_id,
            "pickup_location": self.pickup_location,
            "drop_location": self.drop_location,
            "load_type": self.load_type,
            "fare": self.fare,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "vehicle_type": self.vehicle_type,
            "created_at": self.created_at.isoformat(),
        }
        if self.load_weight_kg is not None:
            payload["load_weight_kg"] = self.load_weight_kg
        return payload


@dataclass
class ActiveTrip:
    """A claimed booking being driven to delivery."""
    booking_id: str
    driver_id: str
    driver_profile: Dict[str, Any]
    customer_connection: str
    pickup_location: str
    drop_location: str
    load_type: str = ""
    fare: Optional[float] = None
    load_weight_kg: Optional[float] = None
    customer_id: Optional[str] = None
    customer_phone: str = ""
    driver_connection: Optional[str] = None
    status: TripStatus = TripStatus.ACCEPTED
    driver_location: Optional[Dict[str, float]] = None
    distance_travelled_m: float = 0.0
    accepted_at: datetime = field(default_factory=timezone.now)
    updated_at: datetime = field(default_factory=timezone.now)

    def summary(self) -> Dict[str, Any]:
        """Terminal record handed to the durable order store."""
        return {
            "booking_id": self.booking_id,
            "vendor_id": self.customer_id or self.customer_phone,
            "driver_id": self.driver_id,
            "pickup_location": self.pickup_location,
            "drop_location": self.drop_location,
            "load_type": self.load_type,
            "load_weight_kg": self.load_weight_kg,
            "fare": self.fare,
            "status": self.status.value,
            "distance_travelled_m": round(self.distance_travelled_m, 1),
            "accepted_at": self.accepted_at.isoformat(),
            "completed_at": self.updated_at.isoformat(),
        }
