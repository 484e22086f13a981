"""End-to-end smoke test for the booking dispatch WebSocket.

Prerequisites:
1. `python manage.py migrate` and `daphne dispatch_backend.asgi:application`
   (or `python manage.py runserver` with daphne installed) must be running.
2. Install dependencies once: `pip install requests websocket-client`.

The script will:
- Check the server is healthy via the REST API.
- Put a demo driver online on one socket and a customer on another.
- Create a booking, accept it as the driver, stream two location updates and
  walk the trip through to delivered.
- Confirm the delivered trip was recorded in the order store.
"""

from __future__ import annotations

import json
import os
import time
import uuid
from typing import Any, Dict

import requests
import websocket  # type: ignore

BASE_URL = os.environ.get("DISPATCH_BASE_URL", "http://127.0.0.1:8000")
WS_URL = BASE_URL.replace("http", "ws", 1) + "/ws/dispatch/"
ORDERS_API = f"{BASE_URL}/api/orders"

DRIVER_ID = "ws_demo_driver"
CUSTOMER_ID = "ws_demo_customer"

ROUTE = [
    {"latitude": 28.6139, "longitude": 77.2090},
    {"latitude": 28.6229, "longitude": 77.2090},
]


def _send(ws: websocket.WebSocket, event: str, data: Any) -> None:
    ws.send(json.dumps({"type": event, "data": data}))


def _wait_for(ws: websocket.WebSocket, event: str, timeout: float = 10) -> Dict:
    """Read frames until ``event`` arrives; anything else is printed and skipped."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        ws.settimeout(max(deadline - time.time(), 0.1))
        frame = json.loads(ws.recv())
        if frame.get("type") == event:
            print(f"[WS] {event}: {frame.get('data')}")
            return frame.get("data")
        if frame.get("type") == "error":
            raise RuntimeError(f"Server rejected a frame: {frame.get('data')}")
        print(f"[WS] (skipped) {frame.get('type')}")
    raise TimeoutError(f"No {event} within {timeout} seconds")


def _check_health() -> None:
    resp = requests.get(f"{BASE_URL}/health/", timeout=10)
    data = resp.json()
    print(f"[HTTP] Health: {data['status']} | dispatch={data.get('dispatch')}")
    resp.raise_for_status()


def _find_order(booking_id: str, attempts: int = 10) -> Dict:
    # Persistence is queued; with a real worker it can lag the delivered event
    for _ in range(attempts):
        resp = requests.get(ORDERS_API + "/", params={"status": "delivered"}, timeout=10)
        resp.raise_for_status()
        for order in resp.json()["orders"]:
            if order["booking_id"] == booking_id:
                return order
        time.sleep(1)
    raise TimeoutError(f"Booking {booking_id} was never recorded as an order")


def main() -> None:
    _check_health()
    booking_id = f"BK-{uuid.uuid4().hex[:8]}"

    driver = websocket.create_connection(WS_URL, timeout=10)
    customer = websocket.create_connection(WS_URL, timeout=10)
    print("[WS] Driver and customer sockets connected")

    try:
        _send(driver, "driver:online", {"driverId": DRIVER_ID})
        _wait_for(driver, "bookings:list")

        _send(customer, "customer:join", {"customerId": CUSTOMER_ID})
        _send(customer, "booking:new", {
            "id": booking_id,
            "pickup_location": "Connaught Place",
            "drop_location": "India Gate",
            "load_type": "furniture",
            "load_weight_kg": 120,
            "fare": 500,
            "customer_name": "Demo Customer",
            "customer_phone": "9000000000",
            "vehicle_type": "mini-truck",
        })
        confirmed = _wait_for(customer, "booking:confirmed")
        if confirmed["driversNotified"] < 1:
            raise RuntimeError("Booking reached no drivers")

        _wait_for(driver, "booking:new")
        _send(driver, "booking:accept", {
            "bookingId": booking_id,
            "driverId": DRIVER_ID,
            "driverInfo": {"name": "Demo Driver", "vehicle_number": "WS-1001"},
        })
        _wait_for(customer, "booking:accepted")

        for point in ROUTE:
            _send(driver, "driver:location", {"bookingId": booking_id, "location": point})
            _wait_for(customer, "driver:location")

        for status in ("reached_pickup", "in_transit", "delivered"):
            _send(driver, "trip:status", {"bookingId": booking_id, "status": status})
            _wait_for(customer, "trip:status")
    finally:
        driver.close()
        customer.close()

    order = _find_order(booking_id)
    print(
        "[RESULT] Order",
        order["id"],
        "status=",
        order["status"],
        "distance_m=",
        order["distance_travelled_m"],
    )
    print("[DONE] End-to-end dispatch check completed.")


if __name__ == "__main__":
    main()
