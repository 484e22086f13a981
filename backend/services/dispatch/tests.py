import asyncio
from datetime import timedelta

from channels.layers import InMemoryChannelLayer
from django.test import SimpleTestCase

from realtime.registry import ConnectionRegistry

from .booking_board import ABSENT, CLAIMED, OPEN
from .coordinator import DispatchCoordinator
from .events import parse_event
from .exceptions import InvalidEventError, UnknownEventError
from .models import TripStatus
from .presence import DRIVERS_CHANNEL


def booking_payload(booking_id="BK1", **overrides):
    payload = {
        "id": booking_id,
        "pickup_location": "A",
        "drop_location": "B",
        "load_type": "furniture",
        "fare": 500,
        "customer_name": "Asha",
        "customer_phone": "9000000000",
        "vehicle_type": "mini-truck",
    }
    payload.update(overrides)
    return payload


class RecordingArchiver:
    def __init__(self):
        self.summaries = []

    async def __call__(self, summary):
        self.summaries.append(summary)
        return len(self.summaries)


class DispatchTestCase(SimpleTestCase):
    """Runs the coordinator against a real in-memory channel layer."""

    booking_ttl_seconds = None
    enforce_forward_status = True

    def setUp(self):
        self.layer = InMemoryChannelLayer()
        self.registry = ConnectionRegistry(self.layer)
        self.archiver = RecordingArchiver()
        self.coordinator = DispatchCoordinator(
            self.registry,
            archiver=self.archiver,
            booking_ttl_seconds=self.booking_ttl_seconds,
            enforce_forward_status=self.enforce_forward_status,
        )

    async def connect(self):
        connection_id = await self.layer.new_channel()
        self.coordinator.connection_opened(connection_id)
        return connection_id

    async def online_driver(self, driver_id):
        connection_id = await self.connect()
        await self.coordinator.handle(connection_id, "driver:online", {"driverId": driver_id})
        await self.drain(connection_id)
        return connection_id

    async def drain(self, connection_id):
        """Collect (event, data) pairs delivered to a connection so far."""
        frames = []
        while True:
            try:
                message = await asyncio.wait_for(self.layer.receive(connection_id), 0.05)
            except asyncio.TimeoutError:
                return frames
            if connection_id in message.get("exclude", ()):
                continue
            frames.append((message["event"], message["data"]))

    def events_named(self, frames, name):
        return [data for event, data in frames if event == name]


class BookingScenarioTests(DispatchTestCase):
    async def test_booking_flow_from_request_to_delivery(self):
        d1 = await self.online_driver("D1")
        d2 = await self.online_driver("D2")
        d3 = await self.online_driver("D3")
        customer = await self.connect()

        applied = await self.coordinator.handle(customer, "booking:new", booking_payload())
        self.assertTrue(applied)

        for driver in (d1, d2, d3):
            offers = self.events_named(await self.drain(driver), "booking:new")
            self.assertEqual(len(offers), 1)
            self.assertEqual(offers[0]["id"], "BK1")
            self.assertEqual(offers[0]["fare"], 500)
            self.assertEqual(offers[0]["pickup_location"], "A")
        self.assertEqual(
            await self.drain(customer),
            [("booking:confirmed", {"bookingId": "BK1", "driversNotified": 3})],
        )

        await self.coordinator.handle(d2, "booking:accept", {
            "bookingId": "BK1",
            "driverId": "D2",
            "driverInfo": {"name": "Ravi", "vehicle": "WB-1001"},
        })
        self.assertEqual(await self.drain(customer), [
            ("booking:accepted", {"bookingId": "BK1", "driver": {"name": "Ravi", "vehicle": "WB-1001"}}),
        ])
        self.assertEqual(await self.drain(d1), [("booking:taken", {"bookingId": "BK1"})])
        self.assertEqual(await self.drain(d3), [("booking:taken", {"bookingId": "BK1"})])
        self.assertEqual(await self.drain(d2), [])

        location = {"latitude": 32.1, "longitude": 76.3}
        await self.coordinator.handle(d2, "driver:location", {"bookingId": "BK1", "location": location})
        self.assertEqual(await self.drain(customer), [
            ("driver:location", {"bookingId": "BK1", "location": location, "status": "accepted"}),
        ])

        await self.coordinator.handle(d2, "trip:status", {"bookingId": "BK1", "status": "delivered"})
        self.assertEqual(await self.drain(customer), [
            ("trip:status", {"bookingId": "BK1", "status": "delivered"}),
        ])
        self.assertFalse(self.coordinator.trips.has("BK1"))
        self.assertEqual(self.coordinator.bookings.state_of("BK1"), ABSENT)

        await self.coordinator.handle(d2, "driver:location", {"bookingId": "BK1", "location": location})
        self.assertEqual(await self.drain(customer), [])
        self.assertEqual(await self.drain(d2), [])

        await self.coordinator.trips.flush_archives()
        self.assertEqual(len(self.archiver.summaries), 1)
        summary = self.archiver.summaries[0]
        self.assertEqual(summary["booking_id"], "BK1")
        self.assertEqual(summary["driver_id"], "D2")
        self.assertEqual(summary["status"], "delivered")
        self.assertEqual(summary["vendor_id"], "9000000000")

    async def test_driver_coming_online_receives_open_bookings(self):
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload("BK1"))
        await self.coordinator.handle(customer, "booking:new", booking_payload("BK2", fare=750))

        driver = await self.connect()
        await self.coordinator.handle(driver, "driver:online", "D9")

        snapshots = self.events_named(await self.drain(driver), "bookings:list")
        self.assertEqual(len(snapshots), 1)
        self.assertEqual([b["id"] for b in snapshots[0]], ["BK1", "BK2"])

    async def test_booking_with_no_drivers_online_reports_zero(self):
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        self.assertEqual(
            await self.drain(customer),
            [("booking:confirmed", {"bookingId": "BK1", "driversNotified": 0})],
        )
        self.assertEqual(self.coordinator.bookings.state_of("BK1"), OPEN)


class ClaimTests(DispatchTestCase):
    async def test_first_accept_wins_and_late_driver_is_told(self):
        d1 = await self.online_driver("D1")
        d2 = await self.online_driver("D2")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.drain(d1)
        await self.drain(d2)

        await self.coordinator.handle(d1, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})
        await self.coordinator.handle(d2, "booking:accept", {"bookingId": "BK1", "driverId": "D2"})

        self.assertEqual(self.coordinator.trips.count(), 1)
        self.assertEqual(self.coordinator.trips.get("BK1").driver_id, "D1")
        self.assertEqual(self.coordinator.bookings.state_of("BK1"), CLAIMED)

        accepted = self.events_named(await self.drain(customer), "booking:accepted")
        self.assertEqual(len(accepted), 1)
        # Broadcast from the winning claim, then the direct reply to the losing accept
        self.assertEqual(
            self.events_named(await self.drain(d2), "booking:taken"),
            [{"bookingId": "BK1"}, {"bookingId": "BK1"}],
        )

    async def test_concurrent_accepts_create_a_single_trip(self):
        d1 = await self.online_driver("D1")
        d2 = await self.online_driver("D2")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        await asyncio.gather(
            self.coordinator.handle(d1, "booking:accept", {"bookingId": "BK1", "driverId": "D1"}),
            self.coordinator.handle(d2, "booking:accept", {"bookingId": "BK1", "driverId": "D2"}),
        )

        self.assertEqual(self.coordinator.trips.count(), 1)
        self.assertEqual(self.coordinator.trips.get("BK1").driver_id, "D1")
        self.assertEqual(len(self.events_named(await self.drain(customer), "booking:accepted")), 1)

    async def test_accept_from_second_connection_skips_both_driver_connections(self):
        presence_conn = await self.online_driver("D1")
        other = await self.online_driver("D2")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.drain(presence_conn)
        await self.drain(other)

        accept_conn = await self.connect()
        await self.coordinator.handle(accept_conn, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})

        self.assertEqual(self.coordinator.trips.get("BK1").driver_id, "D1")
        self.assertEqual(await self.drain(presence_conn), [])
        self.assertEqual(await self.drain(accept_conn), [])
        self.assertEqual(await self.drain(other), [("booking:taken", {"bookingId": "BK1"})])

    async def test_accept_for_unknown_booking_changes_nothing(self):
        driver = await self.online_driver("D1")

        applied = await self.coordinator.handle(driver, "booking:accept", {"bookingId": "NOPE", "driverId": "D1"})

        self.assertTrue(applied)
        self.assertEqual(self.coordinator.trips.count(), 0)
        self.assertEqual(await self.drain(driver), [("booking:taken", {"bookingId": "NOPE"})])

    async def test_reject_leaves_booking_open(self):
        driver = await self.online_driver("D1")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        await self.coordinator.handle(driver, "booking:reject", {"bookingId": "BK1", "driverId": "D1"})

        self.assertEqual(self.coordinator.bookings.state_of("BK1"), OPEN)


class CancelTests(DispatchTestCase):
    async def test_cancel_before_claim_withdraws_booking(self):
        driver = await self.online_driver("D1")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.drain(driver)

        await self.coordinator.handle(customer, "booking:cancel", "BK1")
        self.assertEqual(await self.drain(driver), [("booking:cancelled", {"bookingId": "BK1"})])

        await self.coordinator.handle(driver, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})
        self.assertEqual(self.coordinator.trips.count(), 0)
        self.assertEqual(self.coordinator.bookings.state_of("BK1"), ABSENT)
        self.assertEqual(self.events_named(await self.drain(customer), "booking:accepted"), [])

    async def test_cancel_after_claim_broadcasts_nothing(self):
        d1 = await self.online_driver("D1")
        d2 = await self.online_driver("D2")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.coordinator.handle(d1, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})
        await self.drain(d2)

        await self.coordinator.handle(customer, "booking:cancel", {"bookingId": "BK1"})

        self.assertEqual(await self.drain(d2), [])
        self.assertTrue(self.coordinator.trips.has("BK1"))

    async def test_duplicate_booking_id_is_rejected(self):
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.drain(customer)

        applied = await self.coordinator.handle(customer, "booking:new", booking_payload(fare=900))

        self.assertFalse(applied)
        errors = self.events_named(await self.drain(customer), "error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["event"], "booking:new")
        self.assertEqual(errors[0]["bookingId"], "BK1")
        self.assertEqual(self.coordinator.bookings.get("BK1").fare, 500)


class PresenceTests(DispatchTestCase):
    async def test_going_offline_twice_is_harmless(self):
        driver = await self.online_driver("D1")

        self.assertTrue(await self.coordinator.handle(driver, "driver:offline", {"driverId": "D1"}))
        self.assertTrue(await self.coordinator.handle(driver, "driver:offline", {"driverId": "D1"}))

        self.assertEqual(self.coordinator.presence.count(), 0)
        self.assertFalse(await self.coordinator.presence.mark_offline("D1"))
        self.assertEqual(await self.drain(driver), [])

    async def test_offline_driver_stops_receiving_broadcasts(self):
        driver = await self.online_driver("D1")
        await self.coordinator.handle(driver, "driver:offline", {"driverId": "D1"})

        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        self.assertEqual(await self.drain(driver), [])

    async def test_disconnect_clears_presence(self):
        driver = await self.online_driver("D1")
        other = await self.online_driver("D2")

        await self.coordinator.connection_closed(driver)

        self.assertFalse(self.coordinator.presence.is_online("D1"))
        self.assertTrue(self.coordinator.presence.is_online("D2"))
        self.assertEqual(self.coordinator.presence.drivers_on(driver), [])
        self.assertEqual(self.registry.members(DRIVERS_CHANNEL), {other})
        self.assertIsNone(self.registry.get(driver))

    async def test_second_connection_replaces_first(self):
        old = await self.online_driver("D1")
        new = await self.online_driver("D1")

        self.assertEqual(self.coordinator.presence.connection_for("D1"), new)
        self.assertEqual(self.coordinator.presence.count(), 1)

        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        self.assertEqual(await self.drain(old), [])
        self.assertEqual(len(self.events_named(await self.drain(new), "booking:new")), 1)

        # Closing the replaced connection must not take the driver offline
        await self.coordinator.connection_closed(old)
        self.assertTrue(self.coordinator.presence.is_online("D1"))


class CustomerChannelTests(DispatchTestCase):
    async def test_joined_customer_gets_updates_on_every_connection(self):
        phone = await self.connect()
        tablet = await self.connect()
        await self.coordinator.handle(phone, "customer:join", {"customerId": "C1"})
        await self.coordinator.handle(tablet, "customer:join", "C1")
        driver = await self.online_driver("D1")

        await self.coordinator.handle(phone, "booking:new", booking_payload())
        self.assertEqual(self.coordinator.bookings.get("BK1").customer_id, "C1")
        await self.drain(phone)

        await self.coordinator.handle(driver, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})

        self.assertEqual(len(self.events_named(await self.drain(phone), "booking:accepted")), 1)
        self.assertEqual(len(self.events_named(await self.drain(tablet), "booking:accepted")), 1)

    async def test_relay_skips_closed_customer_connection(self):
        driver = await self.online_driver("D1")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.coordinator.handle(driver, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})
        await self.coordinator.connection_closed(customer)

        applied = await self.coordinator.handle(
            driver, "driver:location", {"bookingId": "BK1", "location": {"latitude": 1, "longitude": 2}}
        )

        self.assertTrue(applied)
        self.assertEqual(self.coordinator.trips.get("BK1").driver_location, {"latitude": 1.0, "longitude": 2.0})


class TripStatusTests(DispatchTestCase):
    async def start_trip(self):
        self.driver = await self.online_driver("D1")
        self.customer = await self.connect()
        await self.coordinator.handle(self.customer, "booking:new", booking_payload())
        await self.coordinator.handle(self.driver, "booking:accept", {"bookingId": "BK1", "driverId": "D1"})
        await self.drain(self.customer)

    async def test_status_moves_forward_through_each_step(self):
        await self.start_trip()

        for status in ("reached_pickup", "in_transit", "delivered"):
            await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": status})

        self.assertEqual(
            self.events_named(await self.drain(self.customer), "trip:status"),
            [
                {"bookingId": "BK1", "status": "reached_pickup"},
                {"bookingId": "BK1", "status": "in_transit"},
                {"bookingId": "BK1", "status": "delivered"},
            ],
        )
        await self.coordinator.trips.flush_archives()
        self.assertEqual(len(self.archiver.summaries), 1)

    async def test_backward_status_is_rejected(self):
        await self.start_trip()
        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "in_transit"})
        await self.drain(self.customer)
        await self.drain(self.driver)

        applied = await self.coordinator.handle(
            self.driver, "trip:status", {"bookingId": "BK1", "status": "reached_pickup"}
        )

        self.assertFalse(applied)
        self.assertEqual(self.coordinator.trips.get("BK1").status, TripStatus.IN_TRANSIT)
        self.assertEqual(await self.drain(self.customer), [])
        errors = self.events_named(await self.drain(self.driver), "error")
        self.assertEqual(errors[0]["bookingId"], "BK1")

    async def test_repeated_status_is_not_relayed_twice(self):
        await self.start_trip()

        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "reached_pickup"})
        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "reached_pickup"})

        self.assertEqual(len(self.events_named(await self.drain(self.customer), "trip:status")), 1)
        self.assertEqual(self.events_named(await self.drain(self.driver), "error"), [])

    async def test_updates_after_delivery_are_ignored(self):
        await self.start_trip()
        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "delivered"})
        await self.drain(self.customer)

        self.assertIsNone(await self.coordinator.trips.update_status("BK1", "in_transit"))
        self.assertIsNone(
            await self.coordinator.trips.report_location("BK1", {"latitude": 1.0, "longitude": 1.0})
        )
        self.assertEqual(await self.drain(self.customer), [])
        await self.coordinator.trips.flush_archives()
        self.assertEqual(len(self.archiver.summaries), 1)

    async def test_distance_accumulates_between_location_reports(self):
        await self.start_trip()

        for lat in (28.6139, 28.6229):
            await self.coordinator.handle(
                self.driver, "driver:location",
                {"bookingId": "BK1", "location": {"latitude": lat, "longitude": 77.2090}},
            )

        # 0.009 degrees of latitude is roughly one kilometre
        self.assertAlmostEqual(self.coordinator.trips.get("BK1").distance_travelled_m, 1000, delta=10)

    async def test_failed_archive_still_evicts_trip(self):
        async def broken_archiver(summary):
            raise RuntimeError("database unavailable")

        self.coordinator.trips.archiver = broken_archiver
        await self.start_trip()

        with self.assertLogs("services.dispatch.trip_coordinator", level="ERROR"):
            applied = await self.coordinator.handle(
                self.driver, "trip:status", {"bookingId": "BK1", "status": "delivered"}
            )
            await self.coordinator.trips.flush_archives()

        self.assertTrue(applied)
        self.assertFalse(self.coordinator.trips.has("BK1"))
        self.assertEqual(
            await self.drain(self.customer), [("trip:status", {"bookingId": "BK1", "status": "delivered"})]
        )

    async def test_slow_archive_does_not_hold_up_other_trips(self):
        archive_started = asyncio.Event()

        async def slow_archiver(summary):
            archive_started.set()
            await asyncio.sleep(1.0)
            self.archiver.summaries.append(summary)

        self.coordinator.trips.archiver = slow_archiver
        await self.start_trip()
        other_driver = await self.online_driver("D2")
        await self.coordinator.handle(self.customer, "booking:new", booking_payload("BK2"))
        await self.coordinator.handle(other_driver, "booking:accept", {"bookingId": "BK2", "driverId": "D2"})

        loop = asyncio.get_running_loop()
        started = loop.time()
        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "delivered"})
        await asyncio.wait_for(archive_started.wait(), 0.5)
        await self.coordinator.handle(
            other_driver, "driver:location", {"bookingId": "BK2", "location": {"latitude": 1, "longitude": 2}}
        )
        self.assertLess(loop.time() - started, 0.5)
        self.assertEqual(self.archiver.summaries, [])

        await self.coordinator.trips.flush_archives()
        self.assertEqual([s["booking_id"] for s in self.archiver.summaries], ["BK1"])


class UnrestrictedStatusTests(TripStatusTests):
    enforce_forward_status = False

    async def test_backward_status_is_rejected(self):
        await self.start_trip()
        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "in_transit"})

        applied = await self.coordinator.handle(
            self.driver, "trip:status", {"bookingId": "BK1", "status": "reached_pickup"}
        )

        self.assertTrue(applied)
        self.assertEqual(self.coordinator.trips.get("BK1").status, TripStatus.REACHED_PICKUP)

    async def test_repeated_status_is_not_relayed_twice(self):
        await self.start_trip()

        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "reached_pickup"})
        await self.coordinator.handle(self.driver, "trip:status", {"bookingId": "BK1", "status": "reached_pickup"})

        self.assertEqual(len(self.events_named(await self.drain(self.customer), "trip:status")), 2)


class BookingExpiryTests(DispatchTestCase):
    booking_ttl_seconds = 60

    async def test_stale_booking_is_withdrawn_on_next_event(self):
        driver = await self.online_driver("D1")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())
        await self.drain(driver)
        await self.drain(customer)

        self.coordinator.bookings.get("BK1").created_at -= timedelta(seconds=120)
        late = await self.connect()
        await self.coordinator.handle(late, "driver:online", {"driverId": "D2"})

        self.assertEqual(self.coordinator.bookings.state_of("BK1"), ABSENT)
        self.assertEqual(await self.drain(driver), [("booking:cancelled", {"bookingId": "BK1"})])
        self.assertEqual(await self.drain(customer), [("booking:expired", {"bookingId": "BK1"})])
        self.assertEqual(self.events_named(await self.drain(late), "bookings:list"), [[]])

    async def test_fresh_booking_survives_sweep(self):
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        await self.online_driver("D1")

        self.assertEqual(self.coordinator.bookings.state_of("BK1"), OPEN)


class EventValidationTests(DispatchTestCase):
    def test_scalar_identifier_is_wrapped(self):
        self.assertEqual(parse_event("driver:online", "D1"), {"driverId": "D1"})
        self.assertEqual(parse_event("booking:cancel", 42), {"bookingId": "42"})

    def test_unknown_event_raises(self):
        with self.assertRaises(UnknownEventError):
            parse_event("booking:teleport", {})

    def test_out_of_range_location_raises(self):
        with self.assertRaises(InvalidEventError) as ctx:
            parse_event("driver:location", {"bookingId": "BK1", "location": {"latitude": 120, "longitude": 0}})
        self.assertIn("location", ctx.exception.errors)
        self.assertEqual(ctx.exception.booking_id, "BK1")

    def test_booking_defaults_are_filled(self):
        payload = parse_event("booking:new", {
            "id": "BK1", "pickup_location": "A", "drop_location": "B", "load_type": "boxes", "fare": "500",
        })
        self.assertEqual(payload["fare"], 500.0)
        self.assertEqual(payload["customer_name"], "")
        self.assertIsNone(payload["customer_id"])

    async def test_invalid_payload_sends_error_to_sender_only(self):
        driver = await self.online_driver("D1")
        customer = await self.connect()

        applied = await self.coordinator.handle(customer, "booking:new", {"id": "BK1", "fare": -5})

        self.assertFalse(applied)
        errors = self.events_named(await self.drain(customer), "error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["bookingId"], "BK1")
        self.assertIn("pickup_location", errors[0]["errors"])
        self.assertIn("fare", errors[0]["errors"])
        self.assertEqual(await self.drain(driver), [])
        self.assertEqual(self.coordinator.bookings.count(), 0)

    async def test_unknown_event_sends_error(self):
        connection = await self.connect()

        applied = await self.coordinator.handle(connection, "booking:teleport", {})

        self.assertFalse(applied)
        self.assertEqual(
            await self.drain(connection),
            [("error", {"event": "booking:teleport", "message": "Unknown event: booking:teleport"})],
        )

    async def test_stats_reflect_state(self):
        await self.online_driver("D1")
        customer = await self.connect()
        await self.coordinator.handle(customer, "booking:new", booking_payload())

        self.assertEqual(self.coordinator.stats(), {
            "connections": 2,
            "online_drivers": 1,
            "open_bookings": 1,
            "active_trips": 0,
        })
