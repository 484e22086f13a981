import asyncio

from asgiref.sync import async_to_sync
from channels.layers import InMemoryChannelLayer, get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.test import SimpleTestCase, TransactionTestCase

from services.dispatch import get_dispatch_coordinator, reset_dispatch_coordinator

from .registry import CLIENT_EVENT, ConnectionRegistry, group_name
from .routing import websocket_urlpatterns

application = URLRouter(websocket_urlpatterns)


class GroupNameTests(SimpleTestCase):
    def test_safe_names_pass_through(self):
        self.assertEqual(group_name("drivers"), "drivers")
        self.assertEqual(group_name("driver_D-1.a"), "driver_D-1.a")

    def test_unsafe_names_are_hashed(self):
        name = group_name("customer_asha@example.com")
        self.assertTrue(name.startswith("ch."))
        self.assertEqual(name, group_name("customer_asha@example.com"))
        self.assertNotEqual(name, group_name("customer_ravi@example.com"))


class ConnectionRegistryTests(SimpleTestCase):
    def setUp(self):
        self.layer = InMemoryChannelLayer()
        self.registry = ConnectionRegistry(self.layer)

    async def receive(self, connection_id):
        return await asyncio.wait_for(self.layer.receive(connection_id), 0.5)

    async def test_publish_reaches_members_and_counts_recipients(self):
        first = self.registry.on_connect(await self.layer.new_channel())
        second = self.registry.on_connect(await self.layer.new_channel())
        await self.registry.subscribe(first, "drivers")
        await self.registry.subscribe(second, "drivers")

        count = await self.registry.publish("drivers", "booking:new", {"id": "BK1"}, exclude=second)

        self.assertEqual(count, 1)
        message = await self.receive(first)
        self.assertEqual(message["type"], CLIENT_EVENT)
        self.assertEqual(message["event"], "booking:new")
        self.assertEqual(message["data"], {"id": "BK1"})
        self.assertEqual(message["exclude"], [second])
        # Excluded member still gets the group message and drops it in the consumer
        self.assertEqual((await self.receive(second))["exclude"], [second])

    async def test_subscribe_unknown_connection_is_ignored(self):
        self.assertFalse(await self.registry.subscribe("specific.inmemory!ghost", "drivers"))
        self.assertEqual(self.registry.members("drivers"), set())

    async def test_disconnect_leaves_all_channels(self):
        connection = self.registry.on_connect(await self.layer.new_channel())
        await self.registry.subscribe(connection, "drivers")
        await self.registry.subscribe(connection, "driver_D1")

        removed = await self.registry.on_disconnect(connection)

        self.assertEqual(removed.channels, set())
        self.assertEqual(self.registry.members("drivers"), set())
        self.assertEqual(self.registry.members("driver_D1"), set())
        self.assertEqual(len(self.registry), 0)
        self.assertIsNone(await self.registry.on_disconnect(connection))

    async def test_send_to_closed_connection_is_dropped(self):
        connection = self.registry.on_connect(await self.layer.new_channel())
        await self.registry.on_disconnect(connection)

        self.assertFalse(await self.registry.send_to(connection, "booking:taken", {"bookingId": "BK1"}))
        self.assertFalse(await self.registry.send_to(None, "booking:taken", {"bookingId": "BK1"}))

    def test_bind_records_role_and_entity(self):
        self.registry.on_connect("specific.inmemory!abc")

        conn = self.registry.bind("specific.inmemory!abc", "customer", "C1")

        self.assertEqual((conn.role, conn.entity_id), ("customer", "C1"))
        self.assertIsNone(self.registry.bind("specific.inmemory!missing", "driver", "D1"))


class DispatchConsumerTests(TransactionTestCase):
    """Drives the full socket path: frames in, coordinator, frames out.

    Consumers close stale database connections on every message, so this
    class needs database access even though dispatch itself is in memory.
    """

    def setUp(self):
        async_to_sync(get_channel_layer().flush)()
        reset_dispatch_coordinator()
        self.archived = []

    def tearDown(self):
        reset_dispatch_coordinator()

    async def open_socket(self):
        communicator = WebsocketCommunicator(application, "/ws/dispatch/")
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        return communicator

    async def record_archive(self, summary):
        self.archived.append(summary)

    async def test_booking_round_trip_over_websocket(self):
        driver = await self.open_socket()
        get_dispatch_coordinator().trips.archiver = self.record_archive

        await driver.send_json_to({"type": "driver:online", "data": {"driverId": "D1"}})
        self.assertEqual(await driver.receive_json_from(), {"type": "bookings:list", "data": []})

        customer = await self.open_socket()
        await customer.send_json_to({"type": "booking:new", "data": {
            "id": "BK1",
            "pickup_location": "A",
            "drop_location": "B",
            "load_type": "furniture",
            "fare": 500,
        }})
        self.assertEqual(
            await customer.receive_json_from(),
            {"type": "booking:confirmed", "data": {"bookingId": "BK1", "driversNotified": 1}},
        )
        offer = await driver.receive_json_from()
        self.assertEqual(offer["type"], "booking:new")
        self.assertEqual(offer["data"]["id"], "BK1")

        await driver.send_json_to({"type": "booking:accept", "data": {
            "bookingId": "BK1", "driverId": "D1", "driverInfo": {"name": "Ravi"},
        }})
        self.assertEqual(
            await customer.receive_json_from(),
            {"type": "booking:accepted", "data": {"bookingId": "BK1", "driver": {"name": "Ravi"}}},
        )
        # The winner is excluded from the booking:taken broadcast
        self.assertTrue(await driver.receive_nothing())

        await driver.send_json_to({"type": "trip:status", "data": {"bookingId": "BK1", "status": "delivered"}})
        self.assertEqual(
            await customer.receive_json_from(),
            {"type": "trip:status", "data": {"bookingId": "BK1", "status": "delivered"}},
        )
        await get_dispatch_coordinator().trips.flush_archives()
        self.assertEqual([s["booking_id"] for s in self.archived], ["BK1"])

        await driver.disconnect()
        await customer.disconnect()

    async def test_disconnect_takes_driver_offline(self):
        driver = await self.open_socket()
        await driver.send_json_to({"type": "driver:online", "data": "D1"})
        await driver.receive_json_from()
        self.assertTrue(get_dispatch_coordinator().presence.is_online("D1"))

        await driver.disconnect()

        self.assertFalse(get_dispatch_coordinator().presence.is_online("D1"))
        self.assertEqual(len(get_dispatch_coordinator().registry), 0)

    async def test_malformed_frames_get_error_replies(self):
        socket = await self.open_socket()

        await socket.send_json_to(["not", "an", "object"])
        self.assertEqual(
            await socket.receive_json_from(),
            {"type": "error", "data": {"message": "Frame must be a JSON object"}},
        )

        await socket.send_json_to({"data": {}})
        self.assertEqual(
            await socket.receive_json_from(),
            {"type": "error", "data": {"message": "Message type is required"}},
        )

        await socket.send_json_to({"type": "booking:teleport", "data": {}})
        self.assertEqual(
            await socket.receive_json_from(),
            {"type": "error", "data": {"event": "booking:teleport", "message": "Unknown event: booking:teleport"}},
        )

        await socket.disconnect()
