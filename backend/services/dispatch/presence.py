"""Online driver presence and fan-out to all online drivers."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

DRIVERS_CHANNEL = "drivers"


def driver_channel(driver_id: str) -> str:
    """Private channel for a single driver."""
    return f"driver_{driver_id}"


class PresenceTracker:
    """
    Maps driver ids to the connection they are online from.

    At most one connection per driver: a later ``mark_online`` for the same
    driver replaces the earlier mapping, and the replaced connection is taken
    out of the driver channels so it stops receiving broadcasts.
    """

    def __init__(self, registry):
        self.registry = registry
        self._online: Dict[str, str] = {}

    async def mark_online(self, driver_id: str, connection_id: str) -> int:
        """Put a driver online from ``connection_id``. Returns the online driver count."""
        previous = self._online.get(driver_id)
        self._online[driver_id] = connection_id

        if previous and previous != connection_id:
            logger.info(
                "Driver %s moved from connection %s to %s", driver_id, previous, connection_id
            )
            await self._leave_driver_channels(driver_id, previous)

        await self.registry.subscribe(connection_id, DRIVERS_CHANNEL)
        await self.registry.subscribe(connection_id, driver_channel(driver_id))

        logger.info("Driver %s is now online. Total drivers: %d", driver_id, self.count())
        return self.count()

    async def mark_offline(self, driver_id: str) -> bool:
        """Take a driver offline. Unknown drivers are a no-op."""
        connection_id = self._online.pop(driver_id, None)
        if connection_id is None:
            logger.debug("Driver %s already offline", driver_id)
            return False

        await self._leave_driver_channels(driver_id, connection_id)
        logger.info("Driver %s is now offline. Total drivers: %d", driver_id, self.count())
        return True

    async def on_connection_closed(self, connection_id: str) -> List[str]:
        """Drop every presence entry bound to a closed connection."""
        # Linear scan; fine for the tens-to-hundreds of drivers in one region
        removed = [
            driver_id for driver_id, conn in self._online.items() if conn == connection_id
        ]
        for driver_id in removed:
            del self._online[driver_id]
            await self._leave_driver_channels(driver_id, connection_id)
            logger.info("Driver %s disconnected. Total drivers: %d", driver_id, self.count())
        return removed

    def count(self) -> int:
        return len(self._online)

    def is_online(self, driver_id: str) -> bool:
        return driver_id in self._online

    def connection_for(self, driver_id: str) -> Optional[str]:
        return self._online.get(driver_id)

    def drivers_on(self, connection_id: str) -> List[str]:
        return [d for d, conn in self._online.items() if conn == connection_id]

    async def broadcast_to_all(self, event: str, payload: Any, exclude: Union[str, Iterable[str], None] = None) -> int:
        """Send an event to every online driver (no acknowledgement tracking)."""
        return await self.registry.publish(DRIVERS_CHANNEL, event, payload, exclude=exclude)

    async def send_to_driver(self, driver_id: str, event: str, payload: Any) -> int:
        return await self.registry.publish(driver_channel(driver_id), event, payload)

    async def _leave_driver_channels(self, driver_id: str, connection_id: str):
        await self.registry.unsubscribe(connection_id, driver_channel(driver_id))
        # Keep the all-drivers membership if the connection still speaks for another driver
        if connection_id not in self._online.values():
            await self.registry.unsubscribe(connection_id, DRIVERS_CHANNEL)
