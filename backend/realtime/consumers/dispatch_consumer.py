"""Dispatch WebSocket consumer shared by driver and customer apps."""

import logging
from typing import Any

from services.dispatch import get_dispatch_coordinator

from .base import BaseConsumer

logger = logging.getLogger(__name__)


class DispatchConsumer(BaseConsumer):
    """
    WebSocket consumer for the booking dispatch channel.

    One endpoint serves both roles: a connection becomes a driver or a
    customer through the first identifying event it sends
    (``driver:online`` / ``customer:join`` / ``booking:new``).

    All state lives in the process-wide DispatchCoordinator; this class only
    moves frames between the socket and the coordinator.
    """

    async def on_connect(self):
        self.coordinator = get_dispatch_coordinator()
        self.coordinator.connection_opened(self.channel_name)
        logger.info("New connection: %s", self.channel_name)

    async def on_disconnect(self, close_code):
        await self.coordinator.connection_closed(self.channel_name)

    async def handle_message(self, event: str, data: Any):
        await self.coordinator.handle(self.channel_name, event, data)
