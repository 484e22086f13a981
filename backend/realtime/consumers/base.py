"""Base WebSocket consumer with shared functionality for all consumers."""

import logging
from typing import Any, Dict

from channels.generic.websocket import AsyncJsonWebsocketConsumer

logger = logging.getLogger(__name__)


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Base consumer speaking the ``{"type": <event>, "data": <payload>}`` frame format.

    Subclasses should override:
        - on_connect(): called after the socket is accepted
        - on_disconnect(close_code): called when the socket closes
        - handle_message(event, data): handle incoming events
    """

    async def connect(self):
        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        """Override in subclass for custom connect logic."""
        pass

    async def disconnect(self, close_code):
        try:
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for %s", self.channel_name)

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive_json(self, content: Any, **kwargs):
        """Route incoming frames to the handler by event name."""
        if not isinstance(content, dict):
            await self.send_error("Frame must be a JSON object")
            return

        event = content.get("type")
        if not event:
            await self.send_error("Message type is required")
            return

        try:
            await self.handle_message(event, content.get("data"))
        except Exception:
            logger.exception("Error handling message type %s", event)
            await self.send_error(f"Error processing {event}", event=event)

    async def handle_message(self, event: str, data: Any):
        """Override in subclass to handle specific events."""
        await self.send_error(f"Unknown message type: {event}", event=event)

    # ---------------------- Response Helpers ----------------------

    async def send_event(self, event: str, data: Any):
        await self.send_json({"type": event, "data": data})

    async def send_error(self, message: str, **extra):
        """Send an error frame to the client."""
        await self.send_event("error", {"message": message, **extra})

    # ---------------------- Channel layer handlers ----------------------

    async def client_event(self, message: Dict[str, Any]):
        """Forward a ``client.event`` from the channel layer to the socket."""
        if self.channel_name in (message.get("exclude") or ()):
            return
        await self.send_event(message["event"], message.get("data"))
