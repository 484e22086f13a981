"""
Connection registry for the dispatch WebSocket channel.

Tracks every live connection (keyed by its Channels channel name), the role
and entity it identified itself as, and the logical channels it belongs to.
Logical channels are backed by channel-layer groups, so fan-out works the
same with the in-memory layer and with channels_redis.

This is pure transport plumbing: payloads are never inspected.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set, Union

from channels.exceptions import ChannelFull
from channels.layers import get_channel_layer
from django.utils import timezone

logger = logging.getLogger(__name__)

# Channel-layer message type, handled by BaseConsumer.client_event
CLIENT_EVENT = "client.event"

_GROUP_SAFE = re.compile(r"^[a-zA-Z0-9\-_.]{1,80}$")


def group_name(channel: str) -> str:
    """Map a logical channel (e.g. ``driver_<id>``) to a valid group name."""
    if _GROUP_SAFE.match(channel):
        return channel
    digest = hashlib.sha1(channel.encode("utf-8")).hexdigest()
    return f"ch.{digest}"


def _connection_ids(value) -> Set[str]:
    if not value:
        return set()
    if isinstance(value, str):
        return {value}
    return {v for v in value if v}


@dataclass
class Connection:
    """A live client connection."""
    connection_id: str
    role: Optional[str] = None
    entity_id: Optional[str] = None
    channels: Set[str] = field(default_factory=set)
    connected_at: Any = field(default_factory=timezone.now)


class ConnectionRegistry:
    """Owns live connections and their channel memberships."""

    def __init__(self, channel_layer=None):
        self.channel_layer = channel_layer or get_channel_layer()
        self._connections: Dict[str, Connection] = {}
        self._members: Dict[str, Set[str]] = {}

    # ---------------------- Lifecycle ----------------------

    def on_connect(self, connection_id: str) -> str:
        self._connections[connection_id] = Connection(connection_id=connection_id)
        logger.debug("Connection %s registered (%d live)", connection_id, len(self._connections))
        return connection_id

    async def on_disconnect(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection and leave every channel it had joined."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return None
        for channel in list(conn.channels):
            await self.unsubscribe(connection_id, channel)
        del self._connections[connection_id]
        logger.debug("Connection %s removed (%d live)", connection_id, len(self._connections))
        return conn

    def bind(self, connection_id: str, role: str, entity_id: Optional[str] = None) -> Optional[Connection]:
        """Record which driver/customer a connection speaks for."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return None
        if conn.role and conn.role != role:
            logger.warning(
                "Connection %s switching role from %s to %s", connection_id, conn.role, role
            )
        conn.role = role
        if entity_id is not None:
            conn.entity_id = entity_id
        return conn

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def is_connected(self, connection_id: Optional[str]) -> bool:
        return connection_id is not None and connection_id in self._connections

    def members(self, channel: str) -> Set[str]:
        return set(self._members.get(channel, ()))

    def __len__(self):
        return len(self._connections)

    # ---------------------- Channel membership ----------------------

    async def subscribe(self, connection_id: str, channel: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            logger.debug("Ignoring subscribe of unknown connection %s to %s", connection_id, channel)
            return False
        await self.channel_layer.group_add(group_name(channel), connection_id)
        conn.channels.add(channel)
        self._members.setdefault(channel, set()).add(connection_id)
        return True

    async def unsubscribe(self, connection_id: str, channel: str) -> bool:
        members = self._members.get(channel)
        if not members or connection_id not in members:
            return False
        await self.channel_layer.group_discard(group_name(channel), connection_id)
        members.discard(connection_id)
        if not members:
            del self._members[channel]
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.channels.discard(channel)
        return True

    # ---------------------- Delivery ----------------------

    async def publish(
        self,
        channel: str,
        event: str,
        payload: Any,
        exclude: Union[str, Iterable[str], None] = None,
    ) -> int:
        """
        Fan an event out to every member of a channel.

        Args:
            channel: Logical channel name
            event: Event name delivered to clients
            payload: JSON-serialisable payload
            exclude: Connection id (or ids) that should not receive the event

        Returns:
            Number of registered recipients (point-in-time, excluding ``exclude``)
        """
        excluded = _connection_ids(exclude)
        recipients = self._members.get(channel, set()) - excluded
        message = {"type": CLIENT_EVENT, "event": event, "data": payload}
        if excluded:
            message["exclude"] = sorted(excluded)

        logger.debug("WS -> %s: %s (%d recipients)", channel, event, len(recipients))
        await self.channel_layer.group_send(group_name(channel), message)
        return len(recipients)

    async def send_to(self, connection_id: Optional[str], event: str, payload: Any) -> bool:
        """Deliver an event to one connection. Closed connections are skipped."""
        if not self.is_connected(connection_id):
            logger.debug("Dropping %s for closed connection %s", event, connection_id)
            return False

        try:
            await self.channel_layer.send(
                connection_id, {"type": CLIENT_EVENT, "event": event, "data": payload}
            )
        except ChannelFull:
            logger.warning("Channel full, dropped %s for connection %s", event, connection_id)
            return False
        return True
