"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .dispatch_consumer import DispatchConsumer

__all__ = [
    "BaseConsumer",
    "DispatchConsumer",
]
