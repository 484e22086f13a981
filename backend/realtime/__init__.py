"""
Realtime app for WebSocket booking dispatch.

This app provides:
- The dispatch WebSocket consumer used by both driver and customer apps
- The connection registry (live connections, roles, channel memberships)

Key Components:
    - registry.py: Connection registry backed by channel-layer groups
    - consumers/: WebSocket consumers (base frame handling, dispatch)
    - routing.py: WebSocket URL patterns

Usage:
    from realtime.consumers import DispatchConsumer
    from realtime.registry import ConnectionRegistry
"""
