"""
Routers Package
===============

Routers are like the reception desk - they direct incoming requests
to the right place.
"""

from .messages import router as messages_router, set_snapshot_fetcher
from .live import router as live_router, set_relay_connector

__all__ = [
    "messages_router",
    "live_router",
    "set_snapshot_fetcher",
    "set_relay_connector",
]
