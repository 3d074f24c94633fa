"""
Live API Router
===============

The WebSocket the dashboard keeps open for real-time uplinks.

WHAT THE BROWSER SEES:
---------------------
1. Right after connecting:
       {"type": "connection", "status": "connected"}
2. For every uplink TTN sends us:
       {"type": "message", "topic": "...", "payload": {...}, "deviceType": "buoy"}
3. Whenever our TTN session goes down or comes back:
       {"type": "connection", "status": "disconnected" | "connected"}

Nothing the browser sends is used. Messages from before the browser
connected are never replayed; use GET /api/latest-messages for those.

Served at both "/" (what the dashboard opens, same host as the page) and "/ws".
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket

from ttn_relay.models import ConnectionEnvelope, ConnectionStatus
from ttn_relay.services.listeners import WebSocketListener

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

_relay_connector = None  # Set when the app starts


def set_relay_connector(connector):
    """Called from the app lifespan to hand the router its connector."""
    global _relay_connector
    _relay_connector = connector


def get_relay_connector():
    """The relay connector, or None before startup."""
    return _relay_connector


# =============================================================================
# WEBSOCKET ENDPOINT
# =============================================================================

@router.websocket("/")
@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """
    Stream uplinks to one dashboard until it goes away.
    """
    connector = get_relay_connector()
    await websocket.accept()
    if connector is None:
        await websocket.close(code=1011, reason="Server not fully started yet")
        return

    logger.info("[Live] WebSocket client connected")

    # The ack goes through the queue so it is always the first frame
    listener = WebSocketListener(websocket)
    listener.deliver(ConnectionEnvelope(status=ConnectionStatus.CONNECTED).to_wire())
    connector.register_listener(listener)
    writer = asyncio.create_task(listener.run())

    try:
        while listener.is_open:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        connector.remove_listener(listener)
        listener.close()
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        logger.info("[Live] WebSocket client disconnected")
