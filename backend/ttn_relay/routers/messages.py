"""
Messages API Router
===================

REST lookups for the latest stored uplinks.

The dashboard calls these once when it loads, then switches to the live
WebSocket for everything newer.

ALL ENDPOINTS:
-------------
GET /api/latest-messages - Latest stored uplink for every configured device
GET /api/latest-message  - Latest stored uplink for the primary device (or null)

Uplinks are returned exactly as TTN stored them. If TTN can't be reached
the response is a 500 with {"error": ..., "details": ...}.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException

from ttn_relay.models import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["messages"])

UPSTREAM_ERROR_RESPONSES = {500: {"model": ErrorResponse, "description": "TTN Storage API failure"}}


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

_snapshot_fetcher = None  # Set when the app starts


def set_snapshot_fetcher(fetcher):
    """Called from the app lifespan to hand the router its fetcher."""
    global _snapshot_fetcher
    _snapshot_fetcher = fetcher


def get_snapshot_fetcher():
    """Get the snapshot fetcher for use in endpoints."""
    if _snapshot_fetcher is None:
        raise HTTPException(status_code=500, detail="Server not fully started yet")
    return _snapshot_fetcher


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/latest-messages", responses=UPSTREAM_ERROR_RESPONSES)
async def get_latest_messages(fetcher=Depends(get_snapshot_fetcher)) -> list[dict[str, Any]]:
    """
    Latest stored uplink for each configured device.

    With no devices configured, returns up to 10 of the application's most
    recent uplinks instead.
    """
    messages = await fetcher.fetch_latest_for_configured_devices()
    logger.info(f"Returning {len(messages)} total messages")
    return messages


@router.get("/latest-message", responses=UPSTREAM_ERROR_RESPONSES)
async def get_latest_message(fetcher=Depends(get_snapshot_fetcher)) -> Optional[dict[str, Any]]:
    """
    Latest stored uplink for the primary device, or null.

    The primary device is TTN_DEVICE_ID if set, otherwise the first
    configured device. With nothing configured, it's the newest uplink in
    the whole application.
    """
    device_id = fetcher.registry.primary_device_id
    if device_id:
        return await fetcher.fetch_latest(device_id)

    recent = await fetcher.fetch_recent(limit=1)
    return recent[0] if recent else None
