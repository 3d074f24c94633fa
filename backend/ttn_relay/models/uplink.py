"""
Uplink Models
=============
Pydantic models for TTN uplinks and for what the relay sends to the dashboard.

This module defines all data structures used throughout the relay:
- Internal models: a parsed uplink and the upstream connection state
- Wire models: the envelopes pushed over the live WebSocket
- Response models: what the REST surface returns on errors

WHAT A TTN UPLINK LOOKS LIKE (trimmed):
    {
        "end_device_ids": {"device_id": "buoy-1", ...},
        "received_at": "2024-01-01T00:00:00.123456789Z",
        "uplink_message": {
            "decoded_payload": {"Temp": 21.5, "WaterT1": 18.2, ...},
            ...
        }
    }

The relay never rewrites an uplink. The parsed JSON object is kept verbatim
in ``DeviceMessage.raw`` and is what listeners and REST callers receive.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================

class DeviceKind(str, Enum):
    """
    What kind of physical unit a device identity belongs to.

    Kinds come from configuration only (see DeviceRegistry). A device that is
    not configured is UNKNOWN.
    """
    BUOY = "buoy"
    WEATHER = "weather"
    GENERIC = "generic"
    UNKNOWN = "unknown"


class ConnectionStatus(str, Enum):
    """Binary state of the upstream broker session."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# TTN reports nanoseconds; datetime only holds microseconds.
_FRACTION_PATTERN = re.compile(r"\.(\d{6})\d+")


def parse_received_at(value: Any) -> datetime:
    """
    Parse a TTN ``received_at`` timestamp.

    Falls back to the current UTC time when the value is missing or malformed.
    """
    if not isinstance(value, str) or not value:
        return datetime.now(timezone.utc)
    cleaned = _FRACTION_PATTERN.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# INTERNAL MODELS
# =============================================================================

class DeviceMessage(BaseModel):
    """
    One received uplink.

    Created on receipt and never changed afterwards.

    Fields:
        device_id: end_device_ids.device_id ("unknown" if TTN left it out)
        received_at: When TTN received the uplink
        payload: The decoded payload (sensor field -> value, not validated)
        raw: The whole uplink exactly as it arrived
        device_kind: Configured kind of the device
        is_historical: True when loaded from storage instead of the live feed
    """
    model_config = ConfigDict(frozen=True)

    device_id: str = Field(..., description="TTN device identifier")
    received_at: datetime = Field(..., description="Receipt timestamp")
    payload: dict[str, Any] = Field(default_factory=dict, description="Decoded payload")
    raw: dict[str, Any] = Field(default_factory=dict, description="Uplink as received")
    device_kind: DeviceKind = Field(default=DeviceKind.UNKNOWN)
    is_historical: bool = Field(default=False)

    @classmethod
    def from_uplink(
        cls,
        raw: dict[str, Any],
        device_kind: DeviceKind = DeviceKind.UNKNOWN,
        is_historical: bool = False,
    ) -> "DeviceMessage":
        """Build a message from a parsed TTN uplink object."""
        ids = raw.get("end_device_ids") or {}
        uplink = raw.get("uplink_message") or {}
        payload = uplink.get("decoded_payload") if isinstance(uplink, dict) else None

        return cls(
            device_id=str(ids.get("device_id") or "unknown") if isinstance(ids, dict) else "unknown",
            received_at=parse_received_at(raw.get("received_at")),
            payload=payload if isinstance(payload, dict) else {},
            raw=raw,
            device_kind=device_kind,
            is_historical=is_historical,
        )


class ConnectionState(BaseModel):
    """
    Process-wide state of the upstream broker session.

    Owned by the RelayConnector. retry_count only grows while the session is
    down and goes back to zero on every successful connect.
    """
    status: ConnectionStatus = Field(default=ConnectionStatus.DISCONNECTED)
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(None, description="Why the last session ended")
    connected_at: Optional[datetime] = Field(None, description="Start of the current session")
    subscribed_topic: Optional[str] = Field(None, description="Topic filter in use")


# =============================================================================
# WIRE MODELS - What the live WebSocket sends to the dashboard
# =============================================================================

class ConnectionEnvelope(BaseModel):
    """
    Connection status frame.

    Sent once as an acknowledgement when a client connects, and again to
    everyone whenever the upstream session goes up or down.
    """
    type: Literal["connection"] = "connection"
    status: ConnectionStatus

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class MessageEnvelope(BaseModel):
    """
    One uplink, relayed.

    Example:
        {
            "type": "message",
            "topic": "v3/reef@ttn/devices/buoy-1/up",
            "payload": { ...uplink exactly as received... },
            "deviceType": "buoy"
        }
    """
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["message"] = "message"
    topic: str
    payload: dict[str, Any]
    device_type: Optional[DeviceKind] = Field(None, alias="deviceType")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class ErrorResponse(BaseModel):
    """Body returned by the REST surface when TTN could not be queried."""
    error: str = Field(..., description="What failed")
    details: Optional[str] = Field(None, description="Upstream error details")
