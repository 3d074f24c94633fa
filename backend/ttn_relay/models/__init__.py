"""
Models Package
==============

This is where all our data models live.
Import from here instead of the individual files.

Example:
    from ttn_relay.models import DeviceMessage, DeviceKind
"""

from .uplink import (
    # Kinds and states
    DeviceKind,
    ConnectionStatus,
    ConnectionState,

    # A received uplink
    DeviceMessage,
    parse_received_at,

    # What goes over the live WebSocket
    ConnectionEnvelope,
    MessageEnvelope,

    # What the REST surface returns on failure
    ErrorResponse,
)

__all__ = [
    "DeviceKind",
    "ConnectionStatus",
    "ConnectionState",
    "DeviceMessage",
    "parse_received_at",
    "ConnectionEnvelope",
    "MessageEnvelope",
    "ErrorResponse",
]
