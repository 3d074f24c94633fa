"""
Services Package
================

These are the "workers" that do the actual work.

- DeviceRegistry: Knows which configured device is the buoy, the weather station, ...
- RelayConnector: Holds the TTN MQTT session and fans uplinks out to listeners
- SnapshotFetcher: Asks TTN Storage for the latest stored uplinks
- WebSocketListener: One connected dashboard
"""

from .device_registry import DeviceRegistry, parse_device_kinds
from .listeners import Listener, WebSocketListener
from .relay_connector import RelayConnector
from .snapshot_fetcher import SnapshotFetcher

__all__ = [
    "DeviceRegistry",
    "parse_device_kinds",
    "Listener",
    "WebSocketListener",
    "RelayConnector",
    "SnapshotFetcher",
]
