"""Pytest configuration and fixtures for the relay tests."""

from __future__ import annotations

import json
from typing import Any

import pytest

from ttn_relay.exceptions import ListenerDeliveryError
from ttn_relay.services import DeviceRegistry


class RecordingListener:
    """Listener that keeps everything it is given."""

    def __init__(self):
        self.received: list[dict] = []

    def deliver(self, envelope: dict) -> None:
        self.received.append(envelope)

    def of_type(self, frame_type: str) -> list[dict]:
        return [envelope for envelope in self.received if envelope["type"] == frame_type]


class BrokenListener:
    """Listener whose socket is gone."""

    def __init__(self):
        self.attempts = 0

    def deliver(self, envelope: dict) -> None:
        self.attempts += 1
        raise ListenerDeliveryError("listener is closed")


@pytest.fixture
def buoy_uplink() -> dict[str, Any]:
    """Stored/relayed uplink from the buoy."""
    return {
        "end_device_ids": {
            "device_id": "buoy-1",
            "application_ids": {"application_id": "reef-monitor"},
        },
        "received_at": "2024-01-01T00:00:00Z",
        "uplink_message": {"decoded_payload": {"Temp": 21.5}},
    }


@pytest.fixture
def weather_uplink() -> dict[str, Any]:
    return {
        "end_device_ids": {"device_id": "station-1"},
        "received_at": "2024-01-01T00:05:00.123456789Z",
        "uplink_message": {
            "decoded_payload": {"Temp": 19.0, "Humidity": 64.2, "Pressure": 1012.3},
        },
    }


@pytest.fixture
def buoy_payload(buoy_uplink) -> bytes:
    """The buoy uplink as the broker delivers it."""
    return json.dumps(buoy_uplink).encode("utf-8")


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry(buoy_device_id="buoy-1", weather_device_id="station-1")


@pytest.fixture
def empty_registry() -> DeviceRegistry:
    return DeviceRegistry()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def make_listener():
    return RecordingListener


@pytest.fixture
def broken_listener() -> BrokenListener:
    return BrokenListener()
