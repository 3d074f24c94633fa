"""Tests for the Python dashboard client and the watch CLI."""

from datetime import datetime, timezone

import httpx
import pytest

from ttn_relay.client import MAX_MESSAGES, DashboardClient, MessageHistory
from ttn_relay.models import DeviceKind, DeviceMessage
from ttn_relay.watch import format_message, parse_args


def make_message(n: int, device_id: str = "buoy-1", kind: DeviceKind = DeviceKind.BUOY) -> DeviceMessage:
    return DeviceMessage(
        device_id=device_id,
        received_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        payload={"n": n},
        device_kind=kind,
    )


# =============================================================================
# HISTORY
# =============================================================================

def test_history_is_newest_first_and_bounded():
    history = MessageHistory()
    for n in range(MAX_MESSAGES + 10):
        history.add(make_message(n))

    entries = list(history)
    assert len(history) == 50
    assert entries[0].payload == {"n": 59}
    assert entries[-1].payload == {"n": 10}


def test_history_extend_keeps_batch_order():
    history = MessageHistory()
    history.add(make_message(0))
    history.extend([make_message(3), make_message(2), make_message(1)])

    assert [m.payload["n"] for m in history] == [3, 2, 1, 0]


def test_history_latest_by_kind_and_device():
    history = MessageHistory()
    history.add(make_message(1, "station-1", DeviceKind.WEATHER))
    history.add(make_message(2))
    history.add(make_message(3))

    assert history.latest_for_kind(DeviceKind.WEATHER).payload == {"n": 1}
    assert history.latest_for_device("buoy-1").payload == {"n": 3}
    assert history.latest_for_kind(DeviceKind.GENERIC) is None


# =============================================================================
# CONNECTION
# =============================================================================

def test_reconnect_delay_doubles_up_to_thirty_seconds():
    delays = [DashboardClient.reconnect_delay(n) for n in range(7)]
    assert delays == [1, 2, 4, 8, 16, 30, 30]


@pytest.mark.parametrize("base_url,expected", [
    ("http://localhost:3000", "ws://localhost:3000/ws"),
    ("https://relay.example.org/", "wss://relay.example.org/ws"),
    ("https://example.org/relay", "wss://example.org/relay/ws"),
])
def test_websocket_url(base_url, expected):
    assert DashboardClient(base_url).websocket_url == expected


def test_handle_connection_frames():
    client = DashboardClient("http://localhost:3000")

    assert client.handle_envelope({"type": "connection", "status": "connected"}) is None
    assert client.is_connected
    client.handle_envelope({"type": "connection", "status": "disconnected"})
    assert not client.is_connected


def test_handle_message_frame(buoy_uplink):
    client = DashboardClient("http://localhost:3000")

    message = client.handle_envelope(
        {"type": "message", "topic": "t", "payload": buoy_uplink, "deviceType": "buoy"}
    )

    assert message.device_id == "buoy-1"
    assert message.device_kind == DeviceKind.BUOY
    assert not message.is_historical
    assert list(client.history) == [message]


def test_handle_message_frame_with_unexpected_kind(buoy_uplink):
    client = DashboardClient("http://localhost:3000")
    message = client.handle_envelope({"type": "message", "payload": buoy_uplink, "deviceType": "submarine"})
    assert message.device_kind == DeviceKind.UNKNOWN


def test_handle_ignores_other_frames():
    client = DashboardClient("http://localhost:3000")
    assert client.handle_envelope({"type": "ping"}) is None
    assert len(client.history) == 0


@pytest.mark.asyncio
async def test_load_history(monkeypatch, buoy_uplink, weather_uplink):
    def handler(request):
        assert request.url.path == "/api/latest-messages"
        return httpx.Response(200, json=[buoy_uplink, weather_uplink])

    real_async_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx, "AsyncClient",
        lambda **kwargs: real_async_client(transport=httpx.MockTransport(handler), **kwargs),
    )

    client = DashboardClient("http://localhost:3000")
    assert await client.load_history() == 2

    entries = list(client.history)
    assert [m.device_id for m in entries] == ["buoy-1", "station-1"]
    assert all(m.is_historical for m in entries)


@pytest.mark.asyncio
async def test_load_history_failure_leaves_history_alone(monkeypatch):
    real_async_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx, "AsyncClient",
        lambda **kwargs: real_async_client(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "x"})), **kwargs
        ),
    )

    client = DashboardClient("http://localhost:3000")
    assert await client.load_history() == 0
    assert len(client.history) == 0


# =============================================================================
# WATCH CLI
# =============================================================================

def test_format_message():
    message = DeviceMessage(
        device_id="buoy-1",
        received_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        payload={"Temp": 21.5, "WaterT1": 18.2, "Note": "ignored", "TDS": True},
        device_kind=DeviceKind.BUOY,
        is_historical=True,
    )

    line = format_message(message)

    assert line.startswith("buoy-1 [buoy] ")
    assert "T: 21.5°C, WT: 18.2°C" in line
    assert "Note" not in line
    assert "TDS" not in line
    assert line.endswith(" (Historical)")


def test_parse_args_defaults():
    args = parse_args([])
    assert args.url == "http://localhost:3000"
    assert not args.no_history
