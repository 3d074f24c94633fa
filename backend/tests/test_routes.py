"""Tests for the REST and WebSocket surface."""

import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ttn_relay.exceptions import UpstreamError
from ttn_relay.main import app
from ttn_relay.routers import live_router, set_relay_connector, set_snapshot_fetcher
from ttn_relay.services import DeviceRegistry, RelayConnector


@pytest.fixture
def client():
    # No `with`: the lifespan (and its MQTT session) never starts
    yield TestClient(app)
    set_snapshot_fetcher(None)
    set_relay_connector(None)


def fake_fetcher(registry, latest=None, configured=None, recent=None):
    return SimpleNamespace(
        registry=registry,
        fetch_latest=AsyncMock(return_value=latest),
        fetch_latest_for_configured_devices=AsyncMock(return_value=configured or []),
        fetch_recent=AsyncMock(return_value=recent or []),
    )


# =============================================================================
# REST
# =============================================================================

def test_latest_message_returns_stored_uplink_unmodified(client, buoy_uplink):
    fetcher = fake_fetcher(DeviceRegistry(generic_device_id="buoy-1"), latest=buoy_uplink)
    set_snapshot_fetcher(fetcher)

    response = client.get("/api/latest-message")

    assert response.status_code == 200
    assert response.json() == buoy_uplink
    fetcher.fetch_latest.assert_awaited_once_with("buoy-1")


def test_latest_message_null_when_nothing_stored(client):
    set_snapshot_fetcher(fake_fetcher(DeviceRegistry(generic_device_id="buoy-1"), latest=None))

    response = client.get("/api/latest-message")

    assert response.status_code == 200
    assert response.json() is None


def test_latest_message_without_devices_uses_application_query(client, weather_uplink):
    fetcher = fake_fetcher(DeviceRegistry(), recent=[weather_uplink])
    set_snapshot_fetcher(fetcher)

    assert client.get("/api/latest-message").json() == weather_uplink
    fetcher.fetch_recent.assert_awaited_once_with(limit=1)
    fetcher.fetch_latest.assert_not_awaited()


def test_latest_messages_returns_a_list(client, registry, buoy_uplink, weather_uplink):
    set_snapshot_fetcher(fake_fetcher(registry, configured=[buoy_uplink, weather_uplink]))

    response = client.get("/api/latest-messages")

    assert response.status_code == 200
    assert response.json() == [buoy_uplink, weather_uplink]


def test_latest_messages_empty_list(client, registry):
    set_snapshot_fetcher(fake_fetcher(registry, configured=[]))
    assert client.get("/api/latest-messages").json() == []


def test_upstream_failure_is_a_500_with_details(client, registry):
    fetcher = fake_fetcher(registry)
    fetcher.fetch_latest_for_configured_devices.side_effect = UpstreamError(
        "TTN Storage API returned HTTP 401", status_code=401, details="invalid token"
    )
    set_snapshot_fetcher(fetcher)

    response = client.get("/api/latest-messages")

    assert response.status_code == 500
    assert response.json() == {"error": "TTN Storage API returned HTTP 401", "details": "invalid token"}


def test_rest_before_startup(client):
    response = client.get("/api/latest-messages")
    assert response.status_code == 500


def test_root_lists_endpoints(client):
    body = client.get("/").json()
    assert body["name"] == "TTN Sensor Relay API"
    assert body["endpoints"]["latest_messages"] == "GET /api/latest-messages"


def test_health_before_startup(client):
    assert client.get("/health").json()["status"] == "starting"


def test_health_reports_upstream_state(client, registry):
    set_relay_connector(RelayConnector("au1", "reef-monitor@ttn", "NNSXS.TEST", registry))

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["upstream"]["status"] == "disconnected"
    assert body["upstream"]["retry_count"] == 0
    assert body["listeners"] == 0
    assert body["devices"] == {"buoy-1": "buoy", "station-1": "weather"}


# =============================================================================
# LIVE WEBSOCKET
# =============================================================================

@pytest.mark.parametrize("path", ["/", "/ws"])
def test_websocket_acks_and_registers(client, registry, path):
    connector = RelayConnector("au1", "reef-monitor@ttn", "NNSXS.TEST", registry)
    set_relay_connector(connector)

    with client.websocket_connect(path) as websocket:
        assert websocket.receive_json() == {"type": "connection", "status": "connected"}
        assert connector.listener_count == 1


def test_websocket_before_startup_is_closed(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
    assert excinfo.value.code == 1011


def wait_for_listeners(connector: RelayConnector, count: int):
    """The route removes its listener on the app's loop, after the socket closes."""
    for _ in range(200):
        if connector.listener_count == count:
            return
        time.sleep(0.01)
    raise AssertionError(f"expected {count} listeners, have {connector.listener_count}")


def test_websocket_relays_uplinks_without_replay(registry, buoy_uplink, weather_uplink):
    connector = RelayConnector("au1", "reef-monitor@ttn", "NNSXS.TEST", registry)
    set_relay_connector(connector)
    buoy_topic = "v3/reef-monitor@ttn/devices/buoy-1/up"
    weather_topic = "v3/reef-monitor@ttn/devices/station-1/up"

    # Only the live router, so every socket shares one event loop and no MQTT session starts
    live_app = FastAPI()
    live_app.include_router(live_router)

    try:
        with TestClient(live_app) as client:
            with client.websocket_connect("/ws") as first:
                assert first.receive_json() == {"type": "connection", "status": "connected"}

                client.portal.call(connector.handle_message, buoy_topic, json.dumps(buoy_uplink).encode())
                assert first.receive_json() == {
                    "type": "message",
                    "topic": buoy_topic,
                    "payload": buoy_uplink,
                    "deviceType": "buoy",
                }

                with client.websocket_connect("/ws") as second:
                    assert second.receive_json() == {"type": "connection", "status": "connected"}
                    assert connector.listener_count == 2

                    client.portal.call(connector.handle_message, weather_topic, json.dumps(weather_uplink).encode())
                    assert second.receive_json()["payload"] == weather_uplink
                    assert first.receive_json()["payload"] == weather_uplink

                wait_for_listeners(connector, 1)

            wait_for_listeners(connector, 0)
    finally:
        set_relay_connector(None)
