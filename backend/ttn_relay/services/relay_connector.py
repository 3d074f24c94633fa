"""
Relay Connector
===============

Subscribes to TTN uplinks over MQTT and fans every one of them out to the
dashboards that are connected right now.

THE DATA FLOW:
-------------
    TTN MQTT broker ({region}.cloud.thethings.network:8883)
            |
            | v3/{app-id}/devices/{device-id or +}/up
            v
    [handle_message: JSON parse -> DeviceMessage]
            |
            | broadcast()
            v
    [every registered Listener]

RECONNECTING:
------------
The session runs inside one supervised task started by start() and ended by
stop(). When the session drops for any reason (bad API key, DNS, network,
TTN closing the connection) the state goes to DISCONNECTED, retry_count goes
up by one, and the next attempt happens after a fixed RECONNECT_DELAY. The
delay never grows and attempts never run out. Only stop() ends the loop.

Authentication: username = application id, password = API key. Create the
key in the TTN console with the "Read application traffic" right.
"""

import asyncio
import json
import logging
import ssl
import uuid
from datetime import datetime, timezone
from typing import Optional

import aiomqtt

from ttn_relay.exceptions import ParseError, UpstreamError
from ttn_relay.models import (
    ConnectionEnvelope,
    ConnectionState,
    ConnectionStatus,
    DeviceKind,
    DeviceMessage,
    MessageEnvelope,
)
from ttn_relay.services.device_registry import DeviceRegistry
from ttn_relay.services.listeners import Listener

logger = logging.getLogger(__name__)


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant {name}")


class RelayConnector:
    """
    Owns the broker session, the connection state and the listener set.

    HOW TO USE:
    ----------
    connector = RelayConnector(
        region="au1",
        application_id="reef-monitor@ttn",
        api_key="NNSXS.XXXX",
        registry=DeviceRegistry(buoy_device_id="reef-buoy-1"),
    )
    connector.start()                      # background session loop
    connector.register_listener(listener)  # now gets every uplink
    ...
    await connector.stop()
    """

    BROKER_HOST_TEMPLATE = "{region}.cloud.thethings.network"
    BROKER_PORT = 8883
    TOPIC_TEMPLATE = "v3/{application_id}/devices/{device}/up"
    RECONNECT_DELAY = 5.0
    KEEPALIVE = 60

    def __init__(
        self,
        region: str,
        application_id: str,
        api_key: str,
        registry: DeviceRegistry,
        reconnect_delay: float = RECONNECT_DELAY,
        forward_unknown: bool = True,
    ):
        """
        Set up the connector. Nothing connects until start() is called.

        Args:
            region: TTN cluster region (e.g. "eu1", "au1", "nam1")
            application_id: TTN application id, with or without "@ttn"
            api_key: API key used as the MQTT password
            registry: Which devices are which kind
            reconnect_delay: Seconds to wait between session attempts
            forward_unknown: Relay uplinks from devices not in the registry?
        """
        self.region = region
        self.application_id = application_id
        self.api_key = api_key
        self.registry = registry
        self.reconnect_delay = reconnect_delay
        self.forward_unknown = forward_unknown

        self.state = ConnectionState()
        self._listeners: set[Listener] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._client_id = f"ttn_relay_{uuid.uuid4().hex[:8]}"

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def broker_host(self) -> str:
        return self.BROKER_HOST_TEMPLATE.format(region=self.region)

    @property
    def topic(self) -> str:
        return self.TOPIC_TEMPLATE.format(
            application_id=self.application_id,
            device=self.registry.topic_filter,
        )

    @property
    def is_connected(self) -> bool:
        return self.state.status == ConnectionStatus.CONNECTED

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def register_listener(self, listener: Listener):
        """Start sending uplinks to a listener. Registering twice is a no-op."""
        if listener not in self._listeners:
            self._listeners.add(listener)
            logger.info(f"[Relay] Listener registered ({len(self._listeners)} open)")

    def remove_listener(self, listener: Listener):
        """Stop sending uplinks to a listener. Removing twice is a no-op."""
        if listener in self._listeners:
            self._listeners.discard(listener)
            logger.info(f"[Relay] Listener removed ({len(self._listeners)} open)")

    def broadcast(self, envelope: dict) -> int:
        """
        Hand one envelope to every listener registered right now.

        A listener that fails is logged and skipped; the rest still get it.

        Returns:
            How many listeners took the envelope
        """
        delivered = 0
        for listener in list(self._listeners):
            try:
                listener.deliver(envelope)
                delivered += 1
            except Exception as e:
                logger.warning(f"[Relay] Delivery to one listener failed: {e}")
        return delivered

    # =========================================================================
    # INBOUND MESSAGES
    # =========================================================================

    def parse_message(self, topic: str, payload: bytes) -> DeviceMessage:
        """
        Turn raw broker bytes into a DeviceMessage.

        NaN and Infinity are rejected; browsers can't parse them.

        Raises:
            ParseError: payload is not UTF-8 JSON describing an object
        """
        try:
            data = json.loads(payload, parse_constant=_reject_constant)
        except (TypeError, ValueError, RecursionError) as e:
            raise ParseError(topic, str(e)) from e
        if not isinstance(data, dict):
            raise ParseError(topic, f"expected a JSON object, got {type(data).__name__}")

        try:
            message = DeviceMessage.from_uplink(data)
        except ValueError as e:
            raise ParseError(topic, str(e)) from e
        return message.model_copy(update={"device_kind": self.registry.kind_of(message.device_id)})

    def handle_message(self, topic: str, payload: bytes) -> Optional[DeviceMessage]:
        """
        Process one inbound broker message.

        Bad messages are logged and dropped. Good ones go to every listener.

        Returns:
            The parsed message, or None if it was dropped
        """
        try:
            message = self.parse_message(topic, payload)
        except ParseError as e:
            logger.warning(f"[Relay] Dropping message: {e}")
            return None

        logger.info(f"[Relay] Uplink from {message.device_id} ({message.device_kind.value}) on {topic}")

        if message.device_kind == DeviceKind.UNKNOWN and not self.forward_unknown:
            logger.info(f"[Relay] {message.device_id} is not configured, not forwarding")
            return None

        envelope = MessageEnvelope(
            topic=topic,
            payload=message.raw,
            device_type=message.device_kind,
        )
        self.broadcast(envelope.to_wire())
        return message

    # =========================================================================
    # CONNECTION STATE
    # =========================================================================

    def _mark_connected(self):
        self.state = ConnectionState(
            status=ConnectionStatus.CONNECTED,
            retry_count=0,
            connected_at=datetime.now(timezone.utc),
            subscribed_topic=self.topic,
        )
        logger.info(f"[Relay] Connected to {self.broker_host}, subscribed to {self.topic}")
        self.broadcast(ConnectionEnvelope(status=ConnectionStatus.CONNECTED).to_wire())

    def _mark_disconnected(self, reason: str):
        was_connected = self.is_connected
        self.state = ConnectionState(
            status=ConnectionStatus.DISCONNECTED,
            retry_count=self.state.retry_count + 1,
            last_error=reason,
        )
        logger.warning(
            f"[Relay] Session lost ({reason}). "
            f"Retry {self.state.retry_count} in {self.reconnect_delay:g}s..."
        )
        if was_connected:
            self.broadcast(ConnectionEnvelope(status=ConnectionStatus.DISCONNECTED).to_wire())

    # =========================================================================
    # SESSION LOOP
    # =========================================================================

    def start(self):
        """Start the supervised session loop. Does nothing if it's already running."""
        if self.is_running:
            logger.warning("[Relay] Session loop already running.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._session_loop(), name="ttn-relay-session")

    async def stop(self):
        """Signal the session loop to end and wait for it."""
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[Relay] Session loop stopped")

    def _create_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.broker_host,
            port=self.BROKER_PORT,
            username=self.application_id,
            password=self.api_key,
            identifier=self._client_id,
            keepalive=self.KEEPALIVE,
            tls_context=ssl.create_default_context(),
        )

    async def _run_session(self):
        """
        One broker session: connect, subscribe, relay until it breaks.

        Raises:
            UpstreamError: the session ended for any reason
        """
        logger.info(f"[Relay] Connecting to mqtts://{self.broker_host}:{self.BROKER_PORT}...")
        try:
            async with self._create_client() as client:
                await client.subscribe(self.topic)
                self._mark_connected()
                async for message in client.messages:
                    self.handle_message(str(message.topic), message.payload)
        except aiomqtt.MqttError as e:
            raise UpstreamError(f"MQTT session failed: {e}") from e
        except OSError as e:
            raise UpstreamError(f"Network error: {e}") from e
        raise UpstreamError("MQTT session closed by broker")

    async def _session_loop(self):
        """Keep a session alive until stop() is called."""
        while not self._stop_event.is_set():
            try:
                await self._run_session()
            except UpstreamError as e:
                self._mark_disconnected(str(e))
            except Exception as e:
                logger.exception("[Relay] Unexpected error in MQTT session")
                self._mark_disconnected(f"Unexpected error: {e}")

            if self._stop_event.is_set():
                break
            await self._wait_for_retry(self.reconnect_delay)

    async def _wait_for_retry(self, delay: float):
        """Sleep before the next attempt; stop() ends the wait early."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
