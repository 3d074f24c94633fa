"""
Dashboard Client
================

The data side of the reef dashboard, in Python.

The browser dashboard does three things with the relay:
1. Loads the latest stored uplinks from GET /api/latest-messages
2. Opens the live WebSocket and adds every uplink to a short history
3. Reconnects when the WebSocket drops, waiting longer each time

This module does the same, minus the gauges, so scripts (and watch.py)
can follow the relay without a browser.

RECONNECT TIMING:
----------------
Unlike the relay's own fixed 5 second TTN retry, the client backs off:
1s, 2s, 4s, 8s, 16s, then 30s forever. A successful connect resets it.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
import websockets

from ttn_relay.models import DeviceKind, DeviceMessage

logger = logging.getLogger(__name__)

MAX_MESSAGES = 50


class MessageHistory:
    """
    The most recent messages, newest first, never more than max_messages.
    """

    def __init__(self, max_messages: int = MAX_MESSAGES):
        self._messages: deque[DeviceMessage] = deque(maxlen=max_messages)

    def add(self, message: DeviceMessage):
        self._messages.appendleft(message)

    def extend(self, messages: list[DeviceMessage]):
        """Add a batch that is already newest first."""
        for message in reversed(messages):
            self.add(message)

    def latest_for_kind(self, kind: DeviceKind) -> Optional[DeviceMessage]:
        return next((m for m in self._messages if m.device_kind == kind), None)

    def latest_for_device(self, device_id: str) -> Optional[DeviceMessage]:
        return next((m for m in self._messages if m.device_id == device_id), None)

    def __iter__(self):
        return iter(list(self._messages))

    def __len__(self) -> int:
        return len(self._messages)


class DashboardClient:
    """
    Follows a running relay like the dashboard does.

    HOW TO USE:
    ----------
    client = DashboardClient("http://localhost:3000")

    async def show(message):
        print(message.device_id, message.payload)

    await client.run(on_message=show)   # until client.stop()
    """

    BASE_DELAY = 1.0
    MAX_DELAY = 30.0

    def __init__(
        self,
        base_url: str,
        max_messages: int = MAX_MESSAGES,
        request_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.history = MessageHistory(max_messages)
        self.is_connected = False
        self.connection_attempts = 0
        self._stop_event = asyncio.Event()

    @property
    def websocket_url(self) -> str:
        """ws:// (or wss://) URL of the live channel on the same host."""
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        path = parts.path.rstrip("/") + "/ws"
        return urlunsplit((scheme, parts.netloc, path, "", ""))

    @classmethod
    def reconnect_delay(cls, attempts: int) -> float:
        """Seconds to wait before the next attempt after `attempts` failures."""
        return min(cls.BASE_DELAY * (2 ** attempts), cls.MAX_DELAY)

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def load_history(self) -> int:
        """
        Fill the history from GET /api/latest-messages.

        Failures are logged and leave the history as it was.

        Returns:
            How many messages were added
        """
        url = f"{self.base_url}/api/latest-messages"
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as http_client:
                response = await http_client.get(url)
                response.raise_for_status()
                stored = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to fetch latest messages: HTTP {e.response.status_code} {e.response.text[:500]}")
            return 0
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching latest messages: {e}")
            return 0

        if not isinstance(stored, list) or not stored:
            logger.info("No historical messages found")
            return 0

        messages = [
            DeviceMessage.from_uplink(item, is_historical=True)
            for item in stored
            if isinstance(item, dict)
        ]
        self.history.extend(messages)
        logger.info(f"Loaded {len(messages)} historical messages")
        return len(messages)

    # =========================================================================
    # LIVE FEED
    # =========================================================================

    def handle_envelope(self, envelope: dict) -> Optional[DeviceMessage]:
        """
        Apply one frame from the live channel.

        Returns:
            The new history entry for a "message" frame, otherwise None
        """
        frame_type = envelope.get("type")

        if frame_type == "connection":
            self.is_connected = envelope.get("status") == "connected"
            logger.info(f"Connection status update: {envelope.get('status')}")
            return None

        if frame_type == "message" and isinstance(envelope.get("payload"), dict):
            try:
                kind = DeviceKind(envelope.get("deviceType") or DeviceKind.UNKNOWN.value)
            except ValueError:
                kind = DeviceKind.UNKNOWN
            message = DeviceMessage.from_uplink(envelope["payload"], device_kind=kind)
            self.history.add(message)
            return message

        logger.debug(f"Ignoring frame type: {frame_type}")
        return None

    async def _stream(self, on_message: Optional[Callable[[DeviceMessage], Awaitable[None]]]):
        """One WebSocket connection, until it closes."""
        async with websockets.connect(self.websocket_url, ping_interval=30) as ws:
            logger.info(f"WebSocket connected: {self.websocket_url}")
            self.connection_attempts = 0

            async for raw in ws:
                if self._stop_event.is_set():
                    return
                try:
                    envelope = json.loads(raw)
                except json.JSONDecodeError as e:
                    logger.error(f"Error parsing WebSocket message: {e}")
                    continue
                if not isinstance(envelope, dict):
                    continue

                message = self.handle_envelope(envelope)
                if message is not None and on_message is not None:
                    await on_message(message)

    async def run(
        self,
        on_message: Optional[Callable[[DeviceMessage], Awaitable[None]]] = None,
        load_history: bool = True,
    ):
        """
        Load history, then follow the live feed until stop() is called.

        Args:
            on_message: Async callback for every live message
            load_history: Call load_history() before connecting
        """
        self._stop_event.clear()
        if load_history:
            await self.load_history()

        while not self._stop_event.is_set():
            try:
                logger.info(f"Attempting WebSocket connection (attempt {self.connection_attempts + 1})")
                await self._stream(on_message)
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"WebSocket disconnected ({e})")
            except (OSError, websockets.exceptions.WebSocketException, asyncio.TimeoutError) as e:
                logger.error(f"WebSocket error ({e})")

            self.is_connected = False
            if self._stop_event.is_set():
                break

            delay = self.reconnect_delay(self.connection_attempts)
            self.connection_attempts += 1
            logger.info(f"Reconnecting in {delay:g} seconds...")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    def stop(self):
        self._stop_event.set()
