"""
Live Listeners
==============

A listener is one open dashboard connection that wants every uplink.

Each listener owns a small queue and a writer task. The relay only ever
drops envelopes into the queue, so a slow browser on a bad network backs up
its own queue and nobody else's.

    RelayConnector.broadcast()
            |
            | deliver() - never waits
            v
    [listener queue] --writer task--> websocket.send_json()
"""

import asyncio
import logging
from typing import Any, Protocol

from ttn_relay.exceptions import ListenerDeliveryError

logger = logging.getLogger(__name__)


class Listener(Protocol):
    """Anything the relay can fan out to."""

    def deliver(self, envelope: dict) -> None:
        """Hand over one envelope without waiting. Raise ListenerDeliveryError if it can't be taken."""
        ...


class WebSocketListener:
    """
    Listener backed by a FastAPI/Starlette WebSocket.

    HOW TO USE:
    ----------
    listener = WebSocketListener(websocket)
    writer = asyncio.create_task(listener.run())
    connector.register_listener(listener)
    ...
    connector.remove_listener(listener)
    listener.close()
    """

    DEFAULT_QUEUE_SIZE = 100

    def __init__(self, websocket: Any, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, envelope: dict) -> None:
        if self._closed:
            raise ListenerDeliveryError("listener is closed")
        try:
            self._queue.put_nowait(envelope)
        except asyncio.QueueFull:
            raise ListenerDeliveryError(f"listener queue full ({self._queue.maxsize} pending)")

    async def run(self):
        """
        Writer loop: send queued envelopes until the socket fails or close() is called.

        Envelopes queued before close() are still sent.
        """
        while True:
            envelope = await self._queue.get()
            if envelope is None:
                break
            try:
                await self.websocket.send_json(envelope)
            except Exception as e:
                logger.info(f"[Live] Send failed, closing listener ({e})")
                self._closed = True
                break

    def close(self):
        """Stop accepting envelopes and let the writer loop finish."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # No room for the sentinel; the owner cancels the writer
            pass
