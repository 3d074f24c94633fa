"""Exceptions raised by the relay."""

from typing import Optional


class RelayError(Exception):
    """Base exception for the relay."""


class ParseError(RelayError):
    """An inbound broker message could not be parsed."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"Could not parse message on {topic}: {reason}")
        self.topic = topic
        self.reason = reason


class UpstreamError(RelayError):
    """A TTN Storage query or broker session failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or message


class ListenerDeliveryError(RelayError):
    """A single listener could not take a message."""
