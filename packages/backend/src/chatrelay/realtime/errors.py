"""Pub/sub engine errors.

Learn: Everything the engine raises on purpose derives from PubSubError,
so callers can catch one type at the API boundary. Transport failures that
are not about subscribing (publish, reader disconnects) stay as the
redis exceptions they are.
"""

from typing import Optional


class PubSubError(Exception):
    """Base class for pub/sub engine errors."""


class ConfigError(PubSubError):
    """Raised when the engine is constructed with conflicting options."""


class UnknownSubscription(PubSubError):
    """Raised when unsubscribing an id the engine never handed out."""

    def __init__(self, sub_id: int):
        super().__init__(f'There is no subscription of id "{sub_id}"')
        self.sub_id = sub_id


class TransportSubscribeError(PubSubError):
    """Raised when the physical SUBSCRIBE / PSUBSCRIBE call fails."""

    def __init__(self, channel: str, reason: Optional[str] = None):
        message = f"Failed to subscribe to {channel!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.channel = channel
