"""
errors.py — the exception types secbridge raises.

Protocol-level rejections (bad signature, replay, stale timestamp, unknown
sender) are NOT exceptions from the caller's point of view: the relay and the
client drop those silently. The classes below cover the cases where a local
caller genuinely needs to know something went wrong.
"""


class BridgeError(Exception):
    """Base class for everything secbridge raises on purpose."""


class ConfigError(BridgeError, ValueError):
    """Configuration is missing or malformed (bad env var, empty secret)."""


class MalformedEnvelope(BridgeError, ValueError):
    """A dict could not be turned into an Envelope (missing/ill-typed field)."""


class IdentityConflict(BridgeError):
    """A client id is already registered from a different origin."""

    def __init__(self, client_id: str, registered_origin: str, claimed_origin: str) -> None:
        super().__init__(f"client {client_id!r} is bound to another origin")
        self.client_id = client_id
        self.registered_origin = registered_origin
        self.claimed_origin = claimed_origin


class TransportError(BridgeError):
    """The underlying channel could not be established."""


class ChannelClosed(TransportError):
    """Tried to use a channel or destination that is already gone."""


class HandshakeError(BridgeError):
    """No ack arrived for our hello (timeout, or the client was destroyed)."""
