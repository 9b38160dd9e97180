"""
secbridge — a trust-mediating relay for peers that don't trust each other.

A neutral relay accepts signed envelopes from registered clients and fans
them out to every other registered client; clients never reach each other
directly.

SECURITY PROPERTIES:
- HMAC-SHA256 over type|timestamp|nonce|payload with a shared secret,
  verified in constant time.
- Replay protection on both sides: stale, future-dated and repeated
  envelopes are dropped.
- Origin allow-list on every directed channel; a client id is bound to the
  origin it registered from.
- Every rejection is silent toward the sender (no error oracle).
- Payloads are authenticated, NOT encrypted.

Set SECBRIDGE_HMAC_SECRET on ALL processes (relay + clients) before running.
"""
from .client import BridgeClient, ClientState, HandshakeState
from .config import BridgeConfig
from .errors import (
    BridgeError,
    ChannelClosed,
    ConfigError,
    HandshakeError,
    IdentityConflict,
    MalformedEnvelope,
    TransportError,
)
from .messages import ACK, HELLO, Envelope
from .registry import ClientRecord, ClientRegistry
from .relay import RelayNode, RelayState
from .replay import ReplayGuard
from .snapshot import SNAPSHOT_EVENT, SnapshotEvent, SnapshotStore

__all__ = [
    "ACK",
    "HELLO",
    "SNAPSHOT_EVENT",
    "BridgeClient",
    "BridgeConfig",
    "BridgeError",
    "ChannelClosed",
    "ClientRecord",
    "ClientRegistry",
    "ClientState",
    "ConfigError",
    "Envelope",
    "HandshakeError",
    "HandshakeState",
    "IdentityConflict",
    "MalformedEnvelope",
    "RelayNode",
    "RelayState",
    "ReplayGuard",
    "SnapshotEvent",
    "SnapshotStore",
    "TransportError",
]
