import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from . import crypto
from .errors import ConfigError, MalformedEnvelope

"""
messages.py — the signed envelope, its canonical form, and signatures.

What this module does:
- Defines the Envelope every relay/client exchange uses (id, type, payload,
  timestamp, nonce, signature, sourceId).
- Produces deterministic bytes for signing so a relay and a client compute
  the same MAC from the same declared fields.
- Signs with the shared secret (HMAC-SHA256) and verifies untrusted
  envelopes without ever raising.

Only type, timestamp, nonce and payload are covered by the signature. The
id is a tracing aid, and sourceId is bound to an origin by the relay's
registry rather than by the MAC.
"""

# -----------------------
# Reserved protocol types
# -----------------------
HELLO = "hello"  # registration request, payload {"clientId": ...}
ACK = "ack"      # registration confirmation, unicast only

PROTOCOL_TYPES = frozenset({HELLO, ACK})

# Field separator for the canonical string. Never appears in type/timestamp/
# nonce (nonces are hex), and payload JSON comes last so it may contain it.
DELIMITER = "|"


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class Envelope:
    """One signed, replay-protected unit of bridge traffic."""
    id: str
    type: str
    payload: Any
    timestamp: int
    nonce: str
    signature: str = ""
    sourceId: str = ""

    @property
    def is_protocol(self) -> bool:
        return self.type in PROTOCOL_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """
        Build an Envelope from untrusted wire data.

        Raises:
            MalformedEnvelope: if a field is missing or has the wrong type.
        """
        if isinstance(data, Envelope):
            return data
        if not isinstance(data, dict):
            raise MalformedEnvelope("envelope must be an object")

        for field in ("id", "type", "nonce", "signature"):
            if not isinstance(data.get(field), str):
                raise MalformedEnvelope(f"field {field!r} must be a string")
        ts = data.get("timestamp")
        # bool is an int subclass; a True timestamp is nonsense.
        if not isinstance(ts, int) or isinstance(ts, bool):
            raise MalformedEnvelope("field 'timestamp' must be an integer")
        source = data.get("sourceId", "")
        if source is None:
            source = ""
        if not isinstance(source, str):
            raise MalformedEnvelope("field 'sourceId' must be a string")
        if "payload" not in data:
            raise MalformedEnvelope("field 'payload' is missing")

        return cls(
            id=data["id"],
            type=data["type"],
            payload=data["payload"],
            timestamp=ts,
            nonce=data["nonce"],
            signature=data["signature"],
            sourceId=source,
        )


def canonical_payload(payload: Any) -> str:
    """
    Deterministic JSON for the payload: sorted keys, compact separators,
    non-ASCII kept as UTF-8 so every side produces the same bytes.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_bytes(env: Envelope) -> bytes:
    """type|timestamp|nonce|payload-json, UTF-8 encoded."""
    parts = (env.type, str(env.timestamp), env.nonce, canonical_payload(env.payload))
    return DELIMITER.join(parts).encode("utf-8")


def sign(env: Envelope, secret) -> str:
    """
    Compute the hex HMAC for `env` (does not modify it).

    Raises:
        ConfigError: if no secret is configured.
    """
    if not secret:
        raise ConfigError("a shared secret is required to sign envelopes")
    return crypto.mac(secret, canonical_bytes(env))


def verify(env: Any, secret) -> bool:
    """
    Check the declared signature of an untrusted envelope.

    Accepts an Envelope or a raw dict. Returns False (never raises) on a
    missing secret, malformed envelope, non-hex or wrong-length signature,
    unserializable payload, or plain mismatch.
    """
    if not secret:
        return False
    try:
        env = Envelope.from_dict(env)
        data = canonical_bytes(env)
    except (MalformedEnvelope, TypeError, ValueError):
        return False
    return crypto.check_mac(secret, data, env.signature)


def new_envelope(
    msg_type: str,
    payload: Any,
    source_id: str,
    timestamp: Optional[int] = None,
) -> Envelope:
    """
    Create an unsigned envelope with a fresh id and nonce.

    Args:
        msg_type:  HELLO, ACK, or any application event name.
        payload:   JSON-serializable application data.
        source_id: Sender's client id (relay id for acks).
        timestamp: Override for tests; defaults to now_ms().
    """
    return Envelope(
        id=crypto.new_id(),
        type=msg_type,
        payload=payload,
        timestamp=now_ms() if timestamp is None else timestamp,
        nonce=crypto.new_nonce(),
        sourceId=source_id,
    )


def sign_envelope(env: Envelope, secret) -> Envelope:
    """Fill in env.signature in place and return env for chaining."""
    env.signature = sign(env, secret)
    return env


def build(msg_type: str, payload: Any, source_id: str, secret, timestamp: Optional[int] = None) -> Envelope:
    """
    Convenience helper: new_envelope + sign_envelope.

    Typical usage:
        env = build("ping", {"n": 1}, my_client_id, secret)
    """
    return sign_envelope(new_envelope(msg_type, payload, source_id, timestamp), secret)
