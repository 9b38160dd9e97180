"""
crypto.py — tiny HMAC-SHA256 helpers.

Why this exists:
- Keep all MAC bits in one place so the rest of the code can call
  `mac/check_mac` without worrying about key handling or encodings.
- Signatures travel as lowercase hex (64 chars for SHA-256) so they drop
  cleanly into JSON.
- Comparison goes through `cryptography`'s HMAC.verify, which is constant
  time; nothing here returns early on the first mismatching byte.

Notes:
- The shared secret is provisioned out-of-band and must be identical on the
  relay and every client.
- check_mac() never raises; any malformed input just yields False.
"""

import binascii
import uuid

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac

# SHA-256 digest is 32 bytes -> 64 hex characters on the wire.
DIGEST_SIZE = 32
SIGNATURE_HEX_LENGTH = DIGEST_SIZE * 2


# -----------------------------
# Key + encoding helpers
# -----------------------------

def secret_bytes(secret) -> bytes:
    """Accept str or bytes secrets; strings are UTF-8 encoded."""
    if isinstance(secret, bytes):
        return secret
    return secret.encode("utf-8")


def hex_encode(data: bytes) -> str:
    return data.hex()


def hex_decode(data: str) -> bytes:
    """
    Strict hex decode: exact length, lowercase hex digits only.
    Raises ValueError on anything else so callers can treat it as "bad sig".
    """
    if not isinstance(data, str) or len(data) != SIGNATURE_HEX_LENGTH:
        raise ValueError("signature has the wrong length")
    # Exactly one encoding per MAC: "AB" and "ab" must not both verify.
    if data != data.lower():
        raise ValueError("signature must be lowercase hex")
    try:
        return binascii.unhexlify(data)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("signature is not hex") from exc


# -------------------------
# MAC API
# -------------------------

def mac(secret, data: bytes) -> str:
    """HMAC-SHA256 over `data`, returned as a 64-char hex string."""
    h = crypto_hmac.HMAC(secret_bytes(secret), hashes.SHA256())
    h.update(data)
    return hex_encode(h.finalize())


def check_mac(secret, data: bytes, signature_hex: str) -> bool:
    """
    Recompute the MAC over `data` and compare against `signature_hex`.
    Returns True on match; False on mismatch, missing secret, or bad hex.
    """
    if not secret:
        return False
    try:
        expected = hex_decode(signature_hex)
    except ValueError:
        return False
    h = crypto_hmac.HMAC(secret_bytes(secret), hashes.SHA256())
    h.update(data)
    try:
        h.verify(expected)
        return True
    except InvalidSignature:
        return False


# -------------------
# Random identifiers
# -------------------

def new_nonce() -> str:
    """Single-use random token for replay detection."""
    return uuid.uuid4().hex


def new_id() -> str:
    """Opaque id for tracing envelopes and naming clients."""
    return str(uuid.uuid4())
