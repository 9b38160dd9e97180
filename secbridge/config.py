"""
config.py — everything the relay and the clients need to agree on.

Values normally come from the environment (set the same SECBRIDGE_HMAC_SECRET
on the relay and every client before starting them), but every field can be
passed directly for tests and embedding.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import FrozenSet, Iterable, Mapping, Optional

from .errors import ConfigError
from .registry import DEFAULT_CLIENT_TTL_MS
from .replay import DEFAULT_REPLAY_WINDOW_MS

ENV_PREFIX = "SECBRIDGE_"

DEFAULT_PRUNE_INTERVAL_MS = 30_000
DEFAULT_ACK_TIMEOUT_MS = 5_000
DEFAULT_CHANNEL_NAME = "signal-sync-bridge"
DEFAULT_RELAY_ID = "relay"


@dataclass(frozen=True)
class BridgeConfig:
    secret: str
    allowed_origins: FrozenSet[str] = field(default_factory=frozenset)
    replay_window_ms: int = DEFAULT_REPLAY_WINDOW_MS
    skew_tolerance_ms: Optional[int] = None
    client_ttl_ms: int = DEFAULT_CLIENT_TTL_MS
    prune_interval_ms: int = DEFAULT_PRUNE_INTERVAL_MS
    ack_timeout_ms: int = DEFAULT_ACK_TIMEOUT_MS
    channel_name: str = DEFAULT_CHANNEL_NAME
    relay_id: str = DEFAULT_RELAY_ID
    snapshot_key: Optional[str] = None
    snapshot_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if not self.secret:
            raise ConfigError("a shared signing secret is required")
        # Accept any iterable of origins; store it frozen.
        object.__setattr__(self, "allowed_origins", frozenset(self.allowed_origins))
        for name in ("replay_window_ms", "client_ttl_ms", "prune_interval_ms", "ack_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.skew_tolerance_ms is not None and self.skew_tolerance_ms < 0:
            raise ConfigError("skew_tolerance_ms must not be negative")

    def is_trusted(self, origin: str) -> bool:
        return origin in self.allowed_origins

    def with_origins(self, origins: Iterable[str]) -> "BridgeConfig":
        return replace(self, allowed_origins=frozenset(origins))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "BridgeConfig":
        """
        Build a config from SECBRIDGE_* variables, then apply `overrides`.

        Raises:
            ConfigError: missing secret or a numeric variable that isn't one.
        """
        env = os.environ if environ is None else environ
        values = {}

        secret = env.get(ENV_PREFIX + "HMAC_SECRET")
        if secret:
            values["secret"] = secret

        origins = env.get(ENV_PREFIX + "ALLOWED_ORIGINS")
        if origins:
            values["allowed_origins"] = frozenset(o.strip() for o in origins.split(",") if o.strip())

        for name, key in (
            ("replay_window_ms", "REPLAY_WINDOW_MS"),
            ("skew_tolerance_ms", "SKEW_TOLERANCE_MS"),
            ("client_ttl_ms", "CLIENT_TTL_MS"),
            ("prune_interval_ms", "PRUNE_INTERVAL_MS"),
            ("ack_timeout_ms", "ACK_TIMEOUT_MS"),
        ):
            raw = env.get(ENV_PREFIX + key)
            if raw is None or raw == "":
                continue
            try:
                values[name] = int(raw)
            except ValueError as exc:
                raise ConfigError(f"{ENV_PREFIX + key} must be an integer, got {raw!r}") from exc

        for name, key in (
            ("channel_name", "CHANNEL"),
            ("relay_id", "RELAY_ID"),
            ("snapshot_key", "SNAPSHOT_KEY"),
        ):
            raw = env.get(ENV_PREFIX + key)
            if raw:
                values[name] = raw

        snapshot_path = env.get(ENV_PREFIX + "SNAPSHOT_PATH")
        if snapshot_path:
            values["snapshot_path"] = Path(snapshot_path).expanduser()

        values.update(overrides)
        if not values.get("secret"):
            raise ConfigError(f"set {ENV_PREFIX}HMAC_SECRET on the relay and every client")
        return cls(**values)
