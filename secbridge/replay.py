"""
replay.py — nonce + timestamp replay protection.

An envelope is admitted once, and only while its timestamp is inside the
replay window around "now". Seen nonces are remembered until the envelope
they belong to could no longer pass the freshness check anyway, then they
are evicted, so the table stays bounded by traffic-per-window.
"""

from typing import Callable, Dict, NamedTuple, Optional

from .messages import Envelope, now_ms

DEFAULT_REPLAY_WINDOW_MS = 15_000


class NonceRecord(NamedTuple):
    first_seen: int
    timestamp: int

    def expires_at(self, window_ms: int) -> int:
        # A future-dated envelope stays admissible until timestamp + window,
        # so its nonce must be kept at least that long.
        return max(self.first_seen, self.timestamp) + window_ms


class ReplayGuard:
    """
    Per-owner replay table. Not shared: the relay and every client each
    hold their own instance.
    """

    def __init__(
        self,
        replay_window_ms: int = DEFAULT_REPLAY_WINDOW_MS,
        skew_tolerance_ms: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.replay_window_ms = replay_window_ms
        # Default keeps the rule symmetric: accept iff |now - ts| <= window.
        self.skew_tolerance_ms = replay_window_ms if skew_tolerance_ms is None else skew_tolerance_ms
        self.clock = clock
        self._seen: Dict[str, NonceRecord] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, nonce: str) -> bool:
        return nonce in self._seen

    def is_fresh(self, timestamp: int, now: int) -> bool:
        if now - timestamp > self.replay_window_ms:
            return False
        if timestamp > now + self.skew_tolerance_ms:
            return False
        return True

    def admit(self, env: Envelope, now: Optional[int] = None) -> bool:
        """
        Returns True the first time a fresh envelope's nonce is seen.
        Stale, future-dated, or repeated envelopes return False and leave
        the table unchanged.
        """
        if now is None:
            now = self.clock()
        self.prune(now)

        if not self.is_fresh(env.timestamp, now):
            return False
        if env.nonce in self._seen:
            return False

        self._seen[env.nonce] = NonceRecord(first_seen=now, timestamp=env.timestamp)
        return True

    def prune(self, now: Optional[int] = None) -> int:
        """Drop nonces whose envelopes can no longer be fresh. Returns count."""
        if now is None:
            now = self.clock()
        window = self.replay_window_ms
        expired = [n for n, rec in self._seen.items() if now > rec.expires_at(window)]
        for nonce in expired:
            del self._seen[nonce]
        return len(expired)

    def clear(self) -> None:
        self._seen.clear()
