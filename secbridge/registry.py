"""
registry.py — relay-side table of registered clients.

One client id is bound to one origin for the life of its registration. The
destination handle is only ever used to reply; it is never an identity.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from loguru import logger

from .errors import IdentityConflict
from .messages import now_ms

DEFAULT_CLIENT_TTL_MS = 60 * 60 * 1000


@dataclass
class ClientRecord:
    id: str
    origin: str
    destination: Any
    last_seen: int


class ClientRegistry:
    """In-memory map: client id -> ClientRecord."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self.clock = clock
        self._clients: Dict[str, ClientRecord] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def __iter__(self) -> Iterator[ClientRecord]:
        return iter(list(self._clients.values()))

    def get(self, client_id: str) -> Optional[ClientRecord]:
        return self._clients.get(client_id)

    def ids(self) -> List[str]:
        return list(self._clients)

    def register(self, client_id: str, origin: str, destination: Any) -> ClientRecord:
        """
        Insert a record, or refresh the destination of an existing one.

        Re-registering an id from the same origin (e.g. after a reconnect)
        replaces its destination. A different origin is identity confusion.

        Raises:
            IdentityConflict: if `client_id` is bound to another origin.
        """
        existing = self._clients.get(client_id)
        if existing is not None and existing.origin != origin:
            raise IdentityConflict(client_id, existing.origin, origin)

        record = ClientRecord(id=client_id, origin=origin, destination=destination, last_seen=self.clock())
        self._clients[client_id] = record
        return record

    def touch(self, client_id: str, now: Optional[int] = None) -> None:
        record = self._clients.get(client_id)
        if record is not None:
            record.last_seen = self.clock() if now is None else now

    def remove(self, client_id: str) -> Optional[ClientRecord]:
        return self._clients.pop(client_id, None)

    def clear(self) -> None:
        self._clients.clear()

    async def for_each_except(
        self,
        exclude_id: Optional[str],
        fn: Callable[[ClientRecord], Awaitable[None]],
    ) -> int:
        """
        Await fn(record) for every client but `exclude_id`.

        A failing delivery means the destination is dead: that client is
        dropped on the spot and the loop carries on with the rest.
        Returns the number of successful deliveries.
        """
        delivered = 0
        for record in list(self._clients.values()):
            if record.id == exclude_id:
                continue
            try:
                await fn(record)
                delivered += 1
            except Exception as exc:
                # Only drop it if nobody re-registered the id meanwhile.
                if self._clients.get(record.id) is record:
                    del self._clients[record.id]
                logger.warning(f"Registry: dropped client {record.id} after failed delivery: {exc!r}")
        return delivered

    def prune(self, now: Optional[int] = None, ttl_ms: int = DEFAULT_CLIENT_TTL_MS) -> List[str]:
        """Remove clients idle for longer than `ttl_ms`. Returns removed ids."""
        if now is None:
            now = self.clock()
        stale = [cid for cid, rec in self._clients.items() if now - rec.last_seen > ttl_ms]
        for cid in stale:
            del self._clients[cid]
        if stale:
            logger.debug(f"Registry: pruned idle clients {stale}")
        return stale
