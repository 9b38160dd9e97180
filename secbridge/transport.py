"""Transport interface.

The relay and the client never touch sockets or in-process queues directly;
they go through the small capability contract below. Two primitives exist:

* a **directed channel**: one client talking to one relay. The relay side
  is a :class:`RelayEndpoint` that hears every connected client and hands
  back a :class:`Destination` for replies.
* a **broadcast channel**: everything published is seen by every other
  listener with the same channel name *and* the same origin.

Every inbound message arrives as a :class:`Delivery`, tagged with the origin
the transport itself vouches for (never a value taken from the message).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

Message = Dict[str, Any]


@dataclass
class Delivery:
    message: Any
    origin: str
    reply_to: Optional["Destination"] = None


Handler = Callable[[Delivery], None]
Unsubscribe = Callable[[], None]


class Destination(ABC):
    """Reply handle for one connected peer."""

    @abstractmethod
    async def post(self, message: Message) -> None:
        """Deliver to the peer. Raises ChannelClosed (or OSError) if dead."""

    @property
    def closed(self) -> bool:
        return False


class _Subscribable:
    """Shared handler bookkeeping for the channel types below."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Unsubscribe:
        """
        Register a handler called once per inbound Delivery. Handlers must
        not block; the relay/client just enqueue into their own inbox.
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(self, delivery: Delivery) -> None:
        for handler in list(self._handlers):
            handler(delivery)


class DirectedChannel(_Subscribable, ABC):
    """Client side of the point-to-point link to the relay."""

    @abstractmethod
    async def open(self) -> None:
        """Establish the link. Raises TransportError if that fails."""

    @abstractmethod
    async def send(self, message: Message) -> None:
        """Send to the relay. Raises ChannelClosed if not open."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down; must be safe to call more than once."""

    @property
    def is_open(self) -> bool:
        return False


class RelayEndpoint(_Subscribable, ABC):
    """Relay side of the directed channels: one endpoint, many clients."""

    origin: str = ""

    @abstractmethod
    async def start(self) -> None:
        """Begin accepting clients."""

    @abstractmethod
    async def close(self) -> None:
        """Stop accepting and drop every client link."""


class BroadcastChannel(_Subscribable, ABC):
    """Undirected same-origin channel."""

    @abstractmethod
    async def publish(self, message: Message) -> None:
        """Deliver to every other same-origin listener of this channel."""

    @abstractmethod
    async def close(self) -> None:
        """Leave the channel; safe to call more than once."""
