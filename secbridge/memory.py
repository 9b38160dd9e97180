"""In-process transports.

These implement the :mod:`secbridge.transport` contract without any I/O:
relays and clients living in the same event loop talk through them, and
the test suite drives the whole protocol with them. Messages are deep-copied
on every hop so a receiver can never mutate what the sender still holds.
"""

from __future__ import annotations

import copy
from typing import Callable, Dict, List, Set, Tuple

from loguru import logger

from .errors import ChannelClosed, TransportError
from .transport import BroadcastChannel, Delivery, Destination, DirectedChannel, Message, RelayEndpoint


class MemoryRelayEndpoint(RelayEndpoint):
    """The relay's side of every in-process directed channel."""

    def __init__(self, origin: str) -> None:
        super().__init__()
        self.origin = origin
        self.accepting = False
        self._channels: List["MemoryDirectedChannel"] = []

    async def start(self) -> None:
        self.accepting = True

    async def close(self) -> None:
        self.accepting = False
        channels, self._channels = self._channels, []
        for channel in channels:
            await channel.close()

    def connect(self, origin: str) -> "MemoryDirectedChannel":
        """Client-side factory: a channel whose sender origin is `origin`."""
        return MemoryDirectedChannel(self, origin)

    def _attach(self, channel: "MemoryDirectedChannel") -> None:
        if not self.accepting:
            raise TransportError(f"relay endpoint {self.origin} is not accepting")
        self._channels.append(channel)

    def _detach(self, channel: "MemoryDirectedChannel") -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    def _receive(self, delivery: Delivery) -> None:
        if not self.accepting:
            raise ChannelClosed(f"relay endpoint {self.origin} is closed")
        self._emit(delivery)


class MemoryDestination(Destination):
    """Reply handle pointing back at one MemoryDirectedChannel."""

    def __init__(self, channel: "MemoryDirectedChannel") -> None:
        self._channel = channel
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def invalidate(self) -> None:
        self._closed = True

    async def post(self, message: Message) -> None:
        if self._closed:
            raise ChannelClosed(f"destination for {self._channel.origin} is gone")
        endpoint = self._channel.endpoint
        self._channel._emit(Delivery(copy.deepcopy(message), endpoint.origin))


class MemoryDirectedChannel(DirectedChannel):
    """Client side of an in-process link to a MemoryRelayEndpoint."""

    def __init__(self, endpoint: MemoryRelayEndpoint, origin: str) -> None:
        super().__init__()
        self.endpoint = endpoint
        self.origin = origin
        self.destination: MemoryDestination | None = None

    @property
    def is_open(self) -> bool:
        return self.destination is not None and not self.destination.closed

    async def open(self) -> None:
        if self.is_open:
            return
        self.endpoint._attach(self)
        self.destination = MemoryDestination(self)

    async def send(self, message: Message) -> None:
        if not self.is_open:
            raise ChannelClosed("channel is not open")
        self.endpoint._receive(Delivery(copy.deepcopy(message), self.origin, self.destination))

    async def close(self) -> None:
        if self.destination is not None:
            self.destination.invalidate()
        self.endpoint._detach(self)


class BroadcastHub:
    """
    A set of broadcast scopes keyed by (channel name, origin). Stands in for
    whatever the host environment shares between same-origin contexts.
    """

    def __init__(self) -> None:
        self._scopes: Dict[Tuple[str, str], Set["LocalBroadcastChannel"]] = {}

    def join(self, name: str, origin: str) -> "LocalBroadcastChannel":
        channel = LocalBroadcastChannel(self, name, origin)
        self._scopes.setdefault((name, origin), set()).add(channel)
        return channel

    def joiner(self, origin: str) -> Callable[[str], "LocalBroadcastChannel"]:
        """Bind `origin`; the relay/client call the result with a channel name."""
        return lambda name: self.join(name, origin)

    def listeners(self, name: str, origin: str) -> int:
        return len(self._scopes.get((name, origin), ()))

    def _leave(self, channel: "LocalBroadcastChannel") -> None:
        key = (channel.name, channel.origin)
        members = self._scopes.get(key)
        if members is None:
            return
        members.discard(channel)
        if not members:
            del self._scopes[key]

    def _fan_out(self, sender: "LocalBroadcastChannel", message: Message) -> None:
        for channel in list(self._scopes.get((sender.name, sender.origin), ())):
            if channel is sender:
                continue
            channel._emit(Delivery(copy.deepcopy(message), sender.origin))


class LocalBroadcastChannel(BroadcastChannel):
    """One listener on a BroadcastHub scope; never hears its own posts."""

    def __init__(self, hub: BroadcastHub, name: str, origin: str) -> None:
        super().__init__()
        self.hub = hub
        self.name = name
        self.origin = origin
        self.closed = False

    async def publish(self, message: Message) -> None:
        if self.closed:
            raise ChannelClosed(f"broadcast channel {self.name} is closed")
        self.hub._fan_out(self, message)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._handlers.clear()
        self.hub._leave(self)
        logger.debug(f"Broadcast: left {self.name} ({self.origin})")
