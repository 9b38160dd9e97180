import asyncio
import enum
from typing import Any, Callable, List, Optional, Tuple

from loguru import logger

from . import messages as m
from .config import BridgeConfig
from .errors import IdentityConflict, MalformedEnvelope
from .registry import ClientRecord, ClientRegistry
from .replay import ReplayGuard
from .transport import BroadcastChannel, Delivery, RelayEndpoint

"""
relay.py — the neutral relay every client talks through.

Rules, in the order they are applied to each inbound message:
  1. The transport-level origin must be allow-listed.
  2. The signature must verify and the (nonce, timestamp) must be fresh.
  3. "hello" registers the sender and gets a unicast "ack" back.
  4. Anything else must come from a registered sourceId whose registered
     origin matches the transport origin; it is then fanned out to every
     other registered client and published on the broadcast channel.

Every rejection is silent toward the sender: no error envelope, no hint of
which check failed. Diagnostics stay in the local log.

Clients never broadcast through the relay's channel themselves; only the
relay publishes there. Envelopes another relay instance published on that
channel are verified and fanned out to our own clients, never re-published.
"""

DIRECTED = "directed"
BROADCAST = "broadcast"

JoinBroadcast = Callable[[str], BroadcastChannel]


class RelayState(enum.Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    VALIDATING = "validating"
    REGISTERING = "registering"
    DISPATCHING = "dispatching"


class RelayNode:
    """
    Owns its registry and replay table outright; nothing is module-global,
    so several relays can run side by side (e.g. in one test).
    """

    def __init__(
        self,
        config: BridgeConfig,
        endpoint: RelayEndpoint,
        join_broadcast: Optional[JoinBroadcast] = None,
        clock: Callable[[], int] = m.now_ms,
    ) -> None:
        self.config = config
        self.endpoint = endpoint
        self.join_broadcast = join_broadcast
        self.clock = clock
        self.registry = ClientRegistry(clock)
        self.replay = ReplayGuard(config.replay_window_ms, config.skew_tolerance_ms, clock)
        self.broadcast: Optional[BroadcastChannel] = None
        self.state = RelayState.IDLE
        self.inbox: asyncio.Queue[Tuple[str, Delivery]] = asyncio.Queue()
        self._unsubscribe: List[Callable[[], None]] = []
        self._tasks: List[asyncio.Task] = []
        self.running = False

    async def __aenter__(self) -> "RelayNode":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -------------------------
    # Lifecycle
    # -------------------------

    async def start(self) -> None:
        """Subscribe to both transports, start the dispatch and prune loops."""
        if self.running:
            return
        self.running = True
        try:
            self._unsubscribe.append(self.endpoint.subscribe(self._enqueue_directed))
            if self.join_broadcast is not None:
                self.broadcast = self.join_broadcast(self.config.channel_name)
                self._unsubscribe.append(self.broadcast.subscribe(self._enqueue_broadcast))
            await self.endpoint.start()
        except BaseException:
            # Leave nothing behind so a later start() begins from scratch.
            self._release_subscriptions()
            if self.broadcast is not None:
                await self.broadcast.close()
                self.broadcast = None
            self.running = False
            raise
        self._tasks.append(asyncio.create_task(self.dispatch_loop()))
        self._tasks.append(asyncio.create_task(self.prune_loop()))
        logger.info(f"Relay {self.config.relay_id} started on {self.endpoint.origin}")

    async def stop(self) -> None:
        """Tear down transports and forget every client. Safe to repeat."""
        self.running = False
        self._release_subscriptions()

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self.endpoint.close()
        except Exception as exc:
            logger.debug(f"Relay: endpoint close failed: {exc!r}")
        if self.broadcast is not None:
            try:
                await self.broadcast.close()
            except Exception as exc:
                logger.debug(f"Relay: broadcast close failed: {exc!r}")
            self.broadcast = None

        self.registry.clear()
        self.replay.clear()
        self.inbox = asyncio.Queue()
        self.state = RelayState.IDLE

    def _release_subscriptions(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def _enqueue_directed(self, delivery: Delivery) -> None:
        self.inbox.put_nowait((DIRECTED, delivery))

    def _enqueue_broadcast(self, delivery: Delivery) -> None:
        self.inbox.put_nowait((BROADCAST, delivery))

    async def dispatch_loop(self) -> None:
        """The one consumer of the inbox: messages are handled one at a time."""
        while True:
            kind, delivery = await self.inbox.get()
            try:
                if kind == DIRECTED:
                    await self.handle_delivery(delivery)
                else:
                    await self.handle_broadcast(delivery)
            except Exception:
                logger.exception("Relay: unexpected error while handling a message")
            finally:
                self.state = RelayState.IDLE
                self.inbox.task_done()

    async def drain(self) -> None:
        """Wait until everything queued so far has been handled."""
        await self.inbox.join()

    async def prune_loop(self) -> None:
        interval = self.config.prune_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.prune()

    def prune(self, now: Optional[int] = None) -> List[str]:
        """One sweep over the registry and the nonce table."""
        if now is None:
            now = self.clock()
        self.replay.prune(now)
        return self.registry.prune(now, self.config.client_ttl_ms)

    # -------------------------
    # Inbound pipeline
    # -------------------------

    def validate(self, message: Any) -> Optional[m.Envelope]:
        """Signature first, then freshness/nonce. None means "drop"."""
        self.state = RelayState.VALIDATING
        try:
            env = m.Envelope.from_dict(message)
        except MalformedEnvelope as exc:
            logger.debug(f"Relay: malformed envelope: {exc}")
            return None
        if not m.verify(env, self.config.secret):
            logger.debug(f"Relay: bad signature on {env.id}")
            return None
        # Only authentic envelopes get to consume a nonce slot.
        if not self.replay.admit(env):
            logger.debug(f"Relay: stale or replayed envelope {env.id}")
            return None
        return env

    async def handle_delivery(self, delivery: Delivery) -> bool:
        """
        Process one message from a client's directed channel.
        Returns True if it was accepted (registered or dispatched).
        """
        self.state = RelayState.RECEIVING
        if not self.config.is_trusted(delivery.origin):
            logger.debug(f"Relay: rejected untrusted origin {delivery.origin}")
            return False

        env = self.validate(delivery.message)
        if env is None:
            return False

        if env.type == m.HELLO:
            return await self.register(env, delivery)
        if env.type == m.ACK:
            # Acks only ever flow relay -> client.
            logger.debug(f"Relay: ignoring ack from {delivery.origin}")
            return False
        return await self.dispatch(env, delivery)

    async def handle_broadcast(self, delivery: Delivery) -> bool:
        """Envelope published by a co-located relay: fan out locally only."""
        self.state = RelayState.RECEIVING
        env = self.validate(delivery.message)
        if env is None or env.is_protocol or not env.sourceId:
            return False
        self.state = RelayState.DISPATCHING
        await self.fan_out(env)
        return True

    # -------------------------
    # Handshake
    # -------------------------

    async def register(self, env: m.Envelope, delivery: Delivery) -> bool:
        self.state = RelayState.REGISTERING
        payload = env.payload if isinstance(env.payload, dict) else {}
        client_id = payload.get("clientId")
        if not isinstance(client_id, str) or not client_id:
            logger.debug(f"Relay: hello without clientId from {delivery.origin}")
            return False
        if delivery.reply_to is None:
            logger.debug(f"Relay: hello from {delivery.origin} has no reply destination")
            return False

        try:
            record = self.registry.register(client_id, delivery.origin, delivery.reply_to)
        except IdentityConflict as exc:
            logger.debug(f"Relay: {exc} (claimed from {exc.claimed_origin})")
            return False

        ack = m.build(m.ACK, {"clientId": client_id}, self.config.relay_id, self.config.secret, self.clock())
        try:
            await record.destination.post(ack.to_dict())
        except Exception as exc:
            self.registry.remove(client_id)
            logger.warning(f"Relay: could not ack {client_id}, dropping it: {exc!r}")
            return False

        logger.info(f"Relay: registered client {client_id} from {delivery.origin}")
        return True

    # -------------------------
    # Business messages
    # -------------------------

    async def dispatch(self, env: m.Envelope, delivery: Delivery) -> bool:
        record = self.registry.get(env.sourceId) if env.sourceId else None
        if record is None:
            logger.debug(f"Relay: message from unregistered client {env.sourceId!r}")
            return False
        if record.origin != delivery.origin:
            # Registered id, wrong context: somebody is spoofing sourceId.
            logger.debug(f"Relay: origin mismatch for {env.sourceId} ({delivery.origin})")
            return False

        self.state = RelayState.DISPATCHING
        self.registry.touch(record.id)
        await self.fan_out(env)

        if self.broadcast is not None:
            try:
                await self.broadcast.publish(env.to_dict())
            except Exception as exc:
                logger.warning(f"Relay: broadcast publish failed: {exc!r}")
        return True

    async def fan_out(self, env: m.Envelope) -> int:
        """Deliver `env` unchanged to every registered client but its sender."""
        message = env.to_dict()

        async def deliver(record: ClientRecord) -> None:
            await record.destination.post(message)

        return await self.registry.for_each_except(env.sourceId, deliver)
