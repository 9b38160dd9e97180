import asyncio
import enum
import inspect
from typing import Any, Callable, List, Optional, Tuple

from loguru import logger

from . import crypto
from . import messages as m
from .config import BridgeConfig
from .errors import HandshakeError, MalformedEnvelope, TransportError
from .replay import ReplayGuard
from .snapshot import SnapshotListener, SnapshotStore
from .transport import BroadcastChannel, Delivery, DirectedChannel

"""
client.py — the SDK each peer context embeds.

Lifecycle:
    Idle -> Initializing -> Registering -> Ready
- init() opens the directed channel to the relay, joins the same-origin
  broadcast channel and starts the dispatch loop. Concurrent callers share
  one in-flight initialization.
- ensure_handshake() sends "hello" and waits for an "ack" naming our own
  client id. Concurrent callers share one in-flight handshake. No ack within
  ack_timeout_ms raises HandshakeError and the next call starts over.
- send() requires both, then signs and posts the envelope to the relay and,
  as a shortcut for same-origin peers, to the broadcast channel.

Inbound envelopes from either channel are verified and replay-checked before
any subscriber sees them. Nothing is suppressed by sourceId here: excluding
the sender is the relay's job.
"""

DIRECTED = "directed"
BROADCAST = "broadcast"

MessageHandler = Callable[[m.Envelope], Any]
JoinBroadcast = Callable[[str], BroadcastChannel]


class ClientState(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    REGISTERING = "registering"
    READY = "ready"


class HandshakeState(enum.Enum):
    UNREGISTERED = "unregistered"
    HELLO_SENT = "hello_sent"
    REGISTERED = "registered"


class BridgeClient:
    """One peer's view of the bridge. Every instance owns its own state."""

    def __init__(
        self,
        config: BridgeConfig,
        channel: DirectedChannel,
        join_broadcast: Optional[JoinBroadcast] = None,
        client_id: Optional[str] = None,
        snapshots: Optional[SnapshotStore] = None,
        clock: Callable[[], int] = m.now_ms,
    ) -> None:
        self.config = config
        self.channel = channel
        self.join_broadcast = join_broadcast
        self.client_id = client_id or crypto.new_id()
        self.clock = clock
        self.replay = ReplayGuard(config.replay_window_ms, config.skew_tolerance_ms, clock)
        if snapshots is None and config.snapshot_key:
            snapshots = SnapshotStore(config.snapshot_path)
        self.snapshots = snapshots

        self.state = ClientState.IDLE
        self.handshake_state = HandshakeState.UNREGISTERED
        self.broadcast: Optional[BroadcastChannel] = None
        self.inbox: asyncio.Queue[Tuple[str, Delivery]] = asyncio.Queue()
        self._handlers: List[MessageHandler] = []
        self._unsubscribe: List[Callable[[], None]] = []
        self._init_task: Optional[asyncio.Future] = None
        self._handshake_task: Optional[asyncio.Future] = None
        self._ack: Optional[asyncio.Future] = None
        self._dispatch_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "BridgeClient":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.destroy()

    @property
    def registered(self) -> bool:
        return self.handshake_state is HandshakeState.REGISTERED

    # ================== Init ==================

    async def init(self) -> None:
        """
        Establish the transports once. Raises TransportError if the directed
        channel can't be opened; a later call will try again (no auto-retry).
        """
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise TransportError("client was destroyed during init") from None
            raise
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        self.state = ClientState.INITIALIZING
        # Subscribe before opening so nothing the relay sends early is lost.
        self._unsubscribe.append(self.channel.subscribe(self._enqueue_directed))
        try:
            await self.channel.open()
        except Exception:
            self._release_subscriptions()
            self.state = ClientState.IDLE
            raise

        if self.join_broadcast is not None:
            self.broadcast = self.join_broadcast(self.config.channel_name)
            self._unsubscribe.append(self.broadcast.subscribe(self._enqueue_broadcast))

        self._dispatch_task = asyncio.create_task(self.dispatch_loop())
        self.state = ClientState.REGISTERING
        logger.debug(f"Client {self.client_id}: transport open")

        # Announce ourselves right away; send() will wait on the same attempt.
        self._start_handshake()

    # ================== Handshake ==================

    async def ensure_handshake(self) -> None:
        """Make sure the relay has acked us. Safe under concurrent callers."""
        if self.handshake_state is HandshakeState.REGISTERED:
            return
        task = self._start_handshake()
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise HandshakeError("client was destroyed during handshake") from None
            raise

    def _start_handshake(self) -> asyncio.Future:
        if self._handshake_task is None:
            task = asyncio.ensure_future(self._handshake())
            task.add_done_callback(self._handshake_done)
            self._handshake_task = task
        return self._handshake_task

    def _handshake_done(self, task: asyncio.Future) -> None:
        if self._handshake_task is task:
            self._handshake_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Client {self.client_id}: handshake failed: {task.exception()}")

    async def _handshake(self) -> None:
        loop = asyncio.get_running_loop()
        self._ack = loop.create_future()
        try:
            hello = self._build(m.HELLO, {"clientId": self.client_id})
            await self.channel.send(hello.to_dict())
            self.handshake_state = HandshakeState.HELLO_SENT
            try:
                await asyncio.wait_for(self._ack, timeout=self.config.ack_timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise HandshakeError(
                    f"no ack from relay within {self.config.ack_timeout_ms} ms"
                ) from None
        except BaseException:
            self.handshake_state = HandshakeState.UNREGISTERED
            raise
        finally:
            self._ack = None

        self.handshake_state = HandshakeState.REGISTERED
        self.state = ClientState.READY
        logger.info(f"Client {self.client_id}: registered with relay")

    # ================== Send ==================

    async def send(
        self,
        msg_type: str,
        payload: Any,
        on_sent: Optional[Callable[[m.Envelope], None]] = None,
    ) -> m.Envelope:
        """
        Sign and send a business event. Returns the envelope that went out.

        Raises:
            ValueError: if `msg_type` is a reserved protocol type.
            TransportError / HandshakeError: if the bridge isn't usable.
        """
        if msg_type in m.PROTOCOL_TYPES:
            raise ValueError(f"{msg_type!r} is reserved for the handshake")
        await self.init()
        await self.ensure_handshake()

        env = self._build(msg_type, payload)
        message = env.to_dict()
        await self.channel.send(message)
        if self.broadcast is not None:
            await self.broadcast.publish(message)

        if on_sent is not None:
            on_sent(env)
        return env

    def _build(self, msg_type: str, payload: Any) -> m.Envelope:
        return m.build(msg_type, payload, self.client_id, self.config.secret, self.clock())

    # ================== Subscribe ==================

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a subscriber; returns a function that removes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def on_snapshot(self, listener: SnapshotListener) -> Callable[[], None]:
        if self.snapshots is None:
            self.snapshots = SnapshotStore(self.config.snapshot_path)
        return self.snapshots.on_snapshot(listener)

    # ================== Inbound ==================

    def _enqueue_directed(self, delivery: Delivery) -> None:
        self.inbox.put_nowait((DIRECTED, delivery))

    def _enqueue_broadcast(self, delivery: Delivery) -> None:
        self.inbox.put_nowait((BROADCAST, delivery))

    async def dispatch_loop(self) -> None:
        while True:
            kind, delivery = await self.inbox.get()
            try:
                await self.process(kind, delivery)
            except Exception:
                logger.exception(f"Client {self.client_id}: error while handling a message")
            finally:
                self.inbox.task_done()

    async def drain(self) -> None:
        """Wait until everything queued so far has been handled."""
        await self.inbox.join()

    async def process(self, kind: str, delivery: Delivery) -> bool:
        """
        Received -> Verifying -> Dispatched | Dropped.
        Returns True if the envelope was accepted.
        """
        if kind == DIRECTED and not self.config.is_trusted(delivery.origin):
            logger.debug(f"Client {self.client_id}: untrusted origin {delivery.origin}")
            return False
        try:
            env = m.Envelope.from_dict(delivery.message)
        except MalformedEnvelope as exc:
            logger.debug(f"Client {self.client_id}: malformed envelope: {exc}")
            return False
        if not m.verify(env, self.config.secret):
            logger.debug(f"Client {self.client_id}: bad signature on {env.id}")
            return False
        if not self.replay.admit(env):
            logger.debug(f"Client {self.client_id}: stale or replayed envelope {env.id}")
            return False

        if env.type == m.ACK:
            return kind == DIRECTED and self._accept_ack(env)
        if env.type == m.HELLO:
            return False

        self._persist_snapshot(env)
        await self._dispatch(env)
        return True

    def _accept_ack(self, env: m.Envelope) -> bool:
        payload = env.payload if isinstance(env.payload, dict) else {}
        if payload.get("clientId") != self.client_id:
            return False
        if self._ack is not None and not self._ack.done():
            self._ack.set_result(env)
        return True

    async def _dispatch(self, env: m.Envelope) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(env)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Client {self.client_id}: subscriber raised")

    def _persist_snapshot(self, env: m.Envelope) -> None:
        key = self.config.snapshot_key
        if not key or self.snapshots is None:
            return
        self.snapshots.write(key, env.to_dict())

    # ================== Teardown ==================

    async def destroy(self) -> None:
        """
        Release transports, subscribers and replay state. Safe to call more
        than once and while init()/handshake are still in flight; never raises.
        """
        current = asyncio.current_task()
        pending = []
        for task in (self._init_task, self._handshake_task, self._dispatch_task):
            if task is not None and not task.done():
                task.cancel()
                if task is not current:
                    pending.append(task)
        self._init_task = None
        self._handshake_task = None
        self._dispatch_task = None
        if self._ack is not None and not self._ack.done():
            self._ack.cancel()
        self._ack = None
        self._release_subscriptions()
        self._handlers.clear()
        self.replay.clear()
        if self.snapshots is not None:
            self.snapshots.clear()
        self.handshake_state = HandshakeState.UNREGISTERED
        self.state = ClientState.IDLE
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            await self.channel.close()
        except Exception as exc:
            logger.debug(f"Client {self.client_id}: channel close failed: {exc!r}")
        if self.broadcast is not None:
            try:
                await self.broadcast.close()
            except Exception as exc:
                logger.debug(f"Client {self.client_id}: broadcast close failed: {exc!r}")
            self.broadcast = None
        self.inbox = asyncio.Queue()

    def _release_subscriptions(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
