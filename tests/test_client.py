"""
Tests for the client SDK, mostly end to end over in-process transports.

Tests cover:
- the hello/ack/ping scenario between two clients
- idempotent init and a single shared handshake
- ack timeout, transport failure, destroy during init
- inbound verification and the same-origin broadcast shortcut
- snapshot persistence
"""

import asyncio
import json
from dataclasses import replace

import pytest

from secbridge import messages as m
from secbridge.client import DIRECTED, BridgeClient, ClientState, HandshakeState
from secbridge.errors import HandshakeError, TransportError
from secbridge.memory import BroadcastHub, MemoryRelayEndpoint
from secbridge.relay import RelayNode
from secbridge.snapshot import SNAPSHOT_EVENT, SnapshotStore
from secbridge.transport import Delivery, DirectedChannel

from conftest import EVIL_ORIGIN, ORIGIN_A, ORIGIN_B, RELAY_ORIGIN, SECRET, signed


class Bridge:
    """A running relay plus helpers to attach clients to it."""

    def __init__(self, relay_config, client_config):
        self.hub = BroadcastHub()
        self.endpoint = MemoryRelayEndpoint(RELAY_ORIGIN)
        self.relay = RelayNode(relay_config, self.endpoint, join_broadcast=self.hub.joiner(RELAY_ORIGIN))
        self.client_config = client_config
        self.clients = []

    async def __aenter__(self):
        await self.relay.start()
        return self

    async def __aexit__(self, *exc_info):
        for client in self.clients:
            await client.destroy()
        await self.relay.stop()

    def client(self, client_id, origin, config=None):
        client = BridgeClient(
            config or self.client_config,
            self.endpoint.connect(origin),
            join_broadcast=self.hub.joiner(origin),
            client_id=client_id,
        )
        self.clients.append(client)
        return client

    async def settle(self):
        """Let every queue run dry (relay first, then the clients)."""
        for _ in range(3):
            await self.relay.drain()
            for client in self.clients:
                await client.drain()


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_hello_ack_ping(self, relay_config, client_config):
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            b = bridge.client("B", ORIGIN_B)
            got_a, got_b = [], []
            a.on_message(got_a.append)
            b.on_message(got_b.append)

            await a.init()
            await a.ensure_handshake()
            await b.init()
            await b.ensure_handshake()
            assert a.registered and b.registered
            assert a.state is ClientState.READY
            assert sorted(bridge.relay.registry.ids()) == ["A", "B"]

            sent = await a.send("ping", {"n": 1})
            await bridge.settle()

            assert len(got_b) == 1
            assert got_b[0].type == "ping"
            assert got_b[0].payload == {"n": 1}
            assert got_b[0].sourceId == "A"
            assert got_b[0].nonce == sent.nonce
            assert got_a == []

    @pytest.mark.asyncio
    async def test_send_returns_envelope_and_calls_on_sent(self, relay_config, client_config):
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            seen = []
            env = await a.send("ping", {"n": 2}, on_sent=seen.append)
            assert seen == [env]
            assert env.sourceId == "A"
            assert m.verify(env, SECRET)

    @pytest.mark.asyncio
    async def test_same_origin_peer_gets_one_copy(self, relay_config, client_config):
        """Broadcast shortcut and relay fan-out both arrive; the nonce dedups."""
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            a2 = bridge.client("A2", ORIGIN_A)
            got = []
            a2.on_message(got.append)
            await a2.init()
            await a2.ensure_handshake()

            await a.send("ping", {"n": 1})
            await bridge.settle()
            assert [env.type for env in got] == ["ping"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, relay_config, client_config):
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            b = bridge.client("B", ORIGIN_B)
            got = []
            unsubscribe = b.on_message(got.append)
            await b.init()
            await b.ensure_handshake()
            unsubscribe()

            await a.send("ping", {})
            await bridge.settle()
            assert got == []

    @pytest.mark.asyncio
    async def test_async_subscriber_and_failing_subscriber(self, relay_config, client_config):
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            b = bridge.client("B", ORIGIN_B)
            got = []

            def broken(env):
                raise RuntimeError("subscriber bug")

            async def collect(env):
                got.append(env.type)

            b.on_message(broken)
            b.on_message(collect)
            await b.init()
            await b.ensure_handshake()

            await a.send("ping", {})
            await a.send("pong", {})
            await bridge.settle()
            assert got == ["ping", "pong"]

    @pytest.mark.asyncio
    async def test_reserved_types_cannot_be_sent(self, relay_config, client_config):
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            with pytest.raises(ValueError):
                await a.send(m.HELLO, {"clientId": "A"})


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_concurrent_init_and_handshake_send_one_hello(self, client_config):
        endpoint = MemoryRelayEndpoint(RELAY_ORIGIN)
        await endpoint.start()
        hellos = []
        loop = asyncio.get_running_loop()

        def fake_relay(delivery):
            if delivery.message["type"] != m.HELLO:
                return
            hellos.append(delivery.message)
            ack = m.build(m.ACK, delivery.message["payload"], "relay", SECRET)
            loop.create_task(delivery.reply_to.post(ack.to_dict()))

        endpoint.subscribe(fake_relay)
        client = BridgeClient(client_config, endpoint.connect(ORIGIN_A), client_id="A")
        try:
            await asyncio.gather(client.init(), client.init(), client.init())
            await asyncio.gather(client.ensure_handshake(), client.ensure_handshake())
            await client.send("ping", {})
            assert len(hellos) == 1
            assert client.handshake_state is HandshakeState.REGISTERED
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_ack_for_someone_else_does_not_register(self, client_config):
        endpoint = MemoryRelayEndpoint(RELAY_ORIGIN)
        await endpoint.start()
        loop = asyncio.get_running_loop()

        def wrong_ack(delivery):
            ack = m.build(m.ACK, {"clientId": "not-me"}, "relay", SECRET)
            loop.create_task(delivery.reply_to.post(ack.to_dict()))

        endpoint.subscribe(wrong_ack)
        config = replace(client_config, ack_timeout_ms=50)
        client = BridgeClient(config, endpoint.connect(ORIGIN_A), client_id="A")
        try:
            await client.init()
            with pytest.raises(HandshakeError):
                await client.ensure_handshake()
            assert client.handshake_state is HandshakeState.UNREGISTERED
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_no_ack_times_out_and_can_retry(self, relay_config, client_config):
        endpoint = MemoryRelayEndpoint(RELAY_ORIGIN)
        await endpoint.start()
        config = replace(client_config, ack_timeout_ms=50)
        client = BridgeClient(config, endpoint.connect(ORIGIN_A), client_id="A")
        try:
            with pytest.raises(HandshakeError):
                await client.send("ping", {})
            assert client.handshake_state is HandshakeState.UNREGISTERED

            # A relay shows up on the same endpoint; the next attempt works.
            relay = RelayNode(relay_config, endpoint)
            await relay.start()
            try:
                await client.ensure_handshake()
                assert client.registered
            finally:
                await relay.stop()
        finally:
            await client.destroy()

    @pytest.mark.asyncio
    async def test_init_surfaces_transport_failure(self, client_config):
        endpoint = MemoryRelayEndpoint(RELAY_ORIGIN)
        client = BridgeClient(client_config, endpoint.connect(ORIGIN_A), client_id="A")
        with pytest.raises(TransportError):
            await client.init()
        assert client.state is ClientState.IDLE

        await endpoint.start()
        await client.init()
        assert client.channel.is_open
        await client.destroy()

    @pytest.mark.asyncio
    async def test_destroy_during_init(self, client_config):
        class HangingChannel(DirectedChannel):
            async def open(self):
                await asyncio.Event().wait()

            async def send(self, message):
                pass

            async def close(self):
                pass

        client = BridgeClient(client_config, HangingChannel(), client_id="A")
        pending = asyncio.create_task(client.init())
        await asyncio.sleep(0)
        await client.destroy()
        await client.destroy()
        with pytest.raises(TransportError):
            await pending
        assert client.state is ClientState.IDLE

    @pytest.mark.asyncio
    async def test_destroy_during_handshake(self, client_config):
        endpoint = MemoryRelayEndpoint(RELAY_ORIGIN)
        await endpoint.start()
        client = BridgeClient(client_config, endpoint.connect(ORIGIN_A), client_id="A")
        await client.init()
        waiting = asyncio.create_task(client.ensure_handshake())
        await asyncio.sleep(0)
        await client.destroy()
        with pytest.raises(HandshakeError):
            await waiting
        assert client.handshake_state is HandshakeState.UNREGISTERED
        assert not client.channel.is_open

    @pytest.mark.asyncio
    async def test_destroy_clears_local_state(self, relay_config, client_config):
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            a.on_message(lambda env: None)
            await a.send("ping", {})
            await bridge.settle()
            assert len(a.replay) > 0

            await a.destroy()
            assert a._handlers == []
            assert len(a.replay) == 0
            assert a.broadcast is None
            assert not a.registered


class TestInbound:

    @pytest.mark.asyncio
    async def test_untrusted_directed_origin_is_dropped(self, client_config):
        client = BridgeClient(client_config, MemoryRelayEndpoint(RELAY_ORIGIN).connect(ORIGIN_A), client_id="A")
        got = []
        client.on_message(got.append)
        msg = signed("ping", {}, "B", m.now_ms())
        assert not await client.process(DIRECTED, Delivery(msg, EVIL_ORIGIN))
        assert await client.process(DIRECTED, Delivery(msg, RELAY_ORIGIN))
        assert len(got) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_stale_and_replay_are_dropped(self, client_config):
        client = BridgeClient(client_config, MemoryRelayEndpoint(RELAY_ORIGIN).connect(ORIGIN_A), client_id="A")
        got = []
        client.on_message(got.append)
        now = m.now_ms()

        forged = signed("ping", {}, "B", now, secret="wrong")
        stale = signed("ping", {}, "B", now - 60_000)
        good = signed("ping", {}, "B", now)

        assert not await client.process(DIRECTED, Delivery(forged, RELAY_ORIGIN))
        assert not await client.process(DIRECTED, Delivery(stale, RELAY_ORIGIN))
        assert await client.process(DIRECTED, Delivery(good, RELAY_ORIGIN))
        assert not await client.process(DIRECTED, Delivery(good, RELAY_ORIGIN))
        assert [env.nonce for env in got] == [good["nonce"]]

    @pytest.mark.asyncio
    async def test_self_echo_is_still_delivered(self, client_config):
        client = BridgeClient(client_config, MemoryRelayEndpoint(RELAY_ORIGIN).connect(ORIGIN_A), client_id="A")
        got = []
        client.on_message(got.append)
        echo = signed("ping", {}, "A", m.now_ms())
        assert await client.process(DIRECTED, Delivery(echo, RELAY_ORIGIN))
        assert got[0].sourceId == "A"


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_accepted_envelope_is_persisted_and_announced(self, relay_config, client_config, tmp_path):
        path = tmp_path / "snapshot.json"
        b_config = replace(client_config, snapshot_key="bridge:last", snapshot_path=path)
        async with Bridge(relay_config, client_config) as bridge:
            a = bridge.client("A", ORIGIN_A)
            b = bridge.client("B", ORIGIN_B, config=b_config)
            events = []
            b.on_snapshot(events.append)
            await b.init()
            await b.ensure_handshake()

            sent = await a.send("ping", {"n": 1})
            await bridge.settle()

            assert len(events) == 1
            assert events[0].name == SNAPSHOT_EVENT
            assert events[0].key == "bridge:last"
            assert events[0].value["nonce"] == sent.nonce

            stored = json.loads(path.read_text(encoding="utf-8"))
            assert stored["bridge:last"]["payload"] == {"n": 1}
            assert SnapshotStore(path).read("bridge:last")["id"] == sent.id

    def test_unwritable_snapshot_is_best_effort(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        store = SnapshotStore(blocker / "nested" / "snapshot.json")
        events = []
        store.on_snapshot(events.append)
        assert store.write("k", {"a": 1}) is False
        assert events == []
