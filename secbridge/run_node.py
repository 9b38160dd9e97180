import argparse
import asyncio
import json
from typing import Optional, Tuple

from loguru import logger

from .client import BridgeClient
from .config import BridgeConfig
from .errors import BridgeError, ConfigError
from .relay import RelayNode
from .tcp import TcpDirectedChannel, TcpRelayEndpoint

"""
run_node.py — single entry point to run a bridge over TCP.

What you can do here:
- relay:   the neutral relay that registers clients and fans out events
- client:  a long-running peer that prints every event it receives
- send:    a one-shot peer: handshake, send one event, exit

Configuration comes from the SECBRIDGE_* environment (see config.py); the
secret must match on every process.
"""


# -------------------------
# Process runners (thin wrappers)
# -------------------------

def build_relay(config: BridgeConfig, host: str, port: int) -> RelayNode:
    """
    A TCP relay with no broadcast channel: one relay per process has no
    co-located peers or sibling relays to publish to.
    """
    return RelayNode(config, TcpRelayEndpoint(host, port))


async def run_relay(config: BridgeConfig, host: str, port: int) -> None:
    """Serve the relay on host:port until interrupted."""
    relay = build_relay(config, host, port)
    async with relay:
        await relay.endpoint.serve_forever()


async def run_client(config: BridgeConfig, client_id: Optional[str], relay_addr: Tuple[str, int]) -> None:
    """Connect, register, and print every event as one JSON line."""
    client = BridgeClient(config, TcpDirectedChannel(*relay_addr), client_id=client_id)
    client.on_message(lambda env: print(json.dumps(env.to_dict(), ensure_ascii=False)))
    async with client:
        await client.ensure_handshake()
        logger.info(f"Client {client.client_id} connected to relay {relay_addr[0]}:{relay_addr[1]}")
        await asyncio.Event().wait()


async def run_send(
    config: BridgeConfig,
    client_id: Optional[str],
    relay_addr: Tuple[str, int],
    msg_type: str,
    payload: object,
) -> None:
    """Handshake, send one event, print what went out."""
    async with BridgeClient(config, TcpDirectedChannel(*relay_addr), client_id=client_id) as client:
        env = await client.send(msg_type, payload)
        print(json.dumps(env.to_dict(), ensure_ascii=False))


# -------------------------
# Argument parsing
# -------------------------

def parse_addr(value: str) -> Tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    try:
        return host, int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"bad port in {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    """
    Quick examples:
      Relay:   secbridge --mode relay --host 127.0.0.1 --port 9000
      Client:  secbridge --mode client --id alice --relay 127.0.0.1:9000
      Send:    secbridge --mode send --id bob --relay 127.0.0.1:9000 \
                   --type ping --payload '{"n": 1}'
    """
    p = argparse.ArgumentParser(prog="secbridge")
    p.add_argument("--mode", choices=["relay", "client", "send"], required=True)
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=9000)
    p.add_argument("--id", dest="ident")
    p.add_argument("--relay", type=parse_addr)
    p.add_argument("--type", dest="msg_type")
    p.add_argument("--payload", default="null", help="JSON payload for --mode send")
    return p


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = build_parser().parse_args(argv)
    try:
        config = BridgeConfig.from_env()
    except ConfigError as exc:
        raise SystemExit(str(exc))

    try:
        if args.mode == "relay":
            asyncio.run(run_relay(config, args.host, args.port))

        elif args.mode == "client":
            if not args.relay:
                raise SystemExit("--relay is required for client mode")
            asyncio.run(run_client(config, args.ident, args.relay))

        elif args.mode == "send":
            if not args.relay or not args.msg_type:
                raise SystemExit("--relay and --type are required for send mode")
            try:
                payload = json.loads(args.payload)
            except json.JSONDecodeError as exc:
                raise SystemExit(f"--payload is not valid JSON: {exc}")
            asyncio.run(run_send(config, args.ident, args.relay, args.msg_type, payload))
    except BridgeError as exc:
        raise SystemExit(f"secbridge: {exc}")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
