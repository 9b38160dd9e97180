import pytest

from secbridge import messages as m
from secbridge.config import BridgeConfig
from secbridge.errors import ChannelClosed
from secbridge.transport import Destination

SECRET = "unit-test-shared-secret"
RELAY_ORIGIN = "https://bridge.example.com"
ORIGIN_A = "https://signal-hub.example.com"
ORIGIN_B = "https://signal-viewer.example.com"
ORIGIN_C = "https://risk-app.example.com"
EVIL_ORIGIN = "https://evil.example.net"

T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingDestination(Destination):
    """Reply handle that keeps what it was sent, or fails like a dead peer."""

    def __init__(self, fail: bool = False) -> None:
        self.messages = []
        self.fail = fail

    async def post(self, message):
        if self.fail:
            raise ChannelClosed("peer is gone")
        self.messages.append(message)

    def of_type(self, msg_type):
        return [msg for msg in self.messages if msg["type"] == msg_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def relay_config():
    return BridgeConfig(secret=SECRET, allowed_origins={ORIGIN_A, ORIGIN_B, ORIGIN_C})


@pytest.fixture
def client_config():
    return BridgeConfig(secret=SECRET, allowed_origins={RELAY_ORIGIN}, ack_timeout_ms=2_000)


def signed(msg_type, payload, source_id, timestamp, secret=SECRET):
    """Signed envelope as a wire dict."""
    return m.build(msg_type, payload, source_id, secret, timestamp).to_dict()


def hello(client_id, timestamp):
    return signed(m.HELLO, {"clientId": client_id}, client_id, timestamp)
