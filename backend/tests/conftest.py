"""Shared fixtures for walletd supervisor tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import asyncio
import json

import httpx
import pytest
from fastapi import WebSocketDisconnect

from config import Settings
from models.state import ProcessState
from models.wallet import StatusSnapshot
from services.event_bus import EventBus
from services.walletd_rpc import WalletdRpcClient


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def make_settings(tmp_path):
    """Build isolated Settings with fast timers and a real container file."""
    container = tmp_path / "wallet.container"
    container.write_bytes(b"container")

    def _make(**overrides) -> Settings:
        values = {
            "APP_NAME": "test",
            "POLLING_INTERVAL_SECONDS": 0.01,
            "SAVE_INTERVAL_SECONDS": 0.01,
            "SCAN_INTERVAL_SECONDS": 0.01,
            "MAX_POLLING_FAILURES": 3,
            "RPC_TIMEOUT_SECONDS": 0.01,
            "CLOSE_EVENT_DELAY_SECONDS": 0.01,
            "WALLETD_PATH": str(tmp_path / "zum-service"),
            "WALLETD_CONFIG": None,
            "BIND_ADDRESS": "127.0.0.1",
            "BIND_PORT": 17070,
            "RPC_PASSWORD": "rpcpass",
            "RPC_LEGACY_SECURITY": False,
            "CONTAINER_FILE": str(container),
            "CONTAINER_PASSWORD": "containerpass",
            "WALLETD_LOG_FILE": None,
            "WALLETD_LOG_LEVEL": 4,
            "SYNC_FROM_ZERO": False,
            "DAEMON_RPC_ADDRESS": "127.0.0.1",
            "DAEMON_RPC_PORT": 17935,
            "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'walletd.db'}",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def test_settings(make_settings):
    return make_settings()


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    """Every event emitted on ``bus``, in order."""
    recorded = []
    bus.subscribe(recorded.append)
    return recorded


def event_names(recorded) -> list[str]:
    return [event.name.value for event in recorded]


def status(block_count: int, known_block_count: int) -> StatusSnapshot:
    return StatusSnapshot(
        block_count=block_count,
        known_block_count=known_block_count,
        last_block_hash="ab" * 32,
        peer_count=8,
    )


@pytest.fixture
def process_state():
    return ProcessState()


# ---------------------------------------------------------------------------
# JSON-RPC
# ---------------------------------------------------------------------------


def rpc_result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


@pytest.fixture
def make_rpc_client():
    """Build a WalletdRpcClient whose HTTP traffic is served by ``handler``."""
    clients = []

    def _make(handler, **kwargs) -> WalletdRpcClient:
        params = {
            "host": "127.0.0.1",
            "port": 17070,
            "timeout": 1.0,
            "rpc_password": "rpcpass",
            "decimal_divisor": 100,
            "default_fee": 0.1,
            "default_mixin": 3,
            "default_fusion_threshold": 1000,
        }
        params.update(kwargs)
        client = WalletdRpcClient(transport=httpx.MockTransport(handler), **params)
        clients.append(client)
        return client

    return _make


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """In-memory stand-in for a FastAPI WebSocket."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.accepted = False
        self.closed = False
        self.close_code = None

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.closed:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(text))

    async def receive_text(self) -> str:
        message = await self.incoming.get()
        if message is None:
            raise WebSocketDisconnect(code=1000)
        return message

    async def close(self, code: int = 1000):
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(None)

    def client_send(self, message_type: str, data=None):
        frame = {"type": message_type}
        if data is not None:
            frame["data"] = data
        self.incoming.put_nowait(json.dumps(frame))

    def disconnect(self):
        self.incoming.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


async def wait_until(predicate, timeout: float = 1.0):
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
