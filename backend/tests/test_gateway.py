import asyncio
import json
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from api.gateway import COMMANDS, Gateway, encode_frame, hash_secret
from conftest import FakeWebSocket, event_names, rpc_result, status, wait_until
from models.events import EventName

PASSWORD = "gwpass"


def _balance_handler(delays=None):
    delays = delays or {}

    async def _handler(request):
        body = json.loads(request.content)
        if body["method"] == "getBalance":
            address = body["params"].get("address", "")
            await asyncio.sleep(delays.get(address, 0))
            amount = {"slow": 100, "fast": 200}.get(address, 0)
            return rpc_result(request, {"availableBalance": amount, "lockedAmount": 0})
        if body["method"] == "getAddresses":
            return rpc_result(request, {"addresses": ["Zmine"]})
        return rpc_result(request, {})

    return _handler


def _make_gateway(bus, make_rpc_client, handler=None, **kwargs):
    rpc = make_rpc_client(handler or _balance_handler())
    params = {"password": PASSWORD, "auth_timeout": 1.0, "outbox_size": 100}
    params.update(kwargs)
    gateway = Gateway(bus, rpc, **params)
    gateway.attach()
    return gateway


async def _authenticate(gateway, websocket, secret=PASSWORD):
    task = asyncio.create_task(gateway.handle_websocket(websocket))
    await wait_until(lambda: websocket.sent_types()[:1] == ["challenge"])
    websocket.client_send("challenge", hash_secret(secret))
    await wait_until(lambda: "auth" in websocket.sent_types() or websocket.closed)
    return task


def test_command_table_matches_rpc_client_and_is_validated(bus, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client)
    assert set(gateway._handlers) == set(COMMANDS)
    assert "newTransfer" not in COMMANDS

    with pytest.raises(TypeError):
        Gateway(bus, object(), password=PASSWORD)


def test_frames_omit_data_when_there_is_no_payload():
    assert json.loads(encode_frame("challenge")) == {"type": "challenge"}
    assert json.loads(encode_frame("auth", False)) == {"type": "auth", "data": False}
    assert json.loads(encode_frame("close", 0)) == {"type": "close", "data": 0}
    assert json.loads(encode_frame("status", status(5, 6))) == {
        "type": "status",
        "data": {"blockCount": 5, "knownBlockCount": 6, "lastBlockHash": "ab" * 32, "peerCount": 8},
    }


@pytest.mark.asyncio
async def test_authenticated_client_receives_alive_and_broadcasts(bus, events, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client, is_alive=lambda: True)
    websocket = FakeWebSocket()

    task = await _authenticate(gateway, websocket)
    await wait_until(lambda: "alive" in websocket.sent_types())
    assert websocket.accepted
    assert websocket.sent[:3] == [
        {"type": "challenge"},
        {"type": "auth", "data": True},
        {"type": "alive"},
    ]
    assert len(gateway.sessions) == 1

    bus.emit(EventName.SCAN, {"fromBlock": 1, "toBlock": 11})
    bus.emit(EventName.AUTH_SUCCESS, "someone-else")
    bus.emit(EventName.SYNCED)
    await wait_until(lambda: "synced" in websocket.sent_types())

    assert {"type": "scan", "data": {"fromBlock": 1, "toBlock": 11}} in websocket.sent
    assert "auth.success" not in websocket.sent_types()

    websocket.disconnect()
    await asyncio.wait_for(task, 1)

    assert gateway.sessions == {}
    names = event_names(events)
    assert names[0] == "connection"
    assert "auth.success" in names
    assert "disconnect" in names


@pytest.mark.asyncio
async def test_wrong_secret_gets_auth_false_and_is_closed(bus, events, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client)
    websocket = FakeWebSocket()

    task = await _authenticate(gateway, websocket, secret="wrong")
    await asyncio.wait_for(task, 1)
    bus.emit(EventName.INFO, "not for you")

    assert websocket.sent == [{"type": "challenge"}, {"type": "auth", "data": False}]
    assert websocket.closed
    assert gateway.sessions == {}
    assert "auth.failure" in event_names(events)
    assert "auth.success" not in event_names(events)


@pytest.mark.asyncio
async def test_gateway_without_password_refuses_every_client(bus, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client, password=None)
    websocket = FakeWebSocket()

    task = await _authenticate(gateway, websocket, secret="")
    await asyncio.wait_for(task, 1)

    assert websocket.sent[-1] == {"type": "auth", "data": False}


@pytest.mark.asyncio
async def test_unauthenticated_connection_is_closed_after_timeout(bus, events, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client, auth_timeout=0.05)
    websocket = FakeWebSocket()

    task = asyncio.create_task(gateway.handle_websocket(websocket))
    await asyncio.sleep(0.01)
    websocket.client_send("getStatus", {"nonce": 1})
    bus.emit(EventName.INFO, "broadcast before auth")
    await asyncio.wait_for(task, 1)

    assert websocket.sent == [{"type": "challenge"}]
    assert websocket.closed
    assert event_names(events)[-2] == "disconnect"


@pytest.mark.asyncio
async def test_concurrent_requests_are_answered_with_their_own_nonce(bus, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client, _balance_handler({"slow": 0.05}))
    websocket = FakeWebSocket()
    task = await _authenticate(gateway, websocket)

    websocket.client_send("getBalance", {"address": "slow", "nonce": 111})
    websocket.client_send("getBalance", {"address": "fast", "nonce": 222})
    await wait_until(lambda: websocket.sent_types().count("getBalance") == 2)

    responses = [frame["data"] for frame in websocket.sent if frame["type"] == "getBalance"]
    assert [r["nonce"] for r in responses] == [222, 111]
    by_nonce = {r["nonce"]: r["data"] for r in responses}
    assert by_nonce[111] == {"availableBalance": 1.0, "lockedAmount": 0.0}
    assert by_nonce[222] == {"availableBalance": 2.0, "lockedAmount": 0.0}

    websocket.disconnect()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_command_errors_and_generated_nonces(bus, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client)
    websocket = FakeWebSocket()
    task = await _authenticate(gateway, websocket)

    websocket.client_send("getAddresses")
    websocket.client_send("getSpendKeys", json.dumps({"nonce": "abc"}))
    websocket.client_send("newTransfer", {"nonce": 5})
    websocket.incoming.put_nowait("not json")
    await wait_until(lambda: len([t for t in websocket.sent_types() if t.startswith("get")]) == 2)

    frames = {frame["type"]: frame.get("data") for frame in websocket.sent}
    assert isinstance(frames["getAddresses"]["nonce"], int)
    assert frames["getAddresses"]["data"] == ["Zmine"]
    assert frames["getSpendKeys"]["nonce"] == "abc"
    assert "address" in frames["getSpendKeys"]["error"]
    assert "newTransfer" not in frames

    websocket.disconnect()
    await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_full_outbox_drops_only_that_session(bus, events, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client, outbox_size=3)
    slow = FakeWebSocket()
    slow_task = await _authenticate(gateway, slow)
    fast = FakeWebSocket()
    fast_task = await _authenticate(gateway, fast)

    slow_session = next(s for s in gateway.sessions.values() if s.websocket is slow)
    fast_session = next(s for s in gateway.sessions.values() if s.websocket is fast)
    await wait_until(lambda: slow_session.outbox.empty() and fast_session.outbox.empty())

    # No await in between, so the sender never gets to drain the backlog.
    for _ in range(3):
        assert slow_session.offer(encode_frame("data", "stuck"))
    bus.emit(EventName.DATA, "line")

    await asyncio.wait_for(slow_task, 1)
    assert slow.closed
    assert list(gateway.sessions.values()) == [fast_session]
    assert any(e.name == EventName.ERROR and "outbox full" in e.data for e in events)
    await wait_until(lambda: {"type": "data", "data": "line"} in fast.sent)

    fast.disconnect()
    await asyncio.wait_for(fast_task, 1)



@pytest.mark.asyncio
async def test_send_failure_is_reported_and_isolated(bus, events, make_rpc_client):
    gateway = _make_gateway(bus, make_rpc_client)
    broken = FakeWebSocket()
    broken_task = await _authenticate(gateway, broken)
    healthy = FakeWebSocket()
    healthy_task = await _authenticate(gateway, healthy)

    async def _fail(text):
        raise ConnectionResetError("peer gone")

    broken.send_text = _fail
    bus.emit(EventName.WARNING, "heads up")

    await asyncio.wait_for(broken_task, 1)
    await wait_until(lambda: "warning" in healthy.sent_types())
    assert any(e.name == EventName.ERROR and "send failed" in e.data for e in events)
    assert len(gateway.sessions) == 1

    await gateway.close()
    assert gateway.sessions == {}
    healthy.disconnect()
    await asyncio.wait_for(healthy_task, 1)
