"""
Authenticated WebSocket gateway.

Every frame is a JSON text message ``{"type": <name>, "data": <payload>}``.
A new connection receives ``challenge`` and must answer with the sha256 hex
digest of the shared secret before it sees anything else. Authenticated
connections receive every lifecycle event from the bus and may call the
commands in ``COMMANDS``; each request is answered once, tagged with its nonce.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import inspect
import itertools
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from pydantic.alias_generators import to_snake

from config import settings
from models.events import BROADCAST_EVENTS, BusEvent, EventName
from services.event_bus import EventBus
from services.walletd_rpc import WalletdRpcClient
from utils.logger import gateway_logger as logger

# Wire command name -> WalletdRpcClient coroutine method.
COMMANDS: dict[str, str] = {
    "getStatus": "get_status",
    "getNodeFeeInfo": "get_node_fee_info",
    "getViewKey": "get_view_key",
    "getSpendKeys": "get_spend_keys",
    "getMnemonicSeed": "get_mnemonic_seed",
    "getAddresses": "get_addresses",
    "createAddress": "create_address",
    "deleteAddress": "delete_address",
    "getBalance": "get_balance",
    "getBlockHashes": "get_block_hashes",
    "getTransactionHashes": "get_transaction_hashes",
    "getTransactions": "get_transactions",
    "getUnconfirmedTransactionHashes": "get_unconfirmed_transaction_hashes",
    "getTransaction": "get_transaction",
    "save": "save",
    "reset": "reset",
    "sendTransaction": "send_transaction",
    "createDelayedTransaction": "create_delayed_transaction",
    "getDelayedTransactionHashes": "get_delayed_transaction_hashes",
    "deleteDelayedTransaction": "delete_delayed_transaction",
    "sendDelayedTransaction": "send_delayed_transaction",
    "sendFusionTransaction": "send_fusion_transaction",
    "estimateFusion": "estimate_fusion",
}

# Policy violation, used for failed or missing authentication.
CLOSE_POLICY_VIOLATION = 1008


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(by_alias=True, mode="json")
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


def encode_frame(event_type: str, data: Any = None) -> str:
    frame: dict[str, Any] = {"type": event_type}
    if data is not None:
        frame["data"] = data
    return json.dumps(frame, default=_json_default)


def _parse_frame(raw: str) -> Optional[dict]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return message if isinstance(message, dict) else None


def _payload_dict(data: Any) -> dict:
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return {}
    return dict(data) if isinstance(data, dict) else {}


class GatewaySession:
    """One authenticated connection and its bounded outbox."""

    def __init__(self, websocket: WebSocket, connection_id: str, outbox_size: int):
        self.websocket = websocket
        self.id = connection_id
        self.outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=outbox_size)
        self.sender: Optional[asyncio.Task] = None
        self.requests: set[asyncio.Task] = set()
        self.closed = False

    def offer(self, text: str) -> bool:
        """Queue a frame without blocking. False when the outbox is full."""
        if self.closed:
            return True
        try:
            self.outbox.put_nowait(text)
        except asyncio.QueueFull:
            return False
        return True


class Gateway:
    """Fan-out of bus events and command dispatch for WebSocket clients."""

    def __init__(
        self,
        bus: EventBus,
        rpc: WalletdRpcClient,
        is_alive: Callable[[], bool] = lambda: False,
        password: Optional[str] = settings.GATEWAY_PASSWORD,
        auth_timeout: float = settings.GATEWAY_AUTH_TIMEOUT_SECONDS,
        outbox_size: int = settings.GATEWAY_OUTBOX_SIZE,
    ):
        self.bus = bus
        self.rpc = rpc
        self.is_alive = is_alive
        self.auth_timeout = auth_timeout
        self.outbox_size = outbox_size
        self._secret = hash_secret(password) if password else None
        self._handlers = self._resolve_commands(rpc)
        self.sessions: dict[str, GatewaySession] = {}
        self._nonces = itertools.count(time.time_ns() // 1000)
        self._unsubscribe: Optional[Callable[[], None]] = None
        if self._secret is None:
            logger.warning("No gateway password configured, every handshake will be refused")

    @staticmethod
    def _resolve_commands(rpc: WalletdRpcClient) -> dict[str, Callable]:
        handlers = {}
        for command, attribute in COMMANDS.items():
            method = getattr(rpc, attribute, None)
            if method is None or not inspect.iscoroutinefunction(method):
                raise TypeError(f"Gateway command {command!r} has no coroutine {attribute!r} on the RPC client")
            handlers[command] = method
        return handlers

    # ==================== LIFECYCLE ====================

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self._on_event, names=BROADCAST_EVENTS)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for session in list(self.sessions.values()):
            self._drop(session)

    # ==================== CONNECTION ====================

    async def handle_websocket(self, websocket: WebSocket) -> None:
        await websocket.accept()
        connection_id = uuid.uuid4().hex[:12]
        self.bus.emit(EventName.CONNECTION, connection_id)
        self.bus.emit(EventName.INFO, f"[WEBSOCKET] Client connected with connectionId: {connection_id}")

        session: Optional[GatewaySession] = None
        try:
            await websocket.send_text(encode_frame("challenge"))
            if not await self._handshake(websocket, connection_id):
                return
            session = self._open_session(websocket, connection_id)
            await self._command_loop(session)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(
                "Gateway connection failed",
                connection_id=connection_id,
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
        finally:
            if session is not None:
                self._drop(session)
            self.bus.emit(EventName.DISCONNECT, connection_id)
            self.bus.emit(
                EventName.INFO,
                f"[WEBSOCKET] Client disconnected with connectionId: {connection_id}",
            )

    async def _handshake(self, websocket: WebSocket, connection_id: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.auth_timeout
        while True:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=remaining)
            except asyncio.TimeoutError:
                logger.info("Closing unauthenticated connection", connection_id=connection_id)
                await self._close_socket(websocket)
                return False

            message = _parse_frame(raw)
            if message is None or message.get("type") != "challenge":
                continue

            if self._check_secret(message.get("data")):
                return True

            await websocket.send_text(encode_frame("auth", False))
            self.bus.emit(EventName.AUTH_FAILURE, connection_id)
            self.bus.emit(
                EventName.WARNING,
                f"[WEBSOCKET] Client failed authentication with connectionId: {connection_id}",
            )
            await self._close_socket(websocket)
            return False

    def _check_secret(self, candidate: Any) -> bool:
        if self._secret is None or not isinstance(candidate, str):
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self._secret.encode("utf-8"))

    def _open_session(self, websocket: WebSocket, connection_id: str) -> GatewaySession:
        session = GatewaySession(websocket, connection_id, self.outbox_size)
        session.offer(encode_frame("auth", True))
        if self.is_alive():
            session.offer(encode_frame(EventName.ALIVE.value))
        self.sessions[connection_id] = session
        session.sender = asyncio.get_running_loop().create_task(self._sender(session))

        self.bus.emit(EventName.AUTH_SUCCESS, connection_id)
        self.bus.emit(
            EventName.INFO,
            f"[WEBSOCKET] Client authenticated with connectionId: {connection_id}",
        )
        return session

    async def _close_socket(self, websocket: WebSocket) -> None:
        try:
            await websocket.close(code=CLOSE_POLICY_VIOLATION)
        except Exception as e:
            logger.debug("WebSocket already closed", error=str(e) or repr(e))

    def _drop(self, session: GatewaySession, reason: Optional[str] = None) -> None:
        if self.sessions.get(session.id) is not session:
            return
        del self.sessions[session.id]
        session.closed = True
        if session.sender is not None and session.sender is not asyncio.current_task():
            session.sender.cancel()
        if reason is not None:
            logger.warning("Dropping gateway session", connection_id=session.id, reason=reason)
            self.bus.emit(
                EventName.ERROR,
                f"[WEBSOCKET] Dropped client {session.id}: {reason}",
            )
            asyncio.get_running_loop().create_task(self._close_socket(session.websocket))

    # ==================== OUTBOUND ====================

    async def _sender(self, session: GatewaySession) -> None:
        while True:
            text = await session.outbox.get()
            try:
                await session.websocket.send_text(text)
            except Exception as e:
                self._drop(session, f"send failed: {str(e) or repr(e)}")
                return

    def _on_event(self, event: BusEvent) -> None:
        if event.name not in BROADCAST_EVENTS or not self.sessions:
            return
        text = encode_frame(event.name.value, event.data)
        for session in list(self.sessions.values()):
            if not session.offer(text):
                self._drop(session, "outbox full")

    def send(self, connection_id: str, event_type: str, data: Any = None) -> bool:
        session = self.sessions.get(connection_id)
        if session is None:
            return False
        if not session.offer(encode_frame(event_type, data)):
            self._drop(session, "outbox full")
            return False
        return True

    # ==================== COMMANDS ====================

    async def _command_loop(self, session: GatewaySession) -> None:
        while not session.closed:
            raw = await session.websocket.receive_text()
            message = _parse_frame(raw)
            if message is None:
                continue
            command = message.get("type")
            if command not in self._handlers:
                logger.debug("Ignoring unknown gateway message", connection_id=session.id, type=command)
                continue
            task = asyncio.get_running_loop().create_task(
                self._dispatch(session, command, message.get("data"))
            )
            session.requests.add(task)
            task.add_done_callback(session.requests.discard)

    def next_nonce(self) -> int:
        return next(self._nonces)

    async def _dispatch(self, session: GatewaySession, command: str, data: Any) -> None:
        payload = _payload_dict(data)
        nonce = payload.pop("nonce", None)
        if nonce is None:
            nonce = self.next_nonce()
        kwargs = {to_snake(key): value for key, value in payload.items()}

        try:
            result = await self._handlers[command](**kwargs)
            response = {"nonce": nonce, "data": result}
        except Exception as e:
            logger.info(
                "Gateway command failed",
                connection_id=session.id,
                command=command,
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
            response = {"nonce": nonce, "error": str(e) or repr(e)}

        self.send(session.id, command, response)
