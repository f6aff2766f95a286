"""
WalletService ties the supervisor, health monitor and scan loop to one bus.

This is the object the application and the gateway talk to. It owns no logic of
its own beyond wiring: the scan loop is armed on ``synced``, and the optional
restart policy reacts to ``close`` and ``down``.
"""

from __future__ import annotations

import sys
from typing import Callable, Optional

from config import Settings, settings as default_settings
from models.events import BusEvent, EventName
from models.state import ProcessState
from services.cursor_store import ScanCursorStore
from services.event_bus import EventBus
from services.health_monitor import HealthMonitor
from services.scanner import ScanLoop
from services.supervisor import WalletdSupervisor
from services.walletd_rpc import WalletdRpcClient
from utils.logger import supervisor_logger as logger


def build_rpc_client(config: Settings) -> WalletdRpcClient:
    return WalletdRpcClient(
        host=config.BIND_ADDRESS,
        port=config.BIND_PORT,
        timeout=config.RPC_TIMEOUT_SECONDS,
        rpc_password=config.RPC_PASSWORD,
        default_mixin=config.DEFAULT_MIXIN,
        default_fee=config.DEFAULT_FEE,
        default_block_count=config.DEFAULT_BLOCK_COUNT,
        decimal_divisor=config.DECIMAL_DIVISOR,
        default_first_block_index=config.DEFAULT_FIRST_BLOCK_INDEX,
        default_unlock_time=config.DEFAULT_UNLOCK_TIME,
        default_fusion_threshold=config.DEFAULT_FUSION_THRESHOLD,
    )


class WalletService:
    def __init__(
        self,
        config: Settings = default_settings,
        bus: Optional[EventBus] = None,
        rpc: Optional[WalletdRpcClient] = None,
        cursor_store: Optional[ScanCursorStore] = None,
        halt: Callable[[int], None] = sys.exit,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.rpc = rpc or build_rpc_client(config)
        self.state = ProcessState()
        self.cursor_store = cursor_store or ScanCursorStore()
        self.monitor = HealthMonitor(self.bus, self.rpc, self.state, config)
        self.scanner = ScanLoop(self.bus, self.rpc, self.state, self.cursor_store, config)
        self.supervisor = WalletdSupervisor(self.bus, self.rpc, self.monitor, config, halt=halt)
        self._subscriptions = [
            self.bus.subscribe(self._on_synced, names=[EventName.SYNCED]),
        ]

    def _on_synced(self, event: BusEvent) -> None:
        self.scanner.start()

    # ==================== CONTROL ====================

    async def start(self) -> bool:
        return await self.supervisor.start()

    def stop(self) -> None:
        """Cancel every timer and ask walletd to exit. Idempotent."""
        self.monitor.stop()
        self.scanner.stop()
        self.supervisor.stop()

    def write(self, text: str) -> bool:
        return self.supervisor.write(text)

    def is_alive(self) -> bool:
        return self.state.alive

    def enable_restart_policy(self, auto_restart: bool, stop_on_down: bool) -> None:
        """Restart walletd after it exits and/or stop it once it is declared down."""
        if auto_restart:
            self._subscriptions.append(
                self.bus.subscribe(self._restart_after_close, names=[EventName.CLOSE])
            )
        if stop_on_down:
            self._subscriptions.append(
                self.bus.subscribe(self._stop_after_down, names=[EventName.DOWN])
            )

    async def _restart_after_close(self, event: BusEvent) -> None:
        logger.warning("walletd closed, restarting", exit_code=event.data)
        await self.start()

    def _stop_after_down(self, event: BusEvent) -> None:
        logger.warning("walletd is down, stopping it")
        self.stop()

    async def close(self) -> None:
        self.stop()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        await self.rpc.close()

    def snapshot(self) -> dict:
        status = self.monitor.last_status
        return {
            **self.state.snapshot(),
            "pid": self.supervisor.pid,
            "running": self.supervisor.running,
            "scan_cursor": self.scanner.cursor,
            "scanning": self.scanner.running,
            "last_status": status.model_dump(by_alias=True) if status is not None else None,
            "events": self.bus.stats(),
        }
