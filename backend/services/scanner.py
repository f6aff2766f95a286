"""
Scan loop: walks the chain from the persisted cursor toward the tip and emits
one ``transaction`` event per wallet-owned transfer.

Delivery is at-least-once. The cursor only moves after every event of a batch
has been emitted, so a failed or interrupted step is replayed in full.
"""

from __future__ import annotations

from typing import Optional

from config import Settings, settings as default_settings
from models.events import EventName
from models.state import ProcessState
from services.cursor_store import ScanCursorStore
from services.event_bus import EventBus
from services.scheduler import RepeatingTask
from services.walletd_rpc import WalletdRpcClient
from utils.logger import scanner_logger as logger


def compute_batch_size(backlog: int) -> int:
    """Blocks to request for a given backlog, never more than the backlog."""
    if backlog <= 0:
        return 0
    if backlog > 100:
        step = 1000
    elif backlog > 10:
        step = 10
    else:
        step = 1
    return min(step, backlog)


class ScanLoop:
    def __init__(
        self,
        bus: EventBus,
        rpc: WalletdRpcClient,
        state: ProcessState,
        cursor_store: ScanCursorStore,
        config: Settings = default_settings,
    ):
        self.bus = bus
        self.rpc = rpc
        self.state = state
        self.cursor_store = cursor_store
        self.app_name = config.APP_NAME
        self._timer = RepeatingTask("scan", config.SCAN_INTERVAL_SECONDS, self.scan_once)
        self.cursor: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._timer.running

    def start(self) -> None:
        """Arm the scan timer unless it is already armed."""
        if self._timer.running:
            return
        logger.info("Starting scan loop", app_name=self.app_name, interval=self._timer.interval)
        self._timer.start()

    def stop(self) -> None:
        self._timer.cancel()

    async def scan_once(self) -> Optional[tuple[int, int]]:
        """Run one scan step. Returns ``(from_block, to_block)`` when a batch was committed."""
        if not self.state.synced:
            return None

        try:
            from_block = await self.cursor_store.get(self.app_name)
        except Exception as e:
            self.bus.emit(EventName.ERROR, f"Could not read the scan cursor: {str(e) or repr(e)}")
            return None
        self.cursor = from_block

        known = self.state.known_block_count
        if from_block >= known:
            return None

        batch = compute_batch_size(known - from_block)
        to_block = from_block + batch
        self.bus.emit(EventName.SCAN, {"fromBlock": from_block, "toBlock": to_block})

        try:
            records = await self.rpc.get_transactions(
                first_block_index=from_block,
                block_count=batch,
            )
        except Exception as e:
            logger.warning(
                "Scan step failed",
                from_block=from_block,
                to_block=to_block,
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
            self.bus.emit(
                EventName.ERROR,
                f"Error scanning blocks {from_block} to {to_block}: {str(e) or repr(e)}",
            )
            return None

        for record in records:
            self.bus.emit(EventName.TRANSACTION, record)

        try:
            self.cursor = await self.cursor_store.put(self.app_name, to_block)
        except Exception as e:
            self.bus.emit(EventName.ERROR, f"Could not persist the scan cursor: {str(e) or repr(e)}")
            return None

        logger.debug(
            "Scanned blocks",
            from_block=from_block,
            to_block=to_block,
            transactions=len(records),
        )
        return from_block, to_block
