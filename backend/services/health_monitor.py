"""
Health and sync monitor for walletd.

Liveness is defined by the RPC surface answering, not by the process existing:
a hung daemon keeps its pid. Every polling cycle asks for ``getStatus`` and
moves ``ProcessState`` accordingly. Failures are debounced so one slow reply
does not flap the externally visible state to ``down``.
"""

from __future__ import annotations

from typing import Optional

from config import Settings, settings as default_settings
from models.events import EventName
from models.state import ProcessState
from models.wallet import StatusSnapshot
from services.event_bus import EventBus
from services.scheduler import DelayedCall, RepeatingTask
from services.walletd_rpc import WalletdRpcClient
from utils.logger import monitor_logger as logger


def sync_verdict(snapshot: StatusSnapshot) -> Optional[bool]:
    """True when at or one block behind the tip, False when further behind.

    Returns None when the reply says nothing either way (wallet ahead of the
    reported tip, e.g. while the node itself is catching up).
    """
    behind = snapshot.known_block_count - snapshot.block_count
    if behind in (0, 1):
        return True
    if behind > 1:
        return False
    return None


class HealthMonitor:
    """Owns ``ProcessState``; polls status and saves the wallet on timers."""

    def __init__(
        self,
        bus: EventBus,
        rpc: WalletdRpcClient,
        state: Optional[ProcessState] = None,
        config: Settings = default_settings,
    ):
        self.bus = bus
        self.rpc = rpc
        self.state = state or ProcessState()
        self.config = config
        self.down_delay = config.POLLING_INTERVAL_SECONDS * config.MAX_POLLING_FAILURES
        self._poller = RepeatingTask("status_poll", config.POLLING_INTERVAL_SECONDS, self.poll_once)
        self._saver = RepeatingTask("wallet_save", config.SAVE_INTERVAL_SECONDS, self.save_once)
        self._down_timer: Optional[DelayedCall] = None
        self.last_status: Optional[StatusSnapshot] = None

    @property
    def running(self) -> bool:
        return self._poller.running

    def is_alive(self) -> bool:
        return self.state.alive

    # ==================== LIFECYCLE ====================

    def start_checks(self) -> None:
        """Arm the polling and save timers. Safe to call more than once."""
        if not self._poller.running:
            logger.info(
                "Starting health checks",
                polling_interval=self._poller.interval,
                save_interval=self._saver.interval,
                down_delay=self.down_delay,
            )
        self._poller.start()
        self._saver.start()

    def stop(self) -> None:
        self._poller.cancel()
        self._saver.cancel()
        self._clear_down_timer()
        self.state.mark_unsynced()

    def mark_starting(self) -> None:
        self.state.mark_starting()

    def mark_exited(self) -> None:
        """The child process is gone; nothing left to poll."""
        self.stop()
        self.state.mark_down()

    # ==================== CYCLES ====================

    async def poll_once(self) -> None:
        try:
            snapshot = await self.rpc.get_status()
        except Exception as e:
            logger.warning("Status poll failed", error_type=type(e).__name__, error=str(e) or repr(e))
            self.bus.emit(EventName.ERROR, f"Error retrieving walletd status: {str(e) or repr(e)}")
            self._arm_down_timer()
            return
        self._apply_status(snapshot)

    def _apply_status(self, snapshot: StatusSnapshot) -> None:
        self.last_status = snapshot
        # The wallet's own processed height is the scan ceiling.
        self.state.known_block_count = snapshot.block_count

        self.bus.emit(EventName.STATUS, snapshot)

        became_alive = self.state.mark_alive()
        became_synced = False
        verdict = sync_verdict(snapshot)
        if verdict is True:
            became_synced = self.state.mark_synced()
        elif verdict is False:
            self.state.mark_unsynced()

        if became_synced:
            logger.info(
                "walletd synced",
                block_count=snapshot.block_count,
                known_block_count=snapshot.known_block_count,
            )
            self.bus.emit(EventName.SYNCED)

        self._clear_down_timer()

        if became_alive:
            logger.info("walletd is alive", block_count=snapshot.block_count)
            self.bus.emit(EventName.ALIVE)

    async def save_once(self) -> None:
        try:
            await self.rpc.save()
        except Exception as e:
            self.bus.emit(EventName.ERROR, f"Error saving wallet container: {str(e) or repr(e)}")
            return
        self.bus.emit(EventName.SAVE)

    # ==================== DOWN DEBOUNCE ====================

    def _arm_down_timer(self) -> None:
        if self._down_timer is not None:
            return
        self._down_timer = DelayedCall(self.down_delay, self._declare_down)

    def _clear_down_timer(self) -> None:
        if self._down_timer is not None:
            self._down_timer.cancel()
            self._down_timer = None

    def _declare_down(self) -> None:
        # The fired timer stays referenced so no second one is armed before a
        # successful poll clears it.
        logger.error("walletd is not responding", down_after_seconds=self.down_delay)
        self.state.mark_down()
        self.bus.emit(EventName.DOWN)
