import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import event_names, wait_until
from models.events import EventName
from models.wallet import TransactionRecord
from services.scanner import ScanLoop, compute_batch_size


class MemoryCursorStore:
    def __init__(self, height: int = 1):
        self.height = height
        self.puts = []

    async def get(self, app_name: str) -> int:
        return self.height

    async def put(self, app_name: str, height: int) -> int:
        self.puts.append(height)
        self.height = max(self.height, height)
        return self.height


def _synced_state(process_state, known: int):
    process_state.mark_alive()
    process_state.mark_synced()
    process_state.known_block_count = known
    return process_state


def _record(tx_hash: str) -> TransactionRecord:
    return TransactionRecord(transaction_hash=tx_hash, amount=1.5, address="Zmine")


@pytest.mark.parametrize(
    "backlog, expected",
    [(0, 0), (1, 1), (5, 1), (10, 1), (11, 10), (50, 10), (100, 10), (101, 101), (500, 500), (5000, 1000)],
)
def test_compute_batch_size_steps_and_clamps(backlog, expected):
    assert compute_batch_size(backlog) == expected


@pytest.mark.asyncio
async def test_scan_step_emits_scan_then_transactions_then_advances(bus, events, test_settings, process_state):
    store = MemoryCursorStore(height=1)
    rpc = AsyncMock()
    rpc.get_transactions.return_value = [_record("tx1"), _record("tx2")]
    scanner = ScanLoop(bus, rpc, _synced_state(process_state, 501), store, test_settings)

    assert await scanner.scan_once() == (1, 501)

    rpc.get_transactions.assert_awaited_once_with(first_block_index=1, block_count=500)
    assert event_names(events) == ["scan", "transaction", "transaction"]
    assert events[0].data == {"fromBlock": 1, "toBlock": 501}
    assert [e.data.transaction_hash for e in events[1:]] == ["tx1", "tx2"]
    assert store.puts == [501]
    assert scanner.cursor == 501


@pytest.mark.asyncio
async def test_cursor_at_tip_is_a_no_op(bus, events, test_settings, process_state):
    store = MemoryCursorStore(height=50)
    rpc = AsyncMock()
    scanner = ScanLoop(bus, rpc, _synced_state(process_state, 50), store, test_settings)

    assert await scanner.scan_once() is None

    rpc.get_transactions.assert_not_awaited()
    assert events == []


@pytest.mark.asyncio
async def test_scan_does_nothing_unless_synced(bus, events, test_settings, process_state):
    store = MemoryCursorStore(height=1)
    rpc = AsyncMock()
    process_state.mark_alive()
    process_state.known_block_count = 100
    scanner = ScanLoop(bus, rpc, process_state, store, test_settings)

    assert await scanner.scan_once() is None
    rpc.get_transactions.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_step_keeps_cursor_and_retry_uses_same_range(bus, events, test_settings, process_state):
    store = MemoryCursorStore(height=100)
    rpc = AsyncMock()
    rpc.get_transactions.side_effect = [TimeoutError(), [_record("tx9")]]
    scanner = ScanLoop(bus, rpc, _synced_state(process_state, 150), store, test_settings)

    assert await scanner.scan_once() is None
    assert store.puts == []
    assert event_names(events) == ["scan", "error"]

    assert await scanner.scan_once() == (100, 110)
    assert store.puts == [110]
    assert events[0].data == events[2].data == {"fromBlock": 100, "toBlock": 110}
    assert event_names(events)[2:] == ["scan", "transaction"]


@pytest.mark.asyncio
async def test_timer_walks_backlog_to_tip(bus, events, test_settings, process_state):
    store = MemoryCursorStore(height=1)
    rpc = AsyncMock()
    rpc.get_transactions.return_value = []
    scanner = ScanLoop(bus, rpc, _synced_state(process_state, 25), store, test_settings)

    scanner.start()
    scanner.start()
    await wait_until(lambda: store.height == 25)
    scanner.stop()

    # 24 behind -> 10, 14 behind -> 10, then single blocks.
    assert store.puts == [11, 21, 22, 23, 24, 25]
    assert all(e.name == EventName.SCAN for e in events)
    assert not scanner.running

    await asyncio.sleep(0.03)
    assert store.puts == [11, 21, 22, 23, 24, 25]
