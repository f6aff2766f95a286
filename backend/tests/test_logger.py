import json
import logging
import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from utils.logger import WALLETD_CONSOLE, ConsoleFormatter, JSONFormatter


def _record(name: str, msg: str, extra_data=None) -> logging.LogRecord:
    record = logging.LogRecord(name, logging.INFO, __file__, 1, msg, None, None)
    record.extra_data = extra_data
    return record


def test_console_formatter_appends_extras():
    line = ConsoleFormatter().format(_record("scanner", "scanned", {"from_block": 1, "to_block": 10}))

    assert "[INFO] scanner: scanned" in line
    assert line.endswith("| from_block=1 to_block=10")


def test_console_formatter_relays_walletd_output_bare():
    line = ConsoleFormatter().format(_record(WALLETD_CONSOLE, "Loading container..."))

    assert line == "[walletd] Loading container..."


def test_json_formatter_includes_data():
    payload = json.loads(JSONFormatter().format(_record("gateway", "hello", {"session": "abc"})))

    assert payload["logger"] == "gateway"
    assert payload["message"] == "hello"
    assert payload["data"] == {"session": "abc"}
    assert payload["timestamp"].endswith("Z")
