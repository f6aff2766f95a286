from .logger import (
    setup_logging,
    get_logger,
    supervisor_logger,
    monitor_logger,
    scanner_logger,
    gateway_logger,
    rpc_logger,
    console_logger,
)
from .utcnow import utcnow

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "supervisor_logger",
    "monitor_logger",
    "scanner_logger",
    "gateway_logger",
    "rpc_logger",
    "console_logger",

    # Clock
    "utcnow",
]
