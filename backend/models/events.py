from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventName(str, Enum):
    """Every signal that flows through the event bus."""

    START = "start"
    ALIVE = "alive"
    CLOSE = "close"
    DATA = "data"
    DOWN = "down"
    ERROR = "error"
    INFO = "info"
    SAVE = "save"
    SCAN = "scan"
    STATUS = "status"
    SYNCED = "synced"
    TRANSACTION = "transaction"
    WARNING = "warning"

    # Gateway-internal
    CONNECTION = "connection"
    DISCONNECT = "disconnect"
    AUTH_SUCCESS = "auth.success"
    AUTH_FAILURE = "auth.failure"


# Lifecycle events relayed verbatim to authenticated gateway clients.
BROADCAST_EVENTS = frozenset(
    {
        EventName.ALIVE,
        EventName.CLOSE,
        EventName.DATA,
        EventName.DOWN,
        EventName.ERROR,
        EventName.INFO,
        EventName.SAVE,
        EventName.SCAN,
        EventName.STATUS,
        EventName.SYNCED,
        EventName.TRANSACTION,
        EventName.WARNING,
    }
)


@dataclass(frozen=True)
class BusEvent:
    """A named state change and its payload.

    Payload per name:
        close        -> exit code (int or None)
        data, error, info, warning, start -> str
        scan         -> {"fromBlock": int, "toBlock": int}
        status       -> StatusSnapshot
        transaction  -> TransactionRecord
        connection, disconnect, auth.* -> connection id (str)
        alive, down, save, synced -> None
    """

    name: EventName
    data: Any = None
