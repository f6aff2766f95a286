from .events import BusEvent, EventName, BROADCAST_EVENTS
from .state import ProcessState, ServiceState
from .wallet import Balance, StatusSnapshot, TransactionRecord

__all__ = [
    "BusEvent",
    "EventName",
    "BROADCAST_EVENTS",
    "ProcessState",
    "ServiceState",
    "Balance",
    "StatusSnapshot",
    "TransactionRecord",
]
