from enum import Enum


class ServiceState(str, Enum):
    DOWN = "down"
    STARTING = "starting"
    ALIVE_UNSYNCED = "alive_unsynced"
    ALIVE_SYNCED = "alive_synced"


class ProcessState:
    """Liveness and sync state of the supervised daemon.

    A single ``ServiceState`` value replaces independent running/synced flags,
    so a synced-but-not-alive combination cannot be represented. Only the
    health monitor and the process-exit handler move it.
    """

    def __init__(self) -> None:
        self.state: ServiceState = ServiceState.DOWN
        self.known_block_count: int = 0

    @property
    def alive(self) -> bool:
        return self.state in (ServiceState.ALIVE_UNSYNCED, ServiceState.ALIVE_SYNCED)

    @property
    def synced(self) -> bool:
        return self.state == ServiceState.ALIVE_SYNCED

    def mark_starting(self) -> None:
        self.state = ServiceState.STARTING

    def mark_down(self) -> None:
        self.state = ServiceState.DOWN

    def mark_alive(self) -> bool:
        """Enter an alive state. Returns True on a not-alive -> alive transition."""
        if self.alive:
            return False
        self.state = ServiceState.ALIVE_UNSYNCED
        return True

    def mark_synced(self) -> bool:
        """Enter ALIVE_SYNCED. Returns True only when it was not already synced."""
        if self.synced:
            return False
        self.state = ServiceState.ALIVE_SYNCED
        return True

    def mark_unsynced(self) -> None:
        """Drop to unsynced, keeping whatever liveness is currently known."""
        if self.state == ServiceState.ALIVE_SYNCED:
            self.state = ServiceState.ALIVE_UNSYNCED

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "alive": self.alive,
            "synced": self.synced,
            "known_block_count": self.known_block_count,
        }
