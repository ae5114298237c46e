import threading
from enum import Enum


class Phase(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


class SyncState:
    """
    Single-flight guard for history syncs. try_begin() is an atomic
    IDLE -> SYNCING transition; end() may be called from another thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._phase = Phase.IDLE

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def is_syncing(self) -> bool:
        return self._phase == Phase.SYNCING

    def try_begin(self) -> bool:
        with self._lock:
            if self._phase == Phase.SYNCING:
                return False
            self._phase = Phase.SYNCING
            return True

    def end(self):
        with self._lock:
            self._phase = Phase.IDLE
