"""Process-wide service state: lifecycle, start time and the in-flight set."""

import enum
import threading
from datetime import datetime
from typing import FrozenSet, Iterable, Optional


class ServiceStateKind(str, enum.Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    ERROR = "Error"


class ServiceState:
    """Lifecycle state and in-flight accounts behind one lock.

    Claiming a slot checks the ceiling and adds the account in one step, so
    two dispatches can never both see the last free slot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._kind = ServiceStateKind.STOPPED
        self._error_message: Optional[str] = None
        self._started_at: Optional[datetime] = None
        self._in_flight = set()

    @property
    def kind(self) -> ServiceStateKind:
        with self._lock:
            return self._kind

    @property
    def error_message(self) -> Optional[str]:
        with self._lock:
            return self._error_message

    @property
    def started_at(self) -> Optional[datetime]:
        with self._lock:
            return self._started_at

    @property
    def in_flight(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._in_flight)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def transition(self, expected: Iterable[ServiceStateKind], new: ServiceStateKind) -> bool:
        """Move to ``new`` only from one of ``expected``. False when the state was elsewhere."""
        with self._lock:
            if self._kind not in tuple(expected):
                return False
            self._kind = new
            if new is not ServiceStateKind.ERROR:
                self._error_message = None
            return True

    def fail(self, message: str) -> bool:
        with self._lock:
            if self._kind not in (ServiceStateKind.STARTING, ServiceStateKind.RUNNING):
                return False
            self._kind = ServiceStateKind.ERROR
            self._error_message = message
            return True

    def mark_started(self, when: datetime):
        with self._lock:
            self._started_at = when

    def claim(self, account_id: str, ceiling: int) -> bool:
        with self._lock:
            if account_id in self._in_flight or len(self._in_flight) >= ceiling:
                return False
            self._in_flight.add(account_id)
            return True

    def release(self, account_id: str):
        with self._lock:
            self._in_flight.discard(account_id)

    def reset(self):
        """Forget in-flight accounts after a drain."""
        with self._lock:
            self._in_flight.clear()
