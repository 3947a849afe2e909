"""Per-run deadline and cancellation, plus the lock registries runs share."""

import asyncio
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from mailfeed.background.errors import RunCancelled, RunTimeoutError

T = TypeVar("T")


class RunContext:
    """Deadline and cancel signal threaded through one account run.

    The deadline is soft between messages (the run stops early and keeps what
    it did) and hard around I/O (a pending await is abandoned with
    RunTimeoutError).
    """

    def __init__(
        self,
        budget_seconds: float,
        cancel_event: Optional[asyncio.Event] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        account_id: Optional[str] = None,
    ):
        loop = asyncio.get_running_loop()
        self._loop = loop
        self.deadline = loop.time() + budget_seconds
        self.cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self.account_id = account_id

    def remaining(self) -> float:
        return max(self.deadline - self._loop.time(), 0.0)

    def soft_expired(self) -> bool:
        return self.remaining() <= 0

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise RunCancelled("Run cancelled by service shutdown", self.account_id)

    async def bounded(self, awaitable: Awaitable[T], what: str = "operation") -> T:
        """Await under the hard deadline."""
        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunTimeoutError(f"Deadline expired before {what}", self.account_id)
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise RunTimeoutError(f"Deadline expired during {what}", self.account_id) from e

    async def sleep(self, delay: float):
        """Back off for ``delay`` seconds unless cancelled or out of time first."""
        self.check_cancelled()
        if delay > self.remaining():
            raise RunTimeoutError(
                f"Retry delay of {delay:.0f}s exceeds the remaining run time", self.account_id
            )

        if self._sleep is not None:
            await self._sleep(delay)
            self.check_cancelled()
            return

        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.check_cancelled()


class LockRegistry:
    """Lazily created asyncio locks keyed by id."""

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

