"""Decides which accounts are due and dispatches workers under the ceiling."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Mapping, Optional

from mailfeed.background.clock import utcnow
from mailfeed.background.config import BackgroundConfig
from mailfeed.background.context import RunContext
from mailfeed.background.state import ServiceState
from mailfeed.background.status import StatusAggregator
from mailfeed.background.types import Account
from mailfeed.background.worker import AccountWorker, RunOutcome, RunStatus

logger = logging.getLogger(__name__)

DISPATCHED = "dispatched"
DEFERRED = "deferred"
ALREADY_RUNNING = "already_running"


def select_due_accounts(
    now: datetime,
    last_runs: Mapping[str, datetime],
    intervals: Mapping[str, Optional[timedelta]],
    default_interval: timedelta,
    in_flight: Iterable[str],
    capacity: Optional[int] = None,
) -> List[str]:
    """Return the accounts to dispatch now, most overdue first.

    ``intervals`` lists every candidate account; a None interval falls back
    to ``default_interval``. Accounts that never ran come first, then by
    oldest last run, so a full pool cannot starve anyone for long.
    """
    busy = set(in_flight)
    never_run = []
    overdue = []

    for account_id, interval in intervals.items():
        if account_id in busy:
            continue
        last_run = last_runs.get(account_id)
        if last_run is None:
            never_run.append(account_id)
        elif now - last_run >= (interval or default_interval):
            overdue.append((last_run, account_id))

    overdue.sort()
    due = never_run + [account_id for _, account_id in overdue]
    if capacity is not None:
        due = due[:max(capacity, 0)]
    return due


class AccountScheduler:
    """Runs each tick's dispatch decision and owns the worker tasks."""

    def __init__(
        self,
        repository,
        worker: AccountWorker,
        config: BackgroundConfig,
        state: ServiceState,
        status: StatusAggregator,
        clock=None,
        sleep=None,
    ):
        self.repository = repository
        self.worker = worker
        self.config = config
        self.state = state
        self.status = status
        self._clock = clock or utcnow
        self._sleep = sleep
        self.last_runs: Dict[str, datetime] = {}
        self._pending: Deque[str] = deque()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._accepting = True
        self.cancel_event = asyncio.Event()

    @property
    def ceiling(self) -> int:
        return self.config.max_concurrent_accounts

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    def reset(self):
        """Prepare for a fresh start."""
        self.last_runs.clear()
        self._pending.clear()
        self._accepting = True
        self.cancel_event = asyncio.Event()

    async def tick(self) -> List[str]:
        """One scheduling decision. Never waits on a worker."""
        accounts = self.repository.list_accounts()
        self.status.set_accounts_count(len(accounts))

        launched = self._dispatch_pending()

        by_id = {account.id: account for account in accounts}
        intervals = {
            account.id: timedelta(minutes=account.poll_interval_minutes) if account.poll_interval_minutes else None
            for account in accounts
        }
        due = select_due_accounts(
            now=self._clock(),
            last_runs=self.last_runs,
            intervals=intervals,
            default_interval=timedelta(minutes=self.config.per_account_interval_minutes),
            in_flight=self.state.in_flight,
            capacity=self.ceiling - self.state.active_count,
        )

        for account_id in due:
            if account_id in self._pending:
                continue
            if self._launch(by_id[account_id]):
                launched.append(account_id)

        if launched:
            logger.info(f"Dispatched {len(launched)} account(s): {', '.join(launched)}")
        else:
            logger.debug("No accounts due")
        return launched

    def request(self, account: Account) -> str:
        """Out-of-band dispatch. Deferred rather than rejected when the pool is full."""
        if account.id in self.state.in_flight:
            return ALREADY_RUNNING
        if account.id not in self._pending and self._launch(account):
            return DISPATCHED
        if account.id not in self._pending:
            self._pending.append(account.id)
            logger.info(f"Pool full, deferred manual run for {account.name}")
        return DEFERRED

    def request_all(self, accounts: Iterable[Account]) -> Dict[str, int]:
        counts = {DISPATCHED: 0, DEFERRED: 0, ALREADY_RUNNING: 0}
        for account in accounts:
            counts[self.request(account)] += 1
        return counts

    def _dispatch_pending(self) -> List[str]:
        launched = []
        while self._accepting and self._pending and self.state.active_count < self.ceiling:
            account_id = self._pending.popleft()
            if account_id in self.state.in_flight:
                continue
            account = self.repository.get_account(account_id)
            if account is None or not account.enabled:
                logger.info(f"Dropping deferred run for missing or disabled account {account_id}")
                continue
            if not self._launch(account):
                self._pending.appendleft(account_id)
                break
            launched.append(account_id)
        return launched

    def _launch(self, account: Account) -> bool:
        if not self._accepting or not self.state.claim(account.id, self.ceiling):
            return False

        self.status.on_worker_started(account.id)
        task = asyncio.create_task(self._run_worker(account), name=f"account-worker-{account.id}")
        self._tasks[account.id] = task
        return True

    async def _run_worker(self, account: Account):
        outcome = RunOutcome(account_id=account.id, status=RunStatus.FAILED)
        try:
            ctx = RunContext(
                self.config.limits.max_processing_time_seconds,
                cancel_event=self.cancel_event,
                sleep=self._sleep,
                account_id=account.id,
            )
            outcome = await self.worker.run(account, ctx)
        except asyncio.CancelledError:
            outcome.error = "Worker abandoned after drain timeout"
            outcome.error_kind = "cancelled"
            logger.warning(f"Abandoned worker for {account.name}")
            raise
        except Exception as e:
            outcome.error = f"Worker crashed: {e}"
            outcome.error_kind = "processing"
            logger.error(f"Worker for {account.name} crashed: {e}")
        finally:
            if outcome.status is not RunStatus.SKIPPED:
                self.last_runs[account.id] = self._clock()
            self._tasks.pop(account.id, None)
            self.state.release(account.id)
            self.status.on_worker_finished(outcome)
            self._dispatch_pending()

    async def wait_idle(self):
        """Wait until no worker task is left, including deferred ones launched meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def drain(self, timeout: float) -> int:
        """Cancel cooperatively, wait up to ``timeout``, then abandon stragglers.

        Returns the number of abandoned workers.
        """
        self._accepting = False
        self._pending.clear()
        self.cancel_event.set()

        tasks = list(self._tasks.values())
        if not tasks:
            return 0

        logger.info(f"Draining {len(tasks)} worker(s), up to {timeout}s")
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            logger.warning(f"Worker {task.get_name()} did not finish within {timeout}s, abandoning it")
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        return len(still_running)
