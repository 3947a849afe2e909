"""Counters and point-in-time snapshots for monitoring."""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional, Tuple

from mailfeed.background.clock import utcnow
from mailfeed.background.config import BackgroundConfig
from mailfeed.background.state import ServiceState, ServiceStateKind
from mailfeed.background.worker import RunOutcome, RunStatus

MAX_RECENT_ERRORS = 50


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ErrorRecord:
    account_id: Optional[str]
    kind: str
    message: str
    at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"account_id": self.account_id, "kind": self.kind, "message": self.message, "at": _iso(self.at)}


@dataclass
class AccountStats:
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    emails_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_run_at": _iso(self.last_run_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "emails_processed": self.emails_processed,
        }


@dataclass(frozen=True)
class StatusSnapshot:
    state: ServiceStateKind
    error_message: Optional[str]
    started_at: Optional[datetime]
    accounts_count: int
    active_processing_count: int
    total_emails_processed: int
    total_errors: int
    uptime_seconds: Optional[float]
    config: Dict[str, Any]
    in_flight_accounts: Tuple[str, ...] = ()
    recent_errors: Tuple[ErrorRecord, ...] = ()
    accounts: Dict[str, AccountStats] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        if self.state is ServiceStateKind.ERROR:
            state: Any = {"Error": self.error_message or ""}
        else:
            state = self.state.value

        return {
            "state": state,
            "started_at": _iso(self.started_at),
            "accounts_count": self.accounts_count,
            "active_processing_count": self.active_processing_count,
            "total_emails_processed": self.total_emails_processed,
            "total_errors": self.total_errors,
            "uptime_seconds": self.uptime_seconds,
            "config": self.config,
            "in_flight_accounts": list(self.in_flight_accounts),
            "recent_errors": [record.to_dict() for record in self.recent_errors],
            "accounts": {account_id: stats.to_dict() for account_id, stats in self.accounts.items()},
        }


class StatusAggregator:
    """Counters fed by worker start, completion and failure events.

    Has its own lock, separate from the service state's dispatch lock.
    """

    def __init__(self, max_recent_errors: int = MAX_RECENT_ERRORS, clock=None):
        self._lock = threading.Lock()
        self._clock = clock or utcnow
        self._recent_errors: Deque[ErrorRecord] = deque(maxlen=max_recent_errors)
        self._accounts: Dict[str, AccountStats] = {}
        self.accounts_count = 0
        self.active_processing_count = 0
        self.total_emails_processed = 0
        self.total_errors = 0

    def reset(self):
        with self._lock:
            self._recent_errors.clear()
            self._accounts.clear()
            self.accounts_count = 0
            self.active_processing_count = 0
            self.total_emails_processed = 0
            self.total_errors = 0

    def set_accounts_count(self, count: int):
        with self._lock:
            self.accounts_count = count

    def on_worker_started(self, account_id: str):
        with self._lock:
            self.active_processing_count += 1
            self._stats(account_id).last_run_at = self._clock()

    def on_worker_finished(self, outcome: RunOutcome):
        now = self._clock()
        with self._lock:
            self.active_processing_count = max(self.active_processing_count - 1, 0)
            if outcome.status is RunStatus.SKIPPED:
                return

            stats = self._stats(outcome.account_id)
            stats.emails_processed += outcome.emails_processed
            self.total_emails_processed += outcome.emails_processed

            for error in outcome.action_errors:
                self._record(outcome.account_id, error.kind, error.message, now)

            if outcome.status is RunStatus.SUCCEEDED:
                stats.last_success_at = now
                stats.consecutive_failures = 0
            elif outcome.status is RunStatus.FAILED:
                stats.last_error = outcome.error
                stats.consecutive_failures += 1
                self._record(outcome.account_id, outcome.error_kind or "processing", outcome.error or "", now)

    def on_drained(self):
        with self._lock:
            self.active_processing_count = 0

    def record_error(self, account_id: Optional[str], kind: str, message: str):
        with self._lock:
            self._record(account_id, kind, message, self._clock())

    def _record(self, account_id, kind, message, at):
        self.total_errors += 1
        self._recent_errors.append(ErrorRecord(account_id=account_id, kind=kind, message=message, at=at))

    def _stats(self, account_id: str) -> AccountStats:
        stats = self._accounts.get(account_id)
        if stats is None:
            stats = self._accounts[account_id] = AccountStats()
        return stats

    def snapshot(self, state: ServiceState, config: BackgroundConfig) -> StatusSnapshot:
        kind = state.kind
        started_at = state.started_at
        in_flight = tuple(sorted(state.in_flight))

        uptime = None
        if started_at and kind in (ServiceStateKind.RUNNING, ServiceStateKind.STOPPING):
            uptime = max((self._clock() - started_at).total_seconds(), 0.0)

        with self._lock:
            return StatusSnapshot(
                state=kind,
                error_message=state.error_message,
                started_at=started_at,
                accounts_count=self.accounts_count,
                active_processing_count=self.active_processing_count,
                total_emails_processed=self.total_emails_processed,
                total_errors=self.total_errors,
                uptime_seconds=uptime,
                config=config.to_dict(),
                in_flight_accounts=in_flight,
                recent_errors=tuple(self._recent_errors),
                accounts={account_id: AccountStats(**vars(stats)) for account_id, stats in self._accounts.items()},
            )
