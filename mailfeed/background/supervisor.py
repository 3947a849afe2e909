"""Service lifecycle and the scheduler's tick loop."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from mailfeed.background.clock import utcnow
from mailfeed.background.config import BackgroundConfig
from mailfeed.background.context import LockRegistry
from mailfeed.background.errors import ConfigError, LifecycleConflict, ServiceInvariantError
from mailfeed.background.retention import RetentionManager
from mailfeed.background.scheduler import ALREADY_RUNNING, DEFERRED, DISPATCHED, AccountScheduler
from mailfeed.background.state import ServiceState, ServiceStateKind
from mailfeed.background.status import StatusAggregator, StatusSnapshot
from mailfeed.background.worker import AccountWorker

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    success: bool
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def _conflict(command: str, kind: ServiceStateKind) -> CommandResult:
    error = LifecycleConflict(f"Cannot {command} while the service is {kind.value.lower()}")
    logger.warning(str(error))
    return CommandResult(False, str(error))


class ServiceSupervisor:
    """Owns start/stop/restart and hosts the tick loop."""

    def __init__(
        self,
        repository,
        mail_client,
        config: Optional[BackgroundConfig] = None,
        clock=None,
        sleep=None,
        description_length: int = 500,
    ):
        self.repository = repository
        self.config = config or BackgroundConfig.from_settings()
        self._clock = clock or utcnow
        self.state = ServiceState()
        self.status = StatusAggregator(clock=self._clock)
        self.account_locks = LockRegistry("account")
        self.feed_locks = LockRegistry("feed")
        self.worker = AccountWorker(
            repository,
            mail_client,
            self.config,
            retention=RetentionManager(repository, self._clock),
            account_locks=self.account_locks,
            feed_locks=self.feed_locks,
            clock=self._clock,
            description_length=description_length,
        )
        self.scheduler = AccountScheduler(
            repository, self.worker, self.config, self.state, self.status, clock=self._clock, sleep=sleep
        )
        self._tick_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # Lifecycle

    async def start(self, force: bool = False) -> CommandResult:
        kind = self.state.kind
        if kind in (ServiceStateKind.STARTING, ServiceStateKind.STOPPING):
            return _conflict("start", kind)
        if kind is ServiceStateKind.RUNNING:
            if not force:
                return CommandResult(False, "Background processing is already running")
            return await self.restart()
        if not self.config.enabled:
            return CommandResult(False, "Background processing is disabled in configuration")

        if kind is ServiceStateKind.ERROR:
            # Leftover workers from the failed run go first
            if not self.state.transition((ServiceStateKind.ERROR,), ServiceStateKind.STOPPING):
                return _conflict("start", self.state.kind)
            await self._teardown()
            self.state.transition((ServiceStateKind.STOPPING,), ServiceStateKind.STOPPED)

        if not self.state.transition((ServiceStateKind.STOPPED,), ServiceStateKind.STARTING):
            return _conflict("start", self.state.kind)

        try:
            self.config.validate()
        except ConfigError as e:
            self.state.fail(e.message)
            self.status.record_error(None, e.kind, e.message)
            logger.error(f"Background processing failed to start: {e.message}")
            return CommandResult(False, f"Invalid background configuration: {e.message}")

        self.status.reset()
        self.scheduler.reset()
        self.state.mark_started(self._clock())
        self._stop_event = asyncio.Event()
        self._tick_task = asyncio.create_task(self._tick_loop(), name="background-tick-loop")

        self.state.transition((ServiceStateKind.STARTING,), ServiceStateKind.RUNNING)
        logger.info(
            f"Background processing started (tick every {self.config.global_interval_minutes}m, "
            f"up to {self.config.max_concurrent_accounts} concurrent accounts)"
        )
        return CommandResult(True, "Background processing started")

    async def stop(self) -> CommandResult:
        kind = self.state.kind
        if kind is ServiceStateKind.STOPPED:
            return CommandResult(True, "Background processing is already stopped")
        if kind is ServiceStateKind.STOPPING:
            return _conflict("stop", kind)
        if kind is ServiceStateKind.ERROR:
            return CommandResult(
                False, f"Background processing is in error state ({self.state.error_message}); use restart to recover"
            )
        if not self.state.transition((ServiceStateKind.RUNNING, ServiceStateKind.STARTING), ServiceStateKind.STOPPING):
            return _conflict("stop", self.state.kind)

        logger.info("Stopping background processing")
        abandoned = await self._teardown()
        self.state.transition((ServiceStateKind.STOPPING,), ServiceStateKind.STOPPED)

        message = "Background processing stopped"
        if abandoned:
            message += f"; abandoned {abandoned} worker(s) after the drain timeout"
        logger.info(message)
        return CommandResult(True, message)

    async def restart(self) -> CommandResult:
        kind = self.state.kind
        if kind in (ServiceStateKind.STARTING, ServiceStateKind.STOPPING):
            return _conflict("restart", kind)

        if kind is ServiceStateKind.RUNNING:
            result = await self.stop()
            if not result.success:
                return result

        result = await self.start()
        if not result.success:
            return result
        return CommandResult(True, "Background processing restarted")

    async def _teardown(self) -> int:
        """Stop the tick loop, drain workers, reset the in-flight set."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._tick_task is not None:
            if not self._tick_task.done():
                await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None

        abandoned = await self.scheduler.drain(self.config.drain_timeout_seconds)
        self.state.reset()
        self.status.on_drained()
        return abandoned

    # Tick loop

    def check_invariants(self):
        ceiling = self.config.max_concurrent_accounts
        if self.state.active_count > ceiling:
            raise ServiceInvariantError(f"{self.state.active_count} accounts in flight, ceiling is {ceiling}")
        if self.status.active_processing_count > ceiling:
            raise ServiceInvariantError(
                f"active_processing_count {self.status.active_processing_count} exceeds ceiling {ceiling}"
            )

    async def _tick_loop(self):
        while not self._stop_event.is_set():
            try:
                self.check_invariants()
                await self.scheduler.tick()
            except ServiceInvariantError as e:
                logger.critical(f"Background processing halted: {e}")
                self.state.fail(str(e))
                self.status.record_error(None, "invariant", str(e))
                return
            except Exception as e:
                logger.error(f"Error in background tick: {e}")
                self.status.record_error(None, "tick", str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.global_interval_seconds)
            except asyncio.TimeoutError:
                pass

    # Manual dispatch

    async def process(self, account_id: str) -> CommandResult:
        kind = self.state.kind
        if kind is not ServiceStateKind.RUNNING:
            return CommandResult(False, f"Background processing is not running (state: {kind.value})")

        account = self.repository.get_account(account_id)
        if account is None:
            return CommandResult(False, f"Account {account_id} not found")
        if not account.enabled:
            return CommandResult(False, f"Account {account.name} is disabled")

        result = self.scheduler.request(account)
        if result == DISPATCHED:
            return CommandResult(True, f"Processing started for {account.name}")
        if result == DEFERRED:
            return CommandResult(True, f"All workers busy, {account.name} queued for the next free slot")
        return CommandResult(True, f"{account.name} is already being processed")

    async def process_all(self) -> CommandResult:
        kind = self.state.kind
        if kind is not ServiceStateKind.RUNNING:
            return CommandResult(False, f"Background processing is not running (state: {kind.value})")

        accounts = self.repository.list_accounts()
        if not accounts:
            return CommandResult(True, "No enabled accounts to process")

        counts = self.scheduler.request_all(accounts)
        return CommandResult(
            True,
            f"Requested {len(accounts)} account(s): {counts[DISPATCHED]} started, "
            f"{counts[DEFERRED]} queued, {counts[ALREADY_RUNNING]} already running",
        )

    def status_snapshot(self) -> StatusSnapshot:
        return self.status.snapshot(self.state, self.config)
