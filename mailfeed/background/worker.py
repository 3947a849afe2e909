"""One polling and apply cycle for one account."""

import asyncio
import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

from mailfeed.background.clock import utcnow
from mailfeed.background.config import BackgroundConfig
from mailfeed.background.context import LockRegistry, RunContext
from mailfeed.background.errors import ConcurrencyConflict, ProcessingError, RunCancelled, RunTimeoutError
from mailfeed.background.matcher import matches, resolve_action
from mailfeed.background.retention import RetentionManager
from mailfeed.background.types import Account, Feed, Rule
from mailfeed.mail.content import build_feed_item
from mailfeed.mail.types import MailClient, MailMessage

logger = logging.getLogger(__name__)

DISCONNECT_TIMEOUT_SECONDS = 10


class RunStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class RunOutcome:
    """What one run did, reported to the status aggregator."""

    account_id: str
    status: RunStatus = RunStatus.SUCCEEDED
    emails_processed: int = 0
    items_created: int = 0
    items_evicted: int = 0
    attempts: int = 0
    truncated: bool = False
    watermark: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    action_errors: List[ProcessingError] = field(default_factory=list)
    retry_delays: List[float] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    # (folder, uid) of every message handled so far, across attempts
    handled: Set[Tuple[str, str]] = field(default_factory=set, repr=False)

    def fail(self, error: ProcessingError, status: RunStatus = RunStatus.FAILED):
        self.status = status
        self.error = error.message
        self.error_kind = error.kind


@dataclass
class FolderMark:
    """Progress through one folder during one attempt, in arrival order."""

    last_date: Optional[datetime] = None
    truncated: bool = False
    count: int = 0

    def saw(self, received: Optional[datetime]):
        if received is not None and (self.last_date is None or received > self.last_date):
            self.last_date = received


def next_watermark(marks: Sequence[FolderMark], current: Optional[datetime]) -> Optional[datetime]:
    """Watermark after a successful attempt, or None to leave it where it is.

    Marks hold server arrival times and folders are listed oldest arrival
    first. A truncated folder still has unread messages after its last
    processed one, so the watermark can go no further than the earliest
    such point.
    """
    truncated = [mark for mark in marks if mark.truncated]
    if truncated:
        if any(mark.last_date is None for mark in truncated):
            return None
        candidate = min(mark.last_date for mark in truncated)
    else:
        seen = [mark.last_date for mark in marks if mark.last_date is not None]
        candidate = max(seen) if seen else None

    if candidate is None or (current is not None and candidate <= current):
        return None
    return candidate


def group_rules_by_folder(rules: Sequence[Rule]) -> "OrderedDict[str, List[Rule]]":
    grouped: "OrderedDict[str, List[Rule]]" = OrderedDict()
    for rule in rules:
        grouped.setdefault(rule.folder, []).append(rule)
    return grouped


async def _next_message(messages) -> Optional[MailMessage]:
    try:
        return await messages.__anext__()
    except StopAsyncIteration:
        return None


class AccountWorker:
    """Fetch, match, ingest, act and checkpoint for one account."""

    def __init__(
        self,
        repository,
        mail_client: MailClient,
        config: BackgroundConfig,
        retention: Optional[RetentionManager] = None,
        account_locks: Optional[LockRegistry] = None,
        feed_locks: Optional[LockRegistry] = None,
        clock=None,
        description_length: int = 500,
    ):
        self.repository = repository
        self.mail_client = mail_client
        self.config = config
        self._clock = clock or utcnow
        self.retention = retention or RetentionManager(repository, self._clock)
        self.account_locks = account_locks or LockRegistry("account")
        self.feed_locks = feed_locks or LockRegistry("feed")
        self.description_length = description_length

    async def run(self, account: Account, ctx: RunContext) -> RunOutcome:
        if self.account_locks.locked(account.id):
            conflict = ConcurrencyConflict(f"Account {account.name} already has a run in flight", account.id)
            logger.debug(f"{conflict.message}, skipping")
            outcome = RunOutcome(account_id=account.id)
            outcome.fail(conflict, RunStatus.SKIPPED)
            return outcome

        async with self.account_locks.get(account.id):
            outcome = await self._run_with_retries(account, ctx)

        outcome.finished_at = self._clock()
        if outcome.status is RunStatus.SUCCEEDED:
            logger.info(
                f"Processed {account.name}: {outcome.emails_processed} emails, "
                f"{outcome.items_created} new items, {outcome.items_evicted} evicted"
                + (" (truncated)" if outcome.truncated else "")
            )
        elif outcome.status is RunStatus.CANCELLED:
            logger.info(f"Run for {account.name} cancelled after {outcome.emails_processed} emails")
        else:
            logger.error(f"Run for {account.name} failed after {outcome.attempts} attempt(s): {outcome.error}")
        return outcome

    async def _run_with_retries(self, account: Account, ctx: RunContext) -> RunOutcome:
        outcome = RunOutcome(account_id=account.id, started_at=self._clock())
        max_retries = self.config.retry.max_attempts
        attempt = 0

        while True:
            outcome.attempts = attempt + 1
            try:
                marks = await self._attempt(account, ctx, outcome)
            except RunCancelled as e:
                outcome.fail(e, RunStatus.CANCELLED)
                return outcome
            except ProcessingError as e:
                if not e.retryable or attempt >= max_retries:
                    outcome.fail(e)
                    return outcome

                delay = self.config.calculate_retry_delay(attempt)
                outcome.retry_delays.append(delay)
                logger.warning(
                    f"Attempt {attempt + 1} for {account.name} failed ({e.kind}: {e.message}), "
                    f"retrying in {delay:.0f}s"
                )
                try:
                    await ctx.sleep(delay)
                except RunCancelled as cancelled:
                    outcome.fail(cancelled, RunStatus.CANCELLED)
                    return outcome
                except RunTimeoutError:
                    outcome.fail(e)
                    return outcome
                attempt += 1
                continue
            except Exception as e:
                logger.error(f"Unexpected error processing {account.name}: {e}")
                outcome.fail(ProcessingError(f"Unexpected error: {e}", account.id))
                return outcome

            outcome.status = RunStatus.SUCCEEDED
            outcome.truncated = any(mark.truncated for mark in marks)
            watermark = next_watermark(marks, self.repository.get_watermark(account.id))
            if watermark is not None and self.repository.save_watermark(account.id, watermark):
                outcome.watermark = watermark
            return outcome

    def _since(self, account: Account) -> datetime:
        since = self._clock() - timedelta(days=self.config.limits.max_email_age_days)
        watermark = self.repository.get_watermark(account.id)
        if watermark is not None and watermark > since:
            return watermark
        return since

    async def _attempt(self, account: Account, ctx: RunContext, outcome: RunOutcome) -> List[FolderMark]:
        rules = self.repository.get_active_rules(account.id)
        if not rules:
            logger.debug(f"No active rules for {account.name}")
            return []

        folders = group_rules_by_folder(rules)
        feeds = {rule.id: self.repository.get_active_feeds(rule.id) for rule in rules}
        since = self._since(account)

        ctx.check_cancelled()
        connection = await ctx.bounded(self.mail_client.connect(account), f"connect to {account.host}")

        marks: List[FolderMark] = []
        # The email budget covers the whole run, earlier attempts included
        budget = self.config.limits.max_emails_per_run - outcome.emails_processed
        try:
            for folder, folder_rules in folders.items():
                mark = await self._process_folder(
                    account, connection, folder, folder_rules, feeds, since, budget, ctx, outcome
                )
                marks.append(mark)
                budget -= mark.count
        finally:
            await self._disconnect(account, connection)
        return marks

    async def _disconnect(self, account: Account, connection):
        # Runs after the deadline too, so it gets its own short timeout
        try:
            await asyncio.wait_for(self.mail_client.disconnect(connection), timeout=DISCONNECT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out disconnecting from {account.name}")

    async def _process_folder(
        self,
        account: Account,
        connection,
        folder: str,
        rules: List[Rule],
        feeds: Dict[str, List[Feed]],
        since: datetime,
        budget: int,
        ctx: RunContext,
        outcome: RunOutcome,
    ) -> FolderMark:
        mark = FolderMark()
        if budget <= 0 or ctx.soft_expired():
            mark.truncated = True
            return mark

        # Messages handled by an earlier attempt are listed again but skipped
        repeats = sum(1 for handled_folder, _ in outcome.handled if handled_folder == folder)
        messages = self.mail_client.list_messages(connection, folder, since, budget + repeats)
        try:
            while True:
                ctx.check_cancelled()
                if mark.count >= budget or ctx.soft_expired():
                    mark.truncated = True
                    break

                message = await ctx.bounded(_next_message(messages), f"fetch from {folder}")
                if message is None:
                    break

                key = (message.folder, message.uid)
                if key not in outcome.handled:
                    await self._handle_message(account, connection, message, rules, feeds, ctx, outcome)
                    outcome.handled.add(key)
                    mark.count += 1
                mark.saw(message.received)
        finally:
            aclose = getattr(messages, "aclose", None)
            if aclose is not None:
                await aclose()

        logger.debug(f"{account.name}/{folder}: {mark.count} messages, truncated={mark.truncated}")
        return mark

    async def _handle_message(
        self,
        account: Account,
        connection,
        message: MailMessage,
        rules: List[Rule],
        feeds: Dict[str, List[Feed]],
        ctx: RunContext,
        outcome: RunOutcome,
    ):
        outcome.emails_processed += 1
        matched = [rule for rule in rules if matches(message, rule) and feeds.get(rule.id)]
        if not matched:
            return

        draft = build_feed_item(message, self.description_length)
        for rule in matched:
            for feed in feeds[rule.id]:
                async with self.feed_locks.get(feed.id):
                    if self.repository.insert_item_if_absent(feed.id, draft):
                        outcome.items_created += 1
                        outcome.items_evicted += self.retention.enforce(feed)

        # Every matched feed now holds the item, created or already present
        action = resolve_action(matched[0], account)
        try:
            await ctx.bounded(
                self.mail_client.apply_action(connection, message, action), f"{action} on message {message.uid}"
            )
        except RunTimeoutError:
            raise
        except ProcessingError as e:
            # Items stay; the action is retried when the message is listed again
            logger.warning(f"Action {action} failed for message {message.uid} in {account.name}: {e.message}")
            if e.account_id is None:
                e.account_id = account.id
            outcome.action_errors.append(e)
