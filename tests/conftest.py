"""Test configuration and fixtures."""

import asyncio
import os
from collections import defaultdict
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

os.environ["MAILFEED_DATABASE_URL"] = "sqlite://"
os.environ["MAILFEED_BACKGROUND_AUTOSTART"] = "false"
os.environ["MAILFEED_LOG_LEVEL"] = "DEBUG"


class FakeMailClient:
    """Scripted mail capability. Messages live in ``folders`` keyed by folder name.

    Set ``drop_after`` to lose the connection once that many messages were
    listed; it clears itself so the next attempt lists normally.
    """

    def __init__(self):
        self.folders = defaultdict(list)
        self.actions = []
        self.listed = []
        self.connects = 0
        self.disconnects = 0
        self.connect_failures = 0
        self.connect_error = None
        self.fail_actions = False
        self.fetch_delay = 0
        self.action_started = None
        self.action_gate = None
        self.after_action = None
        self.drop_after = None

    def add(self, *messages):
        for message in messages:
            self.folders[message.folder].append(message)

    async def connect(self, account):
        from mailfeed.background.errors import MailConnectionError

        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        if self.connect_failures:
            self.connect_failures -= 1
            raise MailConnectionError("Connection refused", account.id)
        return SimpleNamespace(account=account)

    async def list_messages(self, connection, folder, since, max_count):
        from mailfeed.background.errors import MailConnectionError

        self.listed.append((folder, since, max_count))
        yielded = 0
        ordered = sorted(self.folders.get(folder, []), key=lambda m: (m.received or datetime.min, int(m.uid)))
        for message in ordered:
            if since is not None and message.received is not None and message.received < since:
                continue
            if yielded >= max_count:
                return
            if self.drop_after is not None and yielded >= self.drop_after:
                self.drop_after = None
                raise MailConnectionError("Connection reset during FETCH")
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
            yield message
            yielded += 1

    async def apply_action(self, connection, message, action):
        from mailfeed.background.errors import ProtocolError

        if self.action_started is not None:
            self.action_started.set()
        if self.action_gate is not None:
            await self.action_gate.wait()
        if self.fail_actions:
            raise ProtocolError(f"STORE failed for {message.uid}")
        self.actions.append((message.uid, action))
        if self.after_action is not None:
            self.after_action(message)

    async def disconnect(self, connection):
        self.disconnects += 1


@pytest.fixture
def fake_mail():
    return FakeMailClient()


@pytest.fixture
def make_message():
    """Factory for MailMessage values dated relative to now.

    The arrival time defaults to the Date header.
    """
    from mailfeed.background.clock import utcnow
    from mailfeed.mail.types import MailMessage

    def factory(
        uid,
        subject="Weekly digest",
        sender="news@lists.example.com",
        recipient="python-list@example.com",
        hours_ago=1,
        folder="INBOX",
        message_id=None,
        labels=(),
        body="Hello list",
        received_hours_ago=None,
    ):
        date = (utcnow() - timedelta(hours=hours_ago)).replace(microsecond=0)
        if received_hours_ago is None:
            received = date
        else:
            received = (utcnow() - timedelta(hours=received_hours_ago)).replace(microsecond=0)
        return MailMessage(
            uid=str(uid),
            folder=folder,
            message_id=message_id if message_id is not None else f"<msg-{uid}@lists.example.com>",
            sender=sender,
            recipient=recipient,
            subject=subject,
            date=date,
            body_plain=body,
            labels=tuple(labels),
            received=received,
        )

    return factory


@pytest.fixture
def repository():
    """Repository on a private in-memory database."""
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from mailfeed.database.connection import build_engine, init_database
    from mailfeed.database.repository import FeedRepository

    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_database(bind=engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield FeedRepository(Session)
    engine.dispose()


@pytest.fixture
def seeded(repository):
    """One account with one rule feeding one feed."""
    account = repository.create_account(
        name="Lists", host="imap.example.com", username="reader", password="secret"
    )
    rule = repository.create_rule(account.id, name="Python list", to_address="python-list@example.com")
    feed = repository.create_feed(rule.id, title="Python list", min_items=0)
    return SimpleNamespace(account=account, rule=rule, feed=feed)


@pytest.fixture
def background_config():
    from mailfeed.background.config import BackgroundConfig, ProcessingLimits, RetryConfig

    return BackgroundConfig(
        global_interval_minutes=60,
        per_account_interval_minutes=30,
        max_concurrent_accounts=2,
        retry=RetryConfig(max_attempts=2, initial_delay_seconds=1, max_delay_seconds=5, backoff_multiplier=2.0),
        limits=ProcessingLimits(max_emails_per_run=50, max_processing_time_seconds=30, max_email_age_days=7),
        drain_timeout_seconds=5,
    )


@pytest.fixture
def recorded_sleep():
    """Sleep replacement that records delays instead of waiting."""
    delays = []

    async def sleep(delay):
        delays.append(delay)

    sleep.delays = delays
    return sleep


@pytest.fixture
def sample_raw_email():
    """Sample raw email for testing."""
    return b"""From: News <news@lists.example.com>
To: python-list@example.com
Subject: Test Email
Date: Wed, 15 Jan 2025 10:30:00 +0100
Message-ID: <test-123@example.com>
MIME-Version: 1.0
Content-Type: text/plain; charset=UTF-8

This is a test email body.
"""


@pytest.fixture
def sample_raw_html_email():
    """Multipart email with an HTML alternative and an attachment."""
    return b"""From: news@lists.example.com
To: python-list@example.com
Subject: =?utf-8?q?Caf=C3=A9_news?=
Date: Wed, 15 Jan 2025 10:30:00 +0000
MIME-Version: 1.0
Content-Type: multipart/mixed; boundary=boundary123

--boundary123
Content-Type: text/html; charset=UTF-8

<html><head><style>p {color: red}</style></head><body><p>Hello <b>list</b></p></body></html>

--boundary123
Content-Type: text/plain; filename="notes.txt"
Content-Disposition: attachment; filename="notes.txt"

Attachment text that is not body.

--boundary123--
"""
