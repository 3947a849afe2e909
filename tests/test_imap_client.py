"""Tests for the IMAP mail client, without a server."""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest


def _ok(*lines):
    return SimpleNamespace(result="OK", lines=list(lines))


def _account():
    from mailfeed.background.types import Account

    return Account(id="a1", name="Lists", host="imap.example.com", port=993, username="u", password="p")


def _connection(client):
    from mailfeed.mail.imap_client import ImapConnection

    return ImapConnection(client, _account())


def test_parse_plain_message(sample_raw_email):
    from mailfeed.mail.imap_client import parse_message

    message = parse_message(sample_raw_email, "7", "INBOX", ("\\Seen", "Newsletters"))

    assert message.uid == "7"
    assert message.message_id == "<test-123@example.com>"
    assert message.sender == "News <news@lists.example.com>"
    assert message.recipient == "python-list@example.com"
    assert message.subject == "Test Email"
    assert message.date == datetime(2025, 1, 15, 9, 30, 0)
    assert "test email body" in message.body_plain
    assert message.labels == ("Newsletters",)


def test_parse_html_message_skips_attachments(sample_raw_html_email):
    from mailfeed.mail.imap_client import parse_message

    message = parse_message(sample_raw_html_email, "8", "INBOX")

    assert message.subject == "Café news"
    assert message.body_plain == ""
    assert "Hello <b>list</b>" in message.body_html
    assert "Attachment text" not in message.body_html


def test_parse_fetch_lines():
    from mailfeed.mail.imap_client import parse_fetch_lines

    lines = [
        b"1 FETCH (UID 7 FLAGS (\\Seen $Newsletters) RFC822 {12}",
        bytearray(b"Subject: x\r\n"),
        b")",
        b"Fetch completed.",
    ]
    raw, flags = parse_fetch_lines(lines)

    assert raw == b"Subject: x\r\n"
    assert flags == ("\\Seen", "$Newsletters")


def test_imap_date_is_locale_independent():
    from mailfeed.mail.imap_client import imap_date, quote_mailbox

    assert imap_date(datetime(2025, 3, 5, 23, 59)) == "05-Mar-2025"
    assert quote_mailbox('Lists/"Py"') == '"Lists/\\"Py\\""'


def _arrival_lister(raw_by_uid, arrivals):
    """UID command stub: SEARCH returns every uid, INTERNALDATE from ``arrivals``."""

    async def uid(command, *args):
        if command == "search":
            return _ok(b"3 1 2")
        if args[1] == "(INTERNALDATE)":
            lines = [
                f'{n} FETCH (UID {uid_} INTERNALDATE "{stamp}")'.encode()
                for n, (uid_, stamp) in enumerate(arrivals.items(), start=1)
            ]
            return _ok(*lines, b"Fetch completed.")
        return _ok(b"1 FETCH (FLAGS ())", bytearray(raw_by_uid[args[0]]), b")")

    return uid


@pytest.mark.asyncio
async def test_list_messages_filters_and_limits(sample_raw_email):
    """Test messages that arrived before ``since`` are skipped and max_count is honoured."""
    from mailfeed.mail.imap_client import ImapMailClient

    client = MagicMock()
    client.select = AsyncMock(return_value=_ok(b"[READ-WRITE]"))
    client.uid = AsyncMock(
        side_effect=_arrival_lister(
            {"1": sample_raw_email, "2": sample_raw_email, "3": sample_raw_email},
            {
                "1": "01-Jan-2025 10:00:00 +0000",
                "2": "15-Jan-2025 10:00:00 +0000",
                "3": "12-Jan-2025 10:00:00 +0000",
            },
        )
    )

    listed = [
        message.uid
        async for message in ImapMailClient().list_messages(
            _connection(client), "INBOX", datetime(2025, 1, 10), max_count=1
        )
    ]

    assert listed == ["3"]
    client.select.assert_awaited_once_with('"INBOX"')
    assert client.uid.await_args_list[0].args == ("search", "SINCE 09-Jan-2025")
    assert client.uid.await_args_list[1].args == ("fetch", "3,1,2", "(INTERNALDATE)")


@pytest.mark.asyncio
async def test_list_messages_follows_arrival_order(sample_raw_email):
    """Messages come out oldest arrival first whatever their UID or Date header."""
    from mailfeed.mail.imap_client import ImapMailClient

    late_header = sample_raw_email.replace(b"15 Jan 2025", b"20 Jan 2025")
    client = MagicMock()
    client.select = AsyncMock(return_value=_ok())
    client.uid = AsyncMock(
        side_effect=_arrival_lister(
            {"1": late_header, "2": sample_raw_email, "3": sample_raw_email},
            {
                "1": "16-Jan-2025 08:00:00 +0000",
                "2": "15-Jan-2025 11:00:00 +0000",
                "3": "15-Jan-2025 12:00:00 +0000",
            },
        )
    )

    listed = [
        message
        async for message in ImapMailClient().list_messages(_connection(client), "INBOX", None, max_count=10)
    ]

    assert [message.uid for message in listed] == ["2", "3", "1"]
    assert listed[2].received == datetime(2025, 1, 16, 8, 0)
    assert listed[2].date == datetime(2025, 1, 20, 9, 30)


def test_parse_internaldate():
    from mailfeed.mail.imap_client import parse_internaldate

    assert parse_internaldate(" 5-Mar-2025 23:30:00 -0200") == datetime(2025, 3, 6, 1, 30)
    assert parse_internaldate("15-Jan-2025 10:30:00 +0100") == datetime(2025, 1, 15, 9, 30)
    assert parse_internaldate("not a date") is None
    assert parse_internaldate("31-Feb-2025 10:30:00 +0000") is None


def test_missing_date_header_uses_arrival_time(sample_raw_email):
    """Test a message without a Date header is dated by its arrival, keeping its identity stable."""
    from mailfeed.mail.imap_client import parse_message

    raw = sample_raw_email.replace(b"Date: Wed, 15 Jan 2025 10:30:00 +0100\n", b"").replace(
        b"Message-ID: <test-123@example.com>\n", b""
    )
    received = datetime(2025, 1, 15, 9, 31)

    first = parse_message(raw, "7", "INBOX", received=received)
    again = parse_message(raw, "7", "INBOX", received=received)

    assert first.date == received
    assert first.received == received
    assert first.identity == again.identity


@pytest.mark.asyncio
async def test_failed_select_raises_protocol_error():
    from mailfeed.background.errors import ProtocolError
    from mailfeed.mail.imap_client import ImapMailClient

    client = MagicMock()
    client.select = AsyncMock(return_value=SimpleNamespace(result="NO", lines=[b"no such folder"]))

    with pytest.raises(ProtocolError):
        async for _ in ImapMailClient().list_messages(_connection(client), "Missing", None, 10):
            pass


@pytest.mark.asyncio
async def test_mark_read_sets_seen_flag(make_message):
    from mailfeed.mail.imap_client import ImapMailClient
    from mailfeed.mail.types import ActionKind, PostProcessAction

    client = MagicMock()
    client.select = AsyncMock(return_value=_ok())
    client.uid = AsyncMock(return_value=_ok())

    await ImapMailClient().apply_action(_connection(client), make_message(5), PostProcessAction(ActionKind.MARK_READ))

    client.uid.assert_awaited_once_with("store", "5", "+FLAGS", "(\\Seen)")


@pytest.mark.asyncio
async def test_move_without_move_capability_copies_and_deletes(make_message):
    from mailfeed.mail.imap_client import ImapMailClient
    from mailfeed.mail.types import ActionKind, PostProcessAction

    client = MagicMock()
    client.select = AsyncMock(return_value=_ok())
    client.uid = AsyncMock(return_value=_ok())
    client.expunge = AsyncMock(return_value=_ok())
    client.has_capability.return_value = False

    action = PostProcessAction(ActionKind.MOVE_TO_FOLDER, "Archive")
    await ImapMailClient().apply_action(_connection(client), make_message(5), action)

    assert [call.args[0] for call in client.uid.await_args_list] == ["copy", "store"]
    assert client.uid.await_args_list[0].args == ("copy", "5", '"Archive"')
    client.expunge.assert_awaited_once()


@pytest.mark.asyncio
async def test_do_nothing_touches_nothing(make_message):
    from mailfeed.mail.imap_client import ImapMailClient
    from mailfeed.mail.types import ActionKind, PostProcessAction

    client = MagicMock()
    client.select = AsyncMock()
    client.uid = AsyncMock()

    await ImapMailClient().apply_action(_connection(client), make_message(5), PostProcessAction(ActionKind.DO_NOTHING))

    client.select.assert_not_awaited()
    client.uid.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejected_login_is_config_error(monkeypatch):
    import aioimaplib

    from mailfeed.background.errors import ConfigError
    from mailfeed.mail.imap_client import ImapMailClient

    fake = MagicMock()
    fake.wait_hello_from_server = AsyncMock()
    fake.login = AsyncMock(return_value=SimpleNamespace(result="NO", lines=[b"Invalid credentials"]))
    monkeypatch.setattr(aioimaplib, "IMAP4_SSL", MagicMock(return_value=fake))

    with pytest.raises(ConfigError):
        await ImapMailClient().connect(_account())


@pytest.mark.asyncio
async def test_unreachable_server_is_connection_error(monkeypatch):
    import aioimaplib

    from mailfeed.background.errors import MailConnectionError
    from mailfeed.mail.imap_client import ImapMailClient

    fake = MagicMock()
    fake.wait_hello_from_server = AsyncMock(side_effect=ConnectionRefusedError("refused"))
    monkeypatch.setattr(aioimaplib, "IMAP4_SSL", MagicMock(return_value=fake))

    with pytest.raises(MailConnectionError) as exc_info:
        await ImapMailClient().connect(_account())

    assert exc_info.value.retryable is True
