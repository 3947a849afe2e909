"""IMAP implementation of the mail capability, on aioimaplib."""

import asyncio
import logging
import re
import ssl
from datetime import datetime, timedelta, timezone
from email import message_from_bytes, policy
from email.utils import parsedate_to_datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aioimaplib

from mailfeed.background.clock import to_naive_utc, utcnow
from mailfeed.background.errors import ConfigError, MailConnectionError, ProtocolError
from mailfeed.background.types import Account
from mailfeed.mail.types import ActionKind, MailMessage, PostProcessAction

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
_UID_RE = re.compile(rb"UID (\d+)")
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"')
_INTERNALDATE_FORMAT = re.compile(r"\s*(\d{1,2})-([A-Za-z]{3})-(\d{4}) (\d{2}):(\d{2}):(\d{2}) ([+-])(\d{2})(\d{2})")
_NETWORK_ERRORS = (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout)

FETCH_CHUNK = 200


def imap_date(value: datetime) -> str:
    """IMAP SEARCH date, independent of the process locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


def parse_internaldate(value: str) -> Optional[datetime]:
    """Parse an INTERNALDATE such as ``15-Jan-2025 10:30:00 +0100`` to naive UTC."""
    match = _INTERNALDATE_FORMAT.match(value)
    if not match:
        return None
    day, month, year, hour, minute, second, sign, off_hours, off_minutes = match.groups()
    if month.title() not in _MONTHS:
        return None
    offset = timedelta(hours=int(off_hours), minutes=int(off_minutes))
    if sign == "-":
        offset = -offset
    try:
        stamp = datetime(
            int(year), _MONTHS.index(month.title()) + 1, int(day),
            int(hour), int(minute), int(second), tzinfo=timezone(offset),
        )
    except ValueError:
        return None
    return to_naive_utc(stamp)


def quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_fetch_lines(lines: List) -> Tuple[Optional[bytes], Tuple[str, ...]]:
    """Pull the RFC822 literal and the flags out of a FETCH response."""
    raw = None
    flags: Tuple[str, ...] = ()
    for line in lines:
        # aioimaplib hands literals over as bytearray, status lines as bytes
        if isinstance(line, bytearray):
            if raw is None:
                raw = bytes(line)
        elif isinstance(line, bytes) and not flags:
            match = _FLAGS_RE.search(line)
            if match:
                flags = tuple(f.decode(errors="ignore") for f in match.group(1).split())
    return raw, flags


def parse_message(
    raw_email: bytes, uid: str, folder: str, flags: Tuple[str, ...] = (), received: Optional[datetime] = None
) -> MailMessage:
    """Parse a raw RFC822 message into a MailMessage.

    A missing or broken Date header falls back to the arrival time.
    """
    msg = message_from_bytes(raw_email, policy=policy.default)

    email_date = None
    date_str = msg.get("Date", "")
    if date_str:
        try:
            email_date = to_naive_utc(parsedate_to_datetime(str(date_str)))
        except (TypeError, ValueError, IndexError):
            email_date = None

    body_plain = ""
    body_html = ""
    for part in msg.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        payload = part.get_payload(decode=True)
        if not payload:
            continue
        charset = part.get_content_charset() or "utf-8"
        try:
            decoded = payload.decode(charset, errors="ignore")
        except LookupError:
            decoded = payload.decode("utf-8", errors="ignore")
        if content_type == "text/plain":
            body_plain += decoded
        else:
            body_html += decoded

    # Keywords are what servers expose as labels; system flags start with a backslash
    labels = tuple(flag for flag in flags if not flag.startswith("\\"))

    return MailMessage(
        uid=uid,
        folder=folder,
        message_id=str(msg.get("Message-ID", "") or "").strip(),
        sender=str(msg.get("From", ""))[:500],
        recipient=str(msg.get("To", ""))[:500],
        subject=str(msg.get("Subject", "")),
        date=email_date or received or utcnow(),
        body_plain=body_plain,
        body_html=body_html,
        labels=labels,
        received=received,
    )


class ImapConnection:
    """An authenticated IMAP session and the folder it has selected."""

    def __init__(self, client, account: Account):
        self.client = client
        self.account = account
        self.selected: Optional[str] = None

    async def select(self, folder: str):
        if self.selected == folder:
            return
        try:
            response = await self.client.select(quote_mailbox(folder))
        except _NETWORK_ERRORS as e:
            raise MailConnectionError(f"Lost connection selecting '{folder}': {e}", self.account.id) from e
        if response.result != "OK":
            raise ProtocolError(f"Could not select folder '{folder}': {response.lines}", self.account.id)
        self.selected = folder

    async def command(self, description: str, *args):
        """Run a UID command and require an OK result."""
        try:
            response = await self.client.uid(*args)
        except _NETWORK_ERRORS as e:
            raise MailConnectionError(f"Lost connection during {description}: {e}", self.account.id) from e
        if response.result != "OK":
            raise ProtocolError(f"{description} failed: {response.result} {response.lines}", self.account.id)
        return response


class ImapMailClient:
    """Connects to IMAP accounts, lists new messages and applies actions."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def connect(self, account: Account) -> ImapConnection:
        try:
            if account.use_tls:
                client = aioimaplib.IMAP4_SSL(
                    host=account.host,
                    port=account.port,
                    ssl_context=ssl.create_default_context(),
                    timeout=self.timeout,
                )
            else:
                client = aioimaplib.IMAP4(host=account.host, port=account.port, timeout=self.timeout)

            await client.wait_hello_from_server()
            login_response = await client.login(account.username, account.password)
        except _NETWORK_ERRORS as e:
            raise MailConnectionError(
                f"Connection failed for {account.name} ({account.host}): {type(e).__name__}: {e}", account.id
            ) from e

        if login_response.result != "OK":
            raise ConfigError(f"Login rejected for {account.name}: {login_response.lines}", account.id)

        logger.info(f"Successfully connected to {account.name} ({account.host})")
        return ImapConnection(client, account)

    async def disconnect(self, connection: ImapConnection) -> None:
        try:
            await connection.client.logout()
            logger.info(f"Disconnected from {connection.account.name}")
        except Exception as e:
            logger.warning(f"Error disconnecting from {connection.account.name}: {e}")

    async def list_messages(
        self, connection: ImapConnection, folder: str, since: Optional[datetime], max_count: int
    ) -> AsyncIterator[MailMessage]:
        """Yield messages received at or after ``since``, oldest arrival first.

        Arrival is the server's INTERNALDATE, the same clock SEARCH SINCE uses,
        so the order is the one the caller's cursor advances in.
        """
        if max_count <= 0:
            return

        await connection.select(folder)

        # SEARCH SINCE is day-granular in the server's timezone
        criteria = f"SINCE {imap_date(since - timedelta(days=1))}" if since else "ALL"
        response = await connection.command(f"search in '{folder}'", "search", criteria)
        uids = response.lines[0].decode().split() if response.lines and response.lines[0] else []
        if not uids:
            logger.debug(f"No messages in {folder} for {connection.account.name}")
            return

        arrivals = await self._arrival_times(connection, folder, uids)
        pending = [uid for uid in uids if not (since and arrivals.get(uid) and arrivals[uid] < since)]
        pending.sort(key=lambda uid: (arrivals.get(uid) or datetime.min, int(uid)))

        yielded = 0
        for uid in pending:
            fetch_response = await connection.command(f"fetch of {uid} in '{folder}'", "fetch", uid, "(FLAGS RFC822)")
            raw, flags = parse_fetch_lines(fetch_response.lines)
            if raw is None:
                # Message expunged between SEARCH and FETCH
                logger.debug(f"Message {uid} vanished from {folder}")
                continue

            yield parse_message(raw, uid, folder, flags, received=arrivals.get(uid))
            yielded += 1
            if yielded >= max_count:
                return

    async def _arrival_times(self, connection: ImapConnection, folder: str, uids: List[str]) -> Dict[str, datetime]:
        arrivals: Dict[str, datetime] = {}
        for start in range(0, len(uids), FETCH_CHUNK):
            chunk = ",".join(uids[start:start + FETCH_CHUNK])
            response = await connection.command(f"fetch of arrival times in '{folder}'", "fetch", chunk, "(INTERNALDATE)")
            for line in response.lines:
                if not isinstance(line, bytes):
                    continue
                uid_match = _UID_RE.search(line)
                date_match = _INTERNALDATE_RE.search(line)
                if uid_match and date_match:
                    received = parse_internaldate(date_match.group(1).decode())
                    if received is not None:
                        arrivals[uid_match.group(1).decode()] = received
        return arrivals

    async def apply_action(self, connection: ImapConnection, message: MailMessage, action: PostProcessAction) -> None:
        """Dispatch a post-process action for one message."""
        if action.kind is ActionKind.DO_NOTHING:
            return

        if action.kind is ActionKind.MOVE_TO_FOLDER and not action.target_folder:
            logger.warning(f"Move requested for message {message.uid} but no target folder is configured")
            return

        await connection.select(message.folder)

        if action.kind is ActionKind.MARK_READ:
            await connection.command(f"mark {message.uid} read", "store", message.uid, "+FLAGS", "(\\Seen)")

        elif action.kind is ActionKind.DELETE:
            await connection.command(f"delete {message.uid}", "store", message.uid, "+FLAGS", "(\\Deleted)")
            await self._expunge(connection)

        elif action.kind is ActionKind.MOVE_TO_FOLDER:
            target = quote_mailbox(action.target_folder)
            if connection.client.has_capability("MOVE"):
                await connection.command(f"move {message.uid} to '{action.target_folder}'", "move", message.uid, target)
            else:
                await connection.command(f"copy {message.uid} to '{action.target_folder}'", "copy", message.uid, target)
                await connection.command(f"delete {message.uid}", "store", message.uid, "+FLAGS", "(\\Deleted)")
                await self._expunge(connection)

        logger.debug(f"Applied {action} to message {message.uid} in {message.folder}")

    async def _expunge(self, connection: ImapConnection):
        try:
            response = await connection.client.expunge()
        except _NETWORK_ERRORS as e:
            raise MailConnectionError(f"Lost connection during expunge: {e}", connection.account.id) from e
        if response.result != "OK":
            raise ProtocolError(f"Expunge failed: {response.lines}", connection.account.id)
