"""Turn a mail message into feed item content."""

import logging
import re
from typing import Optional
from urllib.parse import quote

from bs4 import BeautifulSoup

from mailfeed.background.types import FeedItemDraft
from mailfeed.mail.types import MailMessage

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"


def html_to_text(html_content: str) -> str:
    """Extract readable text from an HTML body."""
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return soup.get_text(separator=" ", strip=True)


def message_text(message: MailMessage) -> str:
    """Plain text of a message, falling back to its HTML part."""
    if message.body_plain and message.body_plain.strip():
        return message.body_plain.strip()
    return html_to_text(message.body_html)


def truncate(text: str, max_length: int) -> str:
    collapsed = re.sub(r"\s+", " ", text).strip()
    if len(collapsed) <= max_length:
        return collapsed
    return collapsed[:max_length].rstrip() + "..."


def mailto_link(sender: str, subject: str) -> Optional[str]:
    if not sender:
        return None
    return f"mailto:{sender}?subject={quote(subject)}"


def build_feed_item(message: MailMessage, description_length: int = 500) -> FeedItemDraft:
    """Build the feed item for a matched message, keyed by its identity."""
    subject = message.subject.strip() or NO_SUBJECT
    text = message_text(message)

    return FeedItemDraft(
        dedupe_key=message.identity,
        title=subject,
        description=truncate(text, description_length),
        link=mailto_link(message.sender, subject),
        author=message.sender or None,
        pub_date=message.date,
        body=text,
    )
